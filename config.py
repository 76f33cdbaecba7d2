"""
config.py - Configuración centralizada del servicio de suscripciones
"""

import os


def _csv(value):
    return [item.strip().lower() for item in (value or "").split(",") if item.strip()]


class Config:
    """Configuración base"""
    # Base de datos
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///entitlements.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {'poolclass': __import__('sqlalchemy.pool', fromlist=['NullPool']).NullPool}

    # Stripe
    STRIPE_SECRET_KEY     = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_PRODUCT_ID     = os.getenv("STRIPE_PRODUCT_ID", "prod_TVmQGSpQx51wkk")

    # Precio del checkout: 12 SAR cada 3 meses
    CHECKOUT_CURRENCY       = os.getenv("CHECKOUT_CURRENCY", "sar")
    CHECKOUT_UNIT_AMOUNT    = int(os.getenv("CHECKOUT_UNIT_AMOUNT", "1200"))
    CHECKOUT_INTERVAL_COUNT = int(os.getenv("CHECKOUT_INTERVAL_COUNT", "3"))

    # Tokens del proveedor de identidad
    AUTH_JWT_SECRET    = os.getenv("AUTH_JWT_SECRET", "")
    AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
    AUTH_JWT_AUDIENCE  = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")

    # Seguridad
    ADMIN_EMAILS = _csv(os.getenv("ADMIN_EMAILS", ""))

    # Políticas de suscripción
    DEVICE_FALLBACK_MONTHS   = int(os.getenv("DEVICE_FALLBACK_MONTHS", "3"))
    LINK_CUSTOMER_SCAN_LIMIT = int(os.getenv("LINK_CUSTOMER_SCAN_LIMIT", "100"))
    MAX_GRANT_MONTHS         = int(os.getenv("MAX_GRANT_MONTHS", "120"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @staticmethod
    def init_app(app):
        """Inicialización de la aplicación"""
        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("postgres://"):
            app.config["SQLALCHEMY_DATABASE_URI"] = app.config["SQLALCHEMY_DATABASE_URI"].replace(
                "postgres://", "postgresql://", 1
            )


class DevelopmentConfig(Config):
    """Configuración de desarrollo"""
    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Configuración de producción"""
    DEBUG = False


class TestingConfig(Config):
    """Configuración para pytest"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY     = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    AUTH_JWT_SECRET       = "test-jwt-secret-with-enough-length-32b"
    ADMIN_EMAILS          = ["owner@maoun.app"]


# Configuración por defecto
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}

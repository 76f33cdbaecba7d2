"""
app.py - Aplicación principal Flask
"""

import logging
import os
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from config import config, Config
from models import db
from messages import message
from services.errors import EntitlementError
from utils import request_language

logger = logging.getLogger("maoun.app")


def configure_logging(app):
    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )


def register_error_handlers(app):
    """Errores tipados a JSON; lo inesperado a 500 genérico"""

    @app.errorhandler(EntitlementError)
    def handle_entitlement_error(exc):
        if exc.status_code >= 500:
            logger.error("%s en %s - %s", exc.code, request.path, {"detail": exc.detail})
        else:
            logger.info("%s en %s - %s", exc.code, request.path, {"detail": exc.detail})
        return jsonify({
            "error": message(exc.message_key, request_language()),
            "code":  exc.code,
        }), exc.status_code

    @app.errorhandler(404)
    def handle_not_found(exc):
        return jsonify({"error": "Not found", "code": "NOT_FOUND"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(exc):
        return jsonify({"error": "Method not allowed", "code": "METHOD_NOT_ALLOWED"}), 405

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description, "code": exc.name.upper().replace(" ", "_")}), exc.code
        db.session.rollback()
        logger.exception("Excepción no controlada en %s", request.path)
        return jsonify({
            "error": message("internal_error", request_language()),
            "code":  "INTERNAL_ERROR",
        }), 500


def create_app(config_name='default'):
    """Factory para crear la aplicación Flask"""
    app = Flask(__name__)

    # Cargar configuración
    app.config.from_object(config[config_name])
    Config.init_app(app)
    configure_logging(app)

    # Inicializar base de datos
    db.init_app(app)

    # Registrar blueprints
    from routes.entitlement import bp as entitlement_bp
    from routes.billing import bp as billing_bp
    from routes.admin_api import bp as admin_api_bp
    from routes.analytics import bp as analytics_bp

    app.register_blueprint(entitlement_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(admin_api_bp)
    app.register_blueprint(analytics_bp)

    register_error_handlers(app)

    # Crear tablas si no existen
    with app.app_context():
        db.create_all()

    logger.info("Servicio de suscripciones iniciado (%s)", config_name)
    return app


# Crear instancia de la app (gunicorn app:app)
app = create_app(os.getenv('FLASK_ENV', 'production'))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=False)

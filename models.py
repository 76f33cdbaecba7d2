"""
models.py - Modelos de base de datos SQLAlchemy
"""

import enum
import uuid
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


class GrantStatus(str, enum.Enum):
    """Estados persistidos de una suscripción. 'expired' nunca se guarda."""
    ACTIVE    = "active"
    INACTIVE  = "inactive"
    CANCELLED = "cancelled"


EXPIRED = "expired"

# Estados del procesador que cuentan como pagados
PROCESSOR_ACTIVE_STATES = ("active", "trialing")


class GrantEvent(str, enum.Enum):
    ACTIVATE           = "activate"
    CHECKOUT_COMPLETED = "checkout_completed"
    PROCESSOR_SYNC     = "processor_sync"
    EXTEND             = "extend"
    CANCEL             = "cancel"


def transition(current, event, processor_status=None, replay=False):
    """
    Única función de transición de estados, consultada por todos los mutadores.

    current es None cuando el registro todavía no existe. replay indica que un
    checkout completado se refiere a la misma suscripción ya guardada; en ese
    caso, sin estado del procesador, el registro se queda como estaba.
    """
    current = GrantStatus(current) if current is not None else None
    event = GrantEvent(event)

    if event is GrantEvent.ACTIVATE:
        if current is not None:
            raise ValueError(f"No se puede activar un registro existente ({current.value})")
        return GrantStatus.ACTIVE

    if event is GrantEvent.CHECKOUT_COMPLETED:
        if replay and current is GrantStatus.CANCELLED:
            return current
        if processor_status is not None:
            return _processor_state(processor_status)
        if replay and current is not None:
            return current
        return GrantStatus.ACTIVE

    if event is GrantEvent.EXTEND:
        return GrantStatus.ACTIVE

    if event is GrantEvent.CANCEL:
        if current is None:
            raise ValueError("No se puede cancelar un registro inexistente")
        return GrantStatus.CANCELLED

    # PROCESSOR_SYNC
    if current is None:
        raise ValueError("No hay registro que sincronizar")
    if current is GrantStatus.CANCELLED:
        return current
    return _processor_state(processor_status)


def _processor_state(processor_status):
    if (processor_status or "").lower() in PROCESSOR_ACTIVE_STATES:
        return GrantStatus.ACTIVE
    return GrantStatus.INACTIVE


def effective_status(status, expires_at, now=None):
    """Estado visible: 'expired' si está activo pero la fecha ya pasó"""
    now = now or datetime.utcnow()
    status = GrantStatus(status)
    if status is GrantStatus.ACTIVE and expires_at is not None and expires_at <= now:
        return EXPIRED
    return status.value


_status_type = db.Enum(
    GrantStatus,
    native_enum=False,
    length=20,
    values_callable=lambda members: [m.value for m in members],
)


class User(db.Model):
    """Identidades vistas a través de tokens verificados del proveedor de auth"""
    __tablename__ = "users"

    id          = db.Column(db.String(64), primary_key=True)
    email       = db.Column(db.String(254), nullable=True, index=True)
    created_at  = db.Column(db.DateTime, default=datetime.utcnow)
    last_seen   = db.Column(db.DateTime, nullable=True)

    roles = db.relationship('UserRole', backref='user', lazy='dynamic',
                            cascade='all, delete-orphan')

    def __repr__(self):
        return f"<User {self.id} - {self.email}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )

    id      = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    role    = db.Column(db.String(20), nullable=False)

    def __repr__(self):
        return f"<UserRole {self.user_id} - {self.role}>"


class ManualGrant(db.Model):
    """Suscripción concedida manualmente por un administrador"""
    __tablename__ = "manual_subscriptions"
    __table_args__ = (
        # Como mucho una suscripción activa por email
        db.Index(
            "uq_manual_subscriptions_active_email",
            "user_email",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
    )

    id           = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id      = db.Column(db.String(64), nullable=True, index=True)
    user_email   = db.Column(db.String(254), nullable=False, index=True)
    activated_by = db.Column(db.String(80), nullable=False)
    expires_at   = db.Column(db.DateTime, nullable=False)
    status       = db.Column(_status_type, nullable=False, default=GrantStatus.ACTIVE)
    notes        = db.Column(db.Text, nullable=True)
    created_at   = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at   = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<ManualGrant {self.user_email} - {self.status}>"


class DeviceGrant(db.Model):
    """Suscripción vinculada a un identificador anónimo de dispositivo"""
    __tablename__ = "device_subscriptions"

    id                     = db.Column(db.String(36), primary_key=True, default=_uuid)
    device_id              = db.Column(db.String(64), unique=True, nullable=False, index=True)
    stripe_customer_id     = db.Column(db.String(64), nullable=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)
    email                  = db.Column(db.String(254), nullable=True)
    status                 = db.Column(_status_type, nullable=False, default=GrantStatus.ACTIVE)
    expires_at             = db.Column(db.DateTime, nullable=True)
    device_info            = db.Column(db.String(200), default="")
    created_at             = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at             = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<DeviceGrant {self.device_id[:16]}... - {self.status}>"

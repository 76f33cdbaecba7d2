"""
services/identity.py - Identidad autenticada y verificación de administradores

Un principal es administrador si:
  a) su token verificado pertenece a un usuario con rol "admin", o
  b) el dispositivo que envía tiene una suscripción activa cuyo email de
     facturación está en ADMIN_EMAILS.
La verificación se repite en cada llamada; no se cachea nada.
"""

import logging
from collections import namedtuple
from datetime import datetime

import jwt
from flask import current_app

from models import db, User, UserRole, DeviceGrant
from services.errors import AuthorizationError, UpstreamError
from services.processor import get_processor
from utils import normalize_email, normalize_device_id

logger = logging.getLogger("maoun.identity")

Identity = namedtuple("Identity", ["user_id", "email"])

ADMIN_ROLE = "admin"


def decode_token(token):
    """Decodifica el token del proveedor de identidad. None si no es válido"""
    secret = current_app.config.get("AUTH_JWT_SECRET")
    if not token or not secret:
        return None
    audience = current_app.config.get("AUTH_JWT_AUDIENCE") or None
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[current_app.config.get("AUTH_JWT_ALGORITHM", "HS256")],
            audience=audience,
            options={"verify_aud": audience is not None, "require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Token expirado")
        return None
    except jwt.InvalidTokenError as e:
        logger.info("Token inválido - %s", {"error": str(e)})
        return None
    return Identity(str(claims["sub"]), normalize_email(claims.get("email")) or None)


def resolve_identity(token):
    """
    Identidad del token y registro del usuario la primera vez que se ve.

    Devuelve None para peticiones anónimas o tokens inválidos.
    """
    identity = decode_token(token)
    if identity is None:
        return None

    user = db.session.get(User, identity.user_id)
    if user is None:
        user = User(id=identity.user_id, email=identity.email)
        db.session.add(user)
    elif identity.email and user.email != identity.email:
        user.email = identity.email
    user.last_seen = datetime.utcnow()
    db.session.commit()
    return identity


def find_user_id_by_email(email):
    """Búsqueda best-effort de un usuario registrado por email"""
    email = normalize_email(email)
    if not email:
        return None
    user = User.query.filter(db.func.lower(User.email) == email).first()
    return user.id if user else None


def is_admin_user(user_id) -> bool:
    if not user_id:
        return False
    return UserRole.query.filter_by(user_id=user_id, role=ADMIN_ROLE).first() is not None


def device_billing_email(grant):
    """Email de facturación del dispositivo: Stripe en vivo o el guardado al vincular"""
    if grant.stripe_customer_id:
        try:
            email = get_processor().customer_email(grant.stripe_customer_id)
            if email:
                return email
        except UpstreamError:
            logger.warning("No se pudo leer el cliente de Stripe - %s",
                           {"customerId": grant.stripe_customer_id})
    return normalize_email(grant.email) or None


def is_admin_device(device_id) -> bool:
    """El dispositivo debe estar suscrito según la misma comprobación que check-subscription"""
    from services.reconciliation import device_entitlement

    device_id = normalize_device_id(device_id)
    if not device_id:
        return False

    entitlement = device_entitlement(device_id, datetime.utcnow())
    if entitlement is None or not entitlement.subscribed:
        return False

    grant = DeviceGrant.query.filter_by(device_id=device_id).first()
    email = device_billing_email(grant)
    return bool(email) and email in current_app.config.get("ADMIN_EMAILS", [])


def verify_admin(token=None, device_id=None):
    """
    Devuelve el identificador del administrador o lanza AuthorizationError.

    Se prueba primero el token y después el dispositivo.
    """
    identity = resolve_identity(token) if token else None
    if identity is not None and is_admin_user(identity.user_id):
        logger.info("Admin verificado por rol - %s", {"userId": identity.user_id})
        return identity.user_id

    if device_id and is_admin_device(device_id):
        logger.info("Admin verificado por dispositivo - %s", {"deviceId": device_id})
        return f"device:{normalize_device_id(device_id)}"

    logger.warning("Acceso de admin denegado - %s", {
        "hasToken": bool(token),
        "userId": identity.user_id if identity else None,
        "deviceId": device_id or None,
    })
    raise AuthorizationError()

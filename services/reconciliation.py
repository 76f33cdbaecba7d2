"""
services/reconciliation.py - ¿Puede este dispositivo/usuario usar la función de pago?

Orden de resolución (gana la primera coincidencia, cada paso cae al siguiente
si no encuentra nada o falla):
  1. suscripción manual por user_id
  2. suscripción manual por email (enlaza user_id la primera vez que se ve)
  3. suscripción del dispositivo (con relectura en vivo de Stripe si hay id)
  4. Stripe por email, solo para usuarios autenticados

Nunca lanza: en el peor caso responde subscribed=False y deja el error en el log.
"""

import logging
from collections import namedtuple
from datetime import datetime

from flask import current_app

from models import db, ManualGrant, DeviceGrant, GrantStatus, GrantEvent, transition
from services.errors import UpstreamError
from services.identity import is_admin_device, is_admin_user
from services.processor import get_processor, subscription_period_end, subscription_product
from utils import add_months, isoformat, normalize_device_id, normalize_email

logger = logging.getLogger("maoun.reconciliation")

MANUAL_PRODUCT_ID = "manual_subscription"
DEVICE_PRODUCT_ID = "device_subscription"


class EntitlementStatus(namedtuple("EntitlementStatus", ["subscribed", "expires_at", "product_id", "source"])):
    __slots__ = ()

    def to_dict(self):
        return {
            "subscribed":       self.subscribed,
            "product_id":       self.product_id,
            "subscription_end": isoformat(self.expires_at),
        }


NOT_SUBSCRIBED = EntitlementStatus(False, None, None, None)


def _active_manual_query(now):
    return ManualGrant.query.filter(
        ManualGrant.status == GrantStatus.ACTIVE,
        ManualGrant.expires_at > now,
    ).order_by(ManualGrant.expires_at.desc())


def manual_by_user(user_id, now):
    grant = _active_manual_query(now).filter(ManualGrant.user_id == user_id).first()
    if grant:
        logger.info("Suscripción manual activa por user_id - %s",
                    {"subscriptionId": grant.id, "expiresAt": isoformat(grant.expires_at)})
        return EntitlementStatus(True, grant.expires_at, MANUAL_PRODUCT_ID, "manual")
    return None


def backfill_user_id(grant_id, user_id) -> bool:
    """Enlaza el user_id solo si sigue vacío, para no pisar uno puesto en paralelo"""
    result = db.session.execute(
        db.update(ManualGrant)
        .where(ManualGrant.id == grant_id, ManualGrant.user_id.is_(None))
        .values(user_id=user_id, updated_at=datetime.utcnow())
    )
    db.session.commit()
    linked = result.rowcount == 1
    if linked:
        logger.info("Suscripción enlazada al usuario registrado - %s",
                    {"subscriptionId": grant_id, "userId": user_id})
    return linked


def manual_by_email(email, user_id, now):
    grant = _active_manual_query(now).filter(ManualGrant.user_email == email).first()
    if grant is None:
        return None
    if grant.user_id is None and user_id:
        backfill_user_id(grant.id, user_id)
    logger.info("Suscripción manual activa por email - %s",
                {"subscriptionId": grant.id, "expiresAt": isoformat(grant.expires_at)})
    return EntitlementStatus(True, grant.expires_at, MANUAL_PRODUCT_ID, "manual")


def effective_device_expiry(grant, live_end=None):
    """
    Expiración efectiva de una suscripción de dispositivo.

    Prioridad: fin de periodo leído en vivo, la fecha guardada y, si no hay
    ninguna, created_at + DEVICE_FALLBACK_MONTHS.
    """
    if live_end is not None:
        return live_end
    if grant.expires_at is not None:
        return grant.expires_at
    created = grant.created_at or datetime.utcnow()
    return add_months(created, current_app.config["DEVICE_FALLBACK_MONTHS"])


def device_entitlement(device_id, now):
    """None si el dispositivo no tiene registro; si lo tiene, su estado decide"""
    grant = DeviceGrant.query.filter_by(device_id=device_id).first()
    if grant is None:
        return None

    status = grant.status
    live_end = None
    product_id = None

    if status is GrantStatus.CANCELLED:
        logger.info("Suscripción de dispositivo cancelada - %s", {"deviceId": device_id})
        return EntitlementStatus(False, grant.expires_at, None, "device")

    if grant.stripe_subscription_id:
        try:
            subscription = get_processor().retrieve_subscription(grant.stripe_subscription_id)
            status = transition(status, GrantEvent.PROCESSOR_SYNC, subscription.get("status"))
            live_end = subscription_period_end(subscription)
            product_id = subscription_product(subscription)
        except UpstreamError:
            # Error transitorio: se usa la fecha guardada
            logger.warning("Stripe no disponible, usando expiración local - %s",
                           {"deviceId": device_id, "subscriptionId": grant.stripe_subscription_id})

    expires_at = effective_device_expiry(grant, live_end)
    subscribed = status is GrantStatus.ACTIVE and expires_at > now
    if not subscribed:
        logger.info("Suscripción de dispositivo no vigente - %s",
                    {"deviceId": device_id, "status": status.value, "expiresAt": isoformat(expires_at)})
        return EntitlementStatus(False, expires_at, None, "device")

    logger.info("Suscripción de dispositivo activa - %s",
                {"deviceId": device_id, "expiresAt": isoformat(expires_at)})
    return EntitlementStatus(True, expires_at, product_id or DEVICE_PRODUCT_ID, "device")


def processor_by_email(email):
    processor = get_processor()
    customer = processor.find_customer(email)
    if customer is None:
        logger.info("Sin cliente en Stripe - %s", {"email": email})
        return NOT_SUBSCRIBED

    subscription = processor.active_subscription(customer.get("id"))
    if subscription is None:
        logger.info("Cliente sin suscripción activa - %s", {"customerId": customer.get("id")})
        return NOT_SUBSCRIBED

    end = subscription_period_end(subscription)
    logger.info("Suscripción activa en Stripe - %s",
                {"subscriptionId": subscription.get("id"), "endDate": isoformat(end)})
    return EntitlementStatus(True, end, subscription_product(subscription), "stripe")


def _attempt(step, fn, *args):
    try:
        return fn(*args)
    except Exception:
        db.session.rollback()
        logger.exception("Fallo en el paso %s, se continúa con el siguiente", step)
        return None


def get_entitlement(device_id=None, email=None, user_id=None):
    """
    Estado de suscripción combinando las tres fuentes.

    email y user_id solo deben venir de un token verificado.
    """
    now = datetime.utcnow()
    device_id = normalize_device_id(device_id)
    email = normalize_email(email)

    if user_id:
        found = _attempt("manual_by_user", manual_by_user, user_id, now)
        if found:
            return found

    if email:
        found = _attempt("manual_by_email", manual_by_email, email, user_id, now)
        if found:
            return found

    if device_id:
        found = _attempt("device", device_entitlement, device_id, now)
        if found is not None:
            return found

    if email and user_id:
        found = _attempt("stripe_by_email", processor_by_email, email)
        if found is not None:
            return found

    return NOT_SUBSCRIBED


def check_admin(device_id=None, user_id=None) -> bool:
    """Indicador is_admin para el panel; cualquier fallo cuenta como no admin"""
    try:
        return is_admin_user(user_id) or is_admin_device(device_id)
    except Exception:
        db.session.rollback()
        logger.exception("Fallo comprobando admin")
        return False

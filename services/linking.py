"""
services/linking.py - Vincula un dispositivo anónimo a una suscripción pagada existente

La única escritura es el INSERT final; la restricción única de device_id en la
base de datos es la que manda. La comprobación previa solo sirve para dar un
mensaje claro sin pasar por Stripe.
"""

import logging
from collections import namedtuple
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from models import db, DeviceGrant, ManualGrant, GrantStatus, GrantEvent, transition
from services.errors import UpstreamError, ValidationError
from services.processor import get_processor, subscription_period_end
from utils import (
    is_valid_device_id, is_valid_email, isoformat,
    normalize_device_id, normalize_email,
)

logger = logging.getLogger("maoun.linking")

LinkResult = namedtuple("LinkResult", ["success", "message_key", "grant"])


def _validate(device_id, email):
    if not device_id:
        raise ValidationError("device_id_required")
    if not is_valid_device_id(device_id):
        raise ValidationError("invalid_device_id")
    if not email:
        raise ValidationError("email_required")
    if not is_valid_email(email):
        raise ValidationError("invalid_email")


def _processor_source(email):
    """(customer_id, subscription) de Stripe, o None"""
    processor = get_processor()
    customer = processor.find_customer(email)
    if customer is None:
        logger.info("Sin cliente en Stripe - %s", {"email": email})
        return None

    subscription = processor.active_subscription(customer.get("id"))
    if subscription is None:
        logger.info("Cliente sin suscripción activa - %s", {"customerId": customer.get("id")})
        return None
    return customer.get("id"), subscription


def _latest_manual_grant(email):
    return ManualGrant.query.filter(
        ManualGrant.user_email == email,
        ManualGrant.status == GrantStatus.ACTIVE,
        ManualGrant.expires_at > datetime.utcnow(),
    ).order_by(ManualGrant.expires_at.desc()).first()


def link_device(device_id, email, device_info=""):
    """
    Vincula device_id con la suscripción activa de email.

    Lanza ValidationError si la entrada es inválida; los resultados esperados
    (ya vinculado, sin suscripción) vuelven como LinkResult(success=False).
    Un UpstreamError de Stripe solo se propaga si tampoco hay suscripción manual.
    """
    device_id = normalize_device_id(device_id)
    email = normalize_email(email)
    _validate(device_id, email)

    if DeviceGrant.query.filter_by(device_id=device_id).first() is not None:
        logger.info("El dispositivo ya tiene suscripción - %s", {"deviceId": device_id})
        return LinkResult(False, "already_linked", None)

    grant = DeviceGrant(
        device_id=device_id,
        email=email,
        device_info=(device_info or "")[:200],
        status=transition(None, GrantEvent.ACTIVATE),
    )

    upstream_error = None
    try:
        source = _processor_source(email)
    except UpstreamError as e:
        # Se intenta la suscripción manual; si tampoco hay, se informa del fallo de Stripe
        logger.warning("Stripe no disponible durante el enlace - %s", {"email": email})
        source, upstream_error = None, e

    if source is not None:
        customer_id, subscription = source
        grant.stripe_customer_id = customer_id
        grant.stripe_subscription_id = subscription.get("id")
        grant.status = transition(grant.status, GrantEvent.PROCESSOR_SYNC, subscription.get("status"))
        grant.expires_at = subscription_period_end(subscription)
        logger.info("Suscripción activa en Stripe - %s", {"subscriptionId": grant.stripe_subscription_id})
    else:
        manual = _latest_manual_grant(email)
        if manual is None:
            if upstream_error is not None:
                raise upstream_error
            logger.info("Sin suscripción activa para el email - %s", {"email": email})
            return LinkResult(False, "no_active_subscription", None)
        grant.expires_at = manual.expires_at
        logger.info("Suscripción manual encontrada - %s", {"subscriptionId": manual.id})

    db.session.add(grant)
    try:
        db.session.commit()
    except IntegrityError:
        # Otra petición (webhook o enlace) insertó el mismo device_id
        db.session.rollback()
        logger.info("Inserción concurrente detectada - %s", {"deviceId": device_id})
        return LinkResult(False, "already_linked", None)

    logger.info("Suscripción vinculada - %s",
                {"deviceId": device_id, "expiresAt": isoformat(grant.expires_at)})
    return LinkResult(True, "linked", grant)

"""
services/billing.py - Checkout de Stripe y webhook que materializa la suscripción del dispositivo

El device_id viaja como metadata opaca en la sesión de checkout; es el único
canal para asociar después un pago completado con un dispositivo.
"""

import logging
from datetime import datetime
from urllib.parse import quote

from flask import current_app
from sqlalchemy.dialects import postgresql, sqlite

from models import db, DeviceGrant, GrantEvent, GrantStatus, transition
from services.errors import EntitlementError, SignatureError, UpstreamError, ValidationError
from services.processor import get_processor, subscription_period_end
from utils import add_months, from_epoch, is_valid_device_id, isoformat, normalize_device_id

logger = logging.getLogger("maoun.billing")

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def create_checkout(device_id, origin):
    """Crea la sesión de checkout y devuelve su URL"""
    device_id = normalize_device_id(device_id)
    if not device_id:
        raise ValidationError("device_id_required")
    if not is_valid_device_id(device_id):
        raise ValidationError("invalid_device_id")

    cfg = current_app.config
    origin = (origin or "").rstrip("/")
    metadata = {"device_id": device_id}

    session = get_processor().create_checkout_session(
        mode="subscription",
        line_items=[{
            "price_data": {
                "currency": cfg["CHECKOUT_CURRENCY"],
                "product": cfg["STRIPE_PRODUCT_ID"],
                "unit_amount": cfg["CHECKOUT_UNIT_AMOUNT"],
                "recurring": {
                    "interval": "month",
                    "interval_count": cfg["CHECKOUT_INTERVAL_COUNT"],
                },
            },
            "quantity": 1,
        }],
        success_url=f"{origin}/subscription-success?device={quote(device_id)}",
        cancel_url=f"{origin}/pricing",
        billing_address_collection="auto",
        metadata=metadata,
        subscription_data={"metadata": metadata},
    )

    url = session.get("url") if session else None
    if not url:
        raise UpstreamError(detail="La sesión de checkout no devolvió URL")
    logger.info("Sesión de checkout creada - %s", {"sessionId": session.get("id"), "deviceId": device_id})
    return url


def _dialect_insert():
    if db.engine.dialect.name == "postgresql":
        return postgresql.insert
    if db.engine.dialect.name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Dialecto sin soporte de upsert: {db.engine.dialect.name}")


def upsert_device_grant(device_id, customer_id, subscription_id, expires_at, email=None,
                        processor_status=None):
    """
    INSERT ... ON CONFLICT (device_id) DO UPDATE: repetir el evento no duplica filas.

    processor_status es el estado leído en vivo de la suscripción (None si la
    lectura falló). Un reenvío del mismo checkout nunca reactiva un registro
    cancelado y, sin estado en vivo, deja estado y expiración como estaban;
    un checkout nuevo (otra suscripción) sí los sustituye.
    """
    now = datetime.utcnow()
    table = DeviceGrant.__table__
    insert = _dialect_insert()
    fresh = transition(None, GrantEvent.CHECKOUT_COMPLETED, processor_status)
    stmt = insert(table).values(
        device_id=device_id,
        stripe_customer_id=customer_id,
        stripe_subscription_id=subscription_id,
        email=email,
        status=fresh,
        expires_at=expires_at,
        device_info="",
        created_at=now,
        updated_at=now,
    )

    same_subscription = table.c.stripe_subscription_id.is_not_distinct_from(
        stmt.excluded.stripe_subscription_id
    )
    status = db.case(
        *[
            (
                db.and_(same_subscription, table.c.status == current),
                db.literal(transition(current, GrantEvent.CHECKOUT_COMPLETED,
                                      processor_status, replay=True).value),
            )
            for current in GrantStatus
        ],
        else_=db.literal(fresh.value),
    )
    if processor_status is None:
        expiry = db.case(
            (same_subscription, db.func.coalesce(table.c.expires_at, stmt.excluded.expires_at)),
            else_=stmt.excluded.expires_at,
        )
    else:
        expiry = stmt.excluded.expires_at

    changes = {
        "stripe_customer_id":     stmt.excluded.stripe_customer_id,
        "stripe_subscription_id": stmt.excluded.stripe_subscription_id,
        "status":                 status,
        "expires_at":             expiry,
        "updated_at":             now,
    }
    if email:
        changes["email"] = stmt.excluded.email
    stmt = stmt.on_conflict_do_update(index_elements=["device_id"], set_=changes)
    db.session.execute(stmt)
    db.session.commit()


def _handle_checkout_completed(session):
    metadata = session.get("metadata") or {}
    device_id = normalize_device_id(metadata.get("device_id"))
    if not device_id:
        # Pago sin dispositivo: solo se puede recuperar con el enlace manual por email
        logger.warning("Sesión sin device_id en metadata - %s", {"sessionId": session.get("id")})
        return

    customer_id = session.get("customer")
    subscription_id = session.get("subscription")
    details = session.get("customer_details") or {}
    email = (details.get("email") or session.get("customer_email") or "").strip().lower() or None

    logger.info("Procesando checkout completado - %s", {
        "sessionId": session.get("id"),
        "deviceId": device_id,
        "customerId": customer_id,
        "subscriptionId": subscription_id,
    })

    expires_at = None
    processor_status = None
    if subscription_id:
        try:
            subscription = get_processor().retrieve_subscription(subscription_id)
            expires_at = subscription_period_end(subscription)
            processor_status = subscription.get("status")
        except UpstreamError:
            logger.warning("No se pudo leer la suscripción, se usa la duración fija - %s",
                           {"subscriptionId": subscription_id})
    if expires_at is None:
        expires_at = add_months(datetime.utcnow(), current_app.config["DEVICE_FALLBACK_MONTHS"])

    upsert_device_grant(device_id, customer_id, subscription_id, expires_at, email, processor_status)
    logger.info("Suscripción guardada - %s", {"deviceId": device_id, "status": processor_status,
                                              "expiresAt": isoformat(expires_at)})


def _handle_subscription_changed(subscription):
    subscription_id = subscription.get("id")
    grants = DeviceGrant.query.filter_by(stripe_subscription_id=subscription_id).all()
    if not grants:
        # Puede llegar antes que el checkout o ser de otro entorno
        logger.info("Sin registro local para la suscripción - %s", {"subscriptionId": subscription_id})
        return

    end = subscription_period_end(subscription)
    for grant in grants:
        grant.status = transition(grant.status, GrantEvent.PROCESSOR_SYNC, subscription.get("status"))
        if end is not None:
            grant.expires_at = end
        grant.updated_at = datetime.utcnow()
    db.session.commit()
    logger.info("Suscripción actualizada - %s", {
        "subscriptionId": subscription_id,
        "status": subscription.get("status"),
        "devices": len(grants),
    })


def handle_webhook_event(payload, signature):
    """
    Verifica la firma y aplica el evento. Devuelve el tipo de evento.

    SignatureError si falta o no cuadra la firma; ningún efecto en ese caso.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("No hay secreto de webhook configurado")
        raise EntitlementError("webhook_not_configured")
    if not signature:
        logger.warning("Webhook sin firma")
        raise SignatureError(detail="Falta la cabecera Stripe-Signature")

    event = get_processor().construct_event(payload, signature, secret)
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Evento recibido - %s", {"type": event_type, "id": event.get("id"),
                                         "created": isoformat(from_epoch(event.get("created")))})

    if event_type == CHECKOUT_COMPLETED:
        _handle_checkout_completed(obj)
    elif event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        _handle_subscription_changed(obj)
    else:
        logger.info("Tipo de evento no gestionado - %s", {"type": event_type})
    return event_type

"""
services/admin_grants.py - Operaciones privilegiadas sobre suscripciones manuales

Quien llama debe haber pasado antes por identity.verify_admin.
"""

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import (
    db, ManualGrant, DeviceGrant, GrantStatus, GrantEvent,
    effective_status, transition, EXPIRED, PROCESSOR_ACTIVE_STATES,
)
from services.errors import ConflictError, NotFoundError, ValidationError
from services.identity import find_user_id_by_email
from services.processor import get_processor, subscription_period_end
from utils import add_months, is_valid_email, isoformat, normalize_email, to_epoch

logger = logging.getLogger("maoun.admin")


def _parse_months(value):
    try:
        months = int(value)
    except (TypeError, ValueError):
        raise ValidationError("invalid_duration")
    if months < 1 or months > current_app.config["MAX_GRANT_MONTHS"]:
        raise ValidationError("invalid_duration")
    return months


def _load_grant(grant_id):
    if not grant_id:
        raise ValidationError("subscription_id_required")
    grant = db.session.get(ManualGrant, str(grant_id))
    if grant is None:
        raise NotFoundError("subscription_not_found")
    return grant


def activate(email, duration_months, notes, admin_id):
    """
    Crea una suscripción manual activa durante duration_months.

    Si el usuario todavía no existe queda pendiente y se enlaza cuando
    aparezca con ese email (ver reconciliation.manual_by_email).
    """
    email = normalize_email(email)
    if not email:
        raise ValidationError("email_required")
    if not is_valid_email(email):
        raise ValidationError("invalid_email")
    months = _parse_months(duration_months)

    existing = ManualGrant.query.filter_by(user_email=email, status=GrantStatus.ACTIVE).first()
    if existing is not None:
        raise ConflictError("already_active")

    user_id = None
    try:
        user_id = find_user_id_by_email(email)
    except Exception:
        db.session.rollback()
        logger.warning("Error buscando usuario (se continúa) - %s", {"email": email}, exc_info=True)

    if user_id:
        logger.info("Usuario encontrado en el sistema - %s", {"userId": user_id})
    else:
        logger.info("Usuario aún no registrado, suscripción pendiente - %s", {"email": email})

    now = datetime.utcnow()
    grant = ManualGrant(
        user_id=user_id,
        user_email=email,
        activated_by=admin_id,
        expires_at=add_months(now, months),
        status=transition(None, GrantEvent.ACTIVATE),
        notes=(notes or None),
        created_at=now,
        updated_at=now,
    )
    db.session.add(grant)
    try:
        db.session.commit()
    except IntegrityError:
        # El índice parcial único rechazó una activación concurrente
        db.session.rollback()
        raise ConflictError("already_active")

    logger.info("Suscripción activada - %s", {"subscriptionId": grant.id, "hasUserId": bool(user_id)})
    return grant


def extend(grant_id, additional_months):
    """Amplía desde max(expires_at, ahora): nunca se acumula sobre una fecha pasada"""
    months = _parse_months(additional_months)
    grant = _load_grant(grant_id)

    now = datetime.utcnow()
    base = max(grant.expires_at, now)
    grant.expires_at = add_months(base, months)
    grant.status = transition(grant.status, GrantEvent.EXTEND)
    grant.updated_at = now
    try:
        db.session.commit()
    except IntegrityError:
        # Reactivar una cancelada cuando ya hay otra activa para el mismo email
        db.session.rollback()
        raise ConflictError("already_active")

    logger.info("Suscripción extendida - %s",
                {"subscriptionId": grant.id, "newExpiryDate": isoformat(grant.expires_at)})
    return grant


def cancel(grant_id):
    """Cancela una suscripción manual; cancelar dos veces no es un error"""
    grant = _load_grant(grant_id)
    if grant.status is GrantStatus.CANCELLED:
        logger.info("Suscripción ya cancelada - %s", {"subscriptionId": grant.id})
        return grant

    grant.status = transition(grant.status, GrantEvent.CANCEL)
    grant.updated_at = datetime.utcnow()
    db.session.commit()
    logger.info("Suscripción cancelada - %s", {"subscriptionId": grant.id})
    return grant


def cancel_device_subscription(subscription_id, immediately=False):
    """
    Cancela una suscripción de Stripe vinculada a dispositivos.

    Al final del periodo: Stripe la mantiene activa y el webhook de
    actualización cambiará el estado local cuando toque.
    """
    if not subscription_id:
        raise ValidationError("subscription_id_required")

    subscription = get_processor().cancel_subscription(subscription_id, immediately=immediately)

    if immediately:
        grants = DeviceGrant.query.filter_by(stripe_subscription_id=subscription_id).all()
        for grant in grants:
            grant.status = transition(grant.status, GrantEvent.CANCEL)
        db.session.commit()
        logger.info("Suscripción cancelada inmediatamente - %s",
                    {"subscriptionId": subscription_id, "devices": len(grants)})
    else:
        logger.info("Suscripción marcada para cancelar al final del periodo - %s",
                    {"subscriptionId": subscription_id})
    return subscription


def extend_device_subscription(subscription_id, additional_months):
    """
    Amplía una suscripción de Stripe de dispositivos moviendo trial_end.

    Solo vale para suscripciones active o trialing. Devuelve la nueva expiración.
    """
    if not subscription_id:
        raise ValidationError("subscription_id_required")
    months = _parse_months(additional_months)

    processor = get_processor()
    subscription = processor.retrieve_subscription(subscription_id)
    status = (subscription.get("status") or "").lower()
    if status not in PROCESSOR_ACTIVE_STATES:
        logger.info("Suscripción no ampliable - %s", {"subscriptionId": subscription_id, "status": status})
        raise ConflictError("subscription_not_active")

    current_end = max(subscription_period_end(subscription) or datetime.utcnow(), datetime.utcnow())
    new_end = add_months(current_end, months)
    updated = processor.extend_subscription(subscription_id, to_epoch(new_end))

    grants = DeviceGrant.query.filter_by(stripe_subscription_id=subscription_id).all()
    for grant in grants:
        grant.status = transition(grant.status, GrantEvent.PROCESSOR_SYNC,
                                  (updated or {}).get("status") or status)
        grant.expires_at = new_end
        grant.updated_at = datetime.utcnow()
    db.session.commit()

    logger.info("Suscripción de Stripe extendida - %s", {
        "subscriptionId": subscription_id,
        "newExpiresAt": isoformat(new_end),
        "devices": len(grants),
    })
    return new_end


def list_entitlements():
    """Todas las suscripciones manuales y de dispositivo con su estado efectivo"""
    now = datetime.utcnow()
    rows = []

    for grant in ManualGrant.query.order_by(ManualGrant.created_at.desc()).all():
        rows.append({
            "id":                 grant.id,
            "email":              grant.user_email,
            "user_id":            grant.user_id,
            "created_at":         isoformat(grant.created_at),
            "subscriptionStatus": effective_status(grant.status, grant.expires_at, now),
            "subscriptionSource": "manual",
            "pending":            grant.user_id is None,
            "expiresAt":          isoformat(grant.expires_at),
            "subscriptionId":     grant.id,
            "notes":              grant.notes,
        })

    for grant in DeviceGrant.query.order_by(DeviceGrant.created_at.desc()).all():
        rows.append({
            "id":                 grant.device_id,
            "email":              grant.email,
            "user_id":            None,
            "created_at":         isoformat(grant.created_at),
            "subscriptionStatus": effective_status(grant.status, grant.expires_at, now),
            "subscriptionSource": "device",
            "pending":            False,
            "expiresAt":          isoformat(grant.expires_at),
            "subscriptionId":     grant.stripe_subscription_id or grant.id,
            "device_info":        grant.device_info,
        })

    return rows


def summary():
    now = datetime.utcnow()
    manual = ManualGrant.query.all()
    devices = DeviceGrant.query.all()

    def count(grants, state):
        return sum(1 for g in grants if effective_status(g.status, g.expires_at, now) == state)

    return {
        "manual_total":      len(manual),
        "manual_active":     count(manual, GrantStatus.ACTIVE.value),
        "manual_pending":    sum(1 for g in manual if g.user_id is None
                                 and effective_status(g.status, g.expires_at, now) == GrantStatus.ACTIVE.value),
        "manual_expired":    count(manual, EXPIRED),
        "manual_cancelled":  count(manual, GrantStatus.CANCELLED.value),
        "device_total":      len(devices),
        "device_active":     count(devices, GrantStatus.ACTIVE.value),
        "device_inactive":   count(devices, GrantStatus.INACTIVE.value),
        "device_expired":    count(devices, EXPIRED),
        "device_cancelled":  count(devices, GrantStatus.CANCELLED.value),
        "device_stripe":     sum(1 for g in devices if g.stripe_subscription_id),
    }

"""
routes/admin_api.py - Endpoints de administración (API JSON)
"""

from flask import Blueprint, request, jsonify

from messages import message
from services import admin_grants
from services.identity import verify_admin
from utils import bearer_token, isoformat, json_body, request_language, serialize_manual_grant

bp = Blueprint('admin_api', __name__)


def require_admin(data):
    """Verifica al admin en cada llamada: token con rol admin o dispositivo admin"""
    device_id = data.get("deviceId") or request.args.get("deviceId")
    return verify_admin(token=bearer_token(request), device_id=device_id)


@bp.route("/api/admin/activate", methods=["POST"])
def activate():
    """Crea una suscripción manual para un email"""
    data = json_body(request)
    admin_id = require_admin(data)

    grant = admin_grants.activate(
        data.get("userEmail"),
        data.get("durationMonths"),
        data.get("notes"),
        admin_id,
    )
    key = "activated" if grant.user_id else "activated_pending"
    return jsonify({
        "success":      True,
        "subscription": serialize_manual_grant(grant),
        "message":      message(key, request_language()),
    }), 201


@bp.route("/api/admin/extend", methods=["POST"])
def extend():
    """Extiende la fecha de expiración de una suscripción manual"""
    data = json_body(request)
    require_admin(data)

    grant = admin_grants.extend(data.get("subscriptionId"), data.get("additionalMonths"))
    return jsonify({
        "success":      True,
        "subscription": serialize_manual_grant(grant),
        "message":      message("extended", request_language()),
    }), 200


@bp.route("/api/admin/cancel", methods=["POST"])
def cancel():
    """Cancela una suscripción manual (idempotente)"""
    data = json_body(request)
    require_admin(data)

    grant = admin_grants.cancel(data.get("subscriptionId"))
    return jsonify({
        "success":      True,
        "subscription": serialize_manual_grant(grant),
        "message":      message("cancelled", request_language()),
    }), 200


@bp.route("/api/admin/cancel-stripe-subscription", methods=["POST"])
def cancel_stripe_subscription():
    """Cancela en Stripe una suscripción vinculada a dispositivos"""
    data = json_body(request)
    require_admin(data)

    immediately = bool(data.get("cancelImmediately", False))
    subscription = admin_grants.cancel_device_subscription(data.get("subscriptionId"), immediately)
    key = "cancelled_immediately" if immediately else "cancel_at_period_end"
    return jsonify({
        "success":           True,
        "status":            subscription.get("status"),
        "cancelAtPeriodEnd": bool(subscription.get("cancel_at_period_end")),
        "message":           message(key, request_language()),
    }), 200


@bp.route("/api/admin/extend-stripe-subscription", methods=["POST"])
def extend_stripe_subscription():
    """Amplía en Stripe una suscripción vinculada a dispositivos"""
    data = json_body(request)
    require_admin(data)

    new_end = admin_grants.extend_device_subscription(data.get("subscriptionId"), data.get("additionalMonths"))
    return jsonify({
        "success":      True,
        "newExpiresAt": isoformat(new_end),
        "message":      message("extended", request_language()),
    }), 200

"""
routes/billing.py - Checkout de Stripe y recepción de webhooks
"""

from flask import Blueprint, request, jsonify

from services.billing import create_checkout, handle_webhook_event
from utils import json_body

bp = Blueprint('billing', __name__)


@bp.route("/api/create-checkout", methods=["POST"])
def checkout():
    """Crea una sesión de pago con el device_id como metadata"""
    data = json_body(request)
    origin = request.headers.get("Origin") or request.host_url
    url = create_checkout(data.get("deviceId"), origin)
    return jsonify({"url": url}), 200


@bp.route("/api/stripe-webhook", methods=["POST"])
def stripe_webhook():
    """Eventos de Stripe. La firma se verifica antes de leer nada del cuerpo"""
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    event_type = handle_webhook_event(payload, signature)
    return jsonify({"received": True, "type": event_type}), 200

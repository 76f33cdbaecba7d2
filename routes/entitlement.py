"""
routes/entitlement.py - Endpoints públicos: estado de suscripción y enlace de dispositivo
"""

import logging
from flask import Blueprint, request, jsonify

from messages import message
from models import db
from services.errors import ValidationError
from services.identity import resolve_identity
from services.linking import link_device
from services.reconciliation import check_admin, get_entitlement
from utils import (
    bearer_token, get_client_ip, get_device_info, isoformat, json_body,
    normalize_device_id, normalize_email, request_language,
)

bp = Blueprint('entitlement', __name__)
logger = logging.getLogger("maoun.routes.entitlement")


def _identity_or_anonymous():
    """El token es opcional aquí; si no se puede resolver se sigue como anónimo"""
    token = bearer_token(request)
    if not token:
        return None
    try:
        return resolve_identity(token)
    except Exception:
        db.session.rollback()
        logger.exception("No se pudo resolver la identidad, se continúa como anónimo")
        return None


@bp.route("/api/check-subscription", methods=["POST"])
def check_subscription():
    """Estado de suscripción del dispositivo (y del usuario si hay token)"""
    data      = json_body(request)
    device_id = normalize_device_id(data.get("deviceId"))
    identity  = _identity_or_anonymous()

    if not device_id and identity is None:
        raise ValidationError("device_id_required")

    user_id = identity.user_id if identity else None
    email = identity.email if identity else None

    status = get_entitlement(device_id, email=email, user_id=user_id)

    body = status.to_dict()
    display_email = email or normalize_email(data.get("email"))
    if display_email:
        body["email"] = display_email
    if data.get("checkAdmin"):
        body["is_admin"] = check_admin(device_id, user_id)

    return jsonify(body), 200


@bp.route("/api/link-device-subscription", methods=["POST"])
def link_device_subscription():
    """Vincula este dispositivo a una suscripción existente buscada por email"""
    data = json_body(request)
    lang = request_language()
    logger.info("Solicitud de enlace - %s", {"ip": get_client_ip(request)})

    result = link_device(
        data.get("deviceId"),
        data.get("email"),
        device_info=get_device_info(request.headers.get('User-Agent', '')),
    )

    if not result.success:
        status_code = 400 if result.message_key == "already_linked" else 404
        return jsonify({
            "success": False,
            "message": message(result.message_key, lang),
        }), status_code

    return jsonify({
        "success": True,
        "message": message(result.message_key, lang),
        "subscription": {
            "id":         result.grant.id,
            "expires_at": isoformat(result.grant.expires_at),
        },
    }), 200

"""
routes/analytics.py - Listado y resumen de suscripciones para el panel de admin
"""

from datetime import datetime
from flask import Blueprint, request, jsonify

from routes.admin_api import require_admin
from services import admin_grants

bp = Blueprint('analytics', __name__)


@bp.route("/api/admin/users")
def list_users():
    """Suscripciones manuales (incluidas las pendientes) y de dispositivo"""
    require_admin({})
    users = admin_grants.list_entitlements()
    return jsonify({"users": users, "total": len(users)})


@bp.route("/api/admin/summary")
def summary():
    """Resumen de actividad general"""
    require_admin({})
    return jsonify({
        "summary":   admin_grants.summary(),
        "timestamp": datetime.utcnow().isoformat(),
    })

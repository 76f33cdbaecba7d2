"""
utils.py - Funciones de utilidad
"""

import calendar
import re
from datetime import datetime
from dateutil.relativedelta import relativedelta
from flask import request
from user_agents import parse

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9\-_]{8,64}$")

SUPPORTED_LANGUAGES = ("ar", "en")


def normalize_email(email) -> str:
    """Email canónico: sin espacios y en minúsculas"""
    return (email or "").strip().lower()


def is_valid_email(email) -> bool:
    return bool(email) and len(email) <= 254 and bool(EMAIL_RE.match(email))


def normalize_device_id(device_id) -> str:
    return (device_id or "").strip() if isinstance(device_id, str) else ""


def is_valid_device_id(device_id) -> bool:
    return bool(device_id) and bool(DEVICE_ID_RE.match(device_id))


def add_months(base: datetime, months: int) -> datetime:
    """Suma meses de calendario (31 ene + 1 mes = 28/29 feb)"""
    return base + relativedelta(months=int(months))


def from_epoch(value):
    """
    Convierte segundos desde epoch (Stripe) a datetime UTC naive.

    Devuelve None si el valor falta o es inválido, nunca lanza.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def to_epoch(value: datetime) -> int:
    """Datetime UTC naive a segundos desde epoch (formato de Stripe)"""
    return calendar.timegm(value.utctimetuple())


def isoformat(value):
    return value.isoformat() if value else None


def get_device_info(user_agent_string: str) -> str:
    """Extrae información legible del user agent"""
    if not user_agent_string:
        return "Desconocido"
    try:
        ua = parse(user_agent_string)
        return f"{ua.os.family} {ua.os.version_string} - {ua.browser.family}"[:200]
    except Exception:
        return user_agent_string[:100]


def get_client_ip(req) -> str:
    """
    Extrae la IP real del cliente, manejando proxies y CDNs.

    Orden de prioridad:
    1. CF-Connecting-IP (Cloudflare)
    2. X-Real-IP (Nginx)
    3. X-Forwarded-For (primer IP en la cadena)
    4. request.remote_addr (fallback)
    """
    if req.headers.get('CF-Connecting-IP'):
        return req.headers.get('CF-Connecting-IP')

    if req.headers.get('X-Real-IP'):
        return req.headers.get('X-Real-IP')

    if req.headers.get('X-Forwarded-For'):
        ips = req.headers.get('X-Forwarded-For').split(',')
        return ips[0].strip()

    return req.remote_addr or "Unknown"


def request_language() -> str:
    """Idioma de la respuesta según Accept-Language (árabe por defecto)"""
    return request.accept_languages.best_match(SUPPORTED_LANGUAGES, default="ar")


def bearer_token(req):
    header = req.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    token = header[7:].strip()
    return token or None


def json_body(req) -> dict:
    data = req.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def serialize_manual_grant(grant) -> dict:
    return {
        "id":           grant.id,
        "user_id":      grant.user_id,
        "user_email":   grant.user_email,
        "activated_by": grant.activated_by,
        "expires_at":   isoformat(grant.expires_at),
        "status":       grant.status.value,
        "notes":        grant.notes,
        "created_at":   isoformat(grant.created_at),
        "updated_at":   isoformat(grant.updated_at),
    }


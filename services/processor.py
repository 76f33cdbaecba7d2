"""
services/processor.py - Acceso de solo lectura (y checkout) al procesador de pagos Stripe

Todo error de Stripe se convierte aquí en UpstreamError o SignatureError;
el resto del código nunca ve excepciones de la librería.
"""

import logging
import stripe
from flask import current_app

from services.errors import SignatureError, UpstreamError
from utils import from_epoch, normalize_email

logger = logging.getLogger("maoun.processor")


def _first(items):
    data = (items or {}).get("data") or []
    return data[0] if data else None


def subscription_period_end(subscription):
    """
    Fin del periodo de facturación de una suscripción de Stripe.

    Las versiones nuevas de la API lo mueven a los items; se miran ambos.
    Un valor ausente o mal formado devuelve None en vez de lanzar.
    """
    if not subscription:
        return None
    try:
        end = from_epoch(subscription.get("current_period_end"))
        if end is not None:
            return end
        item = _first(subscription.get("items"))
        return from_epoch(item.get("current_period_end")) if item else None
    except (AttributeError, TypeError):
        logger.warning("Fin de periodo ilegible - %s", {"subscription": subscription.get("id")})
        return None


def subscription_product(subscription):
    try:
        item = _first(subscription.get("items"))
        price = (item or {}).get("price") or {}
        product = price.get("product")
        if isinstance(product, dict):
            return product.get("id")
        return product
    except (AttributeError, TypeError):
        return None


class StripeProcessor:
    """Envoltorio fino sobre la API de Stripe con la clave del servicio"""

    def __init__(self, api_key, scan_limit=100):
        self.api_key = api_key
        self.scan_limit = scan_limit

    def _call(self, step, fn, *args, **kwargs):
        if not self.api_key:
            raise UpstreamError(detail="STRIPE_SECRET_KEY no configurada")
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.warning("Error de Stripe en %s - %s", step, {"error": str(e)})
            raise UpstreamError(detail=f"{step}: {e}") from e

    def find_customer(self, email):
        """
        Primer cliente con ese email (orden de la lista de Stripe).

        Si la búsqueda exacta no devuelve nada se recorre una página acotada
        de clientes filtrando a mano, por si el índice de Stripe va atrasado.
        """
        email = normalize_email(email)
        customers = self._call("customers.list", stripe.Customer.list, email=email, limit=1)
        customer = _first(customers)
        if customer:
            return customer

        page = self._call("customers.scan", stripe.Customer.list, limit=self.scan_limit)
        for candidate in (page or {}).get("data") or []:
            if normalize_email(candidate.get("email")) == email:
                logger.info("Cliente encontrado por recorrido manual - %s", {"customerId": candidate.get("id")})
                return candidate
        return None

    def active_subscription(self, customer_id):
        subs = self._call("subscriptions.list", stripe.Subscription.list,
                          customer=customer_id, status="active", limit=1)
        return _first(subs)

    def retrieve_subscription(self, subscription_id):
        return self._call("subscriptions.retrieve", stripe.Subscription.retrieve, subscription_id)

    def customer_email(self, customer_id):
        customer = self._call("customers.retrieve", stripe.Customer.retrieve, customer_id)
        if not customer or customer.get("deleted"):
            return None
        return normalize_email(customer.get("email")) or None

    def create_checkout_session(self, **params):
        return self._call("checkout.sessions.create", stripe.checkout.Session.create, **params)

    def cancel_subscription(self, subscription_id, immediately=False):
        if immediately:
            return self._call("subscriptions.cancel", stripe.Subscription.cancel, subscription_id)
        return self._call("subscriptions.modify", stripe.Subscription.modify,
                          subscription_id, cancel_at_period_end=True)

    def extend_subscription(self, subscription_id, trial_end):
        """Aplaza el siguiente cobro moviendo trial_end, sin prorrateo"""
        return self._call("subscriptions.modify", stripe.Subscription.modify,
                          subscription_id, trial_end=trial_end, proration_behavior="none")

    def construct_event(self, payload, signature, secret):
        """Verifica la firma del webhook antes de leer cualquier campo"""
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(detail=str(e)) from e
        except ValueError as e:
            raise SignatureError(detail=f"Payload inválido: {e}") from e


def get_processor():
    """Procesador de la app actual (los tests inyectan uno falso)"""
    processor = current_app.extensions.get("processor")
    if processor is None:
        processor = StripeProcessor(
            current_app.config["STRIPE_SECRET_KEY"],
            current_app.config["LINK_CUSTOMER_SCAN_LIMIT"],
        )
        current_app.extensions["processor"] = processor
    return processor

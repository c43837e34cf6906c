"""
This module provides communication clients for the external systems used by the sync service:
- CRM (SendPulse CRM REST API, OAuth client credentials)
- Bot platform variable API (same SendPulse account, shares the CRM token)
- Ecommerce shop API (catalog + orders, internal API token)
- Order status queue of the shop (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
All HTTP and transport errors leave this module as ``UpstreamError``.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
import pika
from pydantic import ValidationError

from .config import (
    BOT_API_URL,
    CATALOG_LANGUAGE,
    CRM_API_URL,
    CRM_CLIENT_ID,
    CRM_CLIENT_SECRET,
    CRM_TOKEN_EXPIRY_BUFFER,
    ECOMMERCE_API_TOKEN,
    ECOMMERCE_API_URL,
    HTTP_CONNECT_TIMEOUT,
    HTTP_READ_TIMEOUT,
    RABBITMQ_HOST,
    RABBITMQ_PASSWORD,
    RABBITMQ_USER,
    STATUS_QUEUE,
)
from .errors import UpstreamError
from .models import CatalogProduct, EcommerceOrder, OrderStatusUpdate

log = logging.getLogger(__name__)


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(HTTP_CONNECT_TIMEOUT, read=HTTP_READ_TIMEOUT)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _send(client: httpx.Client, service: str, method: str, path: str, **kwargs) -> httpx.Response:
    """
    Sends one request and converts every failure into an UpstreamError.

    A timed-out call is treated exactly like a hard failure of the call.
    """
    try:
        response = client.request(method, path, **kwargs)
        response.raise_for_status()
        return response
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        body = _response_body(e.response)
        if status != 404:
            log.error(f"{service} HTTP-Fehler {status} bei {method} {path}: {body}")
        raise UpstreamError(service, f"HTTP {status} on {method} {path}", status_code=status,
                            details={"path": path, "body": body}) from e
    except httpx.TimeoutException as e:
        log.error(f"{service} Timeout bei {method} {path}.")
        raise UpstreamError(service, f"timeout on {method} {path}", details={"path": path}) from e
    except httpx.TransportError as e:
        log.error(f"{service} nicht erreichbar ({method} {path}): {e}")
        raise UpstreamError(service, f"transport error on {method} {path}: {e}", details={"path": path}) from e


# --- CRM Client (REST) ---
@dataclass
class TokenCache:
    """Access token of the CRM plus its (buffered) expiry on the monotonic clock."""
    token: Optional[str] = None
    expires_at: float = 0.0

    def is_valid(self, now: float) -> bool:
        return self.token is not None and now < self.expires_at


class CrmClient:
    """
    Client for the SendPulse CRM REST API.

    Owns its token cache. ``access_token()`` is the single guarded accessor:
    concurrent callers wait on one lock, so an expired token is refreshed by
    exactly one auth call. A 401 response invalidates the token and the request
    is retried once with a fresh token.
    """

    service = "crm"

    def __init__(
        self,
        base_url: str = CRM_API_URL,
        client_id: str = CRM_CLIENT_ID,
        client_secret: str = CRM_CLIENT_SECRET,
        http_client: Optional[httpx.Client] = None,
        expiry_buffer: int = CRM_TOKEN_EXPIRY_BUFFER,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = http_client or httpx.Client(base_url=base_url, timeout=default_timeout())
        self.client_id = client_id
        self.client_secret = client_secret
        self.expiry_buffer = expiry_buffer
        self._clock = clock
        self._token = TokenCache()
        self._token_lock = threading.Lock()

    def close(self):
        self.client.close()

    # Authentication
    def access_token(self) -> str:
        """
        Returns a valid access token, fetching a new one if the cached one expired.

        Raises:
            UpstreamError: If credentials are missing or the auth call fails.
        """
        with self._token_lock:
            if self._token.is_valid(self._clock()):
                return self._token.token
            return self._refresh_token()

    def invalidate_token(self, stale_token: Optional[str] = None):
        """Drops the cached token (only if it is still ``stale_token``, when given)."""
        with self._token_lock:
            if stale_token is None or self._token.token == stale_token:
                self._token = TokenCache()

    def _refresh_token(self) -> str:
        if not self.client_id or not self.client_secret:
            log.error("CRM-Zugangsdaten nicht konfiguriert (SENDPULSE_CLIENT_ID / SENDPULSE_CLIENT_SECRET).")
            raise UpstreamError("crm-auth", "client credentials are not configured")

        log.info("Hole neues CRM Access Token...")
        response = _send(self.client, "crm-auth", "POST", "/oauth/access_token", json={
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })
        data = _response_body(response)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise UpstreamError("crm-auth", "no access token in auth response")

        try:
            expires_in = int(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600
        self._token = TokenCache(token=token, expires_at=self._clock() + max(expires_in - self.expiry_buffer, 0))
        log.info(f"CRM Access Token erhalten (gültig {expires_in}s).")
        return token

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = self.access_token()
        try:
            return _send(self.client, self.service, method, path,
                         headers={"Authorization": f"Bearer {token}"}, **kwargs)
        except UpstreamError as e:
            if e.status_code != 401:
                raise
            log.warning(f"CRM antwortet 401 auf {method} {path}, erneuere Token und wiederhole einmal.")
            self.invalidate_token(token)
            token = self.access_token()
            return _send(self.client, self.service, method, path,
                         headers={"Authorization": f"Bearer {token}"}, **kwargs)

    # Contacts
    def find_contact_by_messenger_id(self, external_id: str) -> Optional[dict]:
        """
        Looks up a contact by its bot-platform (messenger) external id.

        Returns:
            dict | None: The SendPulse contact object, or None on 404.

        Raises:
            UpstreamError: For any other HTTP or transport failure.
        """
        try:
            response = self._request("GET", f"/crm/v1/contacts/messenger-external/{external_id}")
        except UpstreamError as e:
            if e.is_not_found:
                return None
            raise
        data = _response_body(response)
        data = data.get("data", data) if isinstance(data, dict) else None
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return data if isinstance(data, dict) and data.get("id") is not None else None

    def find_contacts_by_phone(self, phone: str) -> list:
        response = self._request("POST", "/crm/v1/contacts/get-list", json={"phone": phone, "limit": 1})
        data = _response_body(response)
        if isinstance(data, dict):
            data = data.get("data", data)
        if isinstance(data, dict):
            data = data.get("list", [])
        return data if isinstance(data, list) else []

    def create_contact(self, first_name: str, last_name: str, phone: Optional[str] = None,
                       email: Optional[str] = None, source: str = "bot-integration",
                       messenger_external_id: Optional[str] = None) -> dict:
        """
        Creates a contact. The messenger external id links it to the bot chat, so
        later lookups by that id find it again.
        """
        attributes = [{"name": "source", "value": source}]
        if messenger_external_id:
            attributes.append({"name": "external_id", "value": messenger_external_id})
        request_body = {
            "firstName": first_name,
            "lastName": last_name,
            "phones": [{"phone": phone, "type": "main"}] if phone else [],
            "emails": [{"email": email, "type": "main"}] if email else [],
            "sourceType": 7,
            "attributes": attributes,
        }
        if messenger_external_id:
            request_body["messengerExternalId"] = messenger_external_id
        response = self._request("POST", "/crm/v1/contacts/create", json=request_body)
        data = _response_body(response)
        return data.get("data", data) if isinstance(data, dict) else {}

    # Deals
    def create_deal(self, payload: dict) -> dict:
        response = self._request("POST", "/crm/v1/deals", json=payload)
        data = _response_body(response)
        return data.get("data", data) if isinstance(data, dict) else {}

    def attach_product_to_deal(self, deal_id, crm_product_id: int, quantity: int,
                               unit_price: float, currency: str) -> None:
        # SendPulse accepts one product per call
        self._request("POST", "/crm/v1/products/deals", json={
            "productId": crm_product_id,
            "dealId": deal_id,
            "productPriceISO": currency,
            "productPriceValue": unit_price,
            "quantity": quantity,
        })

    def get_deal(self, deal_id) -> dict:
        data = _response_body(self._request("GET", f"/crm/v1/deals/{deal_id}"))
        return data.get("data", data) if isinstance(data, dict) else {}

    def update_deal(self, deal_id, payload: dict) -> dict:
        # SendPulse requires PUT with the full deal, not PATCH
        data = _response_body(self._request("PUT", f"/crm/v1/deals/{deal_id}", json=payload))
        return data.get("data", data) if isinstance(data, dict) else {}

    def add_deal_comment(self, deal_id, text: str) -> None:
        self._request("POST", f"/crm/v1/deals/{deal_id}/comments", json={"text": text})


# --- Bot Platform Client (REST) ---
class BotPlatformClient:
    """
    Client for the bot platform's contact variable API.

    Uses the CRM client's token (same SendPulse account).
    """

    BOT_PATHS = {
        "telegram": "/telegram",
        "whatsapp": "/whatsapp",
        "messenger": "/fb",
    }

    def __init__(self, crm: CrmClient, base_url: str = BOT_API_URL, http_client: Optional[httpx.Client] = None):
        self.crm = crm
        self.client = http_client or httpx.Client(base_url=base_url, timeout=default_timeout())

    def close(self):
        self.client.close()

    def _post(self, path: str, body: dict) -> httpx.Response:
        # same account as the CRM: one token refresh and retry on 401
        token = self.crm.access_token()
        try:
            return _send(self.client, "bot", "POST", path, headers={"Authorization": f"Bearer {token}"}, json=body)
        except UpstreamError as e:
            if e.status_code != 401:
                raise
            log.warning(f"Bot-API antwortet 401 auf POST {path}, erneuere Token und wiederhole einmal.")
            self.crm.invalidate_token(token)
            token = self.crm.access_token()
            return _send(self.client, "bot", "POST", path, headers={"Authorization": f"Bearer {token}"}, json=body)

    def set_contact_variable(self, source: str, contact_id: str, name: str, value: str) -> None:
        """
        Sets one variable on a bot contact.

        Raises:
            UpstreamError: If the source has no variable API or the call fails.
        """
        prefix = self.BOT_PATHS.get(source)
        if prefix is None:
            raise UpstreamError("bot", f"no variable API for bot source '{source}'")
        self._post(f"{prefix}/contacts/setVariable", {
            "contact_id": contact_id,
            "variables": [{"variable_name": name, "variable_value": str(value)}],
        })
        log.info(f"Bot-Variable gesetzt: {name}={value} (Kontakt {contact_id}, {source}).")


# --- Ecommerce Client (REST) ---
class EcommerceClient:
    """
    Client for the internal shop API: product catalog and orders.
    """

    service = "ecommerce"

    def __init__(self, base_url: str = ECOMMERCE_API_URL, api_token: str = ECOMMERCE_API_TOKEN,
                 language: str = CATALOG_LANGUAGE, http_client: Optional[httpx.Client] = None):
        self.client = http_client or httpx.Client(base_url=base_url, timeout=default_timeout())
        self.headers = {"X-Internal-API-Token": api_token}
        self.language = language

    def close(self):
        self.client.close()

    def get_product(self, product_id: int) -> CatalogProduct:
        """
        Fetches one catalog product.

        Raises:
            UpstreamError: status_code 404 if the product does not exist.
        """
        response = _send(self.client, self.service, "GET", f"/api/products/{int(product_id)}",
                         headers=self.headers, params={"lang": self.language})
        data = _response_body(response)
        if isinstance(data, dict) and isinstance(data.get("product"), dict):
            data = data["product"]
        try:
            return CatalogProduct.model_validate(data)
        except ValidationError as e:
            raise UpstreamError(self.service, f"malformed product {product_id}: {e}") from e

    def create_order(self, payload: dict) -> EcommerceOrder:
        response = _send(self.client, self.service, "POST", "/api/orders/enhanced",
                         headers=self.headers, json=payload)
        data = _response_body(response)
        order = data.get("order", data) if isinstance(data, dict) else None
        try:
            return EcommerceOrder.model_validate(order)
        except ValidationError as e:
            raise UpstreamError(self.service, f"order response without id: {e}") from e

    def update_order_sync_data(self, order_id, sync_data: dict) -> None:
        _send(self.client, self.service, "PATCH", f"/api/orders/{order_id}/sync-data",
              headers=self.headers, json=sync_data)

    def is_healthy(self) -> bool:
        try:
            _send(self.client, self.service, "GET", "/health")
            return True
        except UpstreamError:
            return False


# --- Order Status Listener (MQ Consumer) ---
def make_status_callback(handler: Callable[[OrderStatusUpdate], Any]):
    """
    Builds the pika consumer callback for order status events.

    Valid events are passed to ``handler`` and acknowledged. Malformed messages
    and events whose handling failed are rejected without requeue (-> DLQ), the
    failure itself is already in the sync ledger.
    """
    def callback(ch, method, properties, body):
        try:
            update = OrderStatusUpdate.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError) as e:
            log.error(f"[ORDER-STATUS] Ungültige Nachricht erhalten: {body!r} ({e})")
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return
        try:
            handler(update)
        except Exception as e:
            log.error(f"[ORDER-STATUS][Order: {update.order_id}] Verarbeitung fehlgeschlagen: {e}")
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return
        ch.basic_ack(delivery_tag=method.delivery_tag)

    return callback


def start_order_status_listener(handler: Callable[[OrderStatusUpdate], Any], queue: str = STATUS_QUEUE,
                                stop_event: Optional[threading.Event] = None):
    """
    Listens for order status events of the shop and forwards them to ``handler``.

    Runs until ``stop_event`` is set (forever when None). On connection loss or
    errors it reconnects after 10 seconds.
    """
    log.info("Order-Status-Listener startet...")
    callback = make_status_callback(handler)
    while stop_event is None or not stop_event.is_set():
        try:
            credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
            connection = pika.BlockingConnection(
                pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials, heartbeat=60)
            )
            channel = connection.channel()
            channel.queue_declare(queue=queue, durable=True)
            channel.basic_consume(queue=queue, on_message_callback=callback)
            log.info(f"[ORDER-STATUS] Listener ist aktiv auf Queue '{queue}'.")
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError:
            log.warning("Order-Status-Listener: Verbindung zu RabbitMQ verloren. Reconnect in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"Order-Status-Listener: Kritischer Fehler. {e}. Neustart in 10s.")
            time.sleep(10)

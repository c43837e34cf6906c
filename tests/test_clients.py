"""Tests for the httpx clients and the order status queue callback."""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from mock_services import mock_crm, mock_ecommerce
from sync_service.clients import BotPlatformClient, CrmClient, EcommerceClient, make_status_callback
from sync_service.errors import UpstreamError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def scripted_crm(handler, **kwargs) -> CrmClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://crm.test")
    return CrmClient(client_id="id", client_secret="secret", http_client=http_client, **kwargs)


# ── CRM token cache ──────────────────────────────────────────────────────────


def test_token_is_fetched_once_and_reused(crm):
    crm.get_deal(crm.create_deal({"name": "A", "price": 1})["id"])
    crm.find_contacts_by_phone("+41000000000")

    assert mock_crm.CALLS["auth"] == 1


def test_concurrent_callers_share_one_token_refresh():
    auth_calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/access_token":
            auth_calls.append(1)
            time.sleep(0.05)
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        return httpx.Response(200, json={"data": {"id": 1}})

    crm = scripted_crm(handler)
    tokens = []
    threads = [threading.Thread(target=lambda: tokens.append(crm.access_token())) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tokens == ["tok"] * 10
    assert len(auth_calls) == 1


def test_token_is_refreshed_after_buffered_expiry():
    issued = []

    def handler(request: httpx.Request) -> httpx.Response:
        issued.append(f"tok-{len(issued) + 1}")
        return httpx.Response(200, json={"access_token": issued[-1], "expires_in": 120})

    clock = FakeClock()
    crm = scripted_crm(handler, clock=clock, expiry_buffer=60)

    assert crm.access_token() == "tok-1"
    clock.now += 59
    assert crm.access_token() == "tok-1"
    clock.now += 2
    assert crm.access_token() == "tok-2"


def test_401_triggers_one_refresh_and_retry(crm):
    deal_id = crm.create_deal({"name": "A", "price": 1})["id"]
    mock_crm.expire_tokens()

    deal = crm.get_deal(deal_id)

    assert deal["id"] == deal_id
    assert mock_crm.CALLS["auth"] == 2


def test_persistent_401_is_retried_only_once():
    calls = {"auth": 0, "api": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/access_token":
            calls["auth"] += 1
            return httpx.Response(200, json={"access_token": f"tok-{calls['auth']}", "expires_in": 3600})
        calls["api"] += 1
        return httpx.Response(401, json={"message": "Unauthorized"})

    crm = scripted_crm(handler)

    with pytest.raises(UpstreamError) as exc_info:
        crm.get_deal(1)

    assert exc_info.value.status_code == 401
    assert calls == {"auth": 2, "api": 2}


def test_missing_credentials_fail_fast():
    crm = CrmClient(client_id="", client_secret="", http_client=TestClient(mock_crm.app))

    with pytest.raises(UpstreamError) as exc_info:
        crm.access_token()

    assert exc_info.value.service == "crm-auth"
    assert mock_crm.CALLS["auth"] == 0


def test_timeout_is_an_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/access_token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(UpstreamError) as exc_info:
        scripted_crm(handler).create_deal({"name": "A"})

    assert exc_info.value.status_code is None
    assert "timeout" in exc_info.value.message


# ── CRM endpoints ────────────────────────────────────────────────────────────


def test_messenger_lookup_404_is_none(crm):
    assert crm.find_contact_by_messenger_id("tg-nobody") is None


def test_messenger_lookup_returns_contact(crm):
    seeded = mock_crm.seed_contact("Olena", messenger_external_id="tg-1")

    assert crm.find_contact_by_messenger_id("tg-1")["id"] == seeded["id"]


def test_attach_and_comment_reach_the_deal(crm):
    deal_id = crm.create_deal({"name": "A", "price": 25.0})["id"]

    crm.attach_product_to_deal(deal_id, 501, 2, 12.5, "CHF")
    crm.add_deal_comment(deal_id, "hello")

    assert mock_crm.DEAL_PRODUCTS[deal_id] == [
        {"productId": 501, "dealId": deal_id, "productPriceISO": "CHF", "productPriceValue": 12.5, "quantity": 2}
    ]
    assert mock_crm.DEAL_COMMENTS[deal_id] == ["hello"]


def test_http_errors_carry_status_code(crm):
    mock_crm.FAILURES.add("deal_create")

    with pytest.raises(UpstreamError) as exc_info:
        crm.create_deal({"name": "A"})

    assert exc_info.value.status_code == 500
    assert exc_info.value.service == "crm"


# ── Bot platform ─────────────────────────────────────────────────────────────


def test_set_contact_variable(bot):
    bot.set_contact_variable("telegram", "tg-1", "has_active_order", "1")

    assert mock_crm.VARIABLES[("telegram", "tg-1")] == {"has_active_order": "1"}


def test_messenger_variables_use_fb_path(bot):
    bot.set_contact_variable("messenger", "fb-1", "has_active_order", 0)

    assert mock_crm.VARIABLES[("fb", "fb-1")] == {"has_active_order": "0"}


def test_expired_token_on_bot_api_is_refreshed_once(bot):
    bot.set_contact_variable("telegram", "tg-1", "has_active_order", "1")
    mock_crm.expire_tokens()

    bot.set_contact_variable("telegram", "tg-1", "has_active_order", "0")

    assert mock_crm.VARIABLES[("telegram", "tg-1")] == {"has_active_order": "0"}
    assert mock_crm.CALLS["auth"] == 2


def test_persistent_401_on_bot_api_is_raised():
    calls = {"auth": 0, "bot": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/access_token":
            calls["auth"] += 1
            return httpx.Response(200, json={"access_token": f"tok-{calls['auth']}", "expires_in": 3600})
        calls["bot"] += 1
        return httpx.Response(401, json={"message": "Unauthorized"})

    transport = httpx.MockTransport(handler)
    crm = scripted_crm(handler)
    bot = BotPlatformClient(crm, http_client=httpx.Client(transport=transport, base_url="https://bot.test"))

    with pytest.raises(UpstreamError) as exc_info:
        bot.set_contact_variable("whatsapp", "wa-1", "has_active_order", "1")

    assert exc_info.value.status_code == 401
    assert calls == {"auth": 2, "bot": 2}


def test_unsupported_bot_source_is_rejected(crm):
    bot = BotPlatformClient(crm, http_client=TestClient(mock_crm.app))

    with pytest.raises(UpstreamError):
        bot.set_contact_variable("viber", "v-1", "has_active_order", "1")


# ── Ecommerce ────────────────────────────────────────────────────────────────


def test_get_product(ecommerce):
    product = ecommerce.get_product(1)

    assert (product.id, product.name, str(product.price)) == (1, "Syrniki", "12.50")


def test_missing_product_is_not_found(ecommerce):
    with pytest.raises(UpstreamError) as exc_info:
        ecommerce.get_product(99)

    assert exc_info.value.is_not_found


def test_wrong_internal_token_is_rejected():
    client = EcommerceClient(api_token="wrong", http_client=TestClient(mock_ecommerce.app))

    with pytest.raises(UpstreamError) as exc_info:
        client.get_product(1)

    assert exc_info.value.status_code == 401


def test_create_order_and_sync_data(ecommerce):
    order = ecommerce.create_order({"externalOrderId": "TG_1", "totalAmount": 34.9, "status": "PENDING"})
    ecommerce.update_order_sync_data(order.id, {"sendpulseDealId": 1001, "syncStatus": "SYNCED"})

    assert order.external_order_id == "TG_1"
    assert order.total_amount == 34.9
    assert mock_ecommerce.ORDERS[order.id]["syncStatus"] == "SYNCED"
    assert ecommerce.is_healthy() is True


# ── Order status queue ───────────────────────────────────────────────────────


def delivery(tag: int = 7):
    return MagicMock(delivery_tag=tag)


def test_status_callback_acks_handled_events():
    handler = MagicMock()
    channel = MagicMock()
    body = json.dumps({"orderId": 12, "dealId": 1001, "newStatus": "shipped"}).encode()

    make_status_callback(handler)(channel, delivery(), None, body)

    update = handler.call_args.args[0]
    assert (update.order_id, update.deal_id, update.new_status) == (12, 1001, "SHIPPED")
    channel.basic_ack.assert_called_once_with(delivery_tag=7)
    channel.basic_nack.assert_not_called()


@pytest.mark.parametrize("body", [b"not json", json.dumps({"orderId": 12}).encode()])
def test_status_callback_rejects_malformed_messages(body):
    handler = MagicMock()
    channel = MagicMock()

    make_status_callback(handler)(channel, delivery(), None, body)

    handler.assert_not_called()
    channel.basic_nack.assert_called_once_with(delivery_tag=7, requeue=False)


def test_status_callback_rejects_failed_events():
    handler = MagicMock(side_effect=UpstreamError("crm", "HTTP 500"))
    channel = MagicMock()
    body = json.dumps({"orderId": 12, "dealId": 1001, "newStatus": "DELIVERED"}).encode()

    make_status_callback(handler)(channel, delivery(), None, body)

    channel.basic_nack.assert_called_once_with(delivery_tag=7, requeue=False)
    channel.basic_ack.assert_not_called()

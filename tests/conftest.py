"""Shared fixtures for the sync service tests.

Provides:
- Fresh file-backed SQLite database per test under tmp_path
- Real CRM / shop / bot clients talking to the in-process mock services
  (FastAPI TestClient injected as the httpx client)
- Product mappings for the mock catalog (products 1-3 mapped, 4 unmapped)
- A fully wired OrderSaga and an order payload factory
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mock_services import mock_crm, mock_ecommerce
from sync_service.catalog import CatalogResolver
from sync_service.clients import BotPlatformClient, CrmClient, EcommerceClient
from sync_service.contacts import ContactResolver
from sync_service.deal_builder import DealBuilder
from sync_service.models import OrderRequest
from sync_service.storage import BotOrderStore, ProductMappingStore, SyncLedger, create_session_factory, init_db
from sync_service.workflow import OrderSaga, OrderStatusSync, SideEffectDispatcher

MAPPED = {1: 501, 2: 502, 3: 503}


@pytest.fixture(autouse=True)
def reset_mock_services():
    mock_crm.reset()
    mock_ecommerce.reset()
    yield
    mock_crm.reset()
    mock_ecommerce.reset()


@pytest.fixture
def session_factory(tmp_path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'sync.db'}")
    init_db(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def crm():
    client = CrmClient(client_id="test-client", client_secret="test-secret", http_client=TestClient(mock_crm.app))
    yield client
    client.close()


@pytest.fixture
def ecommerce():
    client = EcommerceClient(api_token=mock_ecommerce.INTERNAL_API_TOKEN, http_client=TestClient(mock_ecommerce.app))
    yield client
    client.close()


@pytest.fixture
def bot(crm):
    client = BotPlatformClient(crm, http_client=TestClient(mock_crm.app))
    yield client
    client.close()


@pytest.fixture
def mappings(session_factory):
    store = ProductMappingStore(session_factory)
    for catalog_id, crm_id in MAPPED.items():
        store.upsert(catalog_id, crm_id, mock_ecommerce.DEFAULT_PRODUCTS[catalog_id]["name"])
    return store


@pytest.fixture
def ledger(session_factory):
    return SyncLedger(session_factory)


@pytest.fixture
def bot_orders(session_factory):
    return BotOrderStore(session_factory)


@pytest.fixture
def side_effects():
    dispatcher = SideEffectDispatcher(max_workers=2)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def saga(crm, ecommerce, bot, mappings, ledger, bot_orders, side_effects):
    return OrderSaga(
        catalog_resolver=CatalogResolver(ecommerce, mappings),
        contact_resolver=ContactResolver(crm),
        deal_builder=DealBuilder(pipeline_id=153270, step_id=529997, currency="CHF"),
        crm=crm,
        ecommerce=ecommerce,
        ledger=ledger,
        side_effects=side_effects,
        bot_orders=bot_orders,
        bot=bot,
    )


@pytest.fixture
def status_sync(crm, ledger, bot_orders, side_effects, bot):
    return OrderStatusSync(crm, ledger, bot_orders=bot_orders, side_effects=side_effects, bot=bot)


@pytest.fixture
def order_payload():
    """Factory for bot order payloads in the structured format."""

    def make(**overrides) -> dict:
        payload = {
            "source": "telegram",
            "contactId": "tg-100",
            "chatId": "555001",
            "botOrderId": "TG_1700000000000_555001",
            "customerInfo": {"firstName": "Olena", "lastName": "Koval", "phone": "+41791234567"},
            "products": [{"id": 1, "quantity": 2}, {"id": 3, "quantity": 1}],
            "deliveryInfo": {"city": "Zürich", "station": "Zürich HB", "canton": "ZH"},
            "paymentMethod": "CASH",
            "notes": "Bitte anrufen",
        }
        payload.update(overrides)
        return payload

    return make


@pytest.fixture
def make_request(order_payload):
    def make(**overrides) -> OrderRequest:
        return OrderRequest.model_validate(order_payload(**overrides))

    return make

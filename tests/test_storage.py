"""Tests for the SQLAlchemy stores: product mappings, sync ledger, bot order tracking."""

from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import OperationalError

from sync_service.errors import UpstreamError
from sync_service.storage import BotOrderStore, ProductMappingStore, SyncLedger


# ── Product mappings ─────────────────────────────────────────────────────────


def test_upsert_creates_and_updates_mapping(session_factory):
    store = ProductMappingStore(session_factory)

    created = store.upsert(7, 700, "Kefir")
    updated = store.upsert(7, 701, "Kefir 1l")

    assert created.crm_product_id == 700
    assert updated.crm_product_id == 701
    mapping = store.get(7)
    assert (mapping.crm_product_id, mapping.name, mapping.sync_status) == (701, "Kefir 1l", "ACTIVE")
    assert mapping.last_synced_at is not None
    assert [m.catalog_product_id for m in store.list_all()] == [7]


def test_missing_mapping_is_none(session_factory):
    assert ProductMappingStore(session_factory).get(404) is None


def test_find_by_name_prefers_longest_match(mappings):
    mappings.upsert(8, 800, "Vareniki")

    assert mappings.find_by_name("Vareniki with cherries").catalog_product_id == 2
    assert mappings.find_by_name("vareniki").catalog_product_id == 2
    assert mappings.find_by_name("Big box of Vareniki").catalog_product_id == 8
    assert mappings.find_by_name("Borscht") is None
    assert mappings.find_by_name("  ") is None


# ── Sync ledger ──────────────────────────────────────────────────────────────


def test_ledger_appends_entries(ledger):
    ledger.record("CREATE_DEAL", 1001, "SUCCESS", "Deal for TG_1", entity_type="deal", details={"price": 34.9})
    ledger.record("CREATE_ECOMMERCE_ORDER", "TG_1", "FAILED", "boom")

    entries = ledger.entries()
    assert [(e.operation, e.entity_id, e.status) for e in entries] == [
        ("CREATE_DEAL", "1001", "SUCCESS"),
        ("CREATE_ECOMMERCE_ORDER", "TG_1", "FAILED"),
    ]
    assert entries[0].details == {"price": 34.9}
    assert entries[0].entity_type == "deal"
    assert [e.operation for e in ledger.entries(entity_id="TG_1")] == ["CREATE_ECOMMERCE_ORDER"]
    assert [e.entity_id for e in ledger.entries(operation="CREATE_DEAL")] == ["1001"]


def test_ledger_serializes_non_json_details(ledger):
    from decimal import Decimal

    ledger.record("CREATE_ORDER", None, "SUCCESS", details={"total": Decimal("34.90")})

    assert ledger.entries()[0].details == {"total": "34.90"}
    assert ledger.entries()[0].entity_id is None


def test_ledger_never_raises(caplog):
    def broken_session():
        raise OperationalError("INSERT INTO sync_logs", {}, Exception("database is locked"))

    with caplog.at_level(logging.WARNING, logger="sync_service.storage"):
        SyncLedger(broken_session).record("CREATE_DEAL", 1, "SUCCESS", "ok")

    assert any("Sync-Ledger-Eintrag verloren" in r.message for r in caplog.records)


# ── Bot order tracking ───────────────────────────────────────────────────────


def test_bot_order_round_trip(bot_orders):
    bot_orders.save(
        bot_order_id="TG_1_555",
        source="telegram",
        chat_id="555",
        total_amount=34.9,
        ecommerce_order_id=12,
        crm_deal_id=1001,
        crm_contact_id=1000,
        products=[{"catalog_product_id": 1, "quantity": 2}],
    )

    record = bot_orders.get("TG_1_555")
    assert record.ecommerce_order_id == "12"
    assert record.crm_deal_id == "1001"
    assert record.status == "PENDING"
    assert bot_orders.find_by_ecommerce_order(12).bot_order_id == "TG_1_555"
    assert bot_orders.get("unknown") is None


def test_bot_order_status_update(bot_orders):
    bot_orders.save(bot_order_id="TG_2", source="telegram", total_amount=10.0)

    bot_orders.update_status("TG_2", "DELIVERED")

    assert bot_orders.get("TG_2").status == "DELIVERED"
    with pytest.raises(UpstreamError) as exc_info:
        bot_orders.update_status("missing", "DELIVERED")
    assert exc_info.value.is_not_found


def test_duplicate_bot_order_id_is_rejected(bot_orders):
    bot_orders.save(bot_order_id="TG_3", source="telegram", total_amount=10.0)

    with pytest.raises(UpstreamError):
        bot_orders.save(bot_order_id="TG_3", source="telegram", total_amount=10.0)


def test_status_update_keeps_notes(bot_orders):
    bot_orders.save(bot_order_id="TG_4", source="telegram", total_amount=10.0)

    bot_orders.update_status("TG_4", "CANCELLED", notes="Cancelled: changed mind")
    bot_orders.update_status("TG_4", "CANCELLED")

    assert bot_orders.get("TG_4").notes == "Cancelled: changed mind"


def test_chat_history_is_newest_first_and_limited(bot_orders):
    for n in range(1, 5):
        bot_orders.save(bot_order_id=f"TG_{n}_555", source="telegram", chat_id="555", total_amount=10.0 * n)
    bot_orders.save(bot_order_id="TG_9_777", source="telegram", chat_id="777", total_amount=5.0)

    history = bot_orders.list_by_chat("555", limit=3)

    assert [r.bot_order_id for r in history] == ["TG_4_555", "TG_3_555", "TG_2_555"]
    assert bot_orders.list_by_chat("999") == []


def test_chat_history_filters_by_source(bot_orders):
    bot_orders.save(bot_order_id="TG_1_555", source="telegram", chat_id="555", total_amount=10.0)
    bot_orders.save(bot_order_id="WA_1_555", source="whatsapp", chat_id="555", total_amount=12.0,
                    products=[{"catalog_product_id": 2, "quantity": 1}])

    history = bot_orders.list_by_chat(555, source="whatsapp")

    assert [r.bot_order_id for r in history] == ["WA_1_555"]
    assert history[0].products == [{"catalog_product_id": 2, "quantity": 1}]

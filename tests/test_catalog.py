"""Tests for the catalog resolver: pricing, mapping, quantities, drift and the legacy item fallbacks."""

from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from sync_service.catalog import CatalogResolver, coerce_quantity, parse_cart_summary
from sync_service.errors import CatalogLookupFailed, InvalidQuantity, ProductNotFound, ProductNotMapped, UpstreamError
from sync_service.models import CatalogProduct, OrderRequest


class FakeCatalog:
    def __init__(self, products, error=None):
        self.products = {p.id: p for p in products}
        self.error = error
        self.calls = []

    def get_product(self, product_id):
        self.calls.append(product_id)
        if self.error is not None:
            raise self.error
        if product_id not in self.products:
            raise UpstreamError("ecommerce", f"HTTP 404 on GET /api/products/{product_id}", status_code=404)
        return self.products[product_id]


CATALOG = [
    CatalogProduct(id=1, name="Syrniki", price=Decimal("12.50")),
    CatalogProduct(id=2, name="Vareniki with cherries", price=Decimal("15.00")),
    CatalogProduct(id=3, name="Tvorog", price=Decimal("9.90"), weight=Decimal("1.0")),
    CatalogProduct(id=4, name="Pelmeni", price=Decimal("18.40")),
]


def request(**data) -> OrderRequest:
    return OrderRequest.model_validate({"contactId": "tg-1", **data})


# ── Quantities ───────────────────────────────────────────────────────────────


@pytest.mark.parametrize("raw, expected", [(2, 2), ("3", 3), (" 4 ", 4), (2.0, 2), ("5.0", 5)])
def test_coerce_quantity_accepts_positive_integers(raw, expected):
    assert coerce_quantity(1, raw) == expected


@pytest.mark.parametrize("raw", [0, -1, "0", "abc", "", None, True, 1.5, "2.5", "nan", "inf"])
def test_coerce_quantity_rejects_invalid_values(raw):
    with pytest.raises(InvalidQuantity) as exc_info:
        coerce_quantity(7, raw)
    assert exc_info.value.product_id == 7


def test_invalid_quantity_is_raised_before_any_catalog_lookup(mappings):
    catalog = FakeCatalog(CATALOG)
    resolver = CatalogResolver(catalog, mappings)

    with pytest.raises(InvalidQuantity):
        resolver.resolve(request(products=[{"id": 1, "quantity": 2}, {"id": 3, "quantity": "zwei"}]))

    assert catalog.calls == []


# ── Pricing and mapping ──────────────────────────────────────────────────────


def test_unit_price_comes_from_catalog(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    result = resolver.resolve(request(products=[{"id": 1, "quantity": 2}, {"id": 3, "quantity": 1}]))

    assert [item.unit_price for item in result.items] == [Decimal("12.50"), Decimal("9.90")]
    assert [item.crm_product_id for item in result.items] == [501, 503]
    assert result.total == Decimal("34.90")
    assert result.degraded is False
    assert result.price_drift is None


def test_unknown_product_raises_product_not_found(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    with pytest.raises(ProductNotFound) as exc_info:
        resolver.resolve(request(products=[{"id": 99, "quantity": 1}]))

    assert exc_info.value.product_id == 99


def test_unmapped_product_raises_product_not_mapped(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    with pytest.raises(ProductNotMapped) as exc_info:
        resolver.resolve(request(products=[{"id": 1, "quantity": 1}, {"id": 4, "quantity": 1}]))

    assert exc_info.value.product_id == 4
    assert "Pelmeni" in exc_info.value.message


def test_catalog_outage_raises_catalog_lookup_failed(mappings):
    outage = UpstreamError("ecommerce", "HTTP 503 on GET /api/products/1", status_code=503)
    resolver = CatalogResolver(FakeCatalog(CATALOG, error=outage), mappings)

    with pytest.raises(CatalogLookupFailed):
        resolver.resolve(request(products=[{"id": 1, "quantity": 1}]))


def test_price_drift_is_logged_but_not_an_error(mappings, caplog):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    with caplog.at_level(logging.WARNING, logger="sync_service.catalog"):
        result = resolver.resolve(
            request(products=[{"id": 1, "quantity": 2}], orderAttributes={"sum": "30"}), order_ref="TG_1"
        )

    assert result.total == Decimal("25.00")
    assert result.declared_total == Decimal("30")
    assert result.price_drift == Decimal("5.00")
    assert any("Preisabweichung" in record.message and "TG_1" in record.message for record in caplog.records)


def test_matching_declared_total_has_zero_drift(mappings, caplog):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    with caplog.at_level(logging.WARNING, logger="sync_service.catalog"):
        result = resolver.resolve(request(products=[{"id": 3, "quantity": 2}], totalAmount=19.8))

    assert result.price_drift == Decimal("0")
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


# ── Cart summary fallback ────────────────────────────────────────────────────


@pytest.mark.parametrize("text, expected", [
    ("Syrniki x3, Tvorog x1", ("Syrniki", "3")),
    ("Сирники х2", ("Сирники", "2")),
    ("Tvorog ×4", ("Tvorog", "4")),
    ("nothing to see here", None),
    ("", None),
    (None, None),
])
def test_parse_cart_summary_takes_first_entry(text, expected):
    assert parse_cart_summary(text) == expected


def test_cart_summary_fallback_is_flagged_degraded(mappings):
    catalog = FakeCatalog(CATALOG)
    resolver = CatalogResolver(catalog, mappings)

    result = resolver.resolve(request(orderAttributes={"order_text": "Syrniki x3, Tvorog x1"}))

    assert result.degraded is True
    assert len(result.items) == 1
    item = result.items[0]
    assert (item.catalog_product_id, item.crm_product_id, item.quantity) == (1, 501, 3)
    assert item.unit_price == Decimal("12.50")
    assert catalog.calls == [1]


def test_cart_summary_name_match_is_case_insensitive(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    result = resolver.resolve(request(order_text="TVOROG x2"))

    assert result.items[0].catalog_product_id == 3
    assert result.total == Decimal("19.80")


def test_cart_summary_without_match_is_not_mapped(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    with pytest.raises(ProductNotMapped):
        resolver.resolve(request(order_text="Borscht x2"))


def test_missing_products_and_summary_is_not_mapped(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    with pytest.raises(ProductNotMapped):
        resolver.resolve(request())


# ── Single product attributes ────────────────────────────────────────────────


def test_product_name_attribute_builds_single_item(mappings):
    catalog = FakeCatalog(CATALOG)
    resolver = CatalogResolver(catalog, mappings)

    result = resolver.resolve(request(orderAttributes={"product_name": "Tvorog", "quantity": "2"}))

    assert result.degraded is True
    item = result.items[0]
    assert (item.catalog_product_id, item.crm_product_id, item.quantity) == (3, 503, 2)
    assert result.total == Decimal("19.80")
    assert catalog.calls == [3]


def test_product_name_attribute_wins_over_cart_summary(mappings):
    resolver = CatalogResolver(FakeCatalog(CATALOG), mappings)

    result = resolver.resolve(request(orderAttributes={
        "product_name": "Syrniki", "quantity": 1, "order_text": "Tvorog x4",
    }))

    assert [(i.catalog_product_id, i.quantity) for i in result.items] == [(1, 1)]


def test_product_name_attribute_without_quantity_defaults_to_one(mappings):
    result = CatalogResolver(FakeCatalog(CATALOG), mappings).resolve(
        request(orderAttributes={"product_name": "Syrniki"})
    )

    assert result.items[0].quantity == 1


def test_product_name_attribute_with_bad_quantity_is_invalid(mappings):
    with pytest.raises(InvalidQuantity):
        CatalogResolver(FakeCatalog(CATALOG), mappings).resolve(
            request(orderAttributes={"product_name": "Tvorog", "quantity": "1.5"})
        )


def test_unknown_product_name_attribute_is_not_mapped(mappings):
    with pytest.raises(ProductNotMapped):
        CatalogResolver(FakeCatalog(CATALOG), mappings).resolve(
            request(orderAttributes={"product_name": "Borscht", "quantity": "1"})
        )

"""
catalog.py — Catalog Resolver & Product Enrichment

Turns the line items declared by the bot into priced, CRM-mapped line items.
The shop catalog is the only source of unit prices; the bot-declared total is
compared against the computed total and logged, never trusted.

Every item error is raised here, before the saga performs any remote write.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from .errors import (
    CatalogLookupFailed,
    InvalidQuantity,
    ProductNotFound,
    ProductNotMapped,
    UpstreamError,
)
from .models import CatalogProduct, EnrichmentResult, OrderRequest, ProductMapping, ResolvedLineItem
from .ports import CatalogSource, MappingSource

log = logging.getLogger(__name__)

# "<name> x<quantity>", e.g. "Syrniki x2, Vareniki x1" (Latin, Cyrillic or multiplication sign)
CART_LINE_PATTERN = re.compile(r"(?P<name>[^,;\n]+?)\s*[xXхХ×]\s*(?P<qty>\d+(?:[.,]\d+)?)")


def coerce_quantity(product_id: Any, raw: Any) -> int:
    """
    Coerces a bot-supplied quantity into a positive integer.

    Accepts ints, integral floats and numeric strings ("2", "2.0").

    Raises:
        InvalidQuantity: For non-numeric, non-integral or non-positive values.
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidQuantity(product_id, raw)
    try:
        value = Decimal(str(raw).strip().replace(",", "."))
    except InvalidOperation:
        raise InvalidQuantity(product_id, raw) from None
    if not value.is_finite() or value != value.to_integral_value() or value <= 0:
        raise InvalidQuantity(product_id, raw)
    return int(value)


def parse_cart_summary(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """Returns (name, raw quantity) of the first ``<name> x<qty>`` entry, or None."""
    if not text:
        return None
    match = CART_LINE_PATTERN.search(text)
    if not match:
        return None
    name = match.group("name").strip(" -:•")
    return (name, match.group("qty")) if name else None


class CatalogResolver:
    """
    Resolves declared line items against the shop catalog and the product mapping store.
    """

    def __init__(self, catalog: CatalogSource, mappings: MappingSource):
        self.catalog = catalog
        self.mappings = mappings

    def resolve(self, request: OrderRequest, order_ref: str = "-") -> EnrichmentResult:
        """
        Prices and maps every line item of the request.

        Args:
            request (OrderRequest): The bot order.
            order_ref (str): Order id used as log prefix.

        Returns:
            EnrichmentResult: Resolved items, the declared total and the degraded flag.

        Raises:
            InvalidQuantity, ProductNotFound, ProductNotMapped, CatalogLookupFailed
        """
        degraded = False
        if request.products:
            # validate every quantity before the first remote lookup
            lines = [(line.id, coerce_quantity(line.id, line.quantity)) for line in request.products]
            items = [self._resolve_line(product_id, quantity) for product_id, quantity in lines]
        else:
            items = [self._resolve_fallback(request, order_ref)]
            degraded = True

        result = EnrichmentResult(items=items, declared_total=request.declared_total, degraded=degraded)

        drift = result.price_drift
        if drift is not None and drift != 0:
            log.warning(
                f"[Order: {order_ref}] Preisabweichung: Bot-Summe {result.declared_total}, "
                f"Katalog-Summe {result.total} (Differenz {drift})."
            )
        log.info(f"[Order: {order_ref}] {len(items)} Position(en) angereichert, Summe {result.total}.")
        return result

    def _resolve_line(self, product_id: int, quantity: int,
                      mapping: Optional[ProductMapping] = None) -> ResolvedLineItem:
        product = self._fetch_product(product_id)
        if mapping is None:
            try:
                mapping = self.mappings.get(product_id)
            except UpstreamError as e:
                raise CatalogLookupFailed(f"Product mapping lookup failed for {product_id}: {e}") from e
        if mapping is None:
            raise ProductNotMapped(product_id, product.name)

        return ResolvedLineItem(
            catalog_product_id=product.id,
            crm_product_id=mapping.crm_product_id,
            name=product.name,
            quantity=quantity,
            unit_price=product.price,
            weight=product.weight,
            category=product.category,
        )

    def _fetch_product(self, product_id: int) -> CatalogProduct:
        try:
            return self.catalog.get_product(product_id)
        except UpstreamError as e:
            if e.is_not_found:
                raise ProductNotFound(product_id) from e
            raise CatalogLookupFailed(f"Catalog lookup failed for product {product_id}: {e}") from e

    def _resolve_fallback(self, request: OrderRequest, order_ref: str) -> ResolvedLineItem:
        """
        Reconstructs a single item when the bot sent no structured products.

        The attribute pair ``product_name`` / ``quantity`` wins over the cart
        summary text.
        """
        attributes = request.order_attributes
        if attributes.product_name and attributes.product_name.strip():
            return self._resolve_by_name(attributes.product_name.strip(), attributes.quantity or 1,
                                         order_ref, "Produkt-Attributen")

        summary = request.cart_summary
        parsed = parse_cart_summary(summary)
        if parsed is None:
            raise ProductNotMapped(None, summary or None)
        name, raw_quantity = parsed
        return self._resolve_by_name(name, raw_quantity, order_ref, "Warenkorb-Text")

    def _resolve_by_name(self, name: str, raw_quantity, order_ref: str, origin: str) -> ResolvedLineItem:
        try:
            mapping = self.mappings.find_by_name(name)
        except UpstreamError as e:
            raise CatalogLookupFailed(f"Product mapping lookup failed for '{name}': {e}") from e
        if mapping is None:
            raise ProductNotMapped(None, name)

        quantity = coerce_quantity(mapping.catalog_product_id, raw_quantity)
        log.warning(
            f"[Order: {order_ref}] Keine strukturierten Produkte, rekonstruiert aus {origin}: "
            f"'{name}' x{quantity} -> Produkt {mapping.catalog_product_id} (unsicher)."
        )
        return self._resolve_line(mapping.catalog_product_id, quantity, mapping=mapping)

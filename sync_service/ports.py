"""Capability interfaces the saga is composed from.

The orchestrator only sees these protocols; `clients.py` and `storage.py`
provide the real implementations and the tests provide fakes.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import CatalogProduct, EcommerceOrder, ProductMapping


class CrmGateway(Protocol):
    def find_contact_by_messenger_id(self, external_id: str) -> Optional[dict]: ...

    def find_contacts_by_phone(self, phone: str) -> list[dict]: ...

    def create_contact(self, first_name: str, last_name: str, phone: Optional[str] = None,
                       email: Optional[str] = None, source: str = "bot-integration",
                       messenger_external_id: Optional[str] = None) -> dict: ...

    def create_deal(self, payload: dict) -> dict: ...

    def attach_product_to_deal(self, deal_id: Any, crm_product_id: int, quantity: int,
                               unit_price: float, currency: str) -> None: ...

    def get_deal(self, deal_id: Any) -> dict: ...

    def update_deal(self, deal_id: Any, payload: dict) -> dict: ...

    def add_deal_comment(self, deal_id: Any, text: str) -> None: ...


class CatalogSource(Protocol):
    def get_product(self, product_id: int) -> CatalogProduct: ...


class EcommerceGateway(CatalogSource, Protocol):
    def create_order(self, payload: dict) -> EcommerceOrder: ...

    def update_order_sync_data(self, order_id: Any, sync_data: dict) -> None: ...


class BotVariableGateway(Protocol):
    def set_contact_variable(self, source: str, contact_id: str, name: str, value: str) -> None: ...


class MappingSource(Protocol):
    def get(self, catalog_product_id: int) -> Optional[ProductMapping]: ...

    def find_by_name(self, text: str) -> Optional[ProductMapping]: ...


class Ledger(Protocol):
    def record(self, operation: str, entity_id: Any, outcome: str, message: str = "",
               *, entity_type: str = "order", details: Optional[dict] = None) -> None: ...

"""
models.py — Data Models for Bot Order Synchronization

Pydantic models for everything that crosses a boundary of the saga: the
inbound bot order, catalog products and mappings, resolved line items, the
CRM/ecommerce records the saga creates, and the saga result.

Models:
    - OrderRequest (+ OrderLine, CustomerInfo, DeliveryInfo, OrderAttributes)
    - CatalogProduct, ProductMapping, ResolvedLineItem, EnrichmentResult
    - Contact, EcommerceOrder
    - SagaState, SagaResult
    - BotOrderRecord, OrderStatusUpdate, BotOrderUpdate, BotOrderCancel, ProductMappingUpdate
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

BotSource = Literal["telegram", "whatsapp", "messenger", "instagram", "viber"]


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parses a bot-supplied amount ("149.90", 149.9, "149,90 CHF") into a Decimal.

    Returns None for empty or unparseable values instead of raising, because
    bot-declared amounts are advisory.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        text = str(value).strip().replace(",", ".")
        text = "".join(ch for ch in text if ch.isdigit() or ch in ".-")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


class OrderLine(BaseModel):
    """
    A requester-declared line item.

    Attributes:
        id (int): Catalog product id.
        quantity: Raw quantity as sent by the bot. Coerced and validated by the
            catalog resolver, not here, so bad values surface as InvalidQuantity.
    """
    id: int = Field(validation_alias=AliasChoices("id", "productId", "product_id"))
    quantity: Union[int, float, str, None] = 1


class CustomerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    username: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class DeliveryInfo(BaseModel):
    """Free-form delivery preference from the bot (Swiss railway station pickup)."""
    model_config = ConfigDict(populate_by_name=True)

    type: Optional[str] = None
    city: Optional[str] = None
    station: Optional[str] = None
    canton: Optional[str] = None
    address: Optional[str] = None
    date: Optional[str] = None
    time_slot: Optional[str] = Field(default=None, alias="timeSlot")


class OrderAttributes(BaseModel):
    """
    Opaque attribute bag produced by the bot platform's conversation state.

    Only the keys the saga reads are declared; anything else is kept as extra.
    Numbers are normalized to strings, the bot platform sends both.
    """
    model_config = ConfigDict(extra="allow")

    fullname: Optional[str] = None
    order_text: Optional[str] = None
    sum: Optional[str] = None
    question: Optional[str] = None
    language: Optional[str] = None
    product_price_str: Optional[str] = None
    product_price: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Optional[str] = None
    tvorog_kg: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _numbers_to_text(cls, value):
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return str(value)
        return value


class OrderRequest(BaseModel):
    """
    A bot-originated purchase event.

    Accepts both the structured format (customerInfo / deliveryInfo / products)
    and the flat legacy format some bot flows still send (fullname, phone, city,
    station, canton, order_text, sum at the top level).

    Attributes:
        source: Originating bot platform.
        contact_id: Bot-platform contact id (messenger external id in the CRM).
        chat_id: Chat id on the messenger.
        bot_order_id: Idempotency key of the order, generated when absent.
        products: Declared line items (may be empty for the cart-summary fallback).
        total_amount: Bot-declared total; advisory only.
    """
    model_config = ConfigDict(populate_by_name=True)

    source: BotSource = "telegram"
    contact_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("contact_id", "contactId"))
    chat_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatId", "chat_id", "telegram_id"))
    bot_order_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("botOrderId", "bot_order_id"))
    customer: CustomerInfo = Field(default_factory=CustomerInfo, validation_alias=AliasChoices("customerInfo", "customer"))
    products: List[OrderLine] = Field(default_factory=list)
    delivery: DeliveryInfo = Field(default_factory=DeliveryInfo, validation_alias=AliasChoices("deliveryInfo", "delivery"))
    payment_method: str = Field(default="CASH", validation_alias=AliasChoices("paymentMethod", "payment_method"))
    notes: Optional[str] = None
    total_amount: Union[float, str, None] = Field(default=None, validation_alias=AliasChoices("totalAmount", "total_amount", "sum"))
    order_text: Optional[str] = None
    order_attributes: OrderAttributes = Field(
        default_factory=OrderAttributes, validation_alias=AliasChoices("orderAttributes", "order_attributes")
    )

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_fields(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        for key in ("contact_id", "contactId", "chatId", "chat_id", "telegram_id", "botOrderId", "bot_order_id"):
            if isinstance(data.get(key), int):
                data[key] = str(data[key])

        if "deliveryInfo" not in data and "delivery" not in data:
            flat = {k: data[k] for k in ("city", "station", "canton") if data.get(k)}
            if flat:
                data["deliveryInfo"] = flat

        if "customerInfo" not in data and "customer" not in data:
            customer = {}
            fullname = (data.get("fullname") or "").strip()
            if fullname:
                first, _, rest = fullname.partition(" ")
                customer["firstName"] = first
                if rest:
                    customer["lastName"] = rest.strip()
            for key in ("phone", "email"):
                if data.get(key):
                    customer[key] = data[key]
            if customer:
                data["customerInfo"] = customer

        if "notes" not in data and data.get("question"):
            data["notes"] = data["question"]
        return data

    @property
    def external_contact_id(self) -> Optional[str]:
        return self.contact_id or self.chat_id

    @property
    def declared_total(self) -> Optional[Decimal]:
        """Bot-declared total, preferring the attribute bag ``sum``."""
        amount = parse_amount(self.order_attributes.sum)
        if amount is None and self.total_amount is not None:
            amount = parse_amount(self.total_amount)
        return amount

    @property
    def cart_summary(self) -> Optional[str]:
        return self.order_attributes.order_text or self.order_text

    @property
    def customer_full_name(self) -> str:
        if self.order_attributes.fullname:
            return self.order_attributes.fullname.strip()
        parts = [self.customer.first_name or "", self.customer.last_name or ""]
        return " ".join(p for p in parts if p).strip()


class CatalogProduct(BaseModel):
    """Authoritative product record of the shop. Read-only to this service."""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    price: Decimal
    weight: Optional[Decimal] = None
    category: Any = None


class ProductMapping(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    catalog_product_id: int
    crm_product_id: int
    name: str
    sync_status: str = "ACTIVE"
    last_synced_at: Optional[datetime] = None


class ResolvedLineItem(BaseModel):
    """A line item priced from the catalog and mapped to its CRM product."""
    catalog_product_id: int
    crm_product_id: int
    name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal
    weight: Optional[Decimal] = None
    category: Any = None

    @computed_field
    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


class EnrichmentResult(BaseModel):
    """
    Output of the catalog resolver.

    ``total`` (the sum of item totals) is the authoritative order total;
    ``declared_total`` is what the bot showed the customer.
    """
    items: List[ResolvedLineItem]
    declared_total: Optional[Decimal] = None
    degraded: bool = False

    @computed_field
    @property
    def total(self) -> Decimal:
        return sum((item.total for item in self.items), Decimal("0"))

    @computed_field
    @property
    def price_drift(self) -> Optional[Decimal]:
        if self.declared_total is None:
            return None
        return self.declared_total - self.total


class Contact(BaseModel):
    id: Union[int, str]
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    external_id: Optional[str] = None

    @classmethod
    def from_crm(cls, data: dict, external_id: Optional[str] = None) -> "Contact":
        """Builds a Contact from a SendPulse contact object."""
        phones = data.get("phones") or []
        emails = data.get("emails") or []
        return cls(
            id=data["id"],
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            phone=phones[0].get("phone") if phones else None,
            email=emails[0].get("email") if emails else None,
            external_id=external_id,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class EcommerceOrder(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Union[int, str]
    external_order_id: Optional[str] = Field(default=None, alias="externalOrderId")
    total_amount: Optional[float] = Field(default=None, alias="totalAmount")
    status: Optional[str] = None
    delivery_type: Optional[str] = Field(default=None, alias="deliveryType")
    notes_admin: Optional[str] = Field(default=None, alias="notesAdmin")


class SagaState(str, Enum):
    STARTED = "STARTED"
    ITEMS_ENRICHED = "ITEMS_ENRICHED"
    CONTACT_RESOLVED = "CONTACT_RESOLVED"
    DEAL_CREATED = "DEAL_CREATED"
    ECOMMERCE_ORDER_CREATED = "ECOMMERCE_ORDER_CREATED"
    CROSS_LINKED = "CROSS_LINKED"
    SIDE_EFFECTS_DISPATCHED = "SIDE_EFFECTS_DISPATCHED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SagaResult(BaseModel):
    """
    Outcome of one saga run.

    Attributes:
        status: "completed" when both records exist and are cross-linked,
            "partial" when the CRM deal exists but the ecommerce mirror or the
            cross-link is missing (see ``gaps``).
        state: Last state of the primary flow that was reached.
        history: Every state the run passed through, in order.
        gaps: Steps that still need reconciliation ("ecommerce_order", "cross_link").
        failed_attachments: Catalog ids that could not be attached to the deal.
    """
    bot_order_id: str
    order_id: Optional[Union[int, str]] = None
    deal_id: Union[int, str]
    contact_id: Union[int, str]
    total_amount: float
    status: Literal["completed", "partial"]
    state: SagaState
    history: List[SagaState] = Field(default_factory=list)
    gaps: List[str] = Field(default_factory=list)
    failed_attachments: List[int] = Field(default_factory=list)
    degraded: bool = False
    price_drift: Optional[float] = None


class SyncLedgerEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    operation: str
    entity_type: str
    entity_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    details: Optional[dict] = None
    created_at: datetime


class BotOrderRecord(BaseModel):
    """Tracking record linking a bot order to its shop order and CRM deal."""
    model_config = ConfigDict(from_attributes=True)

    bot_order_id: str
    source: str
    chat_id: Optional[str] = None
    contact_external_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    total_amount: float
    ecommerce_order_id: Optional[str] = None
    crm_deal_id: Optional[str] = None
    crm_contact_id: Optional[str] = None
    products: List[dict] = Field(default_factory=list)
    status: str
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderStatusUpdate(BaseModel):
    """Order status change reported by the shop (HTTP or status queue)."""
    model_config = ConfigDict(populate_by_name=True)

    deal_id: Union[int, str] = Field(validation_alias=AliasChoices("dealId", "deal_id"))
    order_id: Union[int, str] = Field(validation_alias=AliasChoices("orderId", "order_id"))
    new_status: str = Field(validation_alias=AliasChoices("newStatus", "new_status", "status"))
    previous_status: Optional[str] = Field(default=None, validation_alias=AliasChoices("previousStatus", "previous_status"))
    total_amount: Optional[float] = Field(default=None, validation_alias=AliasChoices("totalAmount", "total_amount"))

    @field_validator("new_status")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()


class BotOrderUpdate(BaseModel):
    """Manual status change of a bot order (bot admin or support)."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    notes: Optional[str] = None
    crm_update: bool = Field(default=True, validation_alias=AliasChoices("crmUpdate", "crm_update"))

    @field_validator("status")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()


class BotOrderCancel(BaseModel):
    reason: Optional[str] = None


class ProductMappingUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    crm_product_id: int = Field(validation_alias=AliasChoices("crmProductId", "crm_product_id", "sendpulseId"))
    name: str

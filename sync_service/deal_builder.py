"""
deal_builder.py — CRM Deal Payload Builder

Maps a resolved order onto the SendPulse deal wire format:
pipeline/step, title, displayed price, currency, contact and the fixed set of
custom attribute slots the sales team's pipeline is configured with.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from .config import (
    CRM_CURRENCY,
    CRM_PIPELINE_ID,
    CRM_STEP_ID,
    DEAL_ATTRIBUTE_TEXT_LIMIT,
    DEAL_TITLE_MAX_LENGTH,
)
from .models import Contact, DeliveryInfo, OrderAttributes, ResolvedLineItem, parse_amount

log = logging.getLogger(__name__)

# Slot name -> SendPulse custom attribute id (pipeline "Bot orders")
ATTRIBUTE_SLOTS = {
    "delivery_point": 922104,
    "order_summary": 922108,
    "question": 922119,
    "payment_status": 922130,
    "station": 922253,
    "city_canton": 922255,
    "sum": 922259,
    "order_text": 923272,
    "language": 923273,
    "customer_name": 923274,
    "canton": 923275,
    "city": 923276,
    "delivery_station": 923277,
    "unit_prices_text": 923278,
    "quantity": 923279,
    "comment": 923428,
    "total": 923605,
    "unit_prices": 923606,
    "product_names": 923613,
    "tvorog_kg": 923614,
}

SLOT_NAMES = {attribute_id: name for name, attribute_id in ATTRIBUTE_SLOTS.items()}

# slots holding one entry per line item
LIST_SLOTS = ("order_summary", "order_text", "unit_prices_text", "unit_prices", "product_names", "quantity")

UNKNOWN = "Unknown"
QUESTION_PLACEHOLDER = "Не указано"
UNPAID = "Не оплачено"


def format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


def truncate(text: str, limit: int) -> str:
    """Cuts text to ``limit`` characters, ending in "..." when something was cut."""
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3].rstrip() + "..."


def read_attributes(payload: dict) -> dict:
    """Reads the attribute list of a deal payload back into ``{slot_name: value}``."""
    values = {}
    for attribute in payload.get("attributes") or []:
        name = SLOT_NAMES.get(attribute.get("attributeId"))
        if name is not None:
            values[name] = attribute.get("value")
    return values


class DealBuilder:
    """
    Builds the create-deal payload for one order.

    Pipeline, step and currency default to the deployment configuration.
    """

    def __init__(
        self,
        pipeline_id: int = CRM_PIPELINE_ID,
        step_id: int = CRM_STEP_ID,
        currency: str = CRM_CURRENCY,
        title_max_length: int = DEAL_TITLE_MAX_LENGTH,
        attribute_text_limit: int = DEAL_ATTRIBUTE_TEXT_LIMIT,
    ):
        self.pipeline_id = pipeline_id
        self.step_id = step_id
        self.currency = currency
        self.title_max_length = title_max_length
        self.attribute_text_limit = attribute_text_limit

    def build(
        self,
        items: List[ResolvedLineItem],
        contact: Contact,
        delivery: DeliveryInfo,
        attributes: OrderAttributes,
        total: Decimal,
        *,
        source: str = "telegram",
        declared_total: Optional[Decimal] = None,
    ) -> dict:
        """
        Args:
            items: Resolved line items.
            contact: The CRM contact the deal belongs to.
            delivery: Delivery preference from the bot.
            attributes: The bot's attribute bag.
            total: Computed order total (catalog prices).
            source: Bot platform, used for the synthesized title.
            declared_total: Bot-declared total, overrides ``attributes.sum`` when given.

        Returns:
            dict: The SendPulse create-deal request body.
        """
        price = self.display_price(total, attributes, declared_total)
        return {
            "pipelineId": self.pipeline_id,
            "stepId": self.step_id,
            "name": self.title(items, attributes, source),
            "price": float(price),
            "currency": self.currency,
            "contact": [contact.id],
            "attributes": [
                {"attributeId": ATTRIBUTE_SLOTS[name], "value": value}
                for name, value in self._slot_values(items, contact, delivery, attributes, total, price).items()
            ],
        }

    def title(self, items: Iterable[ResolvedLineItem], attributes: OrderAttributes, source: str) -> str:
        text = (attributes.order_text or "").strip()
        if not text:
            text = f"{source.capitalize()} Order - {', '.join(item.name for item in items)}"
        return truncate(text, self.title_max_length)

    @staticmethod
    def display_price(total: Decimal, attributes: OrderAttributes, declared_total: Optional[Decimal] = None) -> Decimal:
        """
        The price shown on the deal: what the customer saw in the bot when that
        is a positive amount, otherwise the computed catalog total.
        """
        for candidate in (parse_amount(attributes.sum), declared_total):
            if candidate is not None and candidate > 0:
                return candidate
        return Decimal(total)

    def _slot_values(self, items, contact, delivery, attributes, total, price) -> dict:
        city = delivery.city or UNKNOWN
        station = delivery.station or UNKNOWN
        canton = delivery.canton or UNKNOWN
        summary = ", ".join(f"{item.name} x{item.quantity}" for item in items)
        price_text = attributes.sum or format_amount(price)

        values = {
            "delivery_point": f"{city}, {station}",
            "order_summary": attributes.order_text or summary,
            "question": attributes.question or QUESTION_PLACEHOLDER,
            "payment_status": UNPAID,
            "station": station,
            "city_canton": f"{city}, {canton}",
            "sum": price_text,
            "order_text": attributes.order_text or summary,
            "language": attributes.language or "uk",
            "customer_name": (attributes.fullname or contact.full_name).strip(),
            "canton": canton,
            "city": city,
            "delivery_station": station,
            "unit_prices_text": attributes.product_price_str
                or ", ".join(f"{format_amount(item.unit_price)} {self.currency}" for item in items),
            "quantity": attributes.quantity or str(sum(item.quantity for item in items)),
            "comment": attributes.question or "",
            "total": price_text,
            "unit_prices": attributes.product_price or ", ".join(format_amount(item.unit_price) for item in items),
            "product_names": attributes.product_name or ", ".join(item.name for item in items),
            "tvorog_kg": attributes.tvorog_kg or "",
        }

        collapsed = f"{len(items)} items, total {format_amount(total)} {self.currency}"
        for name in LIST_SLOTS:
            if len(values[name]) > self.attribute_text_limit:
                log.info(f"Deal-Attribut '{name}' zu lang ({len(values[name])} Zeichen), zusammengefasst.")
                values[name] = collapsed
        return values

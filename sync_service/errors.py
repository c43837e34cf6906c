"""
errors.py — Exception Hierarchy of the Bot Order Sync Service

    SyncServiceError
    ├── UpstreamError                  transport / HTTP failure of a remote system
    ├── BotOrderNotFound               no tracking record for a bot order id
    └── SagaError                      a saga step failed (carries the stage)
        ├── InvalidQuantity
        ├── ProductNotFound
        ├── ProductNotMapped
        ├── CatalogLookupFailed
        ├── ContactResolutionFailed
        ├── ContactCreationFailed
        ├── DealCreationFailed
        ├── EcommerceOrderCreationFailed
        ├── CrossLinkFailed            non-fatal, recorded as partial success
        └── SideEffectFailed           non-fatal, logged only
"""

from __future__ import annotations

from typing import Any


class SyncServiceError(Exception):
    """Base class for all errors raised by the service."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UpstreamError(SyncServiceError):
    """A remote system (CRM, shop, bot platform) failed or timed out.

    ``status_code`` is ``None`` for transport errors and timeouts.
    """

    def __init__(
        self,
        service: str,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{service}: {message}", details=details)
        self.service = service
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class BotOrderNotFound(SyncServiceError):
    """No tracking record exists for the bot order id."""

    def __init__(self, bot_order_id: str) -> None:
        super().__init__(f"Bot order {bot_order_id} not found", details={"bot_order_id": bot_order_id})
        self.bot_order_id = bot_order_id


class SagaError(SyncServiceError):
    """A step of the order saga failed.

    ``stage`` is the name of the last state the saga reached before failing.
    """

    stage: str = "STARTED"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        if stage is not None:
            self.stage = stage


class InvalidQuantity(SagaError):
    """Line item quantity is not a positive integer."""

    def __init__(self, product_id: Any, quantity: Any) -> None:
        super().__init__(
            f"Invalid quantity {quantity!r} for product {product_id}",
            details={"product_id": product_id, "quantity": quantity},
        )
        self.product_id = product_id
        self.quantity = quantity


class ProductNotFound(SagaError):
    """Product id does not exist in the shop catalog."""

    def __init__(self, product_id: Any) -> None:
        super().__init__(
            f"Product with ID {product_id} not found in catalog",
            details={"product_id": product_id},
        )
        self.product_id = product_id


class ProductNotMapped(SagaError):
    """Catalog product has no CRM counterpart, so it cannot be put on a deal."""

    def __init__(self, product_id: Any, name: str | None = None) -> None:
        msg = f"Product {product_id} is not mapped to the CRM"
        if name:
            msg += f" (Product: {name})"
        super().__init__(msg, details={"product_id": product_id, "name": name})
        self.product_id = product_id


class CatalogLookupFailed(SagaError):
    """The catalog could not be queried (timeout, 5xx, auth)."""


class ContactResolutionFailed(SagaError):
    stage = "ITEMS_ENRICHED"


class ContactCreationFailed(SagaError):
    stage = "ITEMS_ENRICHED"


class DealCreationFailed(SagaError):
    stage = "CONTACT_RESOLVED"


class EcommerceOrderCreationFailed(SagaError):
    stage = "DEAL_CREATED"


class CrossLinkFailed(SagaError):
    stage = "ECOMMERCE_ORDER_CREATED"


class SideEffectFailed(SagaError):
    stage = "CROSS_LINKED"

"""
main.py — FastAPI Entry Point for the Bot Order Sync Service

This module provides the REST API between the chat bots and the order saga.

Responsibilities:
    • Accept bot orders and run the CRM + shop order saga
    • Report bot order tracking records and the order history of a chat
    • Update and cancel bot orders from the bot side
    • Accept order status changes of the shop and push them to the CRM
    • Administrate catalog ↔ CRM product mappings
    • Start the order status queue listener (optional)
    • Provide system health information
"""

import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from .catalog import CatalogResolver
from .clients import BotPlatformClient, CrmClient, EcommerceClient, start_order_status_listener
from .config import BOT_API_KEY, CRM_CURRENCY, DATABASE_URL, STATUS_LISTENER_ENABLED
from .contacts import ContactResolver
from .deal_builder import DealBuilder
from .errors import (
    BotOrderNotFound,
    CatalogLookupFailed,
    ContactCreationFailed,
    ContactResolutionFailed,
    DealCreationFailed,
    InvalidQuantity,
    ProductNotFound,
    ProductNotMapped,
    SagaError,
    SyncServiceError,
    UpstreamError,
)
from .logging_config import get_logger, setup_logging
from .models import BotOrderCancel, BotOrderUpdate, OrderRequest, OrderStatusUpdate, ProductMappingUpdate
from .storage import BotOrderStore, ProductMappingStore, SyncLedger, create_session_factory, init_db
from .workflow import OrderSaga, OrderStatusSync, SideEffectDispatcher

# Initialization
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Bot Order Sync Service")

SAGA_ERROR_STATUS = {
    InvalidQuantity: 400,
    ProductNotMapped: 400,
    ProductNotFound: 404,
    CatalogLookupFailed: 502,
    ContactResolutionFailed: 502,
    ContactCreationFailed: 502,
    DealCreationFailed: 502,
}


@dataclass
class Services:
    saga: OrderSaga
    status_sync: OrderStatusSync
    mappings: ProductMappingStore
    bot_orders: BotOrderStore
    ledger: SyncLedger
    side_effects: SideEffectDispatcher


def build_services(session_factory=None, crm=None, ecommerce=None, bot=None) -> Services:
    """
    Wires the saga and its collaborators.

    Every argument defaults to the production component built from the
    environment configuration.
    """
    if session_factory is None:
        session_factory = create_session_factory(DATABASE_URL)
    init_db(session_factory)

    crm = crm or CrmClient()
    ecommerce = ecommerce or EcommerceClient()
    bot = bot or BotPlatformClient(crm)

    mappings = ProductMappingStore(session_factory)
    ledger = SyncLedger(session_factory)
    bot_orders = BotOrderStore(session_factory)
    side_effects = SideEffectDispatcher()

    saga = OrderSaga(
        catalog_resolver=CatalogResolver(ecommerce, mappings),
        contact_resolver=ContactResolver(crm),
        deal_builder=DealBuilder(),
        crm=crm,
        ecommerce=ecommerce,
        ledger=ledger,
        side_effects=side_effects,
        bot_orders=bot_orders,
        bot=bot,
    )
    status_sync = OrderStatusSync(crm, ledger, bot_orders=bot_orders, side_effects=side_effects, bot=bot)
    return Services(saga, status_sync, mappings, bot_orders, ledger, side_effects)


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """FastAPI dependency; builds the production services on first use."""
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def require_api_key(x_api_key: Optional[str] = Header(default=None)):
    """Checks the X-API-Key header when BOT_API_KEY is configured."""
    if BOT_API_KEY and x_api_key != BOT_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


# Startup Event: Launch Order Status Listener
@app.on_event("startup")
def on_startup():
    """
    Starts the order status listener thread when STATUS_LISTENER_ENABLED is set.

    The thread runs as a daemon and stops automatically with the app.
    """
    log.info("Bot-Order-Sync-Service startet...")
    if not STATUS_LISTENER_ENABLED:
        log.info("Order-Status-Listener deaktiviert (STATUS_LISTENER_ENABLED=false).")
        return
    services = get_services()
    listener_thread = threading.Thread(
        target=start_order_status_listener, args=(services.status_sync.push,), daemon=True
    )
    listener_thread.start()
    log.info("Order-Status-Listener Thread gestartet.")


@app.on_event("shutdown")
def on_shutdown():
    if _services is not None:
        _services.side_effects.shutdown(wait_for_pending=True)
    log.info("Bot-Order-Sync-Service beendet.")


# Error mapping
@app.exception_handler(SagaError)
async def saga_error_handler(request: Request, exc: SagaError):
    status_code = next((code for cls, code in SAGA_ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status_code, content={
        "success": False,
        "error": type(exc).__name__,
        "stage": exc.stage,
        "message": exc.message,
        "details": exc.details,
    })


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    log.error(f"Upstream-Fehler ({exc.service}): {exc.message}")
    return JSONResponse(status_code=502, content={
        "success": False,
        "error": "UpstreamError",
        "service": exc.service,
        "message": exc.message,
    })


@app.exception_handler(BotOrderNotFound)
async def bot_order_not_found_handler(request: Request, exc: BotOrderNotFound):
    return JSONResponse(status_code=404, content={
        "success": False,
        "error": "BotOrderNotFound",
        "message": exc.message,
    })


@app.exception_handler(SyncServiceError)
async def sync_error_handler(request: Request, exc: SyncServiceError):
    return JSONResponse(status_code=422, content={
        "success": False,
        "error": type(exc).__name__,
        "message": exc.message,
        "details": exc.details,
    })


# API Endpoint: Bot → Sync Service
@app.post("/v1/bot/orders", status_code=201, dependencies=[Depends(require_api_key)])
def create_bot_order(order: OrderRequest, response: Response, services: Services = Depends(get_services)):
    """
    Runs the order saga for a bot order.

    Returns 201 when the order exists in CRM and shop and both are linked,
    202 when only the CRM deal exists or the cross-link is missing (``gaps``).
    Hard failures are answered by the exception handlers above.
    """
    log.info(f"[Order: {order.bot_order_id or '-'}] Neue Bot-Bestellung erhalten ({order.source}).")
    result = services.saga.run(order)
    if result.status == "partial":
        response.status_code = 202

    return {
        "success": True,
        "botOrderId": result.bot_order_id,
        "orderId": result.order_id,
        "dealId": result.deal_id,
        "contactId": result.contact_id,
        "totalAmount": result.total_amount,
        "status": result.status,
        "state": result.state.value,
        "gaps": result.gaps,
        "failedAttachments": result.failed_attachments,
        "degraded": result.degraded,
        "priceDrift": result.price_drift,
    }


@app.get("/v1/bot/orders/{bot_order_id}", dependencies=[Depends(require_api_key)])
def get_bot_order(bot_order_id: str, services: Services = Depends(get_services)):
    record = services.bot_orders.get(bot_order_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Bot order {bot_order_id} not found.")
    return record.model_dump(mode="json")


@app.put("/v1/bot/orders/{bot_order_id}", dependencies=[Depends(require_api_key)])
def update_bot_order(bot_order_id: str, body: BotOrderUpdate, services: Services = Depends(get_services)):
    """Sets the status of a bot order and, with ``crmUpdate``, moves its CRM deal."""
    result = services.status_sync.update_bot_order(bot_order_id, body.status, notes=body.notes,
                                                   crm_update=body.crm_update)
    return {"success": True, **result, "message": "Order updated successfully"}


@app.delete("/v1/bot/orders/{bot_order_id}", dependencies=[Depends(require_api_key)])
def cancel_bot_order(bot_order_id: str, body: Optional[BotOrderCancel] = None,
                     services: Services = Depends(get_services)):
    reason = body.reason if body is not None and body.reason else "No reason provided"
    log.info(f"[Order: {bot_order_id}] Stornierung angefordert: {reason}")
    result = services.status_sync.update_bot_order(bot_order_id, "CANCELLED", notes=f"Cancelled: {reason}")
    return {"success": True, **result, "message": "Order cancelled successfully"}


@app.get("/v1/bot/chats/{chat_id}/orders", dependencies=[Depends(require_api_key)])
def list_chat_orders(chat_id: str, source: Optional[str] = None, limit: int = Query(default=10, ge=1, le=100),
                     services: Services = Depends(get_services)):
    """Order history of one chat, newest first."""
    records = services.bot_orders.list_by_chat(chat_id, source=source, limit=limit)
    orders = [{
        "botOrderId": record.bot_order_id,
        "status": record.status,
        "totalAmount": record.total_amount,
        "currency": CRM_CURRENCY,
        "createdAt": record.created_at.isoformat(),
        "products": record.products,
    } for record in records]
    return {"success": True, "orders": orders, "count": len(orders), "chatId": chat_id}


# API Endpoint: Shop → Sync Service
@app.post("/v1/sync/order-status", dependencies=[Depends(require_api_key)])
def sync_order_status(update: OrderStatusUpdate, services: Services = Depends(get_services)):
    """Pushes a shop order status change to the CRM deal."""
    result = services.status_sync.push(update)
    return {"success": True, **result}


# Administration: product mappings
@app.get("/v1/admin/product-mappings", dependencies=[Depends(require_api_key)])
def list_product_mappings(services: Services = Depends(get_services)):
    return [mapping.model_dump(mode="json") for mapping in services.mappings.list_all()]


@app.put("/v1/admin/product-mappings/{catalog_id}", dependencies=[Depends(require_api_key)])
def put_product_mapping(catalog_id: int, body: ProductMappingUpdate, services: Services = Depends(get_services)):
    mapping = services.mappings.upsert(catalog_id, body.crm_product_id, body.name)
    return mapping.model_dump(mode="json")


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for monitoring and container orchestrators.
    """
    return {"status": "ok"}

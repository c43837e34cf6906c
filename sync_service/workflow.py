"""
workflow.py — Core Orchestration Logic for Bot Order Synchronization

This module contains the saga that turns one bot order into consistent records
in the CRM (SendPulse) and the ecommerce shop, plus the status push that keeps
the CRM deal in step with the shop order afterwards.

Workflow Overview:
1. Enrich line items from the catalog and the product mapping (no remote writes yet)
2. Resolve or create the CRM contact
3. Create the CRM deal, then attach the line items concurrently
4. Create the mirrored ecommerce order
5. Cross-link: write deal/contact ids into the shop order
6. Dispatch best-effort side effects (bot flag, tracking row), never awaited

There is no rollback: once the deal exists, later failures leave a documented
partial result and a ledger trail for reconciliation.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .catalog import CatalogResolver
from .config import ATTACH_WORKERS, CRM_CURRENCY, CRM_PIPELINE_ID, CRM_STATUS_STEPS, SIDE_EFFECT_WORKERS
from .contacts import ContactResolver, contact_name_for
from .deal_builder import DealBuilder
from .errors import (
    BotOrderNotFound,
    CrossLinkFailed,
    DealCreationFailed,
    EcommerceOrderCreationFailed,
    SagaError,
    SideEffectFailed,
    SyncServiceError,
    UpstreamError,
)
from .models import (
    BotOrderRecord,
    Contact,
    EcommerceOrder,
    EnrichmentResult,
    OrderRequest,
    OrderStatusUpdate,
    ResolvedLineItem,
    SagaResult,
    SagaState,
)
from .ports import BotVariableGateway, CrmGateway, EcommerceGateway, Ledger
from .stations import classify_station

log = logging.getLogger(__name__)

ACTIVE_ORDER_VARIABLE = "has_active_order"
TERMINAL_STATUSES = ("DELIVERED", "CANCELLED")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_bot_order_id(request: OrderRequest, now_ms: Optional[int] = None) -> str:
    """``<SOURCE>_<epoch ms>_<chat id>``, used when the bot sent no order id."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{request.source.upper()}_{now_ms}_{request.external_contact_id or 'anonymous'}"


def next_delivery_date(now: datetime) -> str:
    """Next day, 10:00."""
    tomorrow = (now + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
    return tomorrow.isoformat()


def build_ecommerce_order_payload(request: OrderRequest, enrichment: EnrichmentResult,
                                  bot_order_id: str, now: Optional[datetime] = None) -> dict:
    """
    Maps a bot order onto the shop's ``/api/orders/enhanced`` request body.

    ``totalAmount`` is the computed catalog total, never the bot-declared one.
    An unknown delivery station is replaced by the default pickup point and the
    substitution is written into ``notesAdmin``.
    """
    now = now or utcnow()
    delivery = request.delivery
    station = classify_station(delivery.station)
    first_name, last_name = contact_name_for(request)

    admin_notes = [f"Created from {request.source.capitalize()} bot. Chat ID: {request.external_contact_id or '-'}"]
    if station.note:
        admin_notes.append(station.note)
    if enrichment.degraded:
        admin_notes.append("Items reconstructed from the bot product name or cart summary, please verify.")

    return {
        "orderSource": f"{request.source.upper()}_BOT",
        "externalOrderId": bot_order_id,
        "syncStatus": "PENDING",
        "guestInfo": {
            "firstName": first_name,
            "lastName": last_name,
            "phone": request.customer.phone or "",
            "email": request.customer.email or "",
        },
        "deliveryType": station.delivery_type,
        "deliveryStationId": station.station_id,
        "deliveryDate": delivery.date or next_delivery_date(now),
        "deliveryTimeSlot": delivery.time_slot or "morning",
        "deliveryAddress": {
            "city": delivery.city or "Unknown",
            "station": delivery.station or "Unknown",
            "canton": delivery.canton or "Unknown",
            "address": delivery.address or "",
        },
        "totalAmount": float(enrichment.total),
        "paymentMethod": request.payment_method,
        "paymentStatus": "PENDING",
        "status": "PENDING",
        "notesClient": request.notes or request.order_attributes.question or "",
        "notesAdmin": " ".join(admin_notes),
        "items": [
            {
                "productId": item.catalog_product_id,
                "name": item.name,
                "quantity": item.quantity,
                "price": float(item.unit_price),
                "total": float(item.total),
            }
            for item in enrichment.items
        ],
    }


class SideEffectDispatcher:
    """
    Runs best-effort side effects on a background thread pool.

    Failures go to a log-only error channel inside the worker; the caller never
    waits for the result. ``drain()`` exists for shutdown and tests.
    """

    def __init__(self, max_workers: int = SIDE_EFFECT_WORKERS):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="side-effect")
        self._pending = set()
        self._lock = threading.Lock()

    def dispatch(self, name: str, fn: Callable, *args, order_ref: str = "-", **kwargs) -> Future:
        future = self._executor.submit(self._run, name, order_ref, fn, args, kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    @staticmethod
    def _call(name: str, fn: Callable, args: tuple, kwargs: dict):
        try:
            fn(*args, **kwargs)
        except Exception as e:
            raise SideEffectFailed(f"Side effect '{name}' failed: {e}", details={"effect": name}) from e

    def _run(self, name: str, order_ref: str, fn: Callable, args: tuple, kwargs: dict) -> Optional[SideEffectFailed]:
        """Runs one side effect; the future's result is the failure, or None on success."""
        try:
            self._call(name, fn, args, kwargs)
        except SideEffectFailed as failure:
            log.warning(f"[Order: {order_ref}] Nebeneffekt fehlgeschlagen: {failure.message}")
            return failure
        log.debug(f"[Order: {order_ref}] Nebeneffekt '{name}' erledigt.")
        return None

    def _forget(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Waits for all dispatched side effects; returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True):
        self._executor.shutdown(wait=wait_for_pending)


class OrderSaga:
    """
    Sequences the order creation across CRM and shop.

    All collaborators are injected, so the saga runs unchanged against the real
    clients, the mock services or test fakes.
    """

    def __init__(
        self,
        catalog_resolver: CatalogResolver,
        contact_resolver: ContactResolver,
        deal_builder: DealBuilder,
        crm: CrmGateway,
        ecommerce: EcommerceGateway,
        ledger: Ledger,
        side_effects: SideEffectDispatcher,
        bot_orders=None,
        bot: Optional[BotVariableGateway] = None,
        attach_workers: int = ATTACH_WORKERS,
    ):
        self.catalog_resolver = catalog_resolver
        self.contact_resolver = contact_resolver
        self.deal_builder = deal_builder
        self.crm = crm
        self.ecommerce = ecommerce
        self.ledger = ledger
        self.side_effects = side_effects
        self.bot_orders = bot_orders
        self.bot = bot
        self.attach_workers = attach_workers

    def run(self, request: OrderRequest) -> SagaResult:
        """
        Executes the order saga for a single bot order.

        Args:
            request (OrderRequest): Validated bot order.

        Returns:
            SagaResult: ``completed`` when both records exist and are linked,
            ``partial`` when the deal exists but the shop order or the
            cross-link is missing.

        Raises:
            SagaError: A hard failure before or at deal creation. ``stage`` is
                the last state reached; nothing was created in the CRM unless
                the stage is CONTACT_RESOLVED (the contact may be new).
        """
        bot_order_id = request.bot_order_id or generate_bot_order_id(request)
        log_prefix = f"[Order: {bot_order_id}]"
        log.info(f"{log_prefix} Starte Synchronisation ({request.source}, {len(request.products)} Position(en)).")

        history = [SagaState.STARTED]
        try:
            # --- 1. Catalog enrichment (no remote writes) ---
            enrichment = self.catalog_resolver.resolve(request, bot_order_id)
            history.append(SagaState.ITEMS_ENRICHED)

            # --- 2. Contact ---
            contact = self._resolve_contact(request, bot_order_id)
            history.append(SagaState.CONTACT_RESOLVED)

            # --- 3. CRM deal ---
            deal_id = self._create_deal(request, enrichment, contact, bot_order_id)
            history.append(SagaState.DEAL_CREATED)
        except SagaError as e:
            e.stage = history[-1].value
            history.append(SagaState.FAILED)
            log.error(f"{log_prefix} Abgebrochen in Stufe {e.stage}: {e.message}")
            self.ledger.record("CREATE_ORDER", bot_order_id, "FAILED", e.message, details={
                "stage": e.stage, "error": type(e).__name__, "history": [s.value for s in history], **e.details,
            })
            raise

        failed_attachments = self._attach_items(deal_id, enrichment.items, bot_order_id)

        gaps: List[str] = []
        order: Optional[EcommerceOrder] = None

        # --- 4. Ecommerce order ---
        try:
            order = self._create_ecommerce_order(request, enrichment, bot_order_id, deal_id)
            history.append(SagaState.ECOMMERCE_ORDER_CREATED)
        except EcommerceOrderCreationFailed:
            gaps.append("ecommerce_order")

        # --- 5. Cross-link ---
        if order is not None:
            try:
                self._cross_link(order, deal_id, contact, bot_order_id)
                history.append(SagaState.CROSS_LINKED)
            except CrossLinkFailed:
                gaps.append("cross_link")

        status = "partial" if gaps else "completed"

        # --- 6. Side effects (never awaited) ---
        self._dispatch_side_effects(request, enrichment, contact, deal_id, order, bot_order_id, status)
        if not gaps:
            history += [SagaState.SIDE_EFFECTS_DISPATCHED, SagaState.COMPLETED]

        result = SagaResult(
            bot_order_id=bot_order_id,
            order_id=order.id if order is not None else None,
            deal_id=deal_id,
            contact_id=contact.id,
            total_amount=float(enrichment.total),
            status=status,
            state=history[-1],
            history=history,
            gaps=gaps,
            failed_attachments=failed_attachments,
            degraded=enrichment.degraded,
            price_drift=float(enrichment.price_drift) if enrichment.price_drift is not None else None,
        )

        self.ledger.record("CREATE_ORDER", bot_order_id, "SUCCESS",
                           f"Order {status} (deal {deal_id}, order {result.order_id})",
                           details={"status": status, "gaps": gaps, "failed_attachments": failed_attachments})
        if gaps:
            log.critical(f"{log_prefix} Teilweise erfolgreich, manueller Abgleich nötig: fehlend {', '.join(gaps)} "
                         f"(Deal {deal_id}).")
        else:
            log.info(f"{log_prefix} Synchronisation abgeschlossen (Deal {deal_id}, Shop-Order {result.order_id}).")
        return result

    def _resolve_contact(self, request: OrderRequest, bot_order_id: str) -> Contact:
        try:
            contact = self.contact_resolver.resolve(request, bot_order_id)
        except SagaError as e:
            self.ledger.record("RESOLVE_CONTACT", request.external_contact_id, "FAILED", e.message,
                               entity_type="contact", details={"bot_order_id": bot_order_id})
            raise
        self.ledger.record("RESOLVE_CONTACT", contact.id, "SUCCESS", f"Contact {contact.id} for {bot_order_id}",
                           entity_type="contact", details={"bot_order_id": bot_order_id})
        return contact

    def _create_deal(self, request: OrderRequest, enrichment: EnrichmentResult, contact: Contact,
                     bot_order_id: str):
        log_prefix = f"[Order: {bot_order_id}]"
        payload = self.deal_builder.build(
            enrichment.items,
            contact,
            request.delivery,
            request.order_attributes,
            enrichment.total,
            source=request.source,
            declared_total=request.declared_total,
        )
        log.info(f"{log_prefix} Erstelle CRM-Deal '{payload['name']}' ({payload['price']} {payload['currency']})...")
        try:
            data = self.crm.create_deal(payload)
        except UpstreamError as e:
            self.ledger.record("CREATE_DEAL", None, "FAILED", str(e), entity_type="deal",
                               details={"bot_order_id": bot_order_id, "status_code": e.status_code})
            raise DealCreationFailed(f"Deal creation failed: {e}", details={"status_code": e.status_code}) from e

        deal_id = data.get("id") if isinstance(data, dict) else None
        if deal_id is None:
            self.ledger.record("CREATE_DEAL", None, "FAILED", "Deal ID not found in response", entity_type="deal",
                               details={"bot_order_id": bot_order_id, "response": data})
            raise DealCreationFailed("Deal ID not found in response", details={"response": data})

        self.ledger.record("CREATE_DEAL", deal_id, "SUCCESS", f"Deal for {bot_order_id}", entity_type="deal",
                           details={"bot_order_id": bot_order_id, "price": payload["price"]})
        log.info(f"{log_prefix} CRM-Deal erstellt (ID: {deal_id}).")
        return deal_id

    def _attach_items(self, deal_id, items: List[ResolvedLineItem], bot_order_id: str) -> List[int]:
        """Attaches all items to the deal in parallel; returns the catalog ids that failed."""
        log_prefix = f"[Order: {bot_order_id}]"
        currency = self.deal_builder.currency

        def attach(item: ResolvedLineItem) -> bool:
            try:
                self.crm.attach_product_to_deal(deal_id, item.crm_product_id, item.quantity,
                                                float(item.unit_price), currency)
            except Exception as e:
                log.warning(f"{log_prefix} Produkt {item.catalog_product_id} ({item.name}) konnte nicht an "
                            f"Deal {deal_id} angehängt werden: {e}")
                self.ledger.record("ATTACH_PRODUCT", deal_id, "FAILED", str(e), entity_type="deal",
                                   details={"catalog_product_id": item.catalog_product_id,
                                            "crm_product_id": item.crm_product_id})
                return False
            self.ledger.record("ATTACH_PRODUCT", deal_id, "SUCCESS", f"{item.name} x{item.quantity}",
                               entity_type="deal", details={"catalog_product_id": item.catalog_product_id,
                                                            "crm_product_id": item.crm_product_id})
            return True

        workers = max(1, min(self.attach_workers, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="attach") as pool:
            outcomes = list(pool.map(attach, items))

        failed = [item.catalog_product_id for item, ok in zip(items, outcomes) if not ok]
        log.info(f"{log_prefix} {len(items) - len(failed)}/{len(items)} Produkt(e) an Deal {deal_id} angehängt.")
        return failed

    def _create_ecommerce_order(self, request: OrderRequest, enrichment: EnrichmentResult,
                                bot_order_id: str, deal_id) -> EcommerceOrder:
        log_prefix = f"[Order: {bot_order_id}]"
        payload = build_ecommerce_order_payload(request, enrichment, bot_order_id)
        log.info(f"{log_prefix} Erstelle Shop-Bestellung ({payload['deliveryType']}, {payload['totalAmount']})...")
        try:
            order = self.ecommerce.create_order(payload)
        except UpstreamError as e:
            failure = EcommerceOrderCreationFailed(f"Ecommerce order creation failed: {e}",
                                                   details={"deal_id": deal_id, "status_code": e.status_code})
            log.error(f"{log_prefix} {failure.message}. Deal {deal_id} bleibt bestehen.")
            self.ledger.record("CREATE_ECOMMERCE_ORDER", bot_order_id, "FAILED", failure.message,
                               details=failure.details)
            raise failure from e

        self.ledger.record("CREATE_ECOMMERCE_ORDER", order.id, "SUCCESS", f"Shop order for {bot_order_id}",
                           details={"bot_order_id": bot_order_id, "total_amount": order.total_amount})
        log.info(f"{log_prefix} Shop-Bestellung erstellt (ID: {order.id}).")
        return order

    def _cross_link(self, order: EcommerceOrder, deal_id, contact: Contact, bot_order_id: str):
        log_prefix = f"[Order: {bot_order_id}]"
        sync_data = {
            "sendpulseDealId": deal_id,
            "sendpulseContactId": contact.id,
            "syncStatus": "SYNCED",
            "lastSyncAt": utcnow().isoformat(),
        }
        try:
            self.ecommerce.update_order_sync_data(order.id, sync_data)
        except UpstreamError as e:
            failure = CrossLinkFailed(f"Cross-link of order {order.id} with deal {deal_id} failed: {e}",
                                      details={"order_id": order.id, "deal_id": deal_id})
            log.error(f"{log_prefix} {failure.message}")
            self.ledger.record("CROSS_LINK", order.id, "FAILED", failure.message, details=failure.details)
            raise failure from e

        self.ledger.record("CROSS_LINK", order.id, "SUCCESS", f"Linked with deal {deal_id}",
                           details={"deal_id": deal_id, "contact_id": contact.id})
        log.info(f"{log_prefix} Shop-Bestellung {order.id} mit Deal {deal_id} verknüpft.")

    def _dispatch_side_effects(self, request: OrderRequest, enrichment: EnrichmentResult, contact: Contact,
                               deal_id, order: Optional[EcommerceOrder], bot_order_id: str, status: str):
        external_id = request.external_contact_id
        if self.bot is not None and external_id:
            self.side_effects.dispatch(
                ACTIVE_ORDER_VARIABLE, self.bot.set_contact_variable,
                request.source, external_id, ACTIVE_ORDER_VARIABLE, "1",
                order_ref=bot_order_id,
            )
        if self.bot_orders is not None:
            self.side_effects.dispatch(
                "bot_order_tracking", self.bot_orders.save,
                order_ref=bot_order_id,
                bot_order_id=bot_order_id,
                source=request.source,
                chat_id=request.chat_id,
                contact_external_id=external_id,
                customer_name=request.customer_full_name or contact.full_name,
                customer_phone=request.customer.phone,
                total_amount=float(enrichment.total),
                ecommerce_order_id=order.id if order is not None else None,
                crm_deal_id=deal_id,
                crm_contact_id=contact.id,
                products=[item.model_dump(mode="json") for item in enrichment.items],
                status="PENDING" if status == "completed" else "SYNC_PARTIAL",
            )


class OrderStatusSync:
    """
    Pushes shop order status changes to the CRM deal.

    Maps the status to a pipeline step, updates the deal with a full PUT (the
    CRM has no partial update), adds a comment and, for terminal statuses,
    clears the bot's active-order flag. Bot-side changes (support updates,
    cancellations) go through ``update_bot_order`` and reuse the same steps.
    """

    def __init__(self, crm: CrmGateway, ledger: Ledger, bot_orders=None,
                 side_effects: Optional[SideEffectDispatcher] = None,
                 bot: Optional[BotVariableGateway] = None, status_steps: Optional[dict] = None):
        self.crm = crm
        self.ledger = ledger
        self.bot_orders = bot_orders
        self.side_effects = side_effects
        self.bot = bot
        self.status_steps = status_steps if status_steps is not None else dict(CRM_STATUS_STEPS)

    def push(self, update: OrderStatusUpdate) -> dict:
        """
        Args:
            update (OrderStatusUpdate): Status change reported by the shop.

        Returns:
            dict: ``{"dealId", "stepId", "status"}``.

        Raises:
            SyncServiceError: The status has no pipeline step.
            UpstreamError: The CRM could not be read or updated.
        """
        step_id = self._step_for(update.new_status, update.deal_id, update.order_id)
        self._update_deal(update, step_id)

        if update.new_status in TERMINAL_STATUSES:
            self._finish_bot_order(update)
        return {"dealId": update.deal_id, "stepId": step_id, "status": update.new_status}

    def update_bot_order(self, bot_order_id: str, status: str, notes: Optional[str] = None,
                         crm_update: bool = True) -> dict:
        """
        Changes the status of a bot order from the bot side (support, cancellation).

        The tracking record is updated first. The CRM deal follows when
        ``crm_update`` is set and the order has a deal; a CRM failure is
        logged and reported as ``crmSynced: False``.

        Raises:
            BotOrderNotFound: No tracking record for ``bot_order_id``.
            SyncServiceError: The status has no pipeline step.
        """
        log_prefix = f"[Order: {bot_order_id}]"
        record = self.bot_orders.get(bot_order_id) if self.bot_orders is not None else None
        if record is None:
            raise BotOrderNotFound(bot_order_id)
        step_id = self._step_for(status, record.crm_deal_id, bot_order_id)

        self.bot_orders.update_status(bot_order_id, status, notes=notes)
        log.info(f"{log_prefix} Bot-Auftrag Status {record.status} -> {status}.")

        crm_synced = False
        if crm_update and record.crm_deal_id:
            update = OrderStatusUpdate(
                deal_id=record.crm_deal_id,
                order_id=record.ecommerce_order_id or bot_order_id,
                new_status=status,
                previous_status=record.status,
                total_amount=record.total_amount,
            )
            try:
                self._update_deal(update, step_id, notes=notes)
                crm_synced = True
            except UpstreamError as e:
                log.warning(f"{log_prefix} CRM-Deal {record.crm_deal_id} nicht aktualisiert: {e}")

        if status in TERMINAL_STATUSES:
            self._release_active_order(record)
        return {"botOrderId": bot_order_id, "status": status, "dealId": record.crm_deal_id, "crmSynced": crm_synced}

    def _step_for(self, status: str, deal_id, order_ref) -> int:
        step_id = self.status_steps.get(status)
        if step_id is None:
            message = f"No pipeline step for order status '{status}'"
            self.ledger.record("STATUS_PUSH", deal_id, "FAILED", message, entity_type="deal",
                               details={"order_id": order_ref})
            raise SyncServiceError(message, details={"status": status})
        return step_id

    def _update_deal(self, update: OrderStatusUpdate, step_id: int, notes: Optional[str] = None):
        log_prefix = f"[Order: {update.order_id}]"
        log.info(f"{log_prefix} Status {update.previous_status or 'unknown'} -> {update.new_status}, "
                 f"setze Deal {update.deal_id} auf Stufe {step_id}.")
        comment = (f"Order status updated from {update.previous_status or 'unknown'} to {update.new_status} "
                   f"at {utcnow().isoformat()}")
        if notes:
            comment += f". {notes}"
        try:
            deal = self.crm.get_deal(update.deal_id)
            self.crm.update_deal(update.deal_id, {
                "pipelineId": deal.get("pipelineId") or CRM_PIPELINE_ID,
                "stepId": step_id,
                "name": deal.get("name") or f"Order {update.order_id}",
                "price": deal.get("price") if deal.get("price") is not None else (update.total_amount or 0),
                "currency": deal.get("currency") or CRM_CURRENCY,
            })
            self.crm.add_deal_comment(update.deal_id, comment)
        except UpstreamError as e:
            log.error(f"{log_prefix} Status-Push an Deal {update.deal_id} fehlgeschlagen: {e}")
            self.ledger.record("STATUS_PUSH", update.deal_id, "FAILED", str(e), entity_type="deal",
                               details={"order_id": update.order_id, "status": update.new_status})
            raise

        self.ledger.record("STATUS_PUSH", update.deal_id, "SUCCESS", f"{update.new_status} -> step {step_id}",
                           entity_type="deal", details={"order_id": update.order_id, "status": update.new_status})

    def _finish_bot_order(self, update: OrderStatusUpdate):
        if self.bot_orders is None or self.side_effects is None:
            return
        try:
            record = self.bot_orders.find_by_ecommerce_order(update.order_id)
        except UpstreamError as e:
            log.warning(f"[Order: {update.order_id}] Bot-Auftrag konnte nicht gelesen werden: {e}")
            return
        if record is None:
            log.warning(f"[Order: {update.order_id}] Kein Bot-Auftrag zur Shop-Bestellung gefunden.")
            return
        self.side_effects.dispatch("bot_order_status", self.bot_orders.update_status,
                                   record.bot_order_id, update.new_status, order_ref=record.bot_order_id)
        self._release_active_order(record)

    def _release_active_order(self, record: BotOrderRecord):
        if self.bot is None or self.side_effects is None or not record.contact_external_id:
            return
        self.side_effects.dispatch(
            ACTIVE_ORDER_VARIABLE, self.bot.set_contact_variable,
            record.source, record.contact_external_id, ACTIVE_ORDER_VARIABLE, "0",
            order_ref=record.bot_order_id,
        )

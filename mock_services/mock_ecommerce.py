"""
mock_ecommerce.py — Mock Implementation of the Ecommerce Shop API (REST + RabbitMQ)

This module simulates the internal shop API used by the sync service: the
product catalog, enhanced order creation, the sync-data patch and order status
changes. Status changes are published to the 'ecommerce.order.status' queue
when PUBLISH_STATUS_EVENTS is enabled, like the real shop does.

Simulation Scenarios (add the name to ``FAILURES``):
    • "catalog":      product lookups answer 503
    • "create_order": order creation answers 500
    • "sync_data":    the sync-data patch answers 500
    Requests without the internal API token are answered with 401.

Endpoints:
    GET   /api/products/{product_id}
    POST  /api/orders/enhanced
    PATCH /api/orders/{order_id}/sync-data
    POST  /api/orders/{order_id}/status
    GET   /health

Port:
    Default: 5000 (HTTP)
"""

import itertools
import json
import logging
import os
import threading
import time
from typing import Optional

import pika
from fastapi import Depends, FastAPI, Header, HTTPException

app = FastAPI(title="Mock Ecommerce API")
logging.basicConfig(level=logging.INFO)

INTERNAL_API_TOKEN = os.environ.get("ECOMMERCE_API_TOKEN", "mock-internal-token")
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
STATUS_QUEUE = os.environ.get("STATUS_QUEUE", "ecommerce.order.status")
PUBLISH_STATUS_EVENTS = os.environ.get("PUBLISH_STATUS_EVENTS", "false").lower() in ("1", "true", "yes")

DEFAULT_PRODUCTS = {
    1: {"id": 1, "name": "Syrniki", "price": "12.50", "weight": "0.5", "category": "frozen"},
    2: {"id": 2, "name": "Vareniki with cherries", "price": "15.00", "weight": "1.0", "category": "frozen"},
    3: {"id": 3, "name": "Tvorog", "price": "9.90", "weight": "1.0", "category": "dairy"},
    4: {"id": 4, "name": "Pelmeni", "price": "18.40", "weight": "1.0", "category": "frozen"},
}

PRODUCTS = {}
ORDERS = {}
FAILURES = set()
CALLS = {"get_product": 0, "create_order": 0, "sync_data": 0}

_lock = threading.Lock()
_ids = itertools.count(1)


def reset():
    """Restores the default catalog and clears orders and scenarios."""
    global _ids
    with _lock:
        PRODUCTS.clear()
        PRODUCTS.update({pid: dict(p) for pid, p in DEFAULT_PRODUCTS.items()})
        ORDERS.clear()
        FAILURES.clear()
        for key in CALLS:
            CALLS[key] = 0
        _ids = itertools.count(1)


reset()


def _fail(scenario: str, status_code: int = 500):
    if scenario in FAILURES:
        logging.warning(f"[SHOP] Simulierter Fehler: {scenario}")
        raise HTTPException(status_code=status_code, detail={"message": f"simulated failure: {scenario}"})


def require_internal_token(x_internal_api_token: Optional[str] = Header(default=None)):
    if x_internal_api_token != INTERNAL_API_TOKEN:
        raise HTTPException(status_code=401, detail={"message": "Invalid internal API token"})


def publish_status_event(order: dict, previous_status: str):
    """
    Publishes an order status change to RabbitMQ.

    Errors are logged only, the shop does not fail a status change because the
    queue is down.
    """
    message = {
        "orderId": order["id"],
        "dealId": order.get("sendpulseDealId"),
        "previousStatus": previous_status,
        "newStatus": order["status"],
        "totalAmount": order.get("totalAmount"),
        "updateTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    try:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST))
        channel = connection.channel()
        channel.queue_declare(queue=STATUS_QUEUE, durable=True)
        channel.basic_publish(exchange="", routing_key=STATUS_QUEUE, body=json.dumps(message))
        connection.close()
        logging.info(f"[SHOP] Status gesendet: {order['status']} für Order {order['id']}")
    except pika.exceptions.AMQPError as e:
        logging.error(f"[SHOP] Status-Event für Order {order['id']} nicht gesendet: {e}")


@app.get("/api/products/{product_id}", dependencies=[Depends(require_internal_token)])
def get_product(product_id: int, lang: str = "uk"):
    with _lock:
        CALLS["get_product"] += 1
    _fail("catalog", 503)
    product = PRODUCTS.get(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail={"message": f"Product {product_id} not found"})
    return {"success": True, "product": {**product, "language": lang}}


@app.post("/api/orders/enhanced", status_code=201, dependencies=[Depends(require_internal_token)])
def create_order(body: dict):
    with _lock:
        CALLS["create_order"] += 1
        _fail("create_order")
        order_id = next(_ids)
        ORDERS[order_id] = {**body, "id": order_id, "orderNumber": f"ORD-{order_id:06d}"}
    logging.info(f"[SHOP] Bestellung {order_id} erstellt ({body.get('externalOrderId')}).")
    return {"success": True, "order": ORDERS[order_id]}


@app.patch("/api/orders/{order_id}/sync-data", dependencies=[Depends(require_internal_token)])
def update_sync_data(order_id: int, body: dict):
    with _lock:
        CALLS["sync_data"] += 1
        _fail("sync_data")
        if order_id not in ORDERS:
            raise HTTPException(status_code=404, detail={"message": "Order not found"})
        ORDERS[order_id].update(body)
    return {"success": True, "order": ORDERS[order_id]}


@app.post("/api/orders/{order_id}/status", dependencies=[Depends(require_internal_token)])
def change_status(order_id: int, body: dict):
    with _lock:
        order = ORDERS.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail={"message": "Order not found"})
        previous_status = order.get("status")
        order["status"] = str(body.get("status", "")).upper()
    if PUBLISH_STATUS_EVENTS:
        threading.Thread(target=publish_status_event, args=(dict(order), previous_status), daemon=True).start()
    return {"success": True, "order": order}


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=5000)

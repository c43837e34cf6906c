"""
mock_crm.py — Mock Implementation of the SendPulse CRM and Bot Variable API (REST API)

This module provides a simulated SendPulse account for testing the sync service.
It keeps contacts, deals, attached products, comments and bot variables in memory.

Simulation Scenarios (add the name to ``FAILURES``):
    • "auth":            token endpoint answers 401
    • "contact_lookup":  contact lookups answer 500
    • "contact_create":  contact creation answers 500
    • "deal_create":     deal creation answers 500
    • "deal_no_id":      deal creation answers 200 without an id
    • "deal_update":     deal update answers 500
    • "set_variable":    bot variable API answers 500
    Products listed in ``FAILING_PRODUCTS`` cannot be attached to deals (HTTP 422).
    ``expire_tokens()`` invalidates all issued tokens (next call gets a 401).

Endpoints:
    POST /oauth/access_token
    GET  /crm/v1/contacts/messenger-external/{external_id}
    POST /crm/v1/contacts/get-list
    POST /crm/v1/contacts/create
    POST /crm/v1/deals
    GET  /crm/v1/deals/{deal_id}
    PUT  /crm/v1/deals/{deal_id}
    POST /crm/v1/deals/{deal_id}/comments
    POST /crm/v1/products/deals
    POST /{bot}/contacts/setVariable

Port:
    Default: 8010 (HTTP)
"""

import itertools
import logging
import threading
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock SendPulse CRM")
logging.basicConfig(level=logging.INFO)

CONTACTS = {}
DEALS = {}
DEAL_PRODUCTS = {}
DEAL_COMMENTS = {}
VARIABLES = {}
ISSUED_TOKENS = set()
FAILURES = set()
FAILING_PRODUCTS = set()
CALLS = {"auth": 0, "contact_create": 0, "deal_create": 0, "attach": 0}

_lock = threading.Lock()
_ids = itertools.count(1000)


def reset():
    """Clears all state and scenarios."""
    global _ids
    with _lock:
        for store in (CONTACTS, DEALS, DEAL_PRODUCTS, DEAL_COMMENTS, VARIABLES):
            store.clear()
        ISSUED_TOKENS.clear()
        FAILURES.clear()
        FAILING_PRODUCTS.clear()
        for key in CALLS:
            CALLS[key] = 0
        _ids = itertools.count(1000)


def expire_tokens():
    with _lock:
        ISSUED_TOKENS.clear()


def seed_contact(first_name: str, last_name: str = "", phone: Optional[str] = None,
                 messenger_external_id: Optional[str] = None) -> dict:
    """Adds a contact that already exists in the CRM (e.g. created by the bot platform)."""
    with _lock:
        contact_id = next(_ids)
        CONTACTS[contact_id] = {
            "id": contact_id,
            "firstName": first_name,
            "lastName": last_name,
            "phones": [{"phone": phone}] if phone else [],
            "emails": [],
            "messengerExternalId": messenger_external_id,
        }
        return CONTACTS[contact_id]


def _fail(scenario: str, status_code: int = 500):
    if scenario in FAILURES:
        logging.warning(f"[CRM] Simulierter Fehler: {scenario}")
        raise HTTPException(status_code=status_code, detail={"message": f"simulated failure: {scenario}"})


def require_token(authorization: Optional[str] = Header(default=None)):
    token = (authorization or "").removeprefix("Bearer ").strip()
    if token not in ISSUED_TOKENS:
        raise HTTPException(status_code=401, detail={"message": "Unauthorized"})


class TokenRequest(BaseModel):
    grant_type: str
    client_id: str
    client_secret: str


@app.post("/oauth/access_token")
def access_token(request: TokenRequest):
    with _lock:
        CALLS["auth"] += 1
        _fail("auth", 401)
        token = f"mock-token-{CALLS['auth']}"
        ISSUED_TOKENS.add(token)
    logging.info(f"[CRM] Token ausgegeben an {request.client_id}.")
    return {"access_token": token, "token_type": "Bearer", "expires_in": 3600}


@app.get("/crm/v1/contacts/messenger-external/{external_id}", dependencies=[Depends(require_token)])
def contact_by_messenger_id(external_id: str):
    _fail("contact_lookup")
    for contact in CONTACTS.values():
        if contact.get("messengerExternalId") == external_id:
            return {"success": True, "data": contact}
    raise HTTPException(status_code=404, detail={"message": "Contact not found"})


@app.post("/crm/v1/contacts/get-list", dependencies=[Depends(require_token)])
def contacts_by_phone(body: dict):
    _fail("contact_lookup")
    phone = body.get("phone")
    found = [c for c in CONTACTS.values() if any(p.get("phone") == phone for p in c["phones"])]
    return {"success": True, "data": {"list": found[: body.get("limit", 10)], "total": len(found)}}


@app.post("/crm/v1/contacts/create", dependencies=[Depends(require_token)])
def create_contact(body: dict):
    with _lock:
        CALLS["contact_create"] += 1
        _fail("contact_create")
        contact_id = next(_ids)
        CONTACTS[contact_id] = {
            "id": contact_id,
            "firstName": body.get("firstName"),
            "lastName": body.get("lastName"),
            "phones": body.get("phones") or [],
            "emails": body.get("emails") or [],
            "attributes": body.get("attributes") or [],
            "messengerExternalId": body.get("messengerExternalId"),
        }
    logging.info(f"[CRM] Kontakt {contact_id} erstellt.")
    return {"success": True, "data": CONTACTS[contact_id]}


@app.post("/crm/v1/deals", dependencies=[Depends(require_token)])
def create_deal(body: dict):
    with _lock:
        CALLS["deal_create"] += 1
        _fail("deal_create")
        if "deal_no_id" in FAILURES:
            return {"success": True, "data": {}}
        deal_id = next(_ids)
        DEALS[deal_id] = {**body, "id": deal_id}
        DEAL_PRODUCTS[deal_id] = []
    logging.info(f"[CRM] Deal {deal_id} erstellt: {body.get('name')}")
    return {"success": True, "data": DEALS[deal_id]}


def _get_deal(deal_id: int) -> dict:
    if deal_id not in DEALS:
        raise HTTPException(status_code=404, detail={"message": "Deal not found"})
    return DEALS[deal_id]


@app.get("/crm/v1/deals/{deal_id}", dependencies=[Depends(require_token)])
def get_deal(deal_id: int):
    return {"success": True, "data": _get_deal(deal_id)}


@app.put("/crm/v1/deals/{deal_id}", dependencies=[Depends(require_token)])
def update_deal(deal_id: int, body: dict):
    _fail("deal_update")
    with _lock:
        deal = _get_deal(deal_id)
        deal.update(body)
    return {"success": True, "data": deal}


@app.post("/crm/v1/deals/{deal_id}/comments", dependencies=[Depends(require_token)])
def add_comment(deal_id: int, body: dict):
    _get_deal(deal_id)
    with _lock:
        DEAL_COMMENTS.setdefault(deal_id, []).append(body.get("text"))
    return {"success": True}


@app.post("/crm/v1/products/deals", dependencies=[Depends(require_token)])
def attach_product(body: dict):
    with _lock:
        CALLS["attach"] += 1
        deal_id = body.get("dealId")
        if deal_id not in DEAL_PRODUCTS:
            raise HTTPException(status_code=404, detail={"message": "Deal not found"})
        if body.get("productId") in FAILING_PRODUCTS:
            logging.warning(f"[CRM] Produkt {body.get('productId')} kann nicht angehängt werden.")
            raise HTTPException(status_code=422, detail={"message": "Product is archived"})
        DEAL_PRODUCTS[deal_id].append(body)
    return {"success": True}


@app.post("/{bot}/contacts/setVariable", dependencies=[Depends(require_token)])
def set_variable(bot: str, body: dict):
    _fail("set_variable")
    with _lock:
        variables = VARIABLES.setdefault((bot, str(body.get("contact_id"))), {})
        for variable in body.get("variables") or []:
            variables[variable["variable_name"]] = variable["variable_value"]
    return {"success": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8010)

"""
contacts.py — Contact Resolver

Resolves the chat identity of a bot order to a CRM contact. The lookup order is
the tuple ``CONTACT_STRATEGIES``; each strategy is a plain function
``(crm, request) -> Contact | None``. When every strategy misses, a new contact
is created from the best available name fields.
"""

import logging
from typing import Callable, Optional, Sequence, Tuple

from .errors import ContactCreationFailed, ContactResolutionFailed, UpstreamError
from .models import Contact, OrderRequest
from .ports import CrmGateway

log = logging.getLogger(__name__)

ContactStrategy = Callable[[CrmGateway, OrderRequest], Optional[Contact]]


def by_messenger_external_id(crm: CrmGateway, request: OrderRequest) -> Optional[Contact]:
    """Bot-platform contact id; a 404 from the CRM is a miss, not an error."""
    external_id = request.external_contact_id
    if not external_id:
        return None
    data = crm.find_contact_by_messenger_id(external_id)
    if not data:
        return None
    return Contact.from_crm(data, external_id)


def by_phone(crm: CrmGateway, request: OrderRequest) -> Optional[Contact]:
    phone = (request.customer.phone or "").strip()
    if not phone:
        return None
    for data in crm.find_contacts_by_phone(phone):
        if isinstance(data, dict) and data.get("id") is not None:
            return Contact.from_crm(data, request.external_contact_id)
    return None


CONTACT_STRATEGIES: Tuple[ContactStrategy, ...] = (
    by_messenger_external_id,
    by_phone,
)


def contact_name_for(request: OrderRequest) -> Tuple[str, str]:
    """
    Picks (first name, last name) for a new contact.

    first: customer first name -> first word of the bot's fullname -> source name
    last:  customer last name  -> rest of the bot's fullname    -> "User"
    """
    fullname = (request.order_attributes.fullname or "").split()
    first = request.customer.first_name or (fullname[0] if fullname else None) or request.source.capitalize()
    last = request.customer.last_name or (" ".join(fullname[1:]) if len(fullname) > 1 else None) or "User"
    return first.strip(), last.strip()


class ContactResolver:
    """
    Applies the lookup strategies in order and creates the contact as last resort.
    """

    def __init__(self, crm: CrmGateway, strategies: Sequence[ContactStrategy] = CONTACT_STRATEGIES,
                 source_tag_suffix: str = "-bot"):
        self.crm = crm
        self.strategies = tuple(strategies)
        self.source_tag_suffix = source_tag_suffix

    def resolve(self, request: OrderRequest, order_ref: str = "-") -> Contact:
        """
        Returns the CRM contact of the requester.

        Raises:
            ContactResolutionFailed: A lookup failed for another reason than "not found".
            ContactCreationFailed: The contact could not be created.
        """
        for strategy in self.strategies:
            try:
                contact = strategy(self.crm, request)
            except UpstreamError as e:
                log.error(f"[Order: {order_ref}] Kontaktsuche '{strategy.__name__}' fehlgeschlagen: {e}")
                raise ContactResolutionFailed(
                    f"Contact lookup '{strategy.__name__}' failed: {e}",
                    details={"strategy": strategy.__name__, "status_code": e.status_code},
                ) from e
            if contact is not None:
                log.info(f"[Order: {order_ref}] Kontakt {contact.id} gefunden ({strategy.__name__}).")
                return contact

        return self._create(request, order_ref)

    def _create(self, request: OrderRequest, order_ref: str) -> Contact:
        first_name, last_name = contact_name_for(request)
        source_tag = f"{request.source}{self.source_tag_suffix}"
        try:
            data = self.crm.create_contact(
                first_name=first_name,
                last_name=last_name,
                phone=request.customer.phone or None,
                email=request.customer.email or None,
                source=source_tag,
                messenger_external_id=request.external_contact_id,
            )
        except UpstreamError as e:
            log.error(f"[Order: {order_ref}] Kontakt konnte nicht erstellt werden: {e}")
            raise ContactCreationFailed(f"Contact creation failed: {e}", details={"status_code": e.status_code}) from e

        if not isinstance(data, dict) or data.get("id") is None:
            log.error(f"[Order: {order_ref}] CRM-Antwort ohne Kontakt-ID: {data}")
            raise ContactCreationFailed("Contact creation response contained no id", details={"response": data})

        contact = Contact.from_crm(data, request.external_contact_id)
        if not contact.first_name:
            contact = contact.model_copy(update={"first_name": first_name, "last_name": last_name})
        log.info(f"[Order: {order_ref}] Neuer Kontakt {contact.id} erstellt ({first_name} {last_name}, {source_tag}).")
        return contact

"""
storage.py — Local Persistence of the Sync Service (SQLAlchemy 2)

Three tables live in the service's own database:
    • product_mappings — catalog product id ↔ CRM product id (read by the saga,
      written by the admin endpoints)
    • sync_logs        — append-only sync ledger, diagnostics only
    • bot_orders       — tracking record per bot order (bot id ↔ shop id ↔ deal id)

The ledger never raises; the other stores wrap database errors into
``UpstreamError("database", ...)`` so callers deal with a single error type.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Float, Integer, String, Text, TIMESTAMP, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import UpstreamError
from .models import BotOrderRecord, ProductMapping, SyncLedgerEntry

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProductMappingRow(Base):
    __tablename__ = "product_mappings"
    id: Mapped[int] = mapped_column(primary_key=True)
    catalog_product_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    crm_product_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    sync_status: Mapped[str] = mapped_column(String(16), default="ACTIVE")
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)


class SyncLogRow(Base):
    __tablename__ = "sync_logs"
    id: Mapped[int] = mapped_column(primary_key=True)
    operation: Mapped[str] = mapped_column(String(32), index=True)
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16))  # SUCCESS|FAILED
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow)


class BotOrderRow(Base):
    __tablename__ = "bot_orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    bot_order_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    source: Mapped[str] = mapped_column(String(16))
    chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact_external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    total_amount: Mapped[float] = mapped_column(Float)
    ecommerce_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    crm_deal_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    crm_contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    products: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), default="PENDING")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)


def create_session_factory(database_url: str):
    """
    Creates a SQLAlchemy 2 session factory.

    In-memory SQLite (``sqlite://``) gets a single shared connection so that
    worker threads see the same database.

    Args:
        database_url (str): Full database URL (postgresql+psycopg://... or sqlite://...).

    Returns:
        sessionmaker: Configured factory; its engine is reachable via ``factory.kw["bind"]``.
    """
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(session_factory) -> None:
    """Creates all tables that do not exist yet."""
    Base.metadata.create_all(session_factory.kw["bind"])


class ProductMappingStore:
    """Catalog ↔ CRM product mapping, unique on the catalog product id."""

    def __init__(self, session_factory):
        self.Session = session_factory

    def get(self, catalog_product_id: int) -> Optional[ProductMapping]:
        try:
            with self.Session() as s:
                row = s.execute(
                    select(ProductMappingRow).where(ProductMappingRow.catalog_product_id == int(catalog_product_id))
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"product mapping lookup failed: {e}") from e
        if row is None:
            log.warning(f"Produkt-Mapping nicht gefunden (Katalog-ID: {catalog_product_id}).")
            return None
        return ProductMapping.model_validate(row)

    def find_by_name(self, text: str) -> Optional[ProductMapping]:
        """
        Finds the active mapping whose name best matches a free-text product name.

        A mapping matches when its name is contained in the text or vice versa
        (case-insensitive); the longest matching name wins.
        """
        needle = (text or "").strip().casefold()
        if not needle:
            return None
        best = None
        for mapping in self.list_all():
            if mapping.sync_status != "ACTIVE":
                continue
            name = mapping.name.casefold()
            if name in needle or needle in name:
                if best is None or len(mapping.name) > len(best.name):
                    best = mapping
        return best

    def list_all(self) -> list[ProductMapping]:
        try:
            with self.Session() as s:
                rows = s.execute(select(ProductMappingRow).order_by(ProductMappingRow.catalog_product_id)).scalars().all()
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"product mapping listing failed: {e}") from e
        return [ProductMapping.model_validate(r) for r in rows]

    def upsert(self, catalog_product_id: int, crm_product_id: int, name: str) -> ProductMapping:
        """Creates or updates the mapping of one catalog product (administrative)."""
        try:
            with self.Session() as s, s.begin():
                row = s.execute(
                    select(ProductMappingRow).where(ProductMappingRow.catalog_product_id == int(catalog_product_id))
                ).scalar_one_or_none()
                if row is None:
                    row = ProductMappingRow(catalog_product_id=int(catalog_product_id))
                    s.add(row)
                row.crm_product_id = int(crm_product_id)
                row.name = name
                row.sync_status = "ACTIVE"
                row.last_synced_at = _utcnow()
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"product mapping upsert failed: {e}") from e
        log.info(f"Produkt-Mapping gespeichert: {catalog_product_id} -> {crm_product_id} ({name}).")
        return ProductMapping.model_validate(row)


class SyncLedger:
    """
    Append-only record of every synchronization attempt.

    Used for diagnostics and reconciliation only. ``record()`` never raises:
    losing an audit row must not fail an order.
    """

    def __init__(self, session_factory):
        self.Session = session_factory

    def record(self, operation: str, entity_id: Any, outcome: str, message: str = "",
               *, entity_type: str = "order", details: Optional[dict] = None) -> None:
        try:
            payload = json.loads(json.dumps(details, default=str)) if details is not None else None
            with self.Session() as s, s.begin():
                s.add(SyncLogRow(
                    operation=operation,
                    entity_type=entity_type,
                    entity_id=str(entity_id) if entity_id is not None else None,
                    status=outcome,
                    message=message,
                    details=payload,
                ))
        except Exception as e:
            log.warning(f"Sync-Ledger-Eintrag verloren ({operation}/{outcome}, {entity_id}): {e}")

    def entries(self, entity_id: Any = None, operation: Optional[str] = None) -> list[SyncLedgerEntry]:
        stmt = select(SyncLogRow).order_by(SyncLogRow.id)
        if entity_id is not None:
            stmt = stmt.where(SyncLogRow.entity_id == str(entity_id))
        if operation is not None:
            stmt = stmt.where(SyncLogRow.operation == operation)
        with self.Session() as s:
            return [SyncLedgerEntry.model_validate(r) for r in s.execute(stmt).scalars().all()]


class BotOrderStore:
    """Tracking records of bot orders, keyed by the bot order id."""

    def __init__(self, session_factory):
        self.Session = session_factory

    def save(self, **fields) -> BotOrderRecord:
        for key in ("ecommerce_order_id", "crm_deal_id", "crm_contact_id"):
            if fields.get(key) is not None:
                fields[key] = str(fields[key])
        try:
            with self.Session() as s, s.begin():
                row = BotOrderRow(**fields)
                s.add(row)
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"bot order tracking write failed: {e}") from e
        return BotOrderRecord.model_validate(row)

    def get(self, bot_order_id: str) -> Optional[BotOrderRecord]:
        try:
            with self.Session() as s:
                row = s.execute(select(BotOrderRow).where(BotOrderRow.bot_order_id == bot_order_id)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"bot order lookup failed: {e}") from e
        return BotOrderRecord.model_validate(row) if row else None

    def find_by_ecommerce_order(self, order_id: Any) -> Optional[BotOrderRecord]:
        try:
            with self.Session() as s:
                row = s.execute(
                    select(BotOrderRow).where(BotOrderRow.ecommerce_order_id == str(order_id)).order_by(BotOrderRow.id.desc())
                ).scalars().first()
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"bot order lookup failed: {e}") from e
        return BotOrderRecord.model_validate(row) if row else None

    def update_status(self, bot_order_id: str, status: str, notes: Optional[str] = None) -> None:
        try:
            with self.Session() as s, s.begin():
                row = s.execute(select(BotOrderRow).where(BotOrderRow.bot_order_id == bot_order_id)).scalar_one_or_none()
                if row is None:
                    raise UpstreamError("database", f"bot order {bot_order_id} not found", status_code=404)
                row.status = status
                if notes is not None:
                    row.notes = notes
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"bot order status update failed: {e}") from e

    def list_by_chat(self, chat_id: str, source: Optional[str] = None, limit: int = 10) -> list[BotOrderRecord]:
        """Most recent bot orders of one chat, newest first."""
        query = select(BotOrderRow).where(BotOrderRow.chat_id == str(chat_id))
        if source:
            query = query.where(BotOrderRow.source == source)
        query = query.order_by(BotOrderRow.created_at.desc(), BotOrderRow.id.desc()).limit(limit)
        try:
            with self.Session() as s:
                rows = s.execute(query).scalars().all()
        except SQLAlchemyError as e:
            raise UpstreamError("database", f"bot order history lookup failed: {e}") from e
        return [BotOrderRecord.model_validate(row) for row in rows]

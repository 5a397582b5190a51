"""Persistence backends for lead state and the sales pipeline."""
from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy import JSON, Column, Integer, MetaData, String, Table, create_engine, delete, insert, select, update
from sqlalchemy.engine import Engine

from .schema import validate_state

LOGGER = logging.getLogger(__name__)


class StateStore(Protocol):
    """Persistent lead-state storage consumed by the hub."""

    def get_lead_state(self, phone_number: str) -> Optional[Dict[str, Any]]:  # pragma: no cover - protocol
        """Return the stored state or ``None`` when the contact is unknown."""

    def save_lead_state(self, state: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        """Persist a canonical state keyed by its ``phone_number``."""

    def delete_lead_state(self, phone_number: str) -> bool:  # pragma: no cover - protocol
        """Remove the stored state, returning whether anything was deleted."""


class PipelineRepository(Protocol):
    """Sales pipeline/CRM store updated when a conversation changes hands."""

    def upsert(self, phone_number: str, fields: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        """Create or update the pipeline row for ``phone_number``."""


# ----------------------------------------------------------------------
# In-memory implementations
# ----------------------------------------------------------------------
class InMemoryStateStore:
    """Process-local store; states are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._states: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_lead_state(self, phone_number: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            state = self._states.get(phone_number)
            return copy.deepcopy(state) if state is not None else None

    def save_lead_state(self, state: Mapping[str, Any]) -> None:
        validate_state(state)
        snapshot = copy.deepcopy(dict(state))
        with self._lock:
            self._states[snapshot["phone_number"]] = snapshot
        LOGGER.debug(
            "Saved state for %s (agent: %s, messages: %s)",
            snapshot["phone_number"],
            snapshot.get("current_agent"),
            snapshot.get("message_count"),
        )

    def delete_lead_state(self, phone_number: str) -> bool:
        with self._lock:
            return self._states.pop(phone_number, None) is not None


class InMemoryPipelineRepository:
    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def upsert(self, phone_number: str, fields: Mapping[str, Any]) -> None:
        with self._lock:
            self.rows.setdefault(phone_number, {"phone_number": phone_number}).update(fields)


# ----------------------------------------------------------------------
# SQL implementations
# ----------------------------------------------------------------------
_METADATA = MetaData()

LEAD_STATES = Table(
    "lead_states",
    _METADATA,
    Column("phone_number", String(32), primary_key=True),
    Column("current_agent", String(32), nullable=False, index=True),
    Column("message_count", Integer, nullable=False, default=0),
    Column("document", JSON, nullable=False),
    Column("updated_at", String(40), nullable=False, index=True),
)

LEAD_PIPELINE = Table(
    "lead_pipeline",
    _METADATA,
    Column("phone_number", String(32), primary_key=True),
    Column("stage_id", String(64), nullable=True),
    Column("stage_entered_at", String(40), nullable=True),
    Column("current_agent", String(32), nullable=True),
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _create_engine(url: str) -> Engine:
    return create_engine(url, future=True)


class SqlStateStore:
    """Lead-state store backed by SQLAlchemy (SQLite by default)."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        _METADATA.create_all(engine, tables=[LEAD_STATES])

    @classmethod
    def from_url(cls, url: str = "sqlite:///agent_hub.db") -> "SqlStateStore":
        return cls(_create_engine(url))

    @property
    def engine(self) -> Engine:
        return self._engine

    def get_lead_state(self, phone_number: str) -> Optional[Dict[str, Any]]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(LEAD_STATES.c.document).where(LEAD_STATES.c.phone_number == phone_number)
            ).first()
        if row is None:
            LOGGER.debug("No stored state for %s", phone_number)
            return None
        return dict(row.document)

    def save_lead_state(self, state: Mapping[str, Any]) -> None:
        validate_state(state)
        document = copy.deepcopy(dict(state))
        values = {
            "current_agent": document["current_agent"],
            "message_count": int(document.get("message_count") or 0),
            "document": document,
            "updated_at": _utc_now(),
        }
        with self._engine.begin() as conn:
            result = conn.execute(
                update(LEAD_STATES).where(LEAD_STATES.c.phone_number == document["phone_number"]).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(LEAD_STATES).values(phone_number=document["phone_number"], **values))
        LOGGER.debug(
            "Saved state for %s (agent: %s, messages: %s)",
            document["phone_number"],
            values["current_agent"],
            values["message_count"],
        )

    def delete_lead_state(self, phone_number: str) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(delete(LEAD_STATES).where(LEAD_STATES.c.phone_number == phone_number))
        return result.rowcount > 0


class SqlPipelineRepository:
    """Pipeline stage table updated on every hand-off."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        _METADATA.create_all(engine, tables=[LEAD_PIPELINE])

    def upsert(self, phone_number: str, fields: Mapping[str, Any]) -> None:
        values = {key: fields[key] for key in ("stage_id", "stage_entered_at", "current_agent") if key in fields}
        with self._engine.begin() as conn:
            result = conn.execute(
                update(LEAD_PIPELINE).where(LEAD_PIPELINE.c.phone_number == phone_number).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(LEAD_PIPELINE).values(phone_number=phone_number, **values))


__all__ = [
    "InMemoryPipelineRepository",
    "InMemoryStateStore",
    "PipelineRepository",
    "SqlPipelineRepository",
    "SqlStateStore",
    "StateStore",
]

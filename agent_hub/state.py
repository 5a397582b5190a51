"""Load and persist canonical lead states on top of a :class:`StateStore`."""
from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Mapping

from .merge import deep_merge
from .schema import CANONICAL_FIELDS, LEAD_STATE_SCHEMA, create_initial_state, utc_now_iso
from .store import StateStore

LOGGER = logging.getLogger(__name__)


class LeadStateManager:
    """Single entry point for reading and writing lead state.

    Every saved state is ``deep_merge(deepcopy(LEAD_STATE_SCHEMA), state)``.
    Top-level fields outside the schema are moved into
    ``metadata.agent_data`` on save and put back at top level on load, so
    agents can keep reading the fields they wrote.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        max_handoff_history: int = 10,
        max_context_switches: int = 20,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._store = store
        self._max_handoff_history = max_handoff_history
        self._max_context_switches = max_context_switches
        self._now = now

    @property
    def store(self) -> StateStore:
        return self._store

    def create_initial_state(self, phone_number: str) -> Dict[str, Any]:
        return create_initial_state(phone_number, now=self._now())

    def load(self, phone_number: str) -> Dict[str, Any]:
        """Return the state for ``phone_number``, creating defaults when absent."""

        stored = self._store.get_lead_state(phone_number)
        if stored is None:
            LOGGER.info("Creating new lead state for %s", phone_number)
            return self.create_initial_state(phone_number)

        state = dict(stored)
        metadata = state.get("metadata")
        if not isinstance(metadata, Mapping):
            metadata = {}
        metadata = dict(metadata)
        if not isinstance(metadata.get("handoff_history"), list):
            metadata["handoff_history"] = []
        state["metadata"] = metadata

        agent_data = metadata.get("agent_data")
        if isinstance(agent_data, Mapping):
            for key, value in agent_data.items():
                if key not in CANONICAL_FIELDS and key not in state:
                    state[key] = value
        return state

    def canonicalize(self, phone_number: str, state: Mapping[str, Any]) -> Dict[str, Any]:
        working = dict(state)
        metadata = dict(working.get("metadata") or {})
        history = list(metadata.get("handoff_history") or [])
        if len(history) > self._max_handoff_history:
            history = history[-self._max_handoff_history:]
        metadata["handoff_history"] = history
        working["metadata"] = metadata

        switches = working.get("context_switches")
        if isinstance(switches, list) and len(switches) > self._max_context_switches:
            working["context_switches"] = switches[-self._max_context_switches:]

        canonical = deep_merge(copy.deepcopy(LEAD_STATE_SCHEMA), working, 5)
        canonical["phone_number"] = phone_number

        extras = {key: canonical.pop(key) for key in list(canonical) if key not in CANONICAL_FIELDS}
        if extras:
            agent_data = dict(canonical["metadata"].get("agent_data") or {})
            agent_data.update(extras)
            canonical["metadata"]["agent_data"] = agent_data
            LOGGER.debug("Moved %s legacy field(s) into agent_data for %s", len(extras), phone_number)

        canonical["metadata"]["updated_at"] = self._now()
        if not canonical["metadata"].get("created_at"):
            canonical["metadata"]["created_at"] = canonical["metadata"]["updated_at"]
        return canonical

    def save(self, phone_number: str, state: Mapping[str, Any]) -> Dict[str, Any]:
        """Canonicalize and persist ``state``; return the stored document."""

        canonical = self.canonicalize(phone_number, state)
        self._store.save_lead_state(canonical)
        return canonical

    def reset(self, phone_number: str) -> Dict[str, Any]:
        """Overwrite the stored state with fresh defaults."""

        state = self.create_initial_state(phone_number)
        self._store.save_lead_state(state)
        LOGGER.info("Conversation reset for %s", phone_number)
        return state


__all__ = ["LeadStateManager"]

"""Canonical lead-state schema shared by the hub and every state store."""
from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .models import AGENT_NAMES, AgentName


class InvalidStateError(ValueError):
    """Raised when a lead state does not satisfy the canonical schema."""


SCHEDULER_STAGES = ("collecting_email", "proposing_times", "negotiating", "confirmed")
BANT_STAGES = ("need", "budget", "authority", "timing")

LEAD_STATE_SCHEMA: Dict[str, Any] = {
    # identity
    "phone_number": None,
    # routing
    "current_agent": AgentName.SDR,
    "previous_agent": None,
    "message_count": 0,
    "context_switches": [],
    "last_message": None,
    "last_update": None,
    # collected by the SDR
    "company_profile": {
        "name": None,
        "company": None,
        "sector": None,
    },
    # managed by the specialist
    "bant_stages": {
        "current_stage": "need",
        "stage_index": 0,
        "is_complete": False,
        "stage_data": {
            stage: {"fields": {}, "attempts": 0, "last_update": None} for stage in BANT_STAGES
        },
        "conversation_history": [],
    },
    # managed by the scheduler
    "scheduler": {
        "stage": None,
        "lead_email": None,
        "proposed_slots": [],
        "selected_slot": None,
        "meeting_data": {
            "event_id": None,
            "meet_link": None,
            "confirmed_at": None,
        },
    },
    "metadata": {
        "created_at": None,
        "updated_at": None,
        "last_message_at": None,
        "handoff_history": [],
        "introduction_sent": False,
        "bant_complete": False,
        "meeting_scheduled": False,
        "agent_data": {},
    },
}

CANONICAL_FIELDS = frozenset(LEAD_STATE_SCHEMA)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_initial_state(phone_number: str, *, now: Optional[str] = None) -> Dict[str, Any]:
    """Return a fresh canonical state for ``phone_number``."""

    timestamp = now or utc_now_iso()
    state = copy.deepcopy(LEAD_STATE_SCHEMA)
    state["phone_number"] = phone_number
    state["metadata"]["created_at"] = timestamp
    state["metadata"]["updated_at"] = timestamp
    return state


def validation_errors(state: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []
    if not state.get("phone_number"):
        errors.append("phone_number is required")
    if state.get("current_agent") not in AGENT_NAMES:
        errors.append(f"Invalid current_agent: {state.get('current_agent')} (valid: {', '.join(AGENT_NAMES)})")
    scheduler = state.get("scheduler")
    if isinstance(scheduler, Mapping) and scheduler.get("stage") and scheduler["stage"] not in SCHEDULER_STAGES:
        errors.append(f"Invalid scheduler stage: {scheduler['stage']}")
    return errors


def validate_state(state: Mapping[str, Any]) -> None:
    errors = validation_errors(state)
    if errors:
        raise InvalidStateError(f"Invalid state for {state.get('phone_number')}: {', '.join(errors)}")


__all__ = [
    "CANONICAL_FIELDS",
    "InvalidStateError",
    "LEAD_STATE_SCHEMA",
    "SCHEDULER_STAGES",
    "create_initial_state",
    "utc_now_iso",
    "validate_state",
    "validation_errors",
]

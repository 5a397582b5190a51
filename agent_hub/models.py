"""Unified data models exchanged between the hub, its agents, and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


# --- Agent names ---

class AgentName:
    """Conversational roles known to the canonical lead state."""

    SDR = "sdr"
    SPECIALIST = "specialist"
    SCHEDULER = "scheduler"
    ATENDIMENTO = "atendimento"


AGENT_NAMES = (AgentName.SDR, AgentName.SPECIALIST, AgentName.SCHEDULER, AgentName.ATENDIMENTO)


# --- Inbound models ---

@dataclass(slots=True)
class InboundMessage:
    """Message received from a contact."""

    from_contact: str
    text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "InboundMessage":
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            return cls(
                from_contact=value.get("from_contact") or value.get("from") or "",
                text=value.get("text") or "",
                metadata=dict(value.get("metadata") or {}),
            )
        raise TypeError(f"Cannot build an InboundMessage from {type(value).__name__}")


@dataclass(slots=True)
class IntentResult:
    """Classification produced by the external intent classifier."""

    intent: str = "unknown"
    confidence: float = 0.0
    target_mode: Optional[str] = None
    should_switch: bool = False
    is_special_intent: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "IntentResult":
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            return cls(
                intent=value.get("intent") or "unknown",
                confidence=float(value.get("confidence") or 0.0),
                target_mode=value.get("target_mode"),
                should_switch=bool(value.get("should_switch", False)),
                is_special_intent=bool(value.get("is_special_intent", False)),
                metadata=dict(value.get("metadata") or {}),
            )
        raise TypeError(f"Cannot build an IntentResult from {type(value).__name__}")


# --- Agent results ---

class HandoffMode(str, Enum):
    """Whether the triggering message is replayed through the receiving agent."""

    SILENT = "silent"
    REPLAY = "replay"


@dataclass
class HandoffRequest:
    """Request from an agent to transfer the conversation to ``next_agent``."""

    next_agent: str
    data: Dict[str, Any] = field(default_factory=dict)
    mode: HandoffMode = HandoffMode.REPLAY
    original_message: Optional[str] = None

    @classmethod
    def silent(cls, next_agent: str, data: Optional[Dict[str, Any]] = None) -> "HandoffRequest":
        return cls(next_agent=next_agent, data=dict(data or {}), mode=HandoffMode.SILENT)

    @classmethod
    def replay(
        cls, next_agent: str, original_message: str, data: Optional[Dict[str, Any]] = None
    ) -> "HandoffRequest":
        return cls(
            next_agent=next_agent,
            data=dict(data or {}),
            mode=HandoffMode.REPLAY,
            original_message=original_message,
        )

    @property
    def replay_message(self) -> Optional[str]:
        if self.mode is HandoffMode.REPLAY and self.original_message:
            return self.original_message
        return None

    @property
    def reason(self) -> str:
        return str(self.data.get("reason") or "unknown")


@dataclass
class AgentResult:
    """Normalised response returned by an agent's ``process`` call."""

    message: Optional[str] = None
    success: bool = True
    handoff: Optional[HandoffRequest] = None
    update_state: Optional[Dict[str, Any]] = None
    should_return: bool = False
    return_to: Optional[str] = None
    follow_up_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "AgentResult":
        """Accept an :class:`AgentResult` or the loose mapping shape legacy agents emit."""

        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if not isinstance(value, Mapping):
            raise TypeError(f"Cannot build an AgentResult from {type(value).__name__}")

        handoff = value.get("handoff")
        if handoff is True:
            data = dict(value.get("handoff_data") or {})
            context = data.get("context_from_sdr") or {}
            if value.get("silent"):
                handoff = HandoffRequest.silent(value.get("next_agent") or "", data)
            else:
                handoff = HandoffRequest(
                    next_agent=value.get("next_agent") or "",
                    data=data,
                    mode=HandoffMode.REPLAY,
                    original_message=context.get("lead_message") if isinstance(context, Mapping) else None,
                )
        elif not isinstance(handoff, HandoffRequest):
            handoff = None

        return cls(
            message=value.get("message"),
            success=value.get("success", True) is not False,
            handoff=handoff,
            update_state=value.get("update_state"),
            should_return=bool(value.get("should_return", False)),
            return_to=value.get("return_to"),
            follow_up_message=value.get("follow_up_message"),
            metadata=dict(value.get("metadata") or {}),
        )


@dataclass
class HandoffInit:
    """Result of a receiving agent's ``on_handoff_received`` hook."""

    message: Optional[str] = None
    update_state: Optional[Dict[str, Any]] = None
    follow_up_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "HandoffInit":
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if isinstance(value, Mapping):
            return cls(
                message=value.get("message"),
                update_state=value.get("update_state"),
                follow_up_message=value.get("follow_up_message"),
                metadata=dict(value.get("metadata") or {}),
            )
        raise TypeError(f"Cannot build a HandoffInit from {type(value).__name__}")


@dataclass
class AgentContext:
    """Context bundle handed to an agent together with the message."""

    lead_state: Dict[str, Any]
    intent_result: IntentResult
    suggested_action: str = "continue_flow"
    risk_analysis: Dict[str, Any] = field(default_factory=lambda: {"at_risk": False})
    optimized_prompt: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


# --- Lock models ---

@dataclass(slots=True)
class LockResult:
    """Outcome of a lock acquisition attempt."""

    acquired: bool
    lock_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class LockStatus:
    """Non-blocking view of a contact's lock."""

    locked: bool
    operation: Optional[str] = None
    age: Optional[float] = None
    lock_id: Optional[str] = None
    expired: bool = False


# --- Routing & hub results ---

@dataclass(slots=True)
class RouteDecision:
    """Agent chosen by the router for the current turn."""

    target_agent: str
    switched: bool = False
    reverted: bool = False
    threshold: float = 0.0


@dataclass
class HubResult:
    """Response returned by the hub to its callers."""

    success: bool
    message: Optional[str] = None
    agent: Optional[str] = None
    follow_up_message: Optional[str] = None
    lead_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    handoff_completed: bool = False
    handoff_failed: bool = False
    pre_handoff_message: Optional[str] = None
    handoff_init_message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        """Return a serialisable representation, omitting unset optional fields."""
        payload: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "lead_state": self.lead_state,
            "metadata": dict(self.metadata),
        }
        optional = {
            "agent": self.agent,
            "follow_up_message": self.follow_up_message,
            "error": self.error,
            "pre_handoff_message": self.pre_handoff_message,
            "handoff_init_message": self.handoff_init_message,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.handoff_completed:
            payload["handoff_completed"] = True
        if self.handoff_failed:
            payload["handoff_failed"] = True
        return payload

"""Common helpers shared by conversational agents."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..models import AgentContext, AgentResult, HandoffRequest, InboundMessage


@dataclass
class AgentConfig:
    """Runtime configuration shared by all agents."""

    name: str = "agent"
    greeting: Optional[str] = None


class BaseAgent:
    """Base class exposing reply and hand-off helpers for agents."""

    def __init__(self, config: Optional[AgentConfig] = None) -> None:
        self.config = config or AgentConfig()

    @property
    def name(self) -> str:
        return self.config.name

    def process(self, message: InboundMessage, context: AgentContext) -> AgentResult:  # pragma: no cover - abstract
        raise NotImplementedError

    def _reply(self, text: str, update_state: Optional[Dict[str, Any]] = None, **metadata: Any) -> AgentResult:
        return AgentResult(message=text, update_state=update_state, metadata=metadata)

    def _handoff(
        self,
        next_agent: str,
        text: Optional[str],
        *,
        original_message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> AgentResult:
        payload = dict(data or {})
        payload.setdefault("reason", f"{self.name}_handoff")
        if original_message:
            request = HandoffRequest.replay(next_agent, original_message, payload)
        else:
            request = HandoffRequest.silent(next_agent, payload)
        return AgentResult(message=text, handoff=request)

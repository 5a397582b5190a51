"""Example agents and classifier that work without any external service."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..models import AgentContext, AgentResult, HandoffInit, InboundMessage, IntentResult
from .base import AgentConfig, BaseAgent


class EchoAgent(BaseAgent):
    """Replies with the received text and counts its own turns."""

    def __init__(self, name: str = "echo", prefix: str = "", greeting: Optional[str] = None) -> None:
        super().__init__(AgentConfig(name=name, greeting=greeting))
        self._prefix = prefix

    def process(self, message: InboundMessage, context: AgentContext) -> AgentResult:
        turns = int(context.lead_state.get("metadata", {}).get(f"{self.name}_turns") or 0) + 1
        return self._reply(
            f"{self._prefix}{message.text}",
            update_state={"metadata": {f"{self.name}_turns": turns}},
        )

    def on_handoff_received(self, phone_number: str, lead_state: Mapping[str, Any]) -> HandoffInit:
        return HandoffInit(message=self.config.greeting or f"{self.name} assumindo a conversa.")


class KeywordHandoffAgent(EchoAgent):
    """Echo agent that hands the conversation off when a keyword shows up."""

    def __init__(
        self,
        name: str = "keyword",
        handoff_to: str = "specialist",
        keywords: Iterable[str] = (),
        replay: bool = True,
        prefix: str = "",
        greeting: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, prefix=prefix, greeting=greeting)
        self._handoff_to = handoff_to
        self._keywords = [keyword.lower() for keyword in keywords]
        self._replay = replay

    def process(self, message: InboundMessage, context: AgentContext) -> AgentResult:
        text = message.text.lower()
        if any(keyword in text for keyword in self._keywords):
            return self._handoff(
                self._handoff_to,
                f"Vou te passar para o {self._handoff_to}.",
                original_message=message.text if self._replay else None,
                data={"metadata": {f"{self.name}_completed": True}},
            )
        return super().process(message, context)


class KeywordIntentClassifier:
    """Classifier driven by ordered keyword rules.

    Each rule is a mapping with ``keyword`` plus any :class:`IntentResult`
    field; the first rule whose keyword occurs in the text wins.
    """

    def __init__(self, rules: Optional[List[Mapping[str, Any]]] = None, default: Optional[Mapping[str, Any]] = None) -> None:
        self._rules = [dict(rule) for rule in rules or []]
        self._default = dict(default or {"intent": "unknown", "confidence": 0.0})

    def classify(
        self,
        text: str,
        *,
        current_mode: str,
        conversation_history: List[Any],
        lead_profile: Mapping[str, Any],
    ) -> IntentResult:
        lowered = (text or "").lower()
        for rule in self._rules:
            keyword = str(rule.get("keyword", "")).lower()
            if keyword and keyword in lowered:
                fields: Dict[str, Any] = {key: value for key, value in rule.items() if key != "keyword"}
                return IntentResult.from_value(fields)
        return IntentResult.from_value(self._default)

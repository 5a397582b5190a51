"""Intent-to-agent routing with confidence thresholds and anti-oscillation."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Dict, List, Mapping, MutableMapping, Optional, Protocol

from .config import RoutingSettings
from .models import AgentName, IntentResult, RouteDecision

LOGGER = logging.getLogger(__name__)


class IntentType:
    """Intent labels produced by the classifier."""

    GREETING = "greeting"
    START = "start"
    PROFILE_INFO = "profile_info"
    INTEREST = "interest"
    PROBLEM_SHARE = "problem_share"
    FAQ_QUESTION = "faq_question"
    PRICING_QUESTION = "pricing_question"
    OBJECTION = "objection"
    FEATURE_QUESTION = "feature_question"
    COMPARISON = "comparison"
    MEETING_REQUEST = "meeting_request"
    TIME_SUGGESTION = "time_suggestion"
    MEETING_CONFIRM = "meeting_confirm"
    MEETING_RESCHEDULE = "meeting_reschedule"
    OPT_OUT = "opt_out"
    HUMAN_REQUEST = "human_request"
    CONFUSION = "confusion"
    OFF_TOPIC = "off_topic"
    UNKNOWN = "unknown"


class AgentMode:
    """Modes the classifier may ask the hub to switch to."""

    SDR = "sdr"
    ATENDIMENTO = "atendimento"
    SCHEDULER = "scheduler"


SPECIAL_INTENTS = frozenset({IntentType.OPT_OUT, IntentType.HUMAN_REQUEST})

SUGGESTED_ACTIONS: Dict[str, str] = {
    IntentType.GREETING: "welcome",
    IntentType.PRICING_QUESTION: "show_pricing",
    IntentType.OBJECTION: "handle_objection",
    IntentType.FAQ_QUESTION: "answer_faq",
    IntentType.MEETING_REQUEST: "offer_slots",
    IntentType.OPT_OUT: "process_optout",
    IntentType.HUMAN_REQUEST: "transfer_human",
    IntentType.PROFILE_INFO: "extract_profile",
    IntentType.PROBLEM_SHARE: "explore_pain",
    IntentType.INTEREST: "deepen_interest",
}

INTENT_SCORES: Dict[str, int] = {
    IntentType.PRICING_QUESTION: 5,
    IntentType.MEETING_REQUEST: 10,
    IntentType.FEATURE_QUESTION: 3,
    IntentType.INTEREST: 4,
    IntentType.PROBLEM_SHARE: 5,
    IntentType.OBJECTION: 2,
    IntentType.FAQ_QUESTION: 2,
}


def suggest_action(intent: Optional[str]) -> str:
    return SUGGESTED_ACTIONS.get(intent or "", "continue_flow")


def lead_score_points(intent: Optional[str]) -> int:
    return INTENT_SCORES.get(intent or "", 1)


class IntentClassifier(Protocol):
    """External intent classifier consumed by the hub."""

    def classify(
        self,
        text: str,
        *,
        current_mode: str,
        conversation_history: List[Any],
        lead_profile: Mapping[str, Any],
    ) -> Any:  # pragma: no cover - protocol
        """Return an :class:`IntentResult` or a mapping with the same keys."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AgentRouter:
    """Decides which agent handles a message and records agent switches.

    ``route`` mutates the supplied lead state: it updates ``current_agent`` and
    ``previous_agent`` and appends to the bounded ``context_switches`` list.
    """

    def __init__(self, settings: Optional[RoutingSettings] = None, *, now: Callable[[], datetime] = _utc_now) -> None:
        self._settings = settings or RoutingSettings()
        self._now = now
        self._counters: Counter = Counter()
        self._targets: Counter = Counter()

    @property
    def settings(self) -> RoutingSettings:
        return self._settings

    def map_mode_to_agent(self, mode: Optional[str], lead_state: Mapping[str, Any]) -> str:
        if mode == AgentMode.SDR:
            metadata = lead_state.get("metadata") or {}
            if metadata.get("sdr_initial_data_collected") or lead_state.get("current_agent") == AgentName.SPECIALIST:
                return AgentName.SPECIALIST
            return AgentName.SDR
        if mode == AgentMode.ATENDIMENTO:
            return AgentName.ATENDIMENTO
        if mode == AgentMode.SCHEDULER:
            return AgentName.SCHEDULER
        return AgentName.SDR

    def confidence_threshold(self, intent: Optional[str]) -> float:
        if intent in self._settings.high_value_intents:
            return self._settings.high_value_threshold
        return self._settings.default_threshold

    def route(
        self,
        intent_result: IntentResult,
        lead_state: MutableMapping[str, Any],
        registered_agents: Collection[str],
    ) -> RouteDecision:
        current = lead_state.get("current_agent") or self._settings.default_agent
        threshold = self.confidence_threshold(intent_result.intent)
        decision = RouteDecision(target_agent=current, threshold=threshold)

        if intent_result.should_switch and intent_result.confidence >= threshold and intent_result.target_mode:
            new_agent = self.map_mode_to_agent(intent_result.target_mode, lead_state)
            # Only real agent changes are logged, so same-agent requests never count toward oscillation.
            if new_agent != current and new_agent not in registered_agents:
                LOGGER.warning("Switch to unregistered agent %s skipped", new_agent)
                decision.target_agent = new_agent
            elif new_agent != current:
                LOGGER.info(
                    "Switching agent %s -> %s (intent: %s, confidence: %.2f)",
                    current,
                    new_agent,
                    intent_result.intent,
                    intent_result.confidence,
                )
                lead_state["previous_agent"] = current
                lead_state["current_agent"] = new_agent
                self._record_switch(
                    lead_state,
                    from_agent=current,
                    to_agent=new_agent,
                    mode=intent_result.target_mode,
                    intent=intent_result.intent,
                    confidence=intent_result.confidence,
                )
                decision.target_agent = new_agent
                decision.switched = True
                self._counters["switches"] += 1
                if self._check_oscillation(lead_state):
                    decision.target_agent = lead_state["current_agent"]
                    decision.reverted = True
        elif intent_result.should_switch:
            LOGGER.debug(
                "Switch to %s ignored: confidence %.2f below %.2f",
                intent_result.target_mode,
                intent_result.confidence,
                threshold,
            )

        if decision.target_agent not in registered_agents:
            fallback = self._settings.default_agent
            LOGGER.warning("Agent %s is not registered, falling back to %s", decision.target_agent, fallback)
            lead_state["current_agent"] = fallback
            decision.target_agent = fallback
            self._counters["fallbacks"] += 1

        self._targets[decision.target_agent] += 1
        return decision

    def return_to(self, mode: str, lead_state: MutableMapping[str, Any]) -> str:
        """Hand control back to ``mode`` without a hand-off transaction."""

        target = self.map_mode_to_agent(mode, lead_state)
        current = lead_state.get("current_agent")
        if target != current:
            LOGGER.info("Returning control %s -> %s", current, target)
            lead_state["previous_agent"] = current
            lead_state["current_agent"] = target
            self._counters["returns"] += 1
        return target

    def _record_switch(self, lead_state: MutableMapping[str, Any], **entry: Any) -> None:
        switches = list(lead_state.get("context_switches") or [])
        switches.append(
            {
                "from": entry.pop("from_agent"),
                "to": entry.pop("to_agent"),
                **entry,
                "timestamp": self._now().isoformat(),
            }
        )
        limit = self._settings.max_context_switches
        if len(switches) > limit:
            switches = switches[-limit:]
        lead_state["context_switches"] = switches

    def recent_switch_count(self, lead_state: Mapping[str, Any]) -> int:
        cutoff = self._now() - timedelta(seconds=self._settings.switch_window_seconds)
        count = 0
        for entry in lead_state.get("context_switches") or []:
            timestamp = _parse_timestamp(entry.get("timestamp"))
            if timestamp is not None and timestamp >= cutoff:
                count += 1
        return count

    def _check_oscillation(self, lead_state: MutableMapping[str, Any]) -> bool:
        recent = self.recent_switch_count(lead_state)
        if recent >= self._settings.oscillation_warning:
            LOGGER.warning(
                "%s agent switches in the last %ss for %s",
                recent,
                int(self._settings.switch_window_seconds),
                lead_state.get("phone_number"),
            )
        previous = lead_state.get("previous_agent")
        if recent < self._settings.oscillation_limit or not previous:
            return False

        switched_to = lead_state.get("current_agent")
        LOGGER.warning("Excessive switching for %s, reverting to %s", lead_state.get("phone_number"), previous)
        lead_state["current_agent"] = previous
        self._record_switch(
            lead_state,
            from_agent=switched_to,
            to_agent=previous,
            intent="auto_revert",
            confidence=1.0,
            reason="excessive_switches",
        )
        self._counters["reverts"] += 1
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "switches": self._counters["switches"],
            "reverts": self._counters["reverts"],
            "returns": self._counters["returns"],
            "fallbacks": self._counters["fallbacks"],
            "routed_to": dict(self._targets),
            "thresholds": {
                "default": self._settings.default_threshold,
                "high_value": self._settings.high_value_threshold,
                "high_value_intents": list(self._settings.high_value_intents),
            },
        }


__all__ = [
    "AgentMode",
    "AgentRouter",
    "INTENT_SCORES",
    "IntentClassifier",
    "IntentType",
    "SPECIAL_INTENTS",
    "SUGGESTED_ACTIONS",
    "lead_score_points",
    "suggest_action",
]

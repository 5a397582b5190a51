"""Agent hub that routes inbound WhatsApp messages to conversational agents."""
from __future__ import annotations

import copy
import logging
from collections import Counter
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from ..config import HubSettings
from ..lock import ContactLockManager, LockTimeoutError
from ..merge import deep_merge
from ..models import (
    AGENT_NAMES,
    AgentContext,
    AgentResult,
    HubResult,
    InboundMessage,
    IntentResult,
)
from ..phone import contact_key
from ..routing import AgentMode, AgentRouter, IntentClassifier, IntentType, lead_score_points, suggest_action
from ..schema import utc_now_iso
from ..state import LeadStateManager
from ..store import InMemoryStateStore, PipelineRepository, StateStore
from ..tasks import BackgroundTasks
from .handoff import HandoffOrchestrator

LOGGER = logging.getLogger(__name__)

LOCK_WAIT_MESSAGE = "Estou processando sua mensagem anterior. Um momento, por favor."
TECHNICAL_ERROR_MESSAGE = "Desculpe, tive um problema técnico. Pode repetir a mensagem?"
COMPLETED_MESSAGE = (
    "Obrigado! Sua reunião já está agendada. Em breve entraremos em contato. "
    "Se precisar de algo urgente, entre em contato com nossa equipe."
)
OPT_OUT_MESSAGE = (
    "Entendido! Você foi removido da nossa lista de contatos.\n\n"
    "Se mudar de ideia, é só mandar uma mensagem que retomamos nossa conversa.\n\n"
    "Obrigado pelo seu tempo!"
)
HUMAN_REQUEST_MESSAGE = (
    "Claro! Eu sou o Taylor, da Digital Boost, e posso te ajudar aqui mesmo.\n\n"
    "Se preferir falar por telefone, pode ligar: (84) 99679-1624\n"
    "Horário: Seg-Sex 9h às 18h\n\n"
    "Em que posso ajudar?"
)
RESET_MESSAGE = "Conversa resetada para o início (SDR Agent)"

HUB_AGENT = "hub"


class AgentProtocol(Protocol):
    """Interface conversational agents must follow.

    Agents may additionally define ``on_handoff_received(phone, lead_state)``
    returning a :class:`~agent_hub.models.HandoffInit` or a mapping.
    """

    def process(self, message: InboundMessage, context: AgentContext) -> Any:  # pragma: no cover - runtime protocol
        """Return an :class:`~agent_hub.models.AgentResult` or a mapping."""


class OutcomeTracker(Protocol):
    def track_activity(self, phone_number: str, payload: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        ...

    def record_success(self, phone_number: str, payload: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        ...

    def record_opt_out(self, phone_number: str, payload: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        ...


class MetricsSink(Protocol):
    def record(
        self, agent_name: str, phone_number: str, event: str, payload: Mapping[str, Any]
    ) -> None:  # pragma: no cover - protocol
        ...


class CrmSync(Protocol):
    def sync(self, lead_state: Mapping[str, Any]) -> None:  # pragma: no cover - protocol
        ...


class RiskAnalyzer(Protocol):
    def detect_risk(
        self, phone_number: str, agent_name: str, text: str, lead_state: Mapping[str, Any]
    ) -> Mapping[str, Any]:  # pragma: no cover - protocol
        ...


class PromptAdapter(Protocol):
    def best_prompt(self, agent_name: str, *, contact_id: str, lead_profile: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:  # pragma: no cover - protocol
        ...

    def record_outcome(
        self, variation_id: str, phone_number: str, outcome: str, payload: Mapping[str, Any]
    ) -> None:  # pragma: no cover - protocol
        ...


class LeadScorer(Protocol):
    def record_activity(
        self, phone_number: str, intent: str, description: str, points: int
    ) -> None:  # pragma: no cover - protocol
        ...


class AgentHub:
    """Serialises, routes and persists every message of a conversation.

    Each call to :meth:`process_message` holds the contact's lock from the
    first state read to the last state write. Side effects (metrics, CRM
    sync, outcome tracking, lead scoring) are queued on a background pool
    after the state is persisted and never change the returned result.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        agents: Optional[Mapping[str, AgentProtocol]] = None,
        *,
        store: Optional[StateStore] = None,
        pipeline: Optional[PipelineRepository] = None,
        settings: Optional[HubSettings] = None,
        lock_manager: Optional[ContactLockManager] = None,
        background: Optional[BackgroundTasks] = None,
        outcome_tracker: Optional[OutcomeTracker] = None,
        metrics: Optional[MetricsSink] = None,
        crm_sync: Optional[CrmSync] = None,
        risk_analyzer: Optional[RiskAnalyzer] = None,
        prompt_adapter: Optional[PromptAdapter] = None,
        lead_scorer: Optional[LeadScorer] = None,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._settings = settings or HubSettings()
        self._classifier = classifier
        self._store = store if store is not None else InMemoryStateStore()
        self._states = LeadStateManager(
            self._store,
            max_handoff_history=self._settings.max_handoff_history,
            max_context_switches=self._settings.routing.max_context_switches,
            now=now,
        )
        self._locks = lock_manager or ContactLockManager.from_settings(self._settings.lock)
        self._router = AgentRouter(self._settings.routing)
        self._agents: Dict[str, AgentProtocol] = {}
        self._handoffs = HandoffOrchestrator(
            self._states,
            self._locks,
            self._agents,
            pipeline=pipeline,
            settings=self._settings,
            now=now,
        )
        self._background = background or BackgroundTasks(self._settings.background_workers)
        self._outcome_tracker = outcome_tracker
        self._metrics = metrics
        self._crm_sync = crm_sync
        self._risk_analyzer = risk_analyzer
        self._prompt_adapter = prompt_adapter
        self._lead_scorer = lead_scorer
        self._now = now
        self._counters: Counter = Counter()
        for name, agent in (agents or {}).items():
            self.register_agent(name, agent)

    # ------------------------------------------------------------------
    # Registration & accessors
    # ------------------------------------------------------------------
    def register_agent(self, name: str, agent: AgentProtocol) -> None:
        self._agents[name] = agent
        LOGGER.info("Agent '%s' registered", name)

    @property
    def agents(self) -> Dict[str, AgentProtocol]:
        return dict(self._agents)

    @property
    def lock_manager(self) -> ContactLockManager:
        return self._locks

    @property
    def router(self) -> AgentRouter:
        return self._router

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    @property
    def handoffs(self) -> HandoffOrchestrator:
        return self._handoffs

    def get_lead_state(self, phone_number: str) -> Dict[str, Any]:
        return self._states.load(contact_key(phone_number))

    # ------------------------------------------------------------------
    # Message pipeline
    # ------------------------------------------------------------------
    def process_message(self, message: Any, context: Optional[Mapping[str, Any]] = None) -> HubResult:
        """Handle one inbound message and return the reply for the contact."""

        inbound = InboundMessage.from_value(message)
        context = dict(context or {})
        raw_contact = inbound.from_contact
        phone = contact_key(raw_contact)
        if phone != raw_contact:
            LOGGER.debug("Contact %s normalised to %s", raw_contact, phone)
        self._counters["received"] += 1

        lock = self._locks.acquire(phone, "process_message")
        if not lock.acquired:
            LOGGER.warning("Could not acquire lock for %s: %s", phone, lock.error)
            if lock.error != "timeout":
                return HubResult(success=False, message=TECHNICAL_ERROR_MESSAGE, error=lock.error)
            self._counters["lock_timeouts"] += 1
            return HubResult(
                success=False,
                message=LOCK_WAIT_MESSAGE,
                error="lock_timeout",
                metadata={"lock_error": lock.error},
            )

        try:
            return self._process_locked(phone, inbound, context, lock.lock_id)
        except Exception as exc:
            LOGGER.exception("Failed to process message from %s", phone)
            self._counters["errors"] += 1
            return HubResult(success=False, message=TECHNICAL_ERROR_MESSAGE, error=str(exc))
        finally:
            self._locks.release(phone, lock.lock_id)

    def _process_locked(
        self, phone: str, inbound: InboundMessage, context: Dict[str, Any], lock_id: Optional[str]
    ) -> HubResult:
        state = self._states.load(phone)
        if state["metadata"].get("conversation_completed"):
            LOGGER.info("Conversation with %s already completed", phone)
            return HubResult(
                success=True,
                message=COMPLETED_MESSAGE,
                agent=state.get("current_agent"),
                lead_state=state,
                metadata={"conversation_completed": True},
            )

        state["message_count"] = int(state.get("message_count") or 0) + 1
        state["metadata"]["last_message_at"] = self._now()
        LOGGER.debug("Message %s from %s", state["message_count"], phone)

        intent = self._classify(inbound.text, state)
        LOGGER.info(
            "Intent for %s: %s (%.0f%%), current agent %s, suggested mode %s",
            phone,
            intent.intent,
            intent.confidence * 100,
            state.get("current_agent"),
            intent.target_mode,
        )

        if intent.is_special_intent:
            special = self._handle_special_intent(phone, intent, state)
            if special is not None:
                return special

        decision = self._router.route(intent, state, self._agents)
        target = decision.target_agent
        agent = self._agents.get(target)
        if agent is None:
            raise LookupError(f"No agent registered for '{target}'")

        agent_context = AgentContext(
            lead_state=state,
            intent_result=intent,
            suggested_action=suggest_action(intent.intent),
            risk_analysis=self._detect_risk(phone, target, inbound.text, state),
            optimized_prompt=self._best_prompt(phone, target, state),
            metadata=dict(context.get("metadata") or {}),
            extra={key: value for key, value in context.items() if key != "metadata"},
        )
        self._inject_cadence(state, context, agent_context)

        enriched = InboundMessage(
            from_contact=phone,
            text=inbound.text,
            metadata=dict(context.get("metadata") or inbound.metadata),
        )
        result = AgentResult.from_value(agent.process(enriched, agent_context))
        self._counters["processed"] += 1

        self._emit_metric(
            target,
            phone,
            "processed",
            {
                "message_count": state["message_count"],
                "text": inbound.text[:50],
                "intent": intent.intent,
                "confidence": intent.confidence,
            },
        )
        if self._lead_scorer is not None:
            self._background.submit("lead_score", self._update_lead_score, phone, intent)

        if result.handoff is not None:
            LOGGER.info("Hand-off requested: %s -> %s", target, result.handoff.next_agent)
            self._emit_metric(
                target,
                phone,
                "handoff",
                {"next_agent": result.handoff.next_agent, "handoff_reason": result.handoff.reason},
            )
            state["last_message"] = inbound.text
            state["last_update"] = self._now()
            self._states.save(phone, state)
            self._counters["handoffs"] += 1
            return self._handoffs.execute(phone, target, result, held_lock_id=lock_id)

        if result.should_return and result.return_to:
            target = self._router.return_to(result.return_to, state)

        state["last_message"] = inbound.text
        state["last_update"] = self._now()
        if result.update_state:
            state = deep_merge(state, result.update_state, self._settings.update_merge_depth)

        if result.success:
            self._emit_metric(
                target,
                phone,
                "success",
                {"message_count": state["message_count"], "intent": intent.intent},
            )

        state = self._states.save(phone, state)
        self._schedule_side_effects(phone, inbound.text, result, state, agent_context.optimized_prompt)

        return HubResult(
            success=True,
            message=result.message,
            agent=target,
            follow_up_message=result.follow_up_message,
            lead_state=state,
            metadata={
                **result.metadata,
                "intent": intent.intent,
                "intent_confidence": intent.confidence,
                "mode_switch": intent.should_switch,
            },
        )

    def _classify(self, text: str, state: Mapping[str, Any]) -> IntentResult:
        raw = self._classifier.classify(
            text,
            current_mode=state.get("current_agent") or AgentMode.SDR,
            conversation_history=list(state.get("conversation_history") or []),
            lead_profile=dict(state.get("company_profile") or {}),
        )
        return IntentResult.from_value(raw)

    # ------------------------------------------------------------------
    # Special intents
    # ------------------------------------------------------------------
    def _handle_special_intent(
        self, phone: str, intent: IntentResult, state: Dict[str, Any]
    ) -> Optional[HubResult]:
        if intent.intent == IntentType.OPT_OUT:
            LOGGER.info("Contact %s opted out", phone)
            state["metadata"]["opted_out"] = True
            state["metadata"]["opted_out_at"] = self._now()
            self._states.save(phone, state)
            self._counters["opt_outs"] += 1
            if self._outcome_tracker is not None:
                self._background.submit(
                    "record_opt_out",
                    self._outcome_tracker.record_opt_out,
                    phone,
                    {
                        "final_stage": state.get("current_agent"),
                        "message_count": state.get("message_count"),
                        "reason": "user_requested_opt_out",
                    },
                )
            return HubResult(
                success=True,
                message=OPT_OUT_MESSAGE,
                agent=HUB_AGENT,
                lead_state=state,
                metadata={"opted_out": True, "intent": IntentType.OPT_OUT},
            )

        if intent.intent == IntentType.HUMAN_REQUEST:
            LOGGER.info("Contact %s asked for a human", phone)
            state["metadata"]["human_requested"] = True
            state["metadata"]["human_requested_at"] = self._now()
            self._states.save(phone, state)
            self._counters["human_requests"] += 1
            self._emit_metric(HUB_AGENT, phone, "human_request", {"message_count": state.get("message_count")})
            return HubResult(
                success=True,
                message=HUMAN_REQUEST_MESSAGE,
                agent=HUB_AGENT,
                lead_state=state,
                metadata={
                    "human_requested": True,
                    "intent": IntentType.HUMAN_REQUEST,
                    "needs_human_follow_up": False,
                },
            )

        LOGGER.debug("Special intent %s has no dedicated handler", intent.intent)
        return None

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------
    def _detect_risk(self, phone: str, agent_name: str, text: str, state: Mapping[str, Any]) -> Dict[str, Any]:
        if self._risk_analyzer is None:
            return {"at_risk": False}
        try:
            analysis = dict(self._risk_analyzer.detect_risk(phone, agent_name, text, state) or {})
        except Exception:
            LOGGER.warning("Risk detection failed for %s, continuing", phone, exc_info=True)
            return {"at_risk": False}
        if analysis.get("at_risk"):
            LOGGER.info("Risk detected for %s: %s", phone, analysis.get("risk_level"))
        return analysis

    def _best_prompt(self, phone: str, agent_name: str, state: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        if self._prompt_adapter is None:
            return None
        try:
            prompt = self._prompt_adapter.best_prompt(
                agent_name, contact_id=phone, lead_profile=dict(state.get("company_profile") or {})
            )
        except Exception:
            LOGGER.warning("Prompt lookup failed for %s, continuing", phone, exc_info=True)
            return None
        if not prompt or not prompt.get("prompt"):
            return None
        return dict(prompt)

    def _inject_cadence(self, state: Dict[str, Any], context: Mapping[str, Any], agent_context: AgentContext) -> None:
        instructions = context.get("agent_instructions")
        if not instructions:
            return
        LOGGER.debug("Injecting cadence instructions for %s", state.get("phone_number"))
        agent_context.extra["agent_instructions"] = instructions
        agent_context.extra["is_from_prospecting"] = bool(context.get("was_prospected") or context.get("is_in_cadence"))
        agent_context.extra["cadence_day"] = context.get("cadence_day")

        metadata = state["metadata"]
        metadata["was_prospected"] = context.get("was_prospected")
        metadata["is_in_cadence"] = context.get("is_in_cadence")
        metadata["cadence_day"] = context.get("cadence_day")
        company = (context.get("cadence_lead") or {}).get("company")
        if company:
            metadata["prospected_company"] = company
            profile = dict(state.get("company_profile") or {})
            profile["company"] = company
            state["company_profile"] = profile

    # ------------------------------------------------------------------
    # Background side effects
    # ------------------------------------------------------------------
    def _emit_metric(self, agent_name: str, phone: str, event: str, payload: Dict[str, Any]) -> None:
        if self._metrics is not None:
            self._background.submit(f"metric:{event}", self._metrics.record, agent_name, phone, event, payload)

    def _update_lead_score(self, phone: str, intent: IntentResult) -> None:
        points = lead_score_points(intent.intent)
        self._lead_scorer.record_activity(  # type: ignore[union-attr]
            phone,
            intent.intent,
            f"{intent.intent} (confidence: {intent.confidence})",
            points,
        )
        LOGGER.debug("Lead score for %s: +%s points", phone, points)

    def _schedule_side_effects(
        self,
        phone: str,
        text: str,
        result: AgentResult,
        state: Dict[str, Any],
        optimized_prompt: Optional[Mapping[str, Any]],
    ) -> None:
        snapshot = copy.deepcopy(state)
        if self._crm_sync is not None:
            self._background.submit("crm_sync", self._crm_sync.sync, snapshot)
        if self._outcome_tracker is not None:
            self._background.submit("track_outcome", self._track_outcome, phone, text, result, snapshot, optimized_prompt)

    def _track_outcome(
        self,
        phone: str,
        text: str,
        result: AgentResult,
        state: Dict[str, Any],
        optimized_prompt: Optional[Mapping[str, Any]],
    ) -> None:
        tracker = self._outcome_tracker
        qualification = state.get("qualification") or {}
        tracker.track_activity(  # type: ignore[union-attr]
            phone,
            {
                "user_message": text,
                "bot_message": result.message,
                "current_stage": state.get("current_agent"),
                "bant_completion_percent": qualification.get("score", 0),
                "lead_state": state,
            },
        )
        if not (result.metadata.get("meeting_scheduled") or result.metadata.get("conversation_completed")):
            return

        tracker.record_success(  # type: ignore[union-attr]
            phone,
            {
                "final_stage": "meeting_scheduled",
                "message_count": state.get("message_count"),
                "last_bot_message": result.message,
                "last_user_message": text,
                "bant_completion_percent": qualification.get("score", 100),
                "conversion_score": 100,
                "reason": "meeting_scheduled",
            },
        )
        LOGGER.info("Success recorded for %s", phone)
        variation_id = (optimized_prompt or {}).get("variation_id")
        if variation_id and self._prompt_adapter is not None:
            self._prompt_adapter.record_outcome(
                variation_id, phone, "success", {"conversion_score": 100, "stage_completed": True}
            )

    # ------------------------------------------------------------------
    # Hand-off & administration
    # ------------------------------------------------------------------
    def execute_handoff(
        self,
        phone_number: str,
        from_agent: str,
        result: Any,
        *,
        held_lock_id: Optional[str] = None,
    ) -> HubResult:
        """Move ``phone_number`` from ``from_agent`` to the agent named in ``result``."""

        phone = contact_key(phone_number)
        return self._handoffs.execute(phone, from_agent, AgentResult.from_value(result), held_lock_id=held_lock_id)

    def reset_conversation(self, phone_number: str) -> Dict[str, Any]:
        phone = contact_key(phone_number)
        try:
            with self._locks.hold(phone, "reset_conversation"):
                self._states.reset(phone)
        except LockTimeoutError:
            LOGGER.warning("Could not reset %s: lock busy", phone)
            return {"success": False, "message": LOCK_WAIT_MESSAGE}
        return {"success": True, "message": RESET_MESSAGE}

    def get_stats(self) -> Dict[str, Any]:
        return {
            "registered_agents": sorted(self._agents),
            "agents": {name: "active" if name in self._agents else "inactive" for name in AGENT_NAMES},
            "messages": dict(self._counters),
            "locks": self._locks.stats(),
            "background": {"completed": self._background.completed, "failed": self._background.failed},
        }

    def get_routing_stats(self) -> Dict[str, Any]:
        return {
            "registered_agents": sorted(self._agents),
            "available_modes": [AgentMode.SDR, AgentMode.ATENDIMENTO, AgentMode.SCHEDULER],
            **self._router.stats(),
        }

    def shutdown(self, wait: bool = True) -> None:
        self._locks.stop_sweeper()
        self._background.shutdown(wait=wait)


__all__ = [
    "AgentHub",
    "AgentProtocol",
    "CrmSync",
    "LeadScorer",
    "MetricsSink",
    "OutcomeTracker",
    "PromptAdapter",
    "RiskAnalyzer",
]

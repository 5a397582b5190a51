"""Transactional hand-off of a conversation from one agent to another."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..config import HubSettings
from ..lock import ContactLockManager
from ..merge import deep_merge, shallow_merge_objects
from ..models import (
    AgentContext,
    AgentName,
    AgentResult,
    HandoffInit,
    HandoffRequest,
    HubResult,
    InboundMessage,
    IntentResult,
)
from ..schema import utc_now_iso
from ..state import LeadStateManager
from ..store import PipelineRepository

LOGGER = logging.getLogger(__name__)

HANDOFF_LOCK_WAIT_MESSAGE = "Aguarde um momento, estou finalizando o processamento anterior."
ROLLBACK_MESSAGE = "Desculpe, vamos continuar nossa conversa."
DEFAULT_INIT_MESSAGE = "Vamos continuar!"

# Sub-objects owned by different agents; each is deep-merged on its own.
DEEP_MERGED_FIELDS = ("metadata", "company_profile", "consultative_engine", "scheduler")
OVERWRITTEN_FIELDS = ("bant_summary", "qualification_score", "pain_type")
STRIPPED_FIELDS = ("current_agent", "previous_agent")

PIPELINE_STAGES: Dict[str, str] = {
    AgentName.SDR: "stage_respondeu",
    AgentName.SPECIALIST: "stage_qualificado",
    AgentName.SCHEDULER: "stage_triagem_agendada",
    AgentName.ATENDIMENTO: "stage_respondeu",
}


class HandoffError(RuntimeError):
    """Raised inside a hand-off transaction; always converted into a rollback."""


class HandoffStage(str, Enum):
    INITIATED = "initiated"
    LOCKED = "locked"
    STATE_MERGED = "state_merged"
    PIPELINE_UPDATED = "pipeline_updated"
    NEW_AGENT_INITIALIZED = "new_agent_initialized"
    ORIGINAL_MESSAGE_REPLAYED = "original_message_replayed"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


@dataclass
class HandoffTransaction:
    """Stage tracker for a single hand-off."""

    phone_number: str
    from_agent: str
    to_agent: str
    stage: HandoffStage = HandoffStage.INITIATED
    stages: List[Tuple[HandoffStage, str]] = field(default_factory=list)

    def advance(self, stage: HandoffStage) -> None:
        self.stage = stage
        self.stages.append((stage, utc_now_iso()))
        LOGGER.info(
            "Hand-off %s -> %s for %s: %s",
            self.from_agent,
            self.to_agent,
            self.phone_number,
            stage.value,
        )

    @property
    def stage_names(self) -> List[str]:
        return [stage.value for stage, _ in self.stages]


class HandoffOrchestrator:
    """Moves a contact to a new agent, rolling back to the old one on failure."""

    def __init__(
        self,
        state_manager: LeadStateManager,
        lock_manager: ContactLockManager,
        agents: Mapping[str, Any],
        *,
        pipeline: Optional[PipelineRepository] = None,
        settings: Optional[HubSettings] = None,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._states = state_manager
        self._locks = lock_manager
        self._agents = agents
        self._pipeline = pipeline
        self._settings = settings or HubSettings()
        self._now = now
        self.last_transaction: Optional[HandoffTransaction] = None

    def execute(
        self,
        phone_number: str,
        from_agent: str,
        agent_result: AgentResult,
        *,
        held_lock_id: Optional[str] = None,
    ) -> HubResult:
        request = agent_result.handoff
        if request is None:
            raise ValueError("execute() requires an agent result carrying a hand-off request")

        transaction = HandoffTransaction(phone_number, from_agent, request.next_agent)
        self.last_transaction = transaction
        transaction.advance(HandoffStage.INITIATED)

        lock = self._locks.acquire(phone_number, "execute_handoff", within=held_lock_id)
        if not lock.acquired:
            LOGGER.warning("Hand-off for %s could not take the lock: %s", phone_number, lock.error)
            return HubResult(
                success=False,
                message=HANDOFF_LOCK_WAIT_MESSAGE,
                agent=from_agent,
                error="lock_timeout",
                handoff_failed=True,
            )

        try:
            transaction.advance(HandoffStage.LOCKED)
            return self._run(transaction, request, agent_result)
        except Exception as exc:
            LOGGER.exception("Hand-off %s -> %s failed for %s", from_agent, request.next_agent, phone_number)
            return self._rollback(transaction, exc)
        finally:
            self._locks.release(phone_number, lock.lock_id)

    # ------------------------------------------------------------------
    # Transaction steps
    # ------------------------------------------------------------------
    def _run(self, transaction: HandoffTransaction, request: HandoffRequest, agent_result: AgentResult) -> HubResult:
        phone = transaction.phone_number
        state = self._states.load(phone)
        state = self._merge_payload(state, request.data)
        state["current_agent"] = request.next_agent
        state["previous_agent"] = transaction.from_agent
        self._append_history(state, transaction, request)
        self._states.save(phone, state)
        transaction.advance(HandoffStage.STATE_MERGED)

        self._update_pipeline(phone, request.next_agent)
        transaction.advance(HandoffStage.PIPELINE_UPDATED)

        agent = self._agents.get(request.next_agent)
        if agent is None:
            raise HandoffError(f"Agent {request.next_agent} is not registered")

        init = self._initialize(agent, phone, state)
        if init.update_state:
            state = shallow_merge_objects(state, init.update_state)
            self._states.save(phone, state)
        transaction.advance(HandoffStage.NEW_AGENT_INITIALIZED)

        reply: Optional[AgentResult] = None
        process_error: Optional[str] = None
        if request.replay_message:
            reply, process_error = self._replay(agent, phone, request.replay_message, state)
            if reply is not None:
                if reply.update_state:
                    state = deep_merge(state, reply.update_state, self._settings.handoff_merge_depth)
                    self._states.save(phone, state)
                transaction.advance(HandoffStage.ORIGINAL_MESSAGE_REPLAYED)

        transaction.advance(HandoffStage.COMPLETED)
        metadata: Dict[str, Any] = {
            "handoff": True,
            "from_agent": transaction.from_agent,
            "to_agent": request.next_agent,
            "mode": request.mode.value,
            "processed_original_message": reply is not None,
        }
        metadata.update(init.metadata)
        if reply is not None:
            metadata.update(reply.metadata)
        elif process_error is not None:
            metadata["process_error"] = process_error
        return HubResult(
            success=True,
            message=reply.message if reply is not None and reply.message else init.message,
            agent=request.next_agent,
            follow_up_message=(reply.follow_up_message if reply is not None else None) or init.follow_up_message,
            lead_state=state,
            metadata=metadata,
            handoff_completed=True,
            pre_handoff_message=agent_result.message,
            handoff_init_message=init.message,
        )

    def _merge_payload(self, state: Dict[str, Any], data: Mapping[str, Any]) -> Dict[str, Any]:
        payload = {key: value for key, value in data.items() if key not in STRIPPED_FIELDS}
        depth = self._settings.handoff_merge_depth
        merged = dict(state)
        for name in DEEP_MERGED_FIELDS:
            incoming = payload.get(name)
            if not isinstance(incoming, Mapping):
                continue
            if name == "metadata":
                incoming = {key: value for key, value in incoming.items() if key != "handoff_history"}
            current = merged.get(name)
            merged[name] = deep_merge(current if isinstance(current, Mapping) else {}, incoming, depth)
        for name in OVERWRITTEN_FIELDS:
            if name in payload:
                merged[name] = payload[name]
        return merged

    def _append_history(
        self, state: Dict[str, Any], transaction: HandoffTransaction, request: HandoffRequest
    ) -> None:
        metadata = dict(state.get("metadata") or {})
        history = list(metadata.get("handoff_history") or [])
        history.append(
            {
                "from": transaction.from_agent,
                "to": request.next_agent,
                "timestamp": self._now(),
                "reason": request.reason,
                "mode": request.mode.value,
                "data": {key: value for key, value in request.data.items() if key != "metadata"},
            }
        )
        limit = self._settings.max_handoff_history
        metadata["handoff_history"] = history[-limit:]
        state["metadata"] = metadata

    def _update_pipeline(self, phone_number: str, agent_name: str) -> None:
        if self._pipeline is None:
            return
        stage_id = PIPELINE_STAGES.get(agent_name)
        if stage_id is None:
            LOGGER.debug("No pipeline stage mapped for agent %s", agent_name)
            return
        try:
            self._pipeline.upsert(
                phone_number,
                {"stage_id": stage_id, "stage_entered_at": self._now(), "current_agent": agent_name},
            )
            LOGGER.debug("Pipeline for %s moved to %s", phone_number, stage_id)
        except Exception:
            LOGGER.exception("Pipeline update failed for %s, continuing hand-off", phone_number)

    def _initialize(self, agent: Any, phone_number: str, state: Dict[str, Any]) -> HandoffInit:
        hook = getattr(agent, "on_handoff_received", None)
        if not callable(hook):
            return HandoffInit(message=DEFAULT_INIT_MESSAGE)
        return HandoffInit.from_value(hook(phone_number, copy.deepcopy(state)))

    def _replay(
        self, agent: Any, phone_number: str, text: str, state: Dict[str, Any]
    ) -> Tuple[Optional[AgentResult], Optional[str]]:
        context = AgentContext(
            lead_state=copy.deepcopy(state),
            intent_result=IntentResult(intent="statement", confidence=0.5),
            metadata={"handoff_immediate": True},
        )
        try:
            reply = AgentResult.from_value(agent.process(InboundMessage(from_contact=phone_number, text=text), context))
        except Exception as exc:
            LOGGER.exception("Replay of the original message failed for %s", phone_number)
            return None, str(exc)
        if reply.handoff is not None:
            LOGGER.warning("Ignoring nested hand-off to %s requested during replay", reply.handoff.next_agent)
        return reply, None

    def _rollback(self, transaction: HandoffTransaction, exc: Exception) -> HubResult:
        phone = transaction.phone_number
        failed_stage = transaction.stage.value
        lead_state: Optional[Dict[str, Any]] = None
        try:
            current = self._states.load(phone)
            current["current_agent"] = transaction.from_agent
            self._states.save(phone, current)
            lead_state = current
        except Exception:
            LOGGER.exception("Rollback could not restore %s for %s", transaction.from_agent, phone)
        transaction.advance(HandoffStage.ROLLED_BACK)
        return HubResult(
            success=False,
            message=ROLLBACK_MESSAGE,
            agent=transaction.from_agent,
            lead_state=lead_state,
            metadata={"rolled_back": True, "failed_stage": failed_stage},
            error=str(exc),
            handoff_failed=True,
        )


__all__ = [
    "HandoffError",
    "HandoffOrchestrator",
    "HandoffStage",
    "HandoffTransaction",
    "PIPELINE_STAGES",
]

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from agent_hub.config import HubSettings
from agent_hub.models import AgentResult, HandoffInit, HandoffRequest, IntentResult
from agent_hub.orchestrator import AgentHub
from agent_hub.orchestrator.service import (
    COMPLETED_MESSAGE,
    HUMAN_REQUEST_MESSAGE,
    LOCK_WAIT_MESSAGE,
    OPT_OUT_MESSAGE,
    TECHNICAL_ERROR_MESSAGE,
)
from agent_hub.store import InMemoryPipelineRepository, InMemoryStateStore

PHONE = "5511999999999"


class ScriptedClassifier:
    def __init__(self, *results: Any) -> None:
        self._results = list(results)
        self.calls: List[Dict[str, Any]] = []

    def classify(self, text, *, current_mode, conversation_history, lead_profile):
        self.calls.append({"text": text, "current_mode": current_mode})
        if self._results:
            return self._results.pop(0)
        return IntentResult(intent="unknown", confidence=0.1)


class RecordingAgent:
    def __init__(self, name: str, result: Optional[Any] = None, delay: float = 0.0) -> None:
        self.name = name
        self.result = result
        self.delay = delay
        self.calls: List[Any] = []

    def process(self, message, context):
        self.calls.append((message, context))
        if self.delay:
            time.sleep(self.delay)
        if callable(self.result):
            return self.result(message, context)
        if self.result is not None:
            return self.result
        return AgentResult(message=f"{self.name}: {message.text}")


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[Any] = []

    def record(self, agent_name, phone_number, event, payload) -> None:
        self.events.append((agent_name, event))

    def sync(self, lead_state) -> None:
        self.events.append(("crm", lead_state["phone_number"]))

    def record_activity(self, phone_number, intent, description, points) -> None:
        self.events.append(("score", intent, points))

    def track_activity(self, phone_number, payload) -> None:
        self.events.append(("activity", payload["bot_message"]))

    def record_success(self, phone_number, payload) -> None:
        self.events.append(("success", payload["reason"]))

    def record_opt_out(self, phone_number, payload) -> None:
        self.events.append(("opt_out", payload["reason"]))


class ExplodingSink:
    def sync(self, lead_state) -> None:
        raise RuntimeError("crm offline")

    def detect_risk(self, phone_number, agent_name, text, lead_state):
        raise RuntimeError("risk model offline")

    def best_prompt(self, agent_name, *, contact_id, lead_profile):
        raise RuntimeError("prompt store offline")


def _settings() -> HubSettings:
    return HubSettings.from_mapping({"lock": {"max_wait_seconds": 0.2, "poll_interval_seconds": 0.01}})


def _agents(**overrides: Any) -> Dict[str, Any]:
    agents = {name: RecordingAgent(name) for name in ("sdr", "specialist", "scheduler", "atendimento")}
    agents.update(overrides)
    return agents


def _hub(classifier=None, agents=None, **kwargs: Any) -> AgentHub:
    kwargs.setdefault("settings", _settings())
    return AgentHub(classifier or ScriptedClassifier(), agents if agents is not None else _agents(), **kwargs)


def test_new_contact_then_high_value_switch_to_scheduler() -> None:
    classifier = ScriptedClassifier(
        IntentResult(intent="greeting", confidence=0.9),
        {"intent": "scheduling_request", "confidence": 0.55, "target_mode": "scheduler", "should_switch": True},
    )
    hub = _hub(classifier)

    first = hub.process_message({"from": PHONE, "text": "oi"})

    assert first.success
    assert first.agent == "sdr"
    assert first.message == "sdr: oi"
    state = hub.get_lead_state(PHONE)
    assert state["current_agent"] == "sdr"
    assert state["message_count"] == 1
    assert state["last_message"] == "oi"

    second = hub.process_message({"from": PHONE, "text": "quero agendar uma reunião"})

    assert second.agent == "scheduler"
    assert second.metadata["intent"] == "scheduling_request"
    assert second.metadata["mode_switch"] is True
    state = hub.get_lead_state(PHONE)
    assert state["current_agent"] == "scheduler"
    assert state["message_count"] == 2
    assert len(state["context_switches"]) == 1
    hub.shutdown()


def test_opt_out_short_circuits_without_agent() -> None:
    sink = RecordingSink()
    agents = _agents()
    classifier = ScriptedClassifier(IntentResult(intent="opt_out", confidence=0.95, is_special_intent=True))
    hub = _hub(classifier, agents, outcome_tracker=sink)

    result = hub.process_message({"from": PHONE, "text": "pare de me mandar mensagem"})
    hub.background.drain(timeout=2)

    assert result.success
    assert result.agent == "hub"
    assert result.message == OPT_OUT_MESSAGE
    assert all(agent.calls == [] for agent in agents.values())
    state = hub.get_lead_state(PHONE)
    assert state["metadata"]["opted_out"] is True
    assert state["metadata"]["opted_out_at"]
    assert state["message_count"] == 1
    assert ("opt_out", "user_requested_opt_out") in sink.events
    hub.shutdown()


def test_human_request_short_circuits_without_agent() -> None:
    agents = _agents()
    classifier = ScriptedClassifier(IntentResult(intent="human_request", confidence=0.9, is_special_intent=True))
    hub = _hub(classifier, agents)

    result = hub.process_message({"from": PHONE, "text": "quero falar com um humano"})

    assert result.message == HUMAN_REQUEST_MESSAGE
    assert result.metadata["human_requested"] is True
    assert agents["sdr"].calls == []
    assert hub.get_lead_state(PHONE)["metadata"]["human_requested"] is True
    hub.shutdown()


def test_other_special_intents_continue_to_routing() -> None:
    agents = _agents()
    classifier = ScriptedClassifier(IntentResult(intent="confusion", confidence=0.9, is_special_intent=True))
    hub = _hub(classifier, agents)

    result = hub.process_message({"from": PHONE, "text": "???"})

    assert result.agent == "sdr"
    assert len(agents["sdr"].calls) == 1
    hub.shutdown()


def test_completed_conversation_gets_fixed_reply() -> None:
    store = InMemoryStateStore()
    agents = _agents()
    hub = _hub(agents=agents, store=store)
    state = hub.get_lead_state(PHONE)
    state["metadata"]["conversation_completed"] = True
    store.save_lead_state(state)

    result = hub.process_message({"from": PHONE, "text": "oi de novo"})

    assert result.success
    assert result.message == COMPLETED_MESSAGE
    assert agents["sdr"].calls == []
    assert hub.get_lead_state(PHONE)["message_count"] == 0
    hub.shutdown()


def test_busy_contact_gets_please_wait_reply() -> None:
    hub = _hub()
    hub.lock_manager.acquire(PHONE, "other_worker")

    result = hub.process_message({"from": PHONE, "text": "oi"})

    assert not result.success
    assert result.error == "lock_timeout"
    assert result.message == LOCK_WAIT_MESSAGE
    hub.shutdown()


def test_agent_exception_becomes_apology_and_releases_lock() -> None:
    def explode(message, context):
        raise RuntimeError("model unavailable")

    hub = _hub(agents=_agents(sdr=RecordingAgent("sdr", result=explode)))

    result = hub.process_message({"from": PHONE, "text": "oi"})

    assert not result.success
    assert result.message == TECHNICAL_ERROR_MESSAGE
    assert not hub.lock_manager.is_locked(PHONE).locked
    assert hub.get_stats()["messages"]["errors"] == 1
    hub.shutdown()


def test_update_state_is_deep_merged_and_persisted() -> None:
    reply = AgentResult(
        message="Qual o setor da empresa?",
        update_state={"company_profile": {"name": "Ada"}, "metadata": {"introduction_sent": True}},
    )
    hub = _hub(agents=_agents(sdr=RecordingAgent("sdr", result=reply)))

    hub.process_message({"from": PHONE, "text": "sou a Ada"})

    state = hub.get_lead_state(PHONE)
    assert state["company_profile"] == {"name": "Ada", "company": None, "sector": None}
    assert state["metadata"]["introduction_sent"] is True
    assert state["metadata"]["handoff_history"] == []
    hub.shutdown()


def test_legacy_mapping_results_are_accepted() -> None:
    legacy = {"message": "ok", "success": True, "update_state": {"pain_type": "growth"}}
    hub = _hub(agents=_agents(sdr=RecordingAgent("sdr", result=legacy)))

    result = hub.process_message({"from": PHONE, "text": "oi"})

    assert result.message == "ok"
    assert hub.get_lead_state(PHONE)["pain_type"] == "growth"
    hub.shutdown()


def test_unnormalised_identifiers_share_one_conversation() -> None:
    hub = _hub()

    hub.process_message({"from": "11999999999", "text": "oi"})
    hub.process_message({"from": "5511999999999@s.whatsapp.net", "text": "tudo bem?"})

    assert hub.get_lead_state("+55 11 99999-9999")["message_count"] == 2
    hub.shutdown()


def test_group_identifiers_are_stored_under_the_raw_id() -> None:
    store = InMemoryStateStore()
    hub = _hub(store=store)

    hub.process_message({"from": "120363041234567890@g.us", "text": "oi"})

    assert store.get_lead_state("120363041234567890@g.us")["message_count"] == 1
    assert store.get_lead_state("120363041234567890") is None
    hub.shutdown()


def test_result_state_is_the_stored_document() -> None:
    sdr = RecordingAgent("sdr", AgentResult(message="ok", update_state={"bant_summary": {"need": "crm"}}))
    store = InMemoryStateStore()
    hub = _hub(agents=_agents(sdr=sdr), store=store)

    result = hub.process_message({"from": PHONE, "text": "oi"})

    assert "bant_summary" not in result.lead_state
    assert result.lead_state["metadata"]["agent_data"] == {"bant_summary": {"need": "crm"}}
    assert result.lead_state == store.get_lead_state(PHONE)
    hub.shutdown()


def test_concurrent_messages_for_one_contact_are_serialised() -> None:
    inside = 0
    max_inside = 0
    guard = threading.Lock()

    def slow(message, context):
        nonlocal inside, max_inside
        with guard:
            inside += 1
            max_inside = max(max_inside, inside)
        time.sleep(0.02)
        with guard:
            inside -= 1
        return AgentResult(message="ok")

    settings = HubSettings.from_mapping({"lock": {"max_wait_seconds": 5, "poll_interval_seconds": 0.005}})
    hub = _hub(agents=_agents(sdr=RecordingAgent("sdr", result=slow)), settings=settings)
    results = []

    def send(text: str) -> None:
        results.append(hub.process_message({"from": PHONE, "text": text}))

    threads = [threading.Thread(target=send, args=(f"msg {index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert max_inside == 1
    assert all(result.success for result in results)
    assert hub.get_lead_state(PHONE)["message_count"] == 4
    hub.shutdown()


def test_handoff_from_pipeline_nests_inside_message_lock() -> None:
    sdr_result = AgentResult(
        message="Vou te passar para o especialista.",
        handoff=HandoffRequest.replay("specialist", "quanto custa?", {"reason": "qualified"}),
    )

    class Specialist(RecordingAgent):
        def on_handoff_received(self, phone_number, lead_state):
            return HandoffInit(message="Olá! Sou o especialista.")

    pipeline = InMemoryPipelineRepository()
    hub = _hub(
        agents=_agents(sdr=RecordingAgent("sdr", result=sdr_result), specialist=Specialist("specialist")),
        pipeline=pipeline,
    )

    result = hub.process_message({"from": PHONE, "text": "quanto custa?"})

    assert result.success
    assert result.handoff_completed
    assert result.pre_handoff_message == "Vou te passar para o especialista."
    assert result.handoff_init_message == "Olá! Sou o especialista."
    assert result.message == "specialist: quanto custa?"
    state = hub.get_lead_state(PHONE)
    assert state["current_agent"] == "specialist"
    assert state["message_count"] == 1
    assert state["last_message"] == "quanto custa?"
    assert pipeline.rows[PHONE]["stage_id"] == "stage_qualificado"
    assert not hub.lock_manager.is_locked(PHONE).locked
    hub.shutdown()


def test_execute_handoff_accepts_legacy_mapping() -> None:
    hub = _hub()
    legacy = {
        "handoff": True,
        "next_agent": "specialist",
        "message": "passando",
        "handoff_data": {"reason": "bant_ready", "context_from_sdr": {"lead_message": "preciso de um CRM"}},
    }

    result = hub.execute_handoff("11999999999", "sdr", legacy)

    assert result.success
    assert result.metadata["processed_original_message"] is True
    assert result.message == "specialist: preciso de um CRM"
    assert hub.get_lead_state(PHONE)["current_agent"] == "specialist"
    hub.shutdown()


def test_should_return_hands_control_back() -> None:
    store = InMemoryStateStore()
    returning = AgentResult(message="Voltando ao assunto.", should_return=True, return_to="sdr")
    hub = _hub(agents=_agents(atendimento=RecordingAgent("atendimento", result=returning)), store=store)
    state = hub.get_lead_state(PHONE)
    state["current_agent"] = "atendimento"
    store.save_lead_state(state)

    result = hub.process_message({"from": PHONE, "text": "ok, obrigado"})

    assert result.agent == "sdr"
    assert hub.get_lead_state(PHONE)["current_agent"] == "sdr"
    hub.shutdown()


def test_unregistered_agent_falls_back_to_sdr() -> None:
    classifier = ScriptedClassifier(
        IntentResult(intent="meeting_request", confidence=0.9, target_mode="scheduler", should_switch=True)
    )
    agents = {"sdr": RecordingAgent("sdr")}
    hub = _hub(classifier, agents)

    result = hub.process_message({"from": PHONE, "text": "agendar"})

    assert result.agent == "sdr"
    assert hub.get_lead_state(PHONE)["current_agent"] == "sdr"
    hub.shutdown()


def test_background_side_effects_run_after_response() -> None:
    sink = RecordingSink()
    reply = AgentResult(message="Reunião marcada!", metadata={"meeting_scheduled": True})
    classifier = ScriptedClassifier(IntentResult(intent="meeting_request", confidence=0.9))
    hub = _hub(
        classifier,
        _agents(sdr=RecordingAgent("sdr", result=reply)),
        metrics=sink,
        crm_sync=sink,
        lead_scorer=sink,
        outcome_tracker=sink,
    )

    result = hub.process_message({"from": PHONE, "text": "pode ser amanhã"})
    assert hub.background.drain(timeout=2)

    assert result.metadata["meeting_scheduled"] is True
    assert ("sdr", "processed") in sink.events
    assert ("sdr", "success") in sink.events
    assert ("crm", PHONE) in sink.events
    assert ("score", "meeting_request", 10) in sink.events
    assert ("activity", "Reunião marcada!") in sink.events
    assert ("success", "meeting_scheduled") in sink.events
    hub.shutdown()


def test_failing_collaborators_never_break_the_reply() -> None:
    broken = ExplodingSink()
    agents = _agents()
    hub = _hub(agents=agents, crm_sync=broken, risk_analyzer=broken, prompt_adapter=broken)

    result = hub.process_message({"from": PHONE, "text": "oi"})
    hub.background.drain(timeout=2)

    assert result.success
    _, context = agents["sdr"].calls[0]
    assert context.risk_analysis == {"at_risk": False}
    assert context.optimized_prompt is None
    assert hub.background.failed == 1
    hub.shutdown()


def test_cadence_context_is_injected_into_state_and_agent_context() -> None:
    agents = _agents()
    hub = _hub(agents=agents)
    context = {
        "agent_instructions": "Lead veio da cadência D3",
        "was_prospected": True,
        "is_in_cadence": True,
        "cadence_day": 3,
        "cadence_lead": {"company": "Acme"},
        "metadata": {"channel": "whatsapp"},
    }

    hub.process_message({"from": PHONE, "text": "oi"}, context)

    message, agent_context = agents["sdr"].calls[0]
    assert message.metadata == {"channel": "whatsapp"}
    assert agent_context.extra["agent_instructions"] == "Lead veio da cadência D3"
    assert agent_context.extra["is_from_prospecting"] is True
    assert agent_context.suggested_action == "continue_flow"
    state = hub.get_lead_state(PHONE)
    assert state["metadata"]["was_prospected"] is True
    assert state["metadata"]["cadence_day"] == 3
    assert state["metadata"]["prospected_company"] == "Acme"
    assert state["company_profile"]["company"] == "Acme"
    hub.shutdown()


def test_reset_conversation_restores_defaults() -> None:
    hub = _hub()
    hub.process_message({"from": PHONE, "text": "oi"})

    outcome = hub.reset_conversation("11999999999")

    assert outcome["success"] is True
    assert hub.get_lead_state(PHONE)["message_count"] == 0
    hub.shutdown()


def test_reset_conversation_respects_lock() -> None:
    hub = _hub()
    hub.lock_manager.acquire(PHONE, "process_message")

    outcome = hub.reset_conversation(PHONE)

    assert outcome == {"success": False, "message": LOCK_WAIT_MESSAGE}
    hub.shutdown()


def test_stats_describe_agents_and_routing() -> None:
    hub = _hub(agents={"sdr": RecordingAgent("sdr")})
    hub.process_message({"from": PHONE, "text": "oi"})

    stats = hub.get_stats()
    routing = hub.get_routing_stats()

    assert stats["registered_agents"] == ["sdr"]
    assert stats["agents"]["scheduler"] == "inactive"
    assert stats["messages"]["processed"] == 1
    assert stats["locks"]["active_locks"] == 0
    assert routing["available_modes"] == ["sdr", "atendimento", "scheduler"]
    assert routing["routed_to"] == {"sdr": 1}
    hub.shutdown()


def test_result_as_dict_omits_unset_fields() -> None:
    hub = _hub()

    payload = hub.process_message({"from": PHONE, "text": "oi"}).as_dict()

    assert payload["success"] is True
    assert payload["agent"] == "sdr"
    assert "error" not in payload
    assert "handoff_completed" not in payload
    hub.shutdown()

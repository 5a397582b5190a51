from __future__ import annotations

import json

import pytest

from agent_hub.agents import EchoAgent, KeywordIntentClassifier
from agent_hub.config import ConfigurationError, HubSettings, load_configuration
from agent_hub.factory import build_agents, build_classifier, build_hub
from agent_hub.store import SqlStateStore

CONFIG_YAML = """
hub:
  lock:
    ttl_seconds: 10
    max_wait_seconds: 2
  routing:
    high_value_intents: [meeting_request]
  max_handoff_history: 5
classifier:
  class: agent_hub.agents.KeywordIntentClassifier
  options:
    rules:
      - keyword: agendar
        intent: meeting_request
        confidence: 0.9
        target_mode: scheduler
        should_switch: true
agents:
  - name: sdr
    class: agent_hub.agents.EchoAgent
    options:
      name: sdr
  - name: scheduler
    class: agent_hub.agents.EchoAgent
    options:
      name: scheduler
      prefix: "[agenda] "
  - name: atendimento
    class: agent_hub.agents.EchoAgent
    enabled: false
"""


def test_load_configuration_reads_yaml_and_json(tmp_path) -> None:
    yaml_path = tmp_path / "hub.yaml"
    yaml_path.write_text(CONFIG_YAML, encoding="utf-8")
    json_path = tmp_path / "hub.json"
    json_path.write_text(json.dumps({"hub": {"max_handoff_history": 3}}), encoding="utf-8")

    assert load_configuration(yaml_path)["hub"]["lock"]["ttl_seconds"] == 10
    assert load_configuration(json_path) == {"hub": {"max_handoff_history": 3}}


def test_load_configuration_rejects_missing_and_unsupported_files(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        load_configuration(tmp_path / "missing.yaml")

    ini_path = tmp_path / "hub.ini"
    ini_path.write_text("[hub]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_configuration(ini_path)


def test_hub_settings_from_mapping() -> None:
    settings = HubSettings.from_mapping(
        {"lock": {"ttl_seconds": 5}, "routing": {"high_value_intents": ["pricing_question"]}, "background_workers": 4}
    )

    assert settings.lock.ttl_seconds == 5
    assert settings.lock.max_wait_seconds == 60
    assert settings.routing.high_value_intents == ("pricing_question",)
    assert settings.background_workers == 4
    assert HubSettings.from_mapping(None).update_merge_depth == 3


def test_hub_settings_rejects_unknown_keys() -> None:
    with pytest.raises(ConfigurationError):
        HubSettings.from_mapping({"lock": {"ttl": 5}})
    with pytest.raises(ConfigurationError):
        HubSettings.from_mapping({"max_history": 5})


def test_build_agents_skips_disabled_entries(tmp_path) -> None:
    path = tmp_path / "hub.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")

    agents = build_agents(load_configuration(path))

    assert sorted(agents) == ["scheduler", "sdr"]
    assert isinstance(agents["scheduler"], EchoAgent)
    assert agents["scheduler"].name == "scheduler"


def test_build_agents_validates_entries() -> None:
    with pytest.raises(ConfigurationError):
        build_agents({"agents": [{"name": "sdr"}]})
    with pytest.raises(ConfigurationError):
        build_agents({"agents": [{"class": "agent_hub.agents.EchoAgent"}]})
    with pytest.raises(ConfigurationError):
        build_agents({"agents": [{"name": "sdr", "class": "agent_hub.agents.Missing"}]})
    with pytest.raises(ConfigurationError):
        build_agents({"agents": [{"name": "sdr", "class": "EchoAgent"}]})


def test_build_classifier_requires_section() -> None:
    with pytest.raises(ConfigurationError):
        build_classifier({})
    classifier = build_classifier({"classifier": {"class": "agent_hub.agents.KeywordIntentClassifier"}})
    assert isinstance(classifier, KeywordIntentClassifier)


def test_build_hub_end_to_end_with_sqlite(tmp_path) -> None:
    path = tmp_path / "hub.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    config = load_configuration(path)
    config["store"] = {"url": f"sqlite:///{tmp_path / 'hub.db'}"}

    hub = build_hub(config)
    try:
        first = hub.process_message({"from": "11999999999", "text": "oi"})
        second = hub.process_message({"from": "11999999999", "text": "quero agendar"})
    finally:
        hub.shutdown()

    assert first.agent == "sdr"
    assert first.message == "oi"
    assert second.agent == "scheduler"
    assert second.message == "[agenda] quero agendar"
    stored = SqlStateStore.from_url(config["store"]["url"]).get_lead_state("5511999999999")
    assert stored["current_agent"] == "scheduler"
    assert stored["message_count"] == 2

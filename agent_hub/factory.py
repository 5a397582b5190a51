"""Factory helpers for constructing hubs, agents and classifiers from configuration."""
from __future__ import annotations

import importlib
from typing import Any, Dict, Mapping

from sqlalchemy import create_engine

from .config import ConfigurationError, HubSettings, iter_enabled_agent_configs
from .orchestrator import AgentHub
from .store import InMemoryPipelineRepository, InMemoryStateStore, SqlPipelineRepository, SqlStateStore


def _load_class(path: str):
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ConfigurationError(f"Invalid class path '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Could not import module '{module_name}'") from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ConfigurationError(f"Module '{module_name}' does not define '{attr}'") from exc


def _instantiate(section: Mapping[str, Any], kind: str) -> Any:
    class_path = section.get("class")
    if not class_path:
        raise ConfigurationError(f"{kind} configuration missing required 'class' field")
    options = section.get("options", {}) or {}
    return _load_class(class_path)(**options)


def build_agents(config: Mapping[str, Any]) -> Dict[str, Any]:
    """Instantiate agent classes defined in the configuration file, keyed by name."""

    agents: Dict[str, Any] = {}
    for agent_cfg in iter_enabled_agent_configs(config):
        name = agent_cfg.get("name")
        if not name:
            raise ConfigurationError("Agent configuration missing required 'name' field")
        if name in agents:
            raise ConfigurationError(f"Agent '{name}' is configured more than once")
        agents[name] = _instantiate(agent_cfg, "Agent")
    return agents


def build_classifier(config: Mapping[str, Any]) -> Any:
    section = config.get("classifier")
    if not section:
        raise ConfigurationError("Configuration missing required 'classifier' section")
    return _instantiate(section, "Classifier")


def build_hub(config: Mapping[str, Any], **overrides: Any) -> AgentHub:
    """Build an :class:`AgentHub` from configuration.

    ``overrides`` are passed straight to the hub constructor and win over
    anything derived from ``config`` (stores, classifier, sinks, ...).
    """

    settings = HubSettings.from_mapping(config.get("hub"))
    kwargs: Dict[str, Any] = {"settings": settings}

    store_url = (config.get("store") or {}).get("url")
    if store_url:
        engine = create_engine(store_url, future=True)
        kwargs["store"] = SqlStateStore(engine)
        kwargs["pipeline"] = SqlPipelineRepository(engine)
    else:
        kwargs["store"] = InMemoryStateStore()
        kwargs["pipeline"] = InMemoryPipelineRepository()

    kwargs.update(overrides)
    classifier = kwargs.pop("classifier", None) or build_classifier(config)
    agents = kwargs.pop("agents", None) or build_agents(config)

    hub = AgentHub(classifier, agents, **kwargs)
    hub.lock_manager.start_sweeper()
    return hub


__all__ = ["build_agents", "build_classifier", "build_hub"]

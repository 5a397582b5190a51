"""Configuration helpers for the agent hub."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when configuration files are missing or malformed."""


_SUPPORTED_EXTENSIONS = {".json", ".yaml", ".yml"}


def load_configuration(path: str | Path) -> Dict[str, Any]:
    """Load configuration data from a JSON or YAML file."""

    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file '{file_path}' was not found")

    if file_path.suffix.lower() not in _SUPPORTED_EXTENSIONS:
        raise ConfigurationError(
            f"Unsupported configuration format '{file_path.suffix}'. Supported extensions: {sorted(_SUPPORTED_EXTENSIONS)}"
        )

    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() == ".json":
        return json.loads(text)

    try:
        import yaml  # type: ignore
    except ImportError as exc:  # pragma: no cover - dependency declared
        raise ConfigurationError(
            "YAML configuration requires the 'pyyaml' package to be installed"
        ) from exc

    return yaml.safe_load(text) or {}  # type: ignore[no-any-return]


def iter_enabled_agent_configs(config: Mapping[str, Any]) -> Iterable[Dict[str, Any]]:
    agents = config.get("agents", [])
    for agent in agents:
        if agent.get("enabled", True):
            yield agent
        else:
            LOGGER.debug("Skipping disabled agent %s", agent.get("name"))


def _build(cls, data: Optional[Mapping[str, Any]]):
    data = dict(data or {})
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} option(s): {', '.join(unknown)}")
    return cls(**data)


@dataclass
class LockSettings:
    """Timing behaviour of the per-contact lock."""

    ttl_seconds: float = 30.0
    max_wait_seconds: float = 60.0
    poll_interval_seconds: float = 0.1
    sweep_interval_seconds: float = 30.0


@dataclass
class RoutingSettings:
    """Thresholds used when deciding whether to switch agents."""

    default_threshold: float = 0.7
    high_value_threshold: float = 0.5
    high_value_intents: Tuple[str, ...] = ("scheduling_request", "pricing_question", "meeting_request")
    switch_window_seconds: float = 300.0
    oscillation_warning: int = 3
    oscillation_limit: int = 4
    max_context_switches: int = 20
    default_agent: str = "sdr"

    def __post_init__(self) -> None:
        self.high_value_intents = tuple(self.high_value_intents)


@dataclass
class HubSettings:
    """Top level settings for :class:`agent_hub.orchestrator.AgentHub`."""

    lock: LockSettings = field(default_factory=LockSettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    max_handoff_history: int = 10
    update_merge_depth: int = 3
    handoff_merge_depth: int = 5
    background_workers: int = 2

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "HubSettings":
        data = dict(data or {})
        lock = _build(LockSettings, data.pop("lock", None))
        routing = _build(RoutingSettings, data.pop("routing", None))
        settings = _build(cls, data)
        settings.lock = lock
        settings.routing = routing
        return settings

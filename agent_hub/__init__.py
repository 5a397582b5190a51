"""Top-level package for the WhatsApp agent hub."""

from . import models  # noqa: F401
from .config import ConfigurationError, HubSettings, LockSettings, RoutingSettings  # noqa: F401
from .lock import ContactLockManager, LockTimeoutError  # noqa: F401
from .merge import deep_merge, shallow_merge_objects  # noqa: F401
from .models import (
    AgentContext,
    AgentResult,
    HandoffInit,
    HandoffMode,
    HandoffRequest,
    HubResult,
    InboundMessage,
    IntentResult,
)
from .orchestrator import AgentHub, HandoffError  # noqa: F401
from .schema import InvalidStateError  # noqa: F401

__all__ = [
    "AgentContext",
    "AgentHub",
    "AgentResult",
    "ConfigurationError",
    "ContactLockManager",
    "HandoffError",
    "HandoffInit",
    "HandoffMode",
    "HandoffRequest",
    "HubResult",
    "HubSettings",
    "InboundMessage",
    "IntentResult",
    "InvalidStateError",
    "LockSettings",
    "LockTimeoutError",
    "RoutingSettings",
    "deep_merge",
    "shallow_merge_objects",
    "agents",
    "orchestrator",
]

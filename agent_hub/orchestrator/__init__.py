"""Message routing and hand-off orchestration for conversational agents."""

from .handoff import HandoffError, HandoffOrchestrator, HandoffStage, HandoffTransaction
from .service import AgentHub

__all__ = ["AgentHub", "HandoffError", "HandoffOrchestrator", "HandoffStage", "HandoffTransaction"]

"""Conversational agents and classifiers usable without external services."""

from .base import AgentConfig, BaseAgent  # noqa: F401
from .sample import EchoAgent, KeywordHandoffAgent, KeywordIntentClassifier  # noqa: F401

__all__ = [
    "AgentConfig",
    "BaseAgent",
    "EchoAgent",
    "KeywordHandoffAgent",
    "KeywordIntentClassifier",
]

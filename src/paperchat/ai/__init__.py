"""Generation backend, streaming client, and reasoning profiles."""

from .backend import GenerationBackend, GenerationRequest, OpenAIGenerationBackend
from .client import AIClient, AIStreamEvent, ClientSettings

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "GenerationBackend",
    "GenerationRequest",
    "OpenAIGenerationBackend",
]

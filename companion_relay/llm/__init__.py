from .base import ChatMessage
from .client import ChatClient
from .persona import PersonaManager
from .protocols import BackendKind
from .resolver import BackendResolver, ResolvedEndpoint

__all__ = ["BackendKind", "BackendResolver", "ChatClient", "ChatMessage", "PersonaManager", "ResolvedEndpoint"]

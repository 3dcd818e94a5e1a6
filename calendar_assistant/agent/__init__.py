"""
Conversation agent: intent recognition, context, dispatch and orchestration.
"""

from .context_manager import ConversationContextManager
from .dispatcher import ActionDispatcher, DispatchResult
from .intent_router import IntentRecognizer
from .nlp import LlmCommandParser, RegexCommandParser
from .orchestrator import ConversationOrchestrator

__all__ = [
    "ActionDispatcher",
    "ConversationContextManager",
    "ConversationOrchestrator",
    "DispatchResult",
    "IntentRecognizer",
    "LlmCommandParser",
    "RegexCommandParser",
]

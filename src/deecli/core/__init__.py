"""Context governor and conversation service."""

from deecli.core.context import BudgetReport, ContextGovernor, trim_history
from deecli.core.conversation import ConversationService

__all__ = [
    "BudgetReport",
    "ContextGovernor",
    "ConversationService",
    "trim_history",
]

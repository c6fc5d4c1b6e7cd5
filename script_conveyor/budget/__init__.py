"""Budget governance and learned preferences."""

from .governor import BudgetGovernor, QuotaState, RejectionPattern
from .learning import LearningService

__all__ = [
    "BudgetGovernor",
    "QuotaState",
    "RejectionPattern",
    "LearningService",
]

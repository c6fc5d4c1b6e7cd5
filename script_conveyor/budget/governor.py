"""Budget Governor - per-subject daily item quota and monthly cost budget.

Counters roll over lazily: the calendar-day (and calendar-month) boundary
is detected on the next read or write, there is no background timer.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ..config import BudgetConfig
from ..errors import BudgetLimitReachedError, DailyLimitReachedError

logger = logging.getLogger(__name__)


@dataclass
class RejectionPattern:
    """Aggregate of one recurring complaint category."""

    count: int = 0
    instruction: str = ""
    last_reason: str | None = None


@dataclass
class QuotaState:
    """Budget and quota counters for one subject."""

    subject_id: str
    daily_limit: int
    monthly_budget_limit: float
    last_reset_at: datetime
    items_processed_today: int = 0
    current_month_cost: float = 0.0
    total_processed: int = 0
    total_passed: int = 0
    total_failed: int = 0
    reviewer_approved: int = 0
    reviewer_rejected: int = 0
    learned_threshold: int | None = None
    rejection_patterns: dict[str, RejectionPattern] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "daily_limit": self.daily_limit,
            "monthly_budget_limit": self.monthly_budget_limit,
            "last_reset_at": self.last_reset_at.isoformat(),
            "items_processed_today": self.items_processed_today,
            "current_month_cost": self.current_month_cost,
            "total_processed": self.total_processed,
            "total_passed": self.total_passed,
            "total_failed": self.total_failed,
            "reviewer_approved": self.reviewer_approved,
            "reviewer_rejected": self.reviewer_rejected,
            "learned_threshold": self.learned_threshold,
            "rejection_patterns": {
                category: {
                    "count": p.count,
                    "instruction": p.instruction,
                    "last_reason": p.last_reason,
                }
                for category, p in self.rejection_patterns.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QuotaState":
        return cls(
            subject_id=data["subject_id"],
            daily_limit=data["daily_limit"],
            monthly_budget_limit=data["monthly_budget_limit"],
            last_reset_at=datetime.fromisoformat(data["last_reset_at"]),
            items_processed_today=data.get("items_processed_today", 0),
            current_month_cost=data.get("current_month_cost", 0.0),
            total_processed=data.get("total_processed", 0),
            total_passed=data.get("total_passed", 0),
            total_failed=data.get("total_failed", 0),
            reviewer_approved=data.get("reviewer_approved", 0),
            reviewer_rejected=data.get("reviewer_rejected", 0),
            learned_threshold=data.get("learned_threshold"),
            rejection_patterns={
                category: RejectionPattern(**p)
                for category, p in data.get("rejection_patterns", {}).items()
            },
        )


class BudgetGovernor:
    """Tracks and enforces per-subject quotas.

    The governor is the only writer of quota state. All public methods
    apply the lazy day/month rollover before touching counters.
    """

    def __init__(
        self,
        config: BudgetConfig | None = None,
        data_dir: Path | str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the governor.

        Args:
            config: Quota defaults and charging policy.
            data_dir: Directory for ``quota.json``. None keeps state in memory.
            clock: Source of the current time.
        """
        self.config = config or BudgetConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, QuotaState] = {}
        self._path: Path | None = None

        if data_dir is not None:
            data_dir = Path(data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self._path = data_dir / "quota.json"
            if self._path.exists():
                with open(self._path) as f:
                    data = json.load(f)
                for state_data in data.get("subjects", []):
                    state = QuotaState.from_dict(state_data)
                    self._states[state.subject_id] = state

    def _save(self) -> None:
        if not self._path:
            return
        data = {"subjects": [s.to_dict() for s in self._states.values()]}
        with open(self._path, "w") as f:
            json.dump(data, f, indent=2)

    def _state(self, subject_id: str) -> QuotaState:
        """Return the live state, creating defaults. Caller holds the lock."""
        state = self._states.get(subject_id)
        if state is None:
            state = QuotaState(
                subject_id=subject_id,
                daily_limit=self.config.daily_limit,
                monthly_budget_limit=self.config.monthly_budget_limit,
                last_reset_at=self._clock(),
            )
            self._states[subject_id] = state
        return state

    def _rollover(self, state: QuotaState) -> bool:
        """Apply calendar rollover. Caller holds the lock."""
        now = self._clock()
        last = state.last_reset_at
        if now.date() <= last.date():
            return False

        previous_count = state.items_processed_today
        state.items_processed_today = 0
        if (now.year, now.month) != (last.year, last.month):
            state.current_month_cost = 0.0
        state.last_reset_at = now
        logger.info(
            "Daily count reset for subject %s (previous count %d)",
            state.subject_id,
            previous_count,
        )
        return True

    def check_and_reset(self, subject_id: str) -> bool:
        """Reset the daily counter if a calendar day has passed.

        Returns:
            True if a reset was performed.
        """
        with self._lock:
            reset = self._rollover(self._state(subject_id))
            if reset:
                self._save()
            return reset

    def get_state(self, subject_id: str) -> QuotaState:
        """Return a snapshot of the subject's quota state."""
        with self._lock:
            state = self._state(subject_id)
            if self._rollover(state):
                self._save()
            return replace(state, rejection_patterns=dict(state.rejection_patterns))

    def save_state(self, state: QuotaState) -> None:
        """Replace a subject's quota state wholesale."""
        with self._lock:
            self._states[state.subject_id] = state
            self._save()

    def _mutate(self, subject_id: str, fn: Callable[[QuotaState], None]) -> None:
        with self._lock:
            state = self._state(subject_id)
            self._rollover(state)
            fn(state)
            self._save()

    def increment_daily(self, subject_id: str) -> None:
        def apply(state: QuotaState) -> None:
            state.items_processed_today += 1
            state.total_processed += 1

        self._mutate(subject_id, apply)

    def add_cost(self, subject_id: str, amount: float) -> None:
        def apply(state: QuotaState) -> None:
            state.current_month_cost = round(state.current_month_cost + amount, 4)

        self._mutate(subject_id, apply)

    def increment_passed(self, subject_id: str) -> None:
        def apply(state: QuotaState) -> None:
            state.total_passed += 1

        self._mutate(subject_id, apply)

    def increment_failed(self, subject_id: str) -> None:
        def apply(state: QuotaState) -> None:
            state.total_failed += 1

        self._mutate(subject_id, apply)

    def record_outcome(self, subject_id: str, passed: bool) -> None:
        """Charge one terminal job outcome against the subject's quota.

        Failed attempts consume quota unless the ``charge_failed_attempts``
        policy is switched off.
        """
        if passed:
            self.increment_passed(subject_id)
        else:
            self.increment_failed(subject_id)

        if passed or self.config.charge_failed_attempts:
            self.increment_daily(subject_id)
            self.add_cost(subject_id, self.config.cost_per_item)

    def record_review(self, subject_id: str, approved: bool) -> None:
        """Count a human reviewer's final decision on a job."""

        def apply(state: QuotaState) -> None:
            if approved:
                state.reviewer_approved += 1
            else:
                state.reviewer_rejected += 1

        self._mutate(subject_id, apply)

    def quota_exceeded(self, subject_id: str) -> bool:
        """True if the daily item quota or the monthly budget is used up."""
        state = self.get_state(subject_id)
        return (
            state.items_processed_today >= state.daily_limit
            or state.current_month_cost >= state.monthly_budget_limit
        )

    def ensure_quota(self, subject_id: str) -> None:
        """Raise if the subject may not start more work.

        Raises:
            DailyLimitReachedError: If the daily quota is used up.
            BudgetLimitReachedError: If the monthly budget is used up.
        """
        state = self.get_state(subject_id)
        if state.items_processed_today >= state.daily_limit:
            raise DailyLimitReachedError(state.daily_limit, state.items_processed_today)
        if state.current_month_cost >= state.monthly_budget_limit:
            raise BudgetLimitReachedError(state.monthly_budget_limit, state.current_month_cost)

    def remaining_today(self, subject_id: str) -> int:
        state = self.get_state(subject_id)
        return max(state.daily_limit - state.items_processed_today, 0)

    def update_limits(
        self,
        subject_id: str,
        daily_limit: int | None = None,
        monthly_budget_limit: float | None = None,
    ) -> QuotaState:
        """Change a subject's quota limits."""

        def apply(state: QuotaState) -> None:
            if daily_limit is not None:
                state.daily_limit = daily_limit
            if monthly_budget_limit is not None:
                state.monthly_budget_limit = monthly_budget_limit

        self._mutate(subject_id, apply)
        logger.info("Quota limits updated for subject %s", subject_id)
        return self.get_state(subject_id)

    def update_learning(
        self,
        subject_id: str,
        rejection_patterns: dict[str, RejectionPattern] | None = None,
        learned_threshold: int | None = None,
        clear: bool = False,
    ) -> None:
        """Write learned data for a subject."""

        def apply(state: QuotaState) -> None:
            if clear:
                state.rejection_patterns = {}
                state.learned_threshold = None
            if rejection_patterns is not None:
                state.rejection_patterns = dict(rejection_patterns)
            if learned_threshold is not None:
                state.learned_threshold = learned_threshold

        self._mutate(subject_id, apply)

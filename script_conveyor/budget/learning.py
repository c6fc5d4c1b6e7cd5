"""Learning Service - turns recurring reviewer complaints into writer instructions."""

import logging

from .governor import BudgetGovernor, RejectionPattern

logger = logging.getLogger(__name__)

# A category must recur this many times before it shapes future drafts
MIN_PATTERN_COUNT = 2

# Learned threshold bounds and steps, on the 0-100 scale
THRESHOLD_FLOOR = 60
THRESHOLD_CAP = 90
THRESHOLD_LOWER_STEP = 2
THRESHOLD_RAISE_STEP = 5

# Approving a script scored below this counts as a borderline approval
BORDERLINE_SCORE = 75
HIGH_APPROVAL_RATE = 0.8
LOW_APPROVAL_RATE = 0.5

OTHER_CATEGORY = "other"

CATEGORY_INSTRUCTIONS = {
    "too_long": "Keep the script under 60 seconds.",
    "too_short": "Make the script at least 45 seconds long.",
    "boring_intro": "Open with a provocation, a question or a shocking fact.",
    "weak_cta": "End with a strong call to action.",
    "too_formal": "Write conversationally, like talking to a friend.",
    "too_complex": "Simplify. Explain it as you would to a 12-year-old.",
}

CATEGORY_KEYWORDS = {
    "too_long": ("shorter", "too long", "trim", "cut down"),
    "too_short": ("longer", "too short", "more detail", "expand"),
    "boring_intro": ("hook", "intro", "opening", "beginning"),
    "weak_cta": ("call to action", "cta", "subscribe"),
    "too_formal": ("simpler", "conversational", "too formal", "casual"),
    "too_complex": ("complex", "complicated", "confusing", "hard to follow"),
}


def extract_categories(notes: str) -> list[str]:
    """Find complaint categories mentioned in free-text reviewer notes."""
    lower = notes.lower()
    return [
        category
        for category, keywords in CATEGORY_KEYWORDS.items()
        if any(keyword in lower for keyword in keywords)
    ]


class LearningService:
    """Keeps each subject's rejection-pattern aggregate and learned threshold."""

    def __init__(self, governor: BudgetGovernor):
        self.governor = governor

    def on_revise(self, subject_id: str, notes: str) -> list[str]:
        """Record the categories found in revision feedback.

        Returns:
            The categories that were matched.
        """
        categories = extract_categories(notes)
        if not categories:
            return []

        self._count_patterns(subject_id, categories, notes)

        logger.info("Revision patterns for subject %s: %s", subject_id, ", ".join(categories))
        return categories

    def writer_instructions(self, subject_id: str) -> list[str]:
        """Instructions for every category that has recurred often enough."""
        patterns = self.governor.get_state(subject_id).rejection_patterns
        return [
            p.instruction
            for p in patterns.values()
            if p.count >= MIN_PATTERN_COUNT and p.instruction
        ]

    def effective_threshold(self, subject_id: str, requested: float) -> float:
        """Approval threshold on the 1-10 scale, preferring a learned one."""
        learned = self.governor.get_state(subject_id).learned_threshold
        if learned is None:
            return requested
        return learned / 10

    def reset_learning(self, subject_id: str) -> None:
        self.governor.update_learning(subject_id, clear=True)
        logger.info("Learning data reset for subject %s", subject_id)

    def approval_rate(self, subject_id: str, default: float) -> float:
        """Share of reviewer decisions that were approvals."""
        state = self.governor.get_state(subject_id)
        decisions = state.reviewer_approved + state.reviewer_rejected
        if decisions == 0:
            return default
        return state.reviewer_approved / decisions

    def on_approve(self, subject_id: str, final_score: int | None, base_threshold: float) -> None:
        """Learn from a reviewer approving a job.

        A reviewer who keeps approving borderline scripts is stricter than
        needed, so the learned threshold drops a little.
        """
        rate = self.approval_rate(subject_id, default=0.0)
        self.governor.record_review(subject_id, approved=True)

        if final_score is not None and final_score < BORDERLINE_SCORE and rate > HIGH_APPROVAL_RATE:
            current = self._current_threshold(subject_id, base_threshold)
            self._set_threshold(subject_id, current, max(current - THRESHOLD_LOWER_STEP, THRESHOLD_FLOOR))

    def on_reject(
        self,
        subject_id: str,
        reason: str,
        category: str | None,
        base_threshold: float,
    ) -> str:
        """Learn from a reviewer rejecting a job.

        Returns:
            The category the rejection was filed under.
        """
        rate = self.approval_rate(subject_id, default=0.5)
        self.governor.record_review(subject_id, approved=False)

        if not category:
            matched = extract_categories(reason)
            category = matched[0] if matched else OTHER_CATEGORY
        self._count_patterns(subject_id, [category], reason)

        if rate < LOW_APPROVAL_RATE:
            current = self._current_threshold(subject_id, base_threshold)
            self._set_threshold(subject_id, current, min(current + THRESHOLD_RAISE_STEP, THRESHOLD_CAP))

        return category

    def _count_patterns(self, subject_id: str, categories: list[str], reason: str) -> None:
        patterns = self.governor.get_state(subject_id).rejection_patterns
        for category in categories:
            pattern = patterns.get(category) or RejectionPattern(
                instruction=CATEGORY_INSTRUCTIONS.get(category) or reason
            )
            patterns[category] = RejectionPattern(
                count=pattern.count + 1,
                instruction=pattern.instruction,
                last_reason=reason,
            )
        self.governor.update_learning(subject_id, rejection_patterns=patterns)

    def _current_threshold(self, subject_id: str, base_threshold: float) -> int:
        learned = self.governor.get_state(subject_id).learned_threshold
        return learned if learned is not None else round(base_threshold * 10)

    def _set_threshold(self, subject_id: str, old: int, new: int) -> None:
        if new == old:
            return
        self.governor.update_learning(subject_id, learned_threshold=new)
        logger.info("Learned threshold for subject %s adjusted from %d to %d", subject_id, old, new)

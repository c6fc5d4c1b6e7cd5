"""Generation pipeline - the draft/evaluate loop and batch runner.

One batch per subject runs as a single asyncio task that works through
its source items strictly in order. Inside a job the scriptwriter and the
editor alternate until the editor accepts the draft, rejects it, or the
iteration cap is hit.

Cancellation is cooperative: ``stop_batch`` sets the subject's cancel
event and the loop notices it at the next item or iteration boundary.
An in-flight model call is never interrupted.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator, Coroutine

from ..agents.base import DraftingAgent, DraftRequest, EvaluationAgent, ThinkingChunk
from ..budget import BudgetGovernor, LearningService
from ..channels import ChannelManager, job_key, subject_key
from ..channels import manager as events
from ..config import GenerationConfig, GenerationSettings
from ..errors import (
    AgentError,
    AlreadyRunningError,
    ConveyorError,
    DuplicateJobError,
    InvalidJobStatusError,
    JobNotFoundError,
    NoItemsError,
    NotRunningError,
)
from ..models import (
    Draft,
    GateDecision,
    Job,
    JobStatus,
    Review,
    Scene,
    SourceItem,
    Verdict,
    gate_decision_for,
    normalize_score,
)
from ..sources import SourceProvider
from ..storage import JobStore

logger = logging.getLogger(__name__)

REASON_CANCELLED = "cancelled"
REASON_REJECTED = "rejected by evaluator"
REASON_CAP_REACHED = "iteration cap reached"
REASON_REVISION_UNRESOLVED = "revision needs further review"

# How a finished run is charged: a full job outcome (daily count and
# cost) or the cost of the extra model calls only
CHARGE_OUTCOME = "outcome"
CHARGE_COST = "cost"


@dataclass
class GenerationResult:
    """Outcome of generating one job."""

    success: bool
    job_id: str | None = None
    final_score: int | None = None
    error: str | None = None


@dataclass
class GenerationStats:
    """Aggregate job and quota numbers for one subject."""

    running: bool
    written: int
    iterating: int
    in_review: int
    approved: int
    rejected: int
    items_processed_today: int
    daily_limit: int
    remaining_today: int
    current_month_cost: float
    monthly_budget_limit: float
    total_processed: int
    total_passed: int
    total_failed: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SubjectContext:
    """Running state of one subject's batch.

    The context exists exactly while a batch task is alive; setting
    ``cancel`` asks that task to stop.
    """

    subject_id: str
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


@dataclass
class _LoopOutcome:
    status: JobStatus
    review: Review | None
    reason: str | None

    @property
    def passed(self) -> bool:
        return self.status == JobStatus.APPROVED


class GenerationPipeline:
    """Runs generation batches and single jobs for all subjects.

    The pipeline owns job status transitions during automatic generation
    and reports every step through the channel manager.
    """

    def __init__(
        self,
        store: JobStore,
        governor: BudgetGovernor,
        channels: ChannelManager,
        sources: SourceProvider,
        writer: DraftingAgent,
        editor: EvaluationAgent,
        learning: LearningService | None = None,
        config: GenerationConfig | None = None,
    ):
        self.store = store
        self.governor = governor
        self.channels = channels
        self.sources = sources
        self.writer = writer
        self.editor = editor
        self.learning = learning or LearningService(governor)
        self.config = config or GenerationConfig()

        self._contexts: dict[str, SubjectContext] = {}
        self._settings: dict[str, GenerationSettings] = {}
        self._tasks: set[asyncio.Task] = set()
        # job id -> subject id for regenerations and revision passes in flight
        self._job_work: dict[str, str] = {}

        channels.set_snapshot_provider(self.snapshot)

    # === Settings and state ===

    def default_settings(self) -> GenerationSettings:
        return GenerationSettings.from_config(self.config)

    def settings_for(self, subject_id: str) -> GenerationSettings:
        """Settings of the subject's most recent run, or the configured defaults."""
        return self._settings.get(subject_id) or self.default_settings()

    def is_running(self, subject_id: str) -> bool:
        return subject_id in self._contexts

    def has_job_work(self, subject_id: str) -> bool:
        """True while a regeneration or revision pass runs for the subject."""
        return subject_id in self._job_work.values()

    def get_stats(self, subject_id: str) -> GenerationStats:
        """Collect job counts and quota counters for a subject."""
        counts = self.store.count_by_status(subject_id)
        state = self.governor.get_state(subject_id)
        return GenerationStats(
            running=self.is_running(subject_id),
            written=sum(counts.values()),
            iterating=counts[JobStatus.PENDING] + counts[JobStatus.ITERATING],
            in_review=counts[JobStatus.NEEDS_HUMAN_REVIEW],
            approved=counts[JobStatus.APPROVED],
            rejected=counts[JobStatus.REJECTED],
            items_processed_today=state.items_processed_today,
            daily_limit=state.daily_limit,
            remaining_today=max(state.daily_limit - state.items_processed_today, 0),
            current_month_cost=state.current_month_cost,
            monthly_budget_limit=state.monthly_budget_limit,
            total_processed=state.total_processed,
            total_passed=state.total_passed,
            total_failed=state.total_failed,
        )

    async def snapshot(self, key: str) -> list[tuple[str, dict]]:
        """Build the events a new subscriber of ``key`` receives first."""
        kind, _, ident = key.partition(":")
        if kind == "subject":
            return [
                (events.RUNNING_STATE, {"running": self.is_running(ident)}),
                (events.STATS, self.get_stats(ident).to_dict()),
            ]
        if kind == "job":
            try:
                job = self.store.get_job(ident)
            except JobNotFoundError:
                return [(events.CLOSED, {"error": f"Job not found: {ident}"})]
            snapshot = [
                (events.RUNNING_STATE, {
                    "running": job.status == JobStatus.ITERATING,
                    "job": job.to_dict(),
                }),
            ]
            if job.is_terminal:
                snapshot.append((events.CLOSED, {"status": job.status.value}))
            return snapshot
        return []

    # === Background tasks ===

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Run a coroutine in the background and keep a reference until it ends."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def spawn_job_work(self, job: Job, coro: Coroutine, name: str) -> asyncio.Task:
        """Run single-job work in the background, blocking batches meanwhile."""
        self._job_work[job.id] = job.subject_id
        task = self.spawn(coro, name=name)
        task.add_done_callback(lambda _: self._job_work.pop(job.id, None))
        return task

    async def join(self) -> None:
        """Wait for every background batch, regeneration and revision."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all background work, e.g. on server shutdown."""
        for context in self._contexts.values():
            context.cancel.set()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # === Batches ===

    def start_batch(
        self,
        subject_id: str,
        item_ids: list[str],
        settings: GenerationSettings | None = None,
    ) -> asyncio.Task:
        """Validate and launch a batch in the background.

        The running flag is set before this returns, so a second call for
        the same subject is rejected even if the task has not started.

        Raises:
            NoItemsError: If ``item_ids`` is empty.
            AlreadyRunningError: If the subject already has a batch, a
                regeneration or a revision pass running.
            DailyLimitReachedError: If the daily quota is used up.
            BudgetLimitReachedError: If the monthly budget is used up.
        """
        if not item_ids:
            raise NoItemsError()
        if self.is_running(subject_id) or self.has_job_work(subject_id):
            raise AlreadyRunningError()
        self.governor.ensure_quota(subject_id)

        settings = settings or self.settings_for(subject_id)
        self._settings[subject_id] = settings

        context = SubjectContext(subject_id=subject_id)
        self._contexts[subject_id] = context
        context.task = self.spawn(
            self.run_batch(context, list(item_ids), settings),
            name=f"batch-{subject_id}",
        )
        logger.info("Started batch of %d items for subject %s", len(item_ids), subject_id)
        return context.task

    def start_single(
        self,
        subject_id: str,
        item_id: str,
        settings: GenerationSettings | None = None,
    ) -> asyncio.Task:
        """Launch a one-item batch.

        Raises:
            DuplicateJobError: If a job already exists for the item.
            AlreadyRunningError, DailyLimitReachedError,
            BudgetLimitReachedError: As for ``start_batch``.
        """
        existing = self.store.find_job(subject_id, item_id)
        if existing is not None:
            raise DuplicateJobError(subject_id, item_id, existing.id)
        return self.start_batch(subject_id, [item_id], settings)

    async def stop_batch(self, subject_id: str) -> None:
        """Ask the subject's batch to stop at the next boundary.

        Raises:
            NotRunningError: If no batch is running for the subject.
        """
        context = self._contexts.get(subject_id)
        if context is None or context.cancelled:
            raise NotRunningError()
        context.cancel.set()
        logger.info("Stop requested for subject %s", subject_id)
        await self.channels.emit(
            subject_key(subject_id),
            events.RUNNING_STATE,
            {"running": True, "stopping": True},
        )

    async def run_batch(
        self,
        context: SubjectContext,
        item_ids: list[str],
        settings: GenerationSettings,
    ) -> None:
        """Process source items one after another.

        Stops early on cancellation or an exhausted quota. A failing item
        is logged and the batch moves on to the next one.
        """
        subject_id = context.subject_id
        skey = subject_key(subject_id)
        self._contexts[subject_id] = context

        try:
            await self.channels.emit(skey, events.RUNNING_STATE, {"running": True})
            await self._emit_stats(subject_id)

            for index, item_id in enumerate(item_ids, start=1):
                if context.cancelled:
                    logger.info("Batch for subject %s cancelled before item %s", subject_id, item_id)
                    break

                if self.governor.quota_exceeded(subject_id):
                    state = self.governor.get_state(subject_id)
                    logger.info("Quota exhausted for subject %s, stopping batch", subject_id)
                    await self.channels.emit(skey, events.LIMIT_REACHED, {
                        "items_processed_today": state.items_processed_today,
                        "daily_limit": state.daily_limit,
                        "current_month_cost": state.current_month_cost,
                        "monthly_budget_limit": state.monthly_budget_limit,
                        "remaining_items": len(item_ids) - index + 1,
                    })
                    break

                try:
                    result = await self.run_single(subject_id, item_id, settings, context)
                except ConveyorError as e:
                    logger.warning("Skipping item %s for subject %s: %s", item_id, subject_id, e)
                except Exception:
                    logger.exception("Item %s failed for subject %s", item_id, subject_id)
                else:
                    if not result.success:
                        logger.info("Item %s finished without approval: %s", item_id, result.error)

                await self._emit_stats(subject_id)
        finally:
            if self._contexts.get(subject_id) is context:
                del self._contexts[subject_id]
            await self.channels.emit(skey, events.RUNNING_STATE, {"running": False})
            await self._emit_stats(subject_id)
            logger.info("Batch finished for subject %s", subject_id)

    # === Jobs ===

    async def run_single(
        self,
        subject_id: str,
        item_id: str,
        settings: GenerationSettings | None = None,
        context: SubjectContext | None = None,
    ) -> GenerationResult:
        """Create a job for a source item and run the loop on it.

        Raises:
            DuplicateJobError: If any job exists for the item. No job is
                created and no quota is used.
            SourceItemNotFoundError: If the item cannot be fetched.
        """
        settings = settings or self.settings_for(subject_id)

        existing = self.store.find_job(subject_id, item_id)
        if existing is not None:
            raise DuplicateJobError(subject_id, item_id, existing.id)

        source = await self.sources.get_source_item(item_id)
        job = self.store.create_job(subject_id, item_id, title=source.title)
        logger.info("Created job %s for item %s (subject %s)", job.id, item_id, subject_id)

        return await self.run_iterations(job, source, settings, context)

    async def run_iterations(
        self,
        job: Job,
        source: SourceItem,
        settings: GenerationSettings,
        context: SubjectContext | None = None,
    ) -> GenerationResult:
        """Run the draft/evaluate loop on a job until it reaches an outcome.

        The budget is charged exactly once for the job, whatever the
        outcome, including agent failures.
        """
        self.store.update_job(job.id, status=JobStatus.ITERATING, error=None)

        try:
            outcome = await self._iterate(job, source, settings, settings.max_iterations, context)
        except Exception as e:
            return await self._fail(job, e, charge=CHARGE_OUTCOME)

        return await self._finish(job, outcome, charge=CHARGE_OUTCOME)

    async def run_revision_pass(
        self,
        job: Job,
        feedback: str,
        target_scenes: list[int] | None = None,
        settings: GenerationSettings | None = None,
    ) -> GenerationResult:
        """Run one corrective iteration seeded with reviewer feedback.

        The job was already charged when its automatic loop ended, so a
        revision pass only adds its cost.
        """
        settings = settings or self.settings_for(job.subject_id)
        self.store.update_job(job.id, status=JobStatus.ITERATING, error=None)

        try:
            source = await self.sources.get_source_item(job.source_item_id)
        except Exception as e:
            return await self._fail(job, e, charge=None)

        try:
            outcome = await self._iterate(
                job,
                source,
                settings,
                max_iterations=1,
                feedback=feedback,
                target_scenes=target_scenes or [],
            )
        except Exception as e:
            return await self._fail(job, e, charge=CHARGE_COST)

        if outcome.reason == REASON_CAP_REACHED:
            outcome.reason = REASON_REVISION_UNRESOLVED
        return await self._finish(job, outcome, charge=CHARGE_COST)

    def regenerate(self, job_id: str, settings: GenerationSettings | None = None) -> asyncio.Task:
        """Run the automatic loop again for a job that was reset to pending.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStatusError: If the job is not pending.
            AlreadyRunningError: If a batch is running for the subject.
            DailyLimitReachedError, BudgetLimitReachedError: If the quota
                is used up.
        """
        job = self.store.get_job(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidJobStatusError(job.status.value, "regeneration")
        if self.is_running(job.subject_id):
            raise AlreadyRunningError()
        self.governor.ensure_quota(job.subject_id)

        # Claim the job now so a second request is refused
        self.store.update_job(job.id, status=JobStatus.ITERATING)
        settings = settings or self.settings_for(job.subject_id)
        return self.spawn_job_work(job, self._regenerate(job, settings), name=f"regenerate-{job.id}")

    async def _regenerate(self, job: Job, settings: GenerationSettings) -> GenerationResult:
        try:
            source = await self.sources.get_source_item(job.source_item_id)
        except Exception as e:
            return await self._fail(job, e, charge=None)
        result = await self.run_iterations(job, source, settings)
        await self._emit_stats(job.subject_id)
        return result

    # === Loop internals ===

    async def _iterate(
        self,
        job: Job,
        source: SourceItem,
        settings: GenerationSettings,
        max_iterations: int,
        context: SubjectContext | None = None,
        feedback: str | None = None,
        target_scenes: list[int] | None = None,
    ) -> _LoopOutcome:
        subject_id = job.subject_id
        threshold = self.learning.effective_threshold(subject_id, settings.approval_threshold)
        run_settings = settings.model_copy(update={"approval_threshold": threshold})
        learned = self.learning.writer_instructions(subject_id)

        latest = self.store.latest_iteration(job.id)
        base_version = latest.version if latest else 0
        previous_scenes: list[Scene] = list(latest.scenes) if latest else []
        previous_review: Review | None = None
        last_review: Review | None = None

        iteration = 0
        while iteration < max_iterations:
            if context is not None and context.cancelled:
                logger.info("Job %s cancelled after %d iterations", job.id, iteration)
                return _LoopOutcome(JobStatus.NEEDS_HUMAN_REVIEW, last_review, REASON_CANCELLED)

            iteration += 1
            await self._emit(job, events.DRAFT_STARTED, {"iteration": iteration})

            request = DraftRequest(
                source=source,
                version=base_version + iteration,
                settings=run_settings,
                review=previous_review,
                feedback=feedback if iteration == 1 else None,
                target_scenes=list(target_scenes or []) if iteration == 1 else [],
                previous_scenes=previous_scenes if (previous_review or feedback) else [],
                learned_instructions=learned,
            )
            draft = await self._consume(
                self.writer.stream_draft(request), Draft, job, events.DRAFT_THINKING, iteration
            )

            record = self.store.add_iteration(job.id, draft.scenes)
            self.store.update_job(job.id, iteration_count=record.version)
            await self._emit(job, events.DRAFT_COMPLETED, {
                "iteration": iteration,
                "version": record.version,
                "scenes": [s.to_dict() for s in draft.scenes],
                "total_duration": draft.total_duration,
            })

            await self._emit(job, events.EVALUATION_STARTED, {"iteration": iteration})
            review = await self._consume(
                self.editor.stream_review(draft, source, run_settings),
                Review,
                job,
                events.EVALUATION_THINKING,
                iteration,
            )

            self.store.attach_review(job.id, record.version, review)
            await self._emit(job, events.EVALUATION_COMPLETED, {
                "iteration": iteration,
                "version": record.version,
                "score": normalize_score(review.score),
                "raw_score": review.score,
                "verdict": review.verdict.value,
                "overall_comment": review.overall_comment,
            })
            last_review = review

            if review.verdict == Verdict.APPROVED or review.score >= threshold:
                if review.verdict != Verdict.APPROVED:
                    logger.warning(
                        "Job %s accepted on score %g (threshold %g) despite verdict '%s'",
                        job.id,
                        review.score,
                        threshold,
                        review.verdict.value,
                    )
                return _LoopOutcome(JobStatus.APPROVED, review, None)

            if review.verdict == Verdict.REJECTED:
                return _LoopOutcome(JobStatus.NEEDS_HUMAN_REVIEW, review, REASON_REJECTED)

            previous_review = review
            previous_scenes = draft.scenes

        return _LoopOutcome(JobStatus.NEEDS_HUMAN_REVIEW, last_review, REASON_CAP_REACHED)

    async def _consume(
        self,
        stream: AsyncIterator,
        result_type: type,
        job: Job,
        thinking_event: str,
        iteration: int,
    ):
        """Forward thinking chunks as they arrive and return the final result.

        Raises:
            AgentError: If the stream ends without exactly one result.
        """
        result = None
        async for item in stream:
            if isinstance(item, ThinkingChunk):
                await self._emit(job, thinking_event, {
                    "iteration": iteration,
                    "kind": item.kind,
                    "content": item.content,
                })
            elif isinstance(item, result_type):
                if result is not None:
                    raise AgentError(f"Agent produced more than one {result_type.__name__}")
                result = item
            else:
                raise AgentError(f"Agent produced unexpected output: {type(item).__name__}")

        if result is None:
            raise AgentError(f"Agent finished without a {result_type.__name__}")
        return result

    async def _finish(self, job: Job, outcome: _LoopOutcome, charge: str | None) -> GenerationResult:
        review = outcome.review
        gate = gate_decision_for(review.verdict) if review else GateDecision.NEEDS_REVIEW
        final_score = normalize_score(review.score) if review else None

        updated = self.store.update_job(
            job.id,
            status=outcome.status,
            gate_decision=gate,
            final_score=final_score,
            error=outcome.reason,
        )
        self._charge(job.subject_id, outcome.passed, charge)

        logger.info(
            "Job %s finished: %s (gate %s, score %s%s)",
            job.id,
            outcome.status.value,
            gate.value,
            final_score,
            f", {outcome.reason}" if outcome.reason else "",
        )
        await self._emit(job, events.JOB_COMPLETED, {
            "success": outcome.passed,
            "reason": outcome.reason,
            "job": updated.to_dict(),
        })
        if updated.is_terminal:
            await self.channels.close_all(job_key(job.id), {"status": updated.status.value})

        return GenerationResult(
            success=outcome.passed,
            job_id=job.id,
            final_score=final_score,
            error=outcome.reason,
        )

    async def _fail(self, job: Job, error: Exception, charge: str | None) -> GenerationResult:
        message = str(error) or type(error).__name__
        logger.error("Job %s failed: %s", job.id, message, exc_info=not isinstance(error, ConveyorError))

        # Gate and score follow the last verdict the editor gave, which is
        # persisted before anything later in the iteration can fail
        review = self.store.latest_review(job.id)
        updated = self.store.update_job(
            job.id,
            status=JobStatus.NEEDS_HUMAN_REVIEW,
            gate_decision=gate_decision_for(review.verdict) if review else GateDecision.NEEDS_REVIEW,
            final_score=normalize_score(review.score) if review else None,
            error=message,
        )
        self._charge(job.subject_id, False, charge)

        await self._emit(job, events.JOB_ERROR, {"error": message, "job": updated.to_dict()})
        return GenerationResult(success=False, job_id=job.id, error=message)

    def _charge(self, subject_id: str, passed: bool, charge: str | None) -> None:
        if charge == CHARGE_OUTCOME:
            self.governor.record_outcome(subject_id, passed)
        elif charge == CHARGE_COST:
            self.governor.add_cost(subject_id, self.governor.config.cost_per_item)

    async def _emit(self, job: Job, event: str, data: dict) -> None:
        payload = {"job_id": job.id, "source_item_id": job.source_item_id, **data}
        await self.channels.emit(job_key(job.id), event, payload)
        await self.channels.emit(subject_key(job.subject_id), event, payload)

    async def _emit_stats(self, subject_id: str) -> None:
        await self.channels.emit(subject_key(subject_id), events.STATS, self.get_stats(subject_id).to_dict())

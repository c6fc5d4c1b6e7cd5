"""Tests for the generation pipeline."""

import asyncio
import logging

import pytest

from script_conveyor.channels import job_key, subject_key
from script_conveyor.channels import manager as events
from script_conveyor.config import GenerationSettings
from script_conveyor.errors import (
    AgentError,
    AlreadyRunningError,
    DailyLimitReachedError,
    DuplicateJobError,
    NoItemsError,
    NotRunningError,
    SourceItemNotFoundError,
)
from script_conveyor.models import GateDecision, JobStatus, Verdict
from script_conveyor.pipeline import GenerationPipeline
from script_conveyor.pipeline.orchestrator import (
    REASON_CANCELLED,
    REASON_CAP_REACHED,
    REASON_REJECTED,
)


async def wait_for(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestLoopOutcomes:
    """Tests for the draft/evaluate loop on a single job."""

    @pytest.mark.asyncio
    async def test_approved_on_second_iteration(self, make_pipeline, editor_cls, job_store, governor, settings):
        pipeline = make_pipeline(editor_cls([(6, "needs_revision"), (9, "approved")]))

        result = await pipeline.run_single("s1", "a1", settings)

        assert result.success
        assert result.final_score == 90
        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.APPROVED
        assert job.gate_decision == GateDecision.PASS
        assert job.final_score == 90
        assert job.iteration_count == 2
        assert job.error is None
        assert [i.version for i in job_store.list_iterations(job.id)] == [1, 2]
        assert governor.get_state("s1").items_processed_today == 1

    @pytest.mark.asyncio
    async def test_iteration_cap_needs_human_review(self, make_pipeline, editor_cls, job_store, settings):
        pipeline = make_pipeline(editor_cls([(5, "needs_revision"), (6, "needs_revision"), (7, "needs_revision")]))

        result = await pipeline.run_single("s1", "a1", settings)

        assert not result.success
        assert result.error == REASON_CAP_REACHED
        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.NEEDS_HUMAN_REVIEW
        assert job.gate_decision == GateDecision.NEEDS_REVIEW
        assert job.final_score == 70
        iterations = job_store.list_iterations(job.id)
        assert [i.version for i in iterations] == [1, 2, 3]
        assert all(i.review is not None for i in iterations)

    @pytest.mark.asyncio
    async def test_rejected_verdict_stops_immediately(self, make_pipeline, editor_cls, job_store, settings):
        editor = editor_cls([(7, "rejected"), (9, "approved")])
        pipeline = make_pipeline(editor)

        result = await pipeline.run_single("s1", "a1", settings)

        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.NEEDS_HUMAN_REVIEW
        assert job.gate_decision == GateDecision.FAIL
        assert job.error == REASON_REJECTED
        assert editor.calls == 1
        assert len(job_store.list_iterations(job.id)) == 1

    @pytest.mark.asyncio
    async def test_score_above_threshold_accepts_despite_verdict(
        self, make_pipeline, editor_cls, job_store, settings, caplog
    ):
        pipeline = make_pipeline(editor_cls([(8.5, "needs_revision")]))

        with caplog.at_level(logging.WARNING, logger="script_conveyor.pipeline.orchestrator"):
            result = await pipeline.run_single("s1", "a1", settings)

        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.APPROVED
        assert job.gate_decision == GateDecision.NEEDS_REVIEW
        assert job.final_score == 85
        assert "despite verdict" in caplog.text

    @pytest.mark.asyncio
    async def test_learned_threshold_overrides_requested(
        self, make_pipeline, editor_cls, governor, job_store, settings
    ):
        governor.update_learning("s1", learned_threshold=60)
        pipeline = make_pipeline(editor_cls([(6, "needs_revision")]))

        result = await pipeline.run_single("s1", "a1", settings)

        assert result.success
        assert job_store.get_job(result.job_id).status == JobStatus.APPROVED


class TestAgentRequests:
    """Tests for what the scriptwriter is asked to do."""

    @pytest.mark.asyncio
    async def test_retry_carries_review_and_previous_scenes(self, make_pipeline, editor_cls, writer, settings):
        pipeline = make_pipeline(editor_cls([(6, "needs_revision"), (9, "approved")]))

        await pipeline.run_single("s1", "a1", settings)

        first, second = writer.requests
        assert first.version == 1
        assert first.review is None
        assert first.previous_scenes == []
        assert second.version == 2
        assert second.review.score == 6
        assert second.review.verdict == Verdict.NEEDS_REVISION
        assert [s.number for s in second.previous_scenes] == [1, 2]
        assert second.feedback is None

    @pytest.mark.asyncio
    async def test_learned_instructions_reach_writer(self, pipeline, writer, settings):
        pipeline.learning.on_revise("s1", "too long")
        pipeline.learning.on_revise("s1", "still too long")

        await pipeline.run_single("s1", "a1", settings)

        assert writer.requests[0].learned_instructions == ["Keep the script under 60 seconds."]


class TestFailures:
    """Tests for error handling inside a job."""

    @pytest.mark.asyncio
    async def test_editor_error_fails_job_and_charges_once(
        self, make_pipeline, editor_cls, job_store, governor, channels, make_sink, settings
    ):
        pipeline = make_pipeline(editor_cls([AgentError("Editor returned no numeric score")]))
        sink = make_sink()
        await channels.subscribe(subject_key("s1"), sink)

        result = await pipeline.run_single("s1", "a1", settings)

        assert not result.success
        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.NEEDS_HUMAN_REVIEW
        assert job.gate_decision == GateDecision.NEEDS_REVIEW
        assert job.error == "Editor returned no numeric score"
        # The draft was persisted before the editor failed
        assert len(job_store.list_iterations(job.id)) == 1

        state = governor.get_state("s1")
        assert state.items_processed_today == 1
        assert state.total_failed == 1

        errors = sink.events(events.JOB_ERROR)
        assert len(errors) == 1
        assert errors[0]["data"]["error"] == "Editor returned no numeric score"

    @pytest.mark.asyncio
    async def test_writer_error(self, make_pipeline, editor_cls, writer_cls, job_store, settings):
        pipeline = make_pipeline(editor_cls(), writer=writer_cls(error=AgentError("Scriptwriter returned no scenes")))

        result = await pipeline.run_single("s1", "a1", settings)

        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.NEEDS_HUMAN_REVIEW
        assert job.error == "Scriptwriter returned no scenes"
        assert job_store.list_iterations(job.id) == []

    @pytest.mark.asyncio
    async def test_missing_source_item(self, pipeline, job_store):
        with pytest.raises(SourceItemNotFoundError):
            await pipeline.run_single("s1", "missing")
        assert job_store.list_jobs("s1") == []


class TestDeduplication:
    """Tests for one job per (subject, source item)."""

    @pytest.mark.asyncio
    async def test_second_run_is_refused(self, pipeline, job_store, governor, settings):
        await pipeline.run_single("s1", "a1", settings)

        with pytest.raises(DuplicateJobError):
            await pipeline.run_single("s1", "a1", settings)

        assert len(job_store.list_jobs("s1")) == 1
        assert governor.get_state("s1").items_processed_today == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_create_one_job(self, pipeline, job_store, settings):
        results = await asyncio.gather(
            pipeline.run_single("s1", "a1", settings),
            pipeline.run_single("s1", "a1", settings),
            return_exceptions=True,
        )

        assert sum(isinstance(r, DuplicateJobError) for r in results) == 1
        assert len(job_store.list_jobs("s1")) == 1

    @pytest.mark.asyncio
    async def test_terminal_jobs_also_block(self, pipeline, job_store):
        job = job_store.create_job("s1", "a1")
        job_store.update_job(job.id, status=JobStatus.REJECTED)

        with pytest.raises(DuplicateJobError):
            pipeline.start_single("s1", "a1")


class TestBatches:
    """Tests for batch runs."""

    @pytest.mark.asyncio
    async def test_batch_processes_items_in_order(self, pipeline, job_store, writer, settings):
        task = pipeline.start_batch("s1", ["a1", "a2", "a3"], settings)
        assert pipeline.is_running("s1")

        await task

        assert not pipeline.is_running("s1")
        assert [r.source.id for r in writer.requests if r.version == 1] == ["a1", "a2", "a3"]
        assert len(job_store.list_jobs("s1")) == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, pipeline):
        with pytest.raises(NoItemsError):
            pipeline.start_batch("s1", [])

    @pytest.mark.asyncio
    async def test_second_batch_is_refused(self, pipeline, settings):
        pipeline.start_batch("s1", ["a1"], settings)
        with pytest.raises(AlreadyRunningError):
            pipeline.start_batch("s1", ["a2"], settings)
        # Other subjects are unaffected
        pipeline.start_batch("s2", ["a2"], settings)
        await pipeline.join()

    @pytest.mark.asyncio
    async def test_start_refused_when_quota_used(self, pipeline, governor):
        governor.update_limits("s1", daily_limit=1)
        governor.record_outcome("s1", passed=True)

        with pytest.raises(DailyLimitReachedError):
            pipeline.start_batch("s1", ["a1"])
        assert not pipeline.is_running("s1")

    @pytest.mark.asyncio
    async def test_limit_reached_mid_batch(
        self, pipeline, governor, channels, job_store, make_sink
    ):
        governor.update_limits("s1", daily_limit=2)
        sink = make_sink()
        await channels.subscribe(subject_key("s1"), sink)

        await pipeline.start_batch("s1", ["a1", "a2", "a3", "a4"], GenerationSettings(max_iterations=1))

        assert len(job_store.list_jobs("s1")) == 2
        limits = sink.events(events.LIMIT_REACHED)
        assert len(limits) == 1
        assert limits[0]["data"]["items_processed_today"] == 2
        assert limits[0]["data"]["daily_limit"] == 2
        assert limits[0]["data"]["remaining_items"] == 2

    @pytest.mark.asyncio
    async def test_bad_items_are_skipped(self, pipeline, job_store, settings):
        job_store.create_job("s1", "a2")

        await pipeline.start_batch("s1", ["a1", "missing", "a2", "a3"], settings)

        items = sorted(j.source_item_id for j in job_store.list_jobs("s1"))
        assert items == ["a1", "a2", "a3"]

    @pytest.mark.asyncio
    async def test_settings_are_remembered(self, pipeline):
        custom = GenerationSettings(max_iterations=2, approval_threshold=6)
        await pipeline.start_batch("s1", ["a1"], custom)
        assert pipeline.settings_for("s1") == custom
        assert pipeline.settings_for("s2") == pipeline.default_settings()

    @pytest.mark.asyncio
    async def test_running_state_events(self, pipeline, channels, make_sink, settings):
        sink = make_sink()
        await channels.subscribe(subject_key("s1"), sink)

        await pipeline.start_batch("s1", ["a1"], settings)

        states = [m["data"]["running"] for m in sink.events(events.RUNNING_STATE)]
        # Snapshot, batch start, batch end
        assert states == [False, True, False]
        assert sink.events(events.STATS)[-1]["data"]["written"] == 1


class TestCancellation:
    """Tests for stopping a running batch."""

    @pytest.mark.asyncio
    async def test_stop_finishes_current_iteration_only(
        self, make_pipeline, editor_cls, job_store, governor, channels, make_sink, settings
    ):
        gate = asyncio.Event()
        editor = editor_cls(gate=gate)
        pipeline = make_pipeline(editor)
        sink = make_sink()
        await channels.subscribe(subject_key("s1"), sink)

        task = pipeline.start_batch("s1", ["a1", "a2"], settings)
        await wait_for(lambda: editor.calls == 1)

        await pipeline.stop_batch("s1")
        # Still running until the in-flight call returns
        assert pipeline.is_running("s1")
        assert {"running": True, "stopping": True} in [m["data"] for m in sink.events(events.RUNNING_STATE)]
        with pytest.raises(NotRunningError):
            await pipeline.stop_batch("s1")

        gate.set()
        await task

        assert not pipeline.is_running("s1")
        jobs = job_store.list_jobs("s1")
        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.NEEDS_HUMAN_REVIEW
        assert jobs[0].error == REASON_CANCELLED
        assert jobs[0].iteration_count == 1
        assert governor.get_state("s1").items_processed_today == 1

    @pytest.mark.asyncio
    async def test_stop_without_batch(self, pipeline):
        with pytest.raises(NotRunningError):
            await pipeline.stop_batch("s1")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_background_work(self, make_pipeline, editor_cls, settings):
        editor = editor_cls(gate=asyncio.Event())
        pipeline = make_pipeline(editor)

        pipeline.start_batch("s1", ["a1"], settings)
        await wait_for(lambda: editor.calls == 1)

        await pipeline.shutdown()
        assert not pipeline.is_running("s1")


class TestEvents:
    """Tests for live progress events."""

    @pytest.mark.asyncio
    async def test_event_sequence_for_one_iteration(
        self, make_pipeline, editor_cls, channels, make_sink, settings
    ):
        pipeline = make_pipeline(editor_cls([(9, "approved")]))
        sink = make_sink()
        await channels.subscribe(subject_key("s1"), sink)

        result = await pipeline.run_single("s1", "a1", settings)

        job_events = [m for m in sink.messages if m["data"].get("job_id") == result.job_id]
        assert [m["event"] for m in job_events] == [
            events.DRAFT_STARTED,
            events.DRAFT_THINKING,
            events.DRAFT_COMPLETED,
            events.EVALUATION_STARTED,
            events.EVALUATION_THINKING,
            events.EVALUATION_COMPLETED,
            events.JOB_COMPLETED,
        ]
        thinking = job_events[1]["data"]
        assert thinking["content"] == "drafting v1"
        assert thinking["iteration"] == 1
        assert thinking["source_item_id"] == "a1"

        completed = job_events[2]["data"]
        assert completed["version"] == 1
        assert completed["total_duration"] == 15
        assert len(completed["scenes"]) == 2

        evaluation = job_events[5]["data"]
        assert evaluation["score"] == 90
        assert evaluation["raw_score"] == 9
        assert evaluation["verdict"] == "approved"

        final = job_events[6]["data"]
        assert final["success"] is True
        assert final["job"]["status"] == "approved"

    @pytest.mark.asyncio
    async def test_job_channel_closes_on_terminal_status(
        self, make_pipeline, editor_cls, job_store, channels, make_sink, settings
    ):
        gate = asyncio.Event()
        pipeline = make_pipeline(editor_cls([(9, "approved")], gate=gate))

        task = asyncio.create_task(pipeline.run_single("s1", "a1", settings))
        await wait_for(lambda: job_store.find_job("s1", "a1") is not None)
        job = job_store.find_job("s1", "a1")

        sink = make_sink()
        await channels.subscribe(job_key(job.id), sink)
        snapshot = sink.messages[0]
        assert snapshot["event"] == events.RUNNING_STATE
        assert snapshot["data"]["running"] is True
        assert snapshot["data"]["job"]["id"] == job.id

        gate.set()
        await task

        assert sink.closed
        assert sink.messages[-1] == {"event": events.CLOSED, "data": {"status": "approved"}}
        assert channels.subscriber_count(job_key(job.id)) == 0

    @pytest.mark.asyncio
    async def test_job_channel_stays_open_for_review(
        self, pipeline, job_store, channels, make_sink, settings
    ):
        job = job_store.create_job("s1", "a1", title="Article 1")
        source = await pipeline.sources.get_source_item("a1")
        sink = make_sink()
        await channels.subscribe(job_key(job.id), sink)

        await pipeline.run_iterations(job, source, GenerationSettings(max_iterations=1))

        assert not sink.closed
        assert sink.events(events.JOB_COMPLETED)[0]["data"]["success"] is False

    @pytest.mark.asyncio
    async def test_late_subscriber_to_finished_job_is_closed(
        self, make_pipeline, editor_cls, channels, make_sink, settings
    ):
        pipeline = make_pipeline(editor_cls([(9, "approved")]))
        result = await pipeline.run_single("s1", "a1", settings)

        sink = make_sink()
        await channels.subscribe(job_key(result.job_id), sink)

        assert [m["event"] for m in sink.messages] == [events.RUNNING_STATE, events.CLOSED]
        assert sink.messages[0]["data"]["job"]["status"] == "approved"
        assert sink.closed
        assert channels.subscriber_count(job_key(result.job_id)) == 0

    @pytest.mark.asyncio
    async def test_snapshots(self, pipeline, settings):
        subject_snapshot = await pipeline.snapshot(subject_key("s1"))
        assert [event for event, _ in subject_snapshot] == [events.RUNNING_STATE, events.STATS]

        [(event, _)] = await pipeline.snapshot(job_key("job_missing"))
        assert event == events.CLOSED

        result = await pipeline.run_single("s1", "a1", settings)
        [(event, data)] = await pipeline.snapshot(job_key(result.job_id))
        assert event == events.RUNNING_STATE
        assert data["running"] is False
        assert data["job"]["status"] == "needs_human_review"


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_after_runs(self, make_pipeline, editor_cls, settings):
        pipeline: GenerationPipeline = make_pipeline(
            editor_cls([(9, "approved"), (2, "rejected")])
        )
        await pipeline.run_single("s1", "a1", settings)
        await pipeline.run_single("s1", "a2", settings)

        stats = pipeline.get_stats("s1")
        assert stats.running is False
        assert stats.written == 2
        assert stats.approved == 1
        assert stats.in_review == 1
        assert stats.iterating == 0
        assert stats.items_processed_today == 2
        assert stats.remaining_today == 8
        assert stats.total_passed == 1
        assert stats.total_failed == 1
        assert stats.current_month_cost == pytest.approx(0.1)
        assert stats.to_dict()["daily_limit"] == 10

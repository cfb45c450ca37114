"""
Tests for the job lifecycle: JobManager transitions and JobRunner execution.
"""

import asyncio

import pytest
from pydantic import ValidationError

from aaronos.jobs.job_manager import InvalidTransitionError, JobManager, WorkNotFoundError
from aaronos.jobs.job_types import BookResult, ResearchResult, WorkKind, WorkStatus
from aaronos.jobs.runner import JobRunner, Pipeline, PipelineStep, PROGRESS_FLOOR
from conftest import RecordingStore


def _research_record(manager, query="ai writing tools"):
    return manager.create_work(WorkKind.RESEARCH, "owner-1", {"query": query})


def _done(ctx):
    return ResearchResult(summary="done", confidence=0.5)


async def _noop(ctx):
    return None


# =============================================================================
# JOB MANAGER
# =============================================================================

class TestJobManager:
    """WorkRecord creation and state machine."""

    def test_create_work_is_pending(self, manager):
        record = _research_record(manager)
        assert record.status == WorkStatus.PENDING
        assert record.progress == 0
        assert record.params["query"] == "ai writing tools"
        assert record.params["depth"] == "standard"

    def test_invalid_params_create_nothing(self, manager, store):
        with pytest.raises(ValidationError):
            manager.create_work(WorkKind.RESEARCH, "owner-1", {"query": "   "})
        assert store.work == {}

    def test_invalid_scan_url_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.create_work(WorkKind.ACCESSIBILITY_SCAN, "owner-1", {"target_url": "not-a-url"})

    def test_scan_domains_default_to_seed_host(self, manager):
        record = manager.create_work(
            WorkKind.ACCESSIBILITY_SCAN, "owner-1", {"target_url": "https://Example.com/start"}
        )
        assert record.params["domains"] == ["example.com"]

    def test_get_unknown_raises(self, manager):
        assert manager.get_work("missing") is None
        with pytest.raises(WorkNotFoundError):
            manager.get("missing")

    def test_progress_only_while_running(self, manager):
        record = _research_record(manager)
        with pytest.raises(InvalidTransitionError):
            manager.update_progress(record.id, 10)

    def test_progress_never_decreases_or_reaches_100(self, manager):
        record = _research_record(manager)
        manager.mark_running(record.id, progress=5)
        assert manager.update_progress(record.id, 40).progress == 40
        assert manager.update_progress(record.id, 20).progress == 40
        assert manager.update_progress(record.id, 150).progress == 99

    def test_completed_sets_100_and_result(self, manager):
        record = _research_record(manager)
        manager.mark_running(record.id)
        done = manager.mark_completed(record.id, ResearchResult(summary="s", confidence=0.9))
        assert done.status == WorkStatus.COMPLETED
        assert done.progress == 100
        assert done.completed_at is not None
        assert done.error is None
        assert isinstance(done.typed_result(), ResearchResult)

    def test_completed_rejects_wrong_result_kind(self, manager, tmp_path):
        record = _research_record(manager)
        manager.mark_running(record.id)
        wrong = BookResult(
            title="t", file_path=str(tmp_path / "x.pdf"), format="pdf", quality=0.7,
            generated_at="2024-01-01T00:00:00Z",
        )
        with pytest.raises(TypeError):
            manager.mark_completed(record.id, wrong)

    def test_pending_cannot_complete(self, manager):
        record = _research_record(manager)
        with pytest.raises(InvalidTransitionError):
            manager.mark_completed(record.id, None)

    def test_terminal_records_are_frozen(self, manager):
        record = _research_record(manager)
        manager.mark_running(record.id)
        failed = manager.mark_failed(record.id, "boom", failing_stage="plan")
        assert failed.error == "boom"
        assert failed.result is None

        with pytest.raises(InvalidTransitionError):
            manager.mark_running(record.id)
        with pytest.raises(InvalidTransitionError):
            manager.mark_cancelled(record.id)
        with pytest.raises(InvalidTransitionError):
            manager.update_progress(record.id, 50)
        assert manager.get(record.id) == failed

    def test_status_includes_hint_for_failures(self, manager):
        record = _research_record(manager)
        manager.mark_running(record.id)
        manager.mark_failed(record.id, "Request timed out", failing_stage="gather")
        status = manager.get_status(record.id)
        assert status.status == WorkStatus.FAILED
        assert status.error == "Request timed out"
        assert "timed out" in status.hint
        assert status.can_cancel is False

    def test_hint_uses_error_type(self, manager):
        record = _research_record(manager)
        manager.mark_running(record.id)
        manager.mark_failed(record.id, "connection refused", error_type="NavigationError")
        assert "Could not connect" in manager.get_status(record.id).hint

        other = _research_record(manager)
        manager.mark_running(other.id)
        manager.mark_failed(other.id, "connection refused")
        assert manager.get_status(other.id).hint.startswith("An error occurred")

    def test_list_work_filters_by_owner_and_kind(self, manager):
        _research_record(manager)
        manager.create_work(WorkKind.RESEARCH, "owner-2", {"query": "other"})
        manager.create_work(WorkKind.ACCESSIBILITY_SCAN, "owner-1", {"target_url": "https://example.com"})

        listed = manager.list_work(owner_id="owner-1")
        assert listed.total_count == 2
        listed = manager.list_work(owner_id="owner-1", kind=WorkKind.RESEARCH)
        assert [r.kind for r in listed.items] == [WorkKind.RESEARCH]

    def test_wait_for_terminal_times_out(self, manager):
        record = _research_record(manager)
        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(manager.wait_for_terminal(record.id, interval=0.01, timeout=0.05))

    def test_wait_for_terminal_returns_terminal_record(self, manager):
        record = _research_record(manager)
        manager.mark_cancelled(record.id)
        result = asyncio.run(manager.wait_for_terminal(record.id, interval=0.01, timeout=1))
        assert result.status == WorkStatus.CANCELLED


# =============================================================================
# JOB RUNNER
# =============================================================================

class TestJobRunner:
    """Pipeline execution, failure capture and cancellation."""

    def test_successful_pipeline(self, manager, runner, store):
        record = _research_record(manager)
        pipeline = Pipeline(
            steps=[
                PipelineStep("one", 30, _noop),
                PipelineStep("two", 70, _noop),
            ],
            assemble=_done,
        )

        final = asyncio.run(runner.execute_pipeline(record.id, pipeline))

        assert final.status == WorkStatus.COMPLETED
        assert final.progress == 100
        assert final.result["summary"] == "done"
        assert final.error is None

        progress = store.progress_sequence(record.id)
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert PROGRESS_FLOOR in progress
        assert all(p < 100 for p in progress[:-1])

    def test_step_state_is_shared(self, manager, runner):
        record = _research_record(manager)
        seen = {}

        async def first(ctx):
            return ["a", "b"]

        async def second(ctx):
            seen["first"] = ctx.state["first"]

        pipeline = Pipeline(
            steps=[PipelineStep("first", 1, first), PipelineStep("second", 1, second)],
            assemble=_done,
        )
        asyncio.run(runner.execute_pipeline(record.id, pipeline))
        assert seen["first"] == ["a", "b"]

    def test_failing_step_marks_failed(self, manager, runner, store):
        record = _research_record(manager)

        async def broken(ctx):
            raise RuntimeError("source service unavailable")

        pipeline = Pipeline(
            steps=[PipelineStep("plan", 50, _noop), PipelineStep("gather", 50, broken)],
            assemble=_done,
        )

        final = asyncio.run(runner.execute_pipeline(record.id, pipeline))

        assert final.status == WorkStatus.FAILED
        assert final.error == "source service unavailable"
        assert final.failing_stage == "gather"
        assert final.error_type == "RuntimeError"
        assert final.result is None
        assert final.progress < 100
        assert "Traceback" not in final.error

    def test_empty_exception_message_uses_type_name(self, manager, runner):
        record = _research_record(manager)

        async def broken(ctx):
            raise KeyError()

        final = asyncio.run(runner.execute_pipeline(record.id, Pipeline(steps=[PipelineStep("x", 1, broken)])))
        assert final.error == "KeyError"

    def test_assemble_failure_is_captured(self, manager, runner):
        record = _research_record(manager)

        def bad_assemble(ctx):
            raise ValueError("could not assemble")

        final = asyncio.run(runner.execute_pipeline(
            record.id, Pipeline(steps=[PipelineStep("x", 1, _noop)], assemble=bad_assemble)
        ))
        assert final.status == WorkStatus.FAILED
        assert final.failing_stage == "assemble"

    def test_warnings_are_saved(self, manager, runner):
        record = _research_record(manager)

        async def warns(ctx):
            ctx.warn("chapter 2 is short")

        final = asyncio.run(runner.execute_pipeline(
            record.id, Pipeline(steps=[PipelineStep("x", 1, warns)], assemble=_done)
        ))
        assert final.status == WorkStatus.COMPLETED
        assert final.warnings == ["chapter 2 is short"]

    def test_cleanup_runs_on_failure(self, manager, runner):
        record = _research_record(manager)
        cleaned = []

        async def broken(ctx):
            raise RuntimeError("boom")

        async def cleanup():
            cleaned.append(True)

        asyncio.run(runner.execute_pipeline(
            record.id, Pipeline(steps=[PipelineStep("x", 1, broken)], cleanup=cleanup)
        ))
        assert cleaned == [True]

    def test_report_within_step(self, manager, runner, store):
        record = _research_record(manager)

        async def chunked(ctx):
            for i in range(4):
                ctx.report(i + 1, 4)

        asyncio.run(runner.execute_pipeline(
            record.id, Pipeline(steps=[PipelineStep("chunked", 1, chunked)], assemble=_done)
        ))
        progress = store.progress_sequence(record.id)
        assert progress == sorted(progress)
        assert len(set(progress)) >= 5

    def test_unregistered_kind_fails(self, manager, runner):
        record = _research_record(manager)
        final = asyncio.run(runner.execute(record.id))
        assert final.status == WorkStatus.FAILED
        assert "No pipeline registered" in final.error

    def test_execute_uses_registered_factory(self, manager, runner):
        record = _research_record(manager, query="  spaced query  ")
        received = {}

        def factory(params):
            received["query"] = params.query
            return Pipeline(steps=[PipelineStep("x", 1, _noop)], assemble=_done)

        runner.register_pipeline(WorkKind.RESEARCH, factory)
        final = asyncio.run(runner.execute(record.id))
        assert final.status == WorkStatus.COMPLETED
        assert received["query"] == "spaced query"

    def test_terminal_record_is_returned_unchanged(self, manager, runner):
        record = _research_record(manager)
        cancelled = manager.mark_cancelled(record.id)
        final = asyncio.run(runner.execute_pipeline(
            record.id, Pipeline(steps=[PipelineStep("x", 1, _noop)], assemble=_done)
        ))
        assert final == cancelled
        assert manager.get(record.id) == cancelled

    def test_empty_pipeline_completes_immediately(self, manager, runner):
        record = _research_record(manager)

        final = asyncio.run(runner.execute_pipeline(record.id, Pipeline()))

        assert final.status == WorkStatus.COMPLETED
        assert final.progress == 100
        assert final.completed_at is not None

    def test_duplicate_execution_does_not_raise(self, manager, runner):
        record = _research_record(manager)

        async def slow(ctx):
            await asyncio.sleep(0.01)

        pipeline = Pipeline(steps=[PipelineStep("x", 1, slow)], assemble=_done)

        async def scenario():
            return await asyncio.gather(
                runner.execute_pipeline(record.id, pipeline),
                runner.execute_pipeline(record.id, pipeline),
            )

        first, second = asyncio.run(scenario())

        assert first.status == WorkStatus.COMPLETED
        assert second.id == record.id
        assert manager.get(record.id).status == WorkStatus.COMPLETED
        assert runner.active_count == 0

    def test_record_running_elsewhere_is_left_alone(self, manager, runner):
        record = _research_record(manager)
        running = manager.mark_running(record.id, progress=30)

        final = asyncio.run(runner.execute_pipeline(
            record.id, Pipeline(steps=[PipelineStep("x", 1, _noop)], assemble=_done)
        ))

        assert final == running
        assert manager.get(record.id).progress == 30

    def test_execute_missing_record_returns_none(self, runner):
        assert asyncio.run(runner.execute("missing")) is None


class TestCancellation:
    """Cooperative cancellation."""

    def test_cancel_pending_is_immediate(self, manager, runner):
        record = _research_record(manager)
        cancelled = runner.cancel(record.id)
        assert cancelled.status == WorkStatus.CANCELLED
        assert cancelled.stage == "cancelled"

    def test_cancel_terminal_raises(self, manager, runner):
        record = _research_record(manager)
        runner.cancel(record.id)
        with pytest.raises(InvalidTransitionError):
            runner.cancel(record.id)

    def test_cancel_unknown_raises(self, runner):
        with pytest.raises(WorkNotFoundError):
            runner.cancel("missing")

    def test_cancel_running_stops_at_next_checkpoint(self, manager, runner):
        record = _research_record(manager)
        after_cancel = []

        async def scenario():
            started = asyncio.Event()
            release = asyncio.Event()

            async def slow(ctx):
                started.set()
                await release.wait()

            async def never(ctx):
                after_cancel.append(True)

            pipeline = Pipeline(
                steps=[PipelineStep("slow", 1, slow), PipelineStep("never", 1, never)],
                assemble=_done,
            )
            task = asyncio.create_task(runner.execute_pipeline(record.id, pipeline))
            await started.wait()

            still_running = runner.cancel(record.id)
            assert still_running.status == WorkStatus.RUNNING

            release.set()
            return await task

        final = asyncio.run(scenario())
        assert final.status == WorkStatus.CANCELLED
        assert final.result is None
        assert after_cancel == []

    def test_task_cancellation_marks_cancelled(self, manager, runner):
        record = _research_record(manager)

        async def scenario():
            started = asyncio.Event()

            async def hang(ctx):
                started.set()
                await asyncio.sleep(10)

            task = asyncio.create_task(runner.execute_pipeline(
                record.id, Pipeline(steps=[PipelineStep("hang", 1, hang)])
            ))
            await started.wait()
            task.cancel()
            return await task

        final = asyncio.run(scenario())
        assert final.status == WorkStatus.CANCELLED

    def test_shutdown_cancels_background_work(self, manager, runner):
        record = _research_record(manager)

        async def hang(ctx):
            await asyncio.sleep(10)

        runner.register_pipeline(
            WorkKind.RESEARCH, lambda params: Pipeline(steps=[PipelineStep("hang", 1, hang)])
        )

        async def scenario():
            runner.run_background(record.id)
            await asyncio.sleep(0.05)
            await runner.shutdown()

        asyncio.run(scenario())
        assert manager.get(record.id).status == WorkStatus.CANCELLED


class TestConcurrency:
    """Semaphore-bounded execution."""

    def test_concurrency_cap_is_respected(self):
        store = RecordingStore()
        manager = JobManager(store)
        runner = JobRunner(manager, max_concurrent=2)
        counters = {"active": 0, "max": 0}

        async def busy(ctx):
            counters["active"] += 1
            counters["max"] = max(counters["max"], counters["active"])
            await asyncio.sleep(0.02)
            counters["active"] -= 1

        records = [_research_record(manager, query=f"q{i}") for i in range(5)]

        async def scenario():
            return await asyncio.gather(*[
                runner.execute_pipeline(r.id, Pipeline(steps=[PipelineStep("busy", 1, busy)], assemble=_done))
                for r in records
            ])

        finals = asyncio.run(scenario())
        assert counters["max"] == 2
        assert all(f.status == WorkStatus.COMPLETED for f in finals)

    def test_max_concurrent_must_be_positive(self, manager):
        with pytest.raises(ValueError):
            JobRunner(manager, max_concurrent=0)

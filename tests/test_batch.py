"""Tests for the fan-out/join batch coordinator (app/batch.py).

Jobs are driven by GatedRunner so each test decides exactly when, and in which
order, every job completes.
"""

from __future__ import annotations

import asyncio
import itertools

import pytest
from conftest import GatedRunner, InstantRunner, settle

from app.batch import BatchStatus, JobBatch
from app.jobs import JobOutcome, build_job_specs

ALL_QUALITIES = (320, 160, 80, 40)


@pytest.fixture
def specs(sample_audio_file, tmp_path):
    return build_job_specs(sample_audio_file, tmp_path / "out")


def _start(batch: JobBatch) -> asyncio.Task:
    return asyncio.create_task(batch.run())


class TestConstruction:
    """Tests for JobBatch construction rules."""

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            JobBatch([], InstantRunner())

    def test_rejects_duplicate_destinations(self, specs):
        with pytest.raises(ValueError, match="unique"):
            JobBatch([specs[0], specs[0]], InstantRunner())

    def test_starts_pending(self, specs):
        batch = JobBatch(specs, InstantRunner())
        assert not batch.resolved
        assert batch.result is None
        assert batch.pending_jobs == list(specs)

    def test_result_unavailable_before_resolution(self, specs):
        batch = JobBatch(specs, InstantRunner())
        with pytest.raises(RuntimeError, match="has not resolved"):
            batch._resolved_result()

    def test_run_twice_raises(self, specs):
        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            await batch.run()
            with pytest.raises(RuntimeError, match="already started"):
                await batch.run()

        asyncio.run(scenario())


class TestAllSuccess:
    """All-success resolves once, and only after the final outcome."""

    @pytest.mark.parametrize("count", [1, 2, 3, 4])
    def test_resolves_success_for_any_batch_size(self, sample_audio_file, tmp_path, count):
        qualities = ALL_QUALITIES[:count]
        specs = build_job_specs(sample_audio_file, tmp_path, qualities=qualities)

        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            calls = []
            batch.add_done_callback(calls.append)
            result = await batch.run()
            await batch.wait_closed()
            return result, calls

        result, calls = asyncio.run(scenario())

        assert result.status == BatchStatus.SUCCESS
        assert result.outputs == tuple(s.destination_path for s in specs)
        assert calls == [result]

    @pytest.mark.parametrize("order", list(itertools.permutations(ALL_QUALITIES)))
    def test_not_resolved_before_last_outcome(self, specs, order):
        async def scenario():
            runner = GatedRunner()
            batch = JobBatch(specs, runner)
            task = _start(batch)

            for quality in order[:-1]:
                runner.release(quality)
                await settle()
                assert not batch.resolved, f"resolved early after {quality}"

            runner.release(order[-1])
            return await task

        result = asyncio.run(scenario())

        assert result.ok
        assert len(result.outputs) == 4
        assert all(path.exists() for path in result.outputs)

    def test_outputs_follow_job_order_not_completion_order(self, specs):
        async def scenario():
            runner = GatedRunner()
            batch = JobBatch(specs, runner)
            task = _start(batch)
            runner.release(40, 80, 160, 320)
            return await task

        result = asyncio.run(scenario())
        assert [p.name for p in result.outputs] == [
            "track-320.opus",
            "track-160.opus",
            "track-80.opus",
            "track-40.opus",
        ]


class TestFirstFailureWins:
    """The first failure resolves the batch; later outcomes never change it."""

    def test_failure_before_others_finish(self, specs):
        """160 fails first; 320/80/40 succeed later; result stays failed."""

        async def scenario():
            runner = GatedRunner(failures={160: "opusenc exited with status 1"})
            batch = JobBatch(specs, runner)
            calls = []
            batch.add_done_callback(calls.append)

            task = _start(batch)
            await settle()
            runner.release(160)
            result = await task

            assert [int(s.quality) for s in batch.pending_jobs] == [320, 80, 40]

            runner.release(320, 80, 40)
            await batch.wait_closed()
            return batch, result, calls

        batch, result, calls = asyncio.run(scenario())

        assert result.status == BatchStatus.FAILED
        assert int(result.failed_quality) == 160
        assert "status 1" in result.reason
        assert result.outputs == ()
        assert batch.result is result
        assert calls == [result]
        assert len(batch.late_outcomes) == 3
        assert all(o.ok for o in batch.late_outcomes)

    def test_late_successes_do_not_leave_outputs(self, specs):
        async def scenario():
            runner = GatedRunner(failures={160: "boom"})
            batch = JobBatch(specs, runner)
            task = _start(batch)
            runner.release(320)
            await settle()
            runner.release(160)
            await task
            runner.release(80, 40)
            await batch.wait_closed()

        asyncio.run(scenario())

        assert not any(spec.destination_path.exists() for spec in specs)

    @pytest.mark.parametrize("failing", ALL_QUALITIES)
    @pytest.mark.parametrize("position", [0, 1, 2, 3])
    def test_single_failure_any_arrival_position(self, specs, failing, position):
        others = [q for q in ALL_QUALITIES if q != failing]
        order = others[:position] + [failing] + others[position:]

        async def scenario():
            runner = GatedRunner(failures={failing: f"failed at {failing}"})
            batch = JobBatch(specs, runner)
            calls = []
            batch.add_done_callback(calls.append)
            task = _start(batch)
            for quality in order:
                runner.release(quality)
                await settle()
            result = await task
            await batch.wait_closed()
            return result, calls

        result, calls = asyncio.run(scenario())

        assert result.status == BatchStatus.FAILED
        assert int(result.failed_quality) == failing
        assert result.reason == f"failed at {failing}"
        assert len(calls) == 1

    def test_concurrent_failures_resolve_once(self, specs):
        """80 and 40 fail in the same loop iteration: one reason, one resolution."""

        async def scenario():
            runner = GatedRunner(failures={80: "failed at 80", 40: "failed at 40"})
            batch = JobBatch(specs, runner)
            calls = []
            batch.add_done_callback(calls.append)
            task = _start(batch)
            await settle()
            runner.release(80, 40)
            result = await task
            runner.release(320, 160)
            await batch.wait_closed()
            return batch, result, calls

        batch, result, calls = asyncio.run(scenario())

        assert result.status == BatchStatus.FAILED
        assert int(result.failed_quality) in (80, 40)
        assert result.reason == f"failed at {int(result.failed_quality)}"
        assert calls == [result]
        assert len(batch.outcomes) == 4
        assert len(batch.late_outcomes) == 3

    def test_every_job_fails(self, specs):
        failures = {q: f"failed at {q}" for q in ALL_QUALITIES}

        async def scenario():
            batch = JobBatch(specs, InstantRunner(failures=failures))
            calls = []
            batch.add_done_callback(calls.append)
            result = await batch.run()
            await batch.wait_closed()
            return result, calls

        result, calls = asyncio.run(scenario())
        assert not result.ok
        assert result.reason in failures.values()
        assert len(calls) == 1


class TestReport:
    """Direct outcome reporting, without launching any job."""

    def test_report_resolves_without_run(self, specs):
        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            await batch.report(JobOutcome.failed(specs[2], "x"))
            return batch

        batch = asyncio.run(scenario())
        assert batch.resolved
        assert int(batch.result.failed_quality) == 80

    def test_duplicate_report_rejected(self, specs):
        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            await batch.report(JobOutcome.success(specs[0]))
            with pytest.raises(RuntimeError, match="already reported"):
                await batch.report(JobOutcome.failed(specs[0], "again"))
            return batch

        batch = asyncio.run(scenario())
        assert not batch.resolved

    def test_unknown_job_rejected(self, specs, sample_audio_file, tmp_path):
        stranger = build_job_specs(sample_audio_file, tmp_path / "elsewhere", qualities=[40])[0]

        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            with pytest.raises(ValueError, match="unknown job"):
                await batch.report(JobOutcome.success(stranger))

        asyncio.run(scenario())

    def test_late_success_after_failure_is_recorded(self, specs):
        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            await batch.report(JobOutcome.failed(specs[1], "bad"))
            first = batch.result
            for spec in (specs[0], specs[2], specs[3]):
                await batch.report(JobOutcome.success(spec))
            return batch, first

        batch, first = asyncio.run(scenario())
        assert batch.result is first
        assert not batch.result.ok
        assert len(batch.late_outcomes) == 3


class TestResolutionEvent:
    """The resolution event fires exactly once per batch."""

    def test_callback_added_after_resolution_fires_once(self, specs):
        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            await batch.run()
            calls = []
            batch.add_done_callback(calls.append)
            return batch, calls

        batch, calls = asyncio.run(scenario())
        assert calls == [batch.result]

    def test_wait_returns_same_result(self, specs):
        async def scenario():
            runner = GatedRunner()
            batch = JobBatch(specs, runner)
            waiter = asyncio.create_task(batch.wait())
            task = _start(batch)
            runner.release(*ALL_QUALITIES)
            return await task, await waiter

        run_result, waited = asyncio.run(scenario())
        assert run_result is waited

    def test_failing_listener_does_not_block_others(self, specs):
        def broken(_result):
            raise RuntimeError("listener bug")

        async def scenario():
            batch = JobBatch(specs, InstantRunner())
            calls = []
            batch.add_done_callback(broken)
            batch.add_done_callback(calls.append)
            result = await batch.run()
            return result, calls

        result, calls = asyncio.run(scenario())
        assert calls == [result]


class TestRunnerErrors:
    """A runner that breaks its contract still yields a failed outcome."""

    def test_raising_runner_becomes_failure(self, specs):
        class ExplodingRunner(InstantRunner):
            async def run(self, spec):
                if int(spec.quality) == 80:
                    raise OSError("disk on fire")
                return await super().run(spec)

        async def scenario():
            batch = JobBatch(specs, ExplodingRunner())
            result = await batch.run()
            await batch.wait_closed()
            return result

        result = asyncio.run(scenario())
        assert not result.ok
        assert int(result.failed_quality) == 80
        assert "disk on fire" in result.reason


class TestDeadline:
    """Batch deadline handling."""

    def test_timeout_resolves_failed_and_cancels_jobs(self, specs):
        async def scenario():
            runner = GatedRunner()
            batch = JobBatch(specs, runner, timeout_seconds=0.05)
            calls = []
            batch.add_done_callback(calls.append)
            result = await batch.run()
            await batch.wait_closed()
            return runner, result, calls

        runner, result, calls = asyncio.run(scenario())

        assert result.status == BatchStatus.FAILED
        assert result.timed_out
        assert "timed out" in result.reason
        assert result.failed_quality is None
        assert sorted(runner.cancelled) == sorted(ALL_QUALITIES)
        assert calls == [result]

    def test_fast_batch_beats_deadline(self, specs):
        async def scenario():
            batch = JobBatch(specs, InstantRunner(), timeout_seconds=5)
            return await batch.run()

        result = asyncio.run(scenario())
        assert result.ok
        assert not result.timed_out

    def test_timeout_after_partial_success_discards_outputs(self, specs):
        async def scenario():
            runner = GatedRunner()
            batch = JobBatch(specs, runner, timeout_seconds=0.1)
            task = _start(batch)
            await settle()
            runner.release(320, 160)
            result = await task
            await batch.wait_closed()
            return result

        result = asyncio.run(scenario())
        assert result.timed_out
        assert not any(spec.destination_path.exists() for spec in specs)

    def test_cancelling_run_cancels_jobs(self, specs):
        async def scenario():
            runner = GatedRunner()
            batch = JobBatch(specs, runner)
            task = _start(batch)
            await settle()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await batch.wait_closed()
            return runner, batch

        runner, batch = asyncio.run(scenario())
        assert sorted(runner.cancelled) == sorted(ALL_QUALITIES)
        assert not batch.resolved

"""Tests for the canary lifecycle controller.

Covers the state machine guards, step progression and interval gating,
the approval pause, automatic rollbacks and per-deployment serialization.
"""
import asyncio

import pytest
from prometheus_client import REGISTRY

from src.rollout.core.errors import InvalidStateError, NotFoundError
from src.rollout.deployment.advisor import Advisor
from src.rollout.deployment.controller import LifecycleController, ProgressOutcome
from src.rollout.deployment.health_analyzer import HealthAnalyzer
from src.rollout.deployment.models import (
    DeploymentStatus,
    HealthStatus,
    HealthThresholds,
    RollbackFlags,
    RollbackStatus,
    RollbackTrigger,
    StepStatus,
)


def assert_percent_invariant(deployment):
    assert 0 <= deployment.current_canary_percent <= deployment.target_canary_percent <= 100


async def advance(controller, clock, deployment_id, minutes=5):
    clock.advance(minutes=minutes)
    return await controller.progress(deployment_id)


class TestStart:
    """Test starting a pending deployment."""

    @pytest.mark.asyncio
    async def test_start_opens_first_step(self, controller, executor, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        assert deployment.status == DeploymentStatus.PENDING
        assert deployment.current_canary_percent == 0

        started = await controller.start(deployment.id)

        assert started.status == DeploymentStatus.PROGRESSING
        assert started.current_canary_percent == 10
        assert executor.weights[deployment.id] == 10

        steps = await controller.get_steps(deployment.id)
        assert len(steps) == 1
        assert steps[0].step_number == 1
        assert steps[0].target_percent == 10
        assert steps[0].status == StepStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)

        with pytest.raises(InvalidStateError, match="cannot start deployment in state progressing"):
            await controller.start(deployment.id)

    @pytest.mark.asyncio
    async def test_start_traffic_failure_fails_deployment(self, controller, executor, make_deployment_config):
        executor.fail_on = {10}
        deployment = await controller.create(make_deployment_config())

        failed = await controller.start(deployment.id)

        assert failed.status == DeploymentStatus.FAILED
        assert failed.current_canary_percent == 0
        steps = await controller.get_steps(deployment.id)
        assert steps[0].status == StepStatus.FAILED
        assert (await controller.get(deployment.id)).status == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_start_unknown_deployment(self, controller):
        with pytest.raises(NotFoundError):
            await controller.start(999)


class TestProgress:
    """Test step progression driven by health verdicts."""

    @pytest.mark.asyncio
    async def test_progress_before_interval_is_not_due(self, controller, gateway, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        clock.advance(minutes=4, seconds=59)

        result = await controller.progress(deployment.id)

        assert result.outcome == ProgressOutcome.NOT_DUE
        assert result.deployment.current_canary_percent == 10
        assert result.next_due_at is not None
        assert gateway.calls == 0
        assert len(await controller.get_steps(deployment.id)) == 1

    @pytest.mark.asyncio
    async def test_full_rollout_to_promoted(self, controller, executor, clock, make_deployment_config):
        """Healthy metrics walk the canary from 10% to 100% in 10% steps."""
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)

        seen = []
        for _ in range(8):
            result = await advance(controller, clock, deployment.id)
            assert result.outcome == ProgressOutcome.ADVANCED
            assert_percent_invariant(result.deployment)
            seen.append(result.deployment.current_canary_percent)

        assert seen == [20, 30, 40, 50, 60, 70, 80, 90]

        result = await advance(controller, clock, deployment.id)
        assert result.outcome == ProgressOutcome.PROMOTED
        assert result.deployment.status == DeploymentStatus.PROMOTED
        assert result.deployment.current_canary_percent == 100
        assert result.deployment.completed_at == clock.now
        assert executor.weights[deployment.id] == 100

        steps = await controller.get_steps(deployment.id)
        assert [s.step_number for s in steps] == list(range(1, 11))
        assert [s.target_percent for s in steps] == [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
        assert all(s.status == StepStatus.COMPLETED for s in steps)
        assert steps[0].success_rate == 99.5

    @pytest.mark.asyncio
    async def test_last_step_capped_at_target(self, controller, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config(
            initial_canary_percent=10, increment_percent=25, target_canary_percent=50,
        ))
        await controller.start(deployment.id)

        first = await advance(controller, clock, deployment.id)
        second = await advance(controller, clock, deployment.id)

        assert first.deployment.current_canary_percent == 35
        assert second.outcome == ProgressOutcome.PROMOTED
        assert second.deployment.current_canary_percent == 50

    @pytest.mark.asyncio
    async def test_snapshots_recorded_with_analysis(self, controller, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        await advance(controller, clock, deployment.id)

        snapshots = await controller.get_metrics(deployment.id)

        assert len(snapshots) == 1
        assert snapshots[0].deployment_id == deployment.id
        assert snapshots[0].canary_percent == 10
        assert snapshots[0].analysis_result == HealthStatus.HEALTHY
        assert "meets threshold" in snapshots[0].analysis_notes

    @pytest.mark.asyncio
    async def test_progress_on_pending_rejected(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())

        with pytest.raises(InvalidStateError, match="cannot progress deployment in state pending"):
            await controller.progress(deployment.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("finish", ["promote", "cancel", "rollback"])
    async def test_progress_on_terminal_never_mutates(self, controller, clock, make_deployment_config, finish):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        if finish == "promote":
            await controller.promote(deployment.id)
        elif finish == "cancel":
            await controller.cancel(deployment.id)
        else:
            record = await controller.rollback(deployment.id, "bad build")
            await controller.complete_rollback(record.id, True)

        before = (await controller.get(deployment.id)).to_dict()
        steps_before = [s.to_dict() for s in await controller.get_steps(deployment.id)]
        clock.advance(minutes=30)

        for _ in range(2):
            with pytest.raises(InvalidStateError):
                await controller.progress(deployment.id)

        assert (await controller.get(deployment.id)).to_dict() == before
        assert [s.to_dict() for s in await controller.get_steps(deployment.id)] == steps_before

    @pytest.mark.asyncio
    async def test_traffic_failure_marks_failed(self, controller, executor, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        executor.fail_on = {20}

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.FAILED
        assert result.deployment.status == DeploymentStatus.FAILED
        assert result.deployment.current_canary_percent == 10
        steps = await controller.get_steps(deployment.id)
        assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.FAILED]
        assert "ingress checkout not found" in result.deployment.status_message


class TestHold:
    """Test the fail-safe hold when a verdict allows neither promotion nor rollback."""

    @pytest.mark.asyncio
    async def test_gateway_unavailable_holds(self, repository, executor, clock, unavailable_gateway, make_deployment_config):
        controller = LifecycleController(repository, unavailable_gateway, executor=executor, clock=clock)
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.HELD
        assert result.verdict.analysis_result == HealthStatus.UNKNOWN
        assert result.verdict.should_rollback is False
        assert result.verdict.should_promote is False
        assert result.deployment.status == DeploymentStatus.PROGRESSING
        assert result.deployment.current_canary_percent == 10
        assert await controller.get_metrics(deployment.id) == []
        assert await controller.get_rollback_history(deployment.id) == []

    @pytest.mark.asyncio
    async def test_degraded_holds(self, controller, gateway, clock, make_deployment_config, make_snapshot):
        deployment = await controller.create(make_deployment_config(
            thresholds=HealthThresholds(success_rate_pct=99.0),
        ))
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_error_rate=2.0)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.HELD
        assert result.verdict.analysis_result == HealthStatus.DEGRADED
        assert result.deployment.current_canary_percent == 10
        steps = await controller.get_steps(deployment.id)
        assert len(steps) == 1
        assert steps[0].status == StepStatus.RUNNING

    @pytest.mark.asyncio
    async def test_unhealthy_without_rollback_flag_holds(self, controller, gateway, clock, make_deployment_config, make_snapshot):
        deployment = await controller.create(make_deployment_config(
            rollback=RollbackFlags(on_error_rate=False),
        ))
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_error_rate=7.0)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.HELD
        assert result.verdict.analysis_result == HealthStatus.UNHEALTHY
        assert result.deployment.status == DeploymentStatus.PROGRESSING

    @pytest.mark.asyncio
    async def test_recovers_after_hold(self, controller, gateway, clock, make_deployment_config, make_snapshot):
        deployment = await controller.create(make_deployment_config(
            rollback=RollbackFlags(auto_rollback_enabled=False),
        ))
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_avg_latency=1500.0)
        held = await advance(controller, clock, deployment.id)

        gateway.snapshot = make_snapshot()
        result = await controller.progress(deployment.id)

        assert held.outcome == ProgressOutcome.HELD
        assert result.outcome == ProgressOutcome.ADVANCED
        assert result.deployment.current_canary_percent == 20


class TestAutomaticRollback:
    """Test rollbacks triggered by unhealthy verdicts."""

    @pytest.mark.asyncio
    async def test_pod_failure_triggers_rollback(self, controller, gateway, clock, make_deployment_config, make_snapshot):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_healthy_pods=0)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.ROLLING_BACK
        assert result.deployment.status == DeploymentStatus.ROLLING_BACK
        assert result.rollback.trigger == RollbackTrigger.POD_FAILURE
        assert result.rollback.initiated_by == "system"
        assert result.rollback.canary_percent_at_rollback == 10
        assert result.rollback.step_at_rollback == 1
        assert "Healthy pods 0 below minimum 1" in result.rollback.reason

        steps = await controller.get_steps(deployment.id)
        assert steps[0].status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_error_rate_wins_over_pod_failure(self, controller, gateway, clock, make_deployment_config, make_snapshot):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_error_rate=7.0, canary_healthy_pods=0)

        result = await advance(controller, clock, deployment.id)

        assert result.rollback.trigger == RollbackTrigger.ERROR_RATE
        assert len(result.verdict.reasons) == 2

    @pytest.mark.asyncio
    async def test_auto_execute_reverts_traffic(self, repository, gateway, executor, clock, make_deployment_config, make_snapshot):
        controller = LifecycleController(
            repository, gateway, executor=executor, clock=clock, auto_execute_rollback=True,
        )
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_avg_latency=2500.0)

        result = await advance(controller, clock, deployment.id)

        assert result.rollback.trigger == RollbackTrigger.LATENCY
        assert result.rollback.status == RollbackStatus.COMPLETED
        assert result.deployment.status == DeploymentStatus.ROLLED_BACK
        assert result.deployment.current_canary_percent == 0
        assert executor.weights[deployment.id] == 0


class TestManualApproval:
    """Test the approval pause before the final step."""

    async def _run_to_approval(self, controller, clock, config):
        deployment = await controller.create(config)
        await controller.start(deployment.id)
        for _ in range(8):
            await advance(controller, clock, deployment.id)
        return await advance(controller, clock, deployment.id)

    @pytest.mark.asyncio
    async def test_pauses_instead_of_promoting(self, controller, executor, clock, make_deployment_config):
        result = await self._run_to_approval(
            controller, clock, make_deployment_config(require_manual_approval=True)
        )

        assert result.outcome == ProgressOutcome.AWAITING_APPROVAL
        assert result.deployment.status == DeploymentStatus.PAUSED
        assert result.deployment.awaiting_approval is True
        assert result.deployment.current_canary_percent == 90
        assert executor.weights[result.deployment.id] == 90

        steps = await controller.get_steps(result.deployment.id)
        assert steps[-1].target_percent == 90
        assert steps[-1].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_paused_progress_rejected(self, controller, clock, make_deployment_config):
        result = await self._run_to_approval(
            controller, clock, make_deployment_config(require_manual_approval=True)
        )

        with pytest.raises(InvalidStateError, match="cannot progress deployment in state paused"):
            await controller.progress(result.deployment.id)

    @pytest.mark.asyncio
    async def test_resume_then_progress_promotes(self, controller, clock, make_deployment_config):
        result = await self._run_to_approval(
            controller, clock, make_deployment_config(require_manual_approval=True)
        )
        deployment_id = result.deployment.id

        resumed = await controller.resume(deployment_id)
        assert resumed.approval_granted is True
        assert resumed.awaiting_approval is False

        final = await controller.progress(deployment_id)

        assert final.outcome == ProgressOutcome.PROMOTED
        assert final.deployment.status == DeploymentStatus.PROMOTED
        assert final.deployment.current_canary_percent == 100
        steps = await controller.get_steps(deployment_id)
        assert steps[-1].target_percent == 100
        assert steps[-1].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_promote_from_approval_pause(self, controller, executor, clock, make_deployment_config):
        result = await self._run_to_approval(
            controller, clock, make_deployment_config(require_manual_approval=True)
        )

        promoted = await controller.promote(result.deployment.id)

        assert promoted.status == DeploymentStatus.PROMOTED
        assert promoted.current_canary_percent == 100
        assert executor.weights[promoted.id] == 100
        steps = await controller.get_steps(promoted.id)
        assert len(steps) == 10
        assert all(s.status == StepStatus.COMPLETED for s in steps)

    @pytest.mark.asyncio
    async def test_approval_timeout_rolls_back(self, controller, clock, make_deployment_config):
        result = await self._run_to_approval(
            controller, clock,
            make_deployment_config(require_manual_approval=True, approval_timeout_minutes=30),
        )
        deployment_id = result.deployment.id

        clock.advance(minutes=10)
        assert await controller.check_approval_timeout(deployment_id) is None

        clock.advance(minutes=20)
        record = await controller.check_approval_timeout(deployment_id)

        assert record.trigger == RollbackTrigger.APPROVAL_TIMEOUT
        assert (await controller.get(deployment_id)).status == DeploymentStatus.ROLLING_BACK

    @pytest.mark.asyncio
    async def test_no_timeout_waits_indefinitely(self, controller, clock, make_deployment_config):
        result = await self._run_to_approval(
            controller, clock, make_deployment_config(require_manual_approval=True)
        )
        clock.advance(minutes=60 * 24 * 7)

        assert await controller.check_approval_timeout(result.deployment.id) is None
        assert (await controller.get(result.deployment.id)).status == DeploymentStatus.PAUSED


class TestOperatorCommands:
    """Test pause, resume, promote, cancel and manual rollback."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)

        paused = await controller.pause(deployment.id)
        assert paused.status == DeploymentStatus.PAUSED
        assert paused.approval_granted is False

        with pytest.raises(InvalidStateError, match="cannot pause deployment in state paused"):
            await controller.pause(deployment.id)

        resumed = await controller.resume(deployment.id)
        assert resumed.status == DeploymentStatus.PROGRESSING
        assert resumed.approval_granted is False

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())

        with pytest.raises(InvalidStateError, match="cannot resume deployment in state pending"):
            await controller.resume(deployment.id)

    @pytest.mark.asyncio
    async def test_promote_now(self, controller, executor, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        await advance(controller, clock, deployment.id)

        promoted = await controller.promote(deployment.id)

        assert promoted.status == DeploymentStatus.PROMOTED
        assert promoted.current_canary_percent == 100
        assert executor.weights[deployment.id] == 100
        steps = await controller.get_steps(deployment.id)
        assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_promote_rolled_back_rejected(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        record = await controller.rollback(deployment.id, "bad build")
        await controller.complete_rollback(record.id, True)

        with pytest.raises(InvalidStateError, match="cannot promote deployment in state rolled_back"):
            await controller.promote(deployment.id)

    @pytest.mark.asyncio
    async def test_cancel_keeps_traffic(self, controller, executor, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        await advance(controller, clock, deployment.id)
        calls_before = list(executor.calls)

        cancelled = await controller.cancel(deployment.id)

        assert cancelled.status == DeploymentStatus.CANCELLED
        assert cancelled.current_canary_percent == 20
        assert executor.calls == calls_before
        assert executor.weights[deployment.id] == 20
        steps = await controller.get_steps(deployment.id)
        assert steps[-1].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cancel_pending(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())

        cancelled = await controller.cancel(deployment.id)

        assert cancelled.status == DeploymentStatus.CANCELLED
        assert await controller.get_steps(deployment.id) == []

    @pytest.mark.asyncio
    async def test_cancel_during_rollback_rejected(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        await controller.rollback(deployment.id, "bad build")

        with pytest.raises(InvalidStateError, match="cannot cancel deployment in state rolling_back"):
            await controller.cancel(deployment.id)

    @pytest.mark.asyncio
    async def test_manual_rollback(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)

        record = await controller.rollback(deployment.id, "Customer reports", initiated_by="alice")

        assert record.trigger == RollbackTrigger.MANUAL
        assert record.initiated_by == "alice"
        assert record.rollback_to_version == "1.9.3"
        assert record.rollback_to_image == "registry.local/checkout:1.9.3"
        history = await controller.get_rollback_history(deployment.id)
        assert [r.id for r in history] == [record.id]


class TestAnalyze:
    """Test read-only health analysis."""

    @pytest.mark.asyncio
    async def test_analyze_does_not_mutate(self, controller, gateway, clock, make_deployment_config, make_snapshot):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_error_rate=9.0)
        before = (await controller.get(deployment.id)).to_dict()

        verdict = await controller.analyze(deployment.id)

        assert verdict.analysis_result == HealthStatus.UNHEALTHY
        assert verdict.should_rollback is True
        assert (await controller.get(deployment.id)).to_dict() == before
        assert await controller.get_metrics(deployment.id) == []
        assert await controller.get_rollback_history(deployment.id) == []


class RecordingAdvisor(Advisor):
    def __init__(self):
        self.calls = 0

    async def advise(self, deployment, snapshot, reasons):
        self.calls += 1
        return "Roll back: error rate doubled compared to stable."


class BrokenAdvisor(Advisor):
    async def advise(self, deployment, snapshot, reasons):
        raise RuntimeError("advisor returned garbage")


class TestAdvisory:
    """Test that advisory text is attached after the decision."""

    @pytest.mark.asyncio
    async def test_advisory_attached_to_unhealthy(self, repository, gateway, executor, clock, make_deployment_config, make_snapshot):
        advisor = RecordingAdvisor()
        controller = LifecycleController(
            repository, gateway, analyzer=HealthAnalyzer(advisor=advisor), executor=executor, clock=clock,
        )
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_error_rate=8.0)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.ROLLING_BACK
        assert result.verdict.should_rollback is True
        assert result.verdict.advisory.startswith("Roll back")
        assert advisor.calls == 1

    @pytest.mark.asyncio
    async def test_failing_advisor_does_not_break_progress(self, repository, gateway, executor, clock, make_deployment_config, make_snapshot):
        controller = LifecycleController(
            repository, gateway, analyzer=HealthAnalyzer(advisor=BrokenAdvisor()), executor=executor, clock=clock,
        )
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        gateway.snapshot = make_snapshot(canary_error_rate=7.0)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.ROLLING_BACK
        assert result.verdict.should_rollback is True
        assert result.verdict.advisory is None
        assert (await controller.get(deployment.id)).status == DeploymentStatus.ROLLING_BACK

    @pytest.mark.asyncio
    async def test_advisor_skipped_when_healthy(self, repository, gateway, executor, clock, make_deployment_config):
        advisor = RecordingAdvisor()
        controller = LifecycleController(
            repository, gateway, analyzer=HealthAnalyzer(advisor=advisor), executor=executor, clock=clock,
        )
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)

        result = await advance(controller, clock, deployment.id)

        assert result.outcome == ProgressOutcome.ADVANCED
        assert result.verdict.advisory is None
        assert advisor.calls == 0


class TestConcurrency:
    """Test per-deployment serialization of progress calls."""

    @pytest.mark.asyncio
    async def test_concurrent_progress_advances_once(self, controller, gateway, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        clock.advance(minutes=5)

        results = await asyncio.gather(
            controller.progress(deployment.id),
            controller.progress(deployment.id),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["advanced", "not_due"]
        assert gateway.calls == 1
        assert (await controller.get(deployment.id)).current_canary_percent == 20
        assert len(await controller.get_steps(deployment.id)) == 2

    @pytest.mark.asyncio
    async def test_different_deployments_progress_independently(self, controller, clock, make_deployment_config):
        first = await controller.create(make_deployment_config(name="a"))
        second = await controller.create(make_deployment_config(name="b"))
        await controller.start(first.id)
        await controller.start(second.id)
        clock.advance(minutes=5)

        results = await asyncio.gather(
            controller.progress(first.id),
            controller.progress(second.id),
        )

        assert [r.outcome for r in results] == [ProgressOutcome.ADVANCED, ProgressOutcome.ADVANCED]
        assert len(controller.locks) == 0

    @pytest.mark.asyncio
    async def test_locks_released_after_operations(self, controller, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config())
        await controller.start(deployment.id)
        await advance(controller, clock, deployment.id)
        await controller.promote(deployment.id)

        assert len(controller.locks) == 0


def exported_percent(deployment):
    return REGISTRY.get_sample_value(
        "canary_traffic_percent",
        {"deployment_id": str(deployment.id), "name": deployment.name},
    )


class TestExportedTraffic:
    """Test the canary traffic gauge follows the deployment lifecycle."""

    @pytest.mark.asyncio
    async def test_gauge_tracks_active_deployment(self, controller, clock, make_deployment_config):
        deployment = await controller.create(make_deployment_config(name="gauge-active"))
        await controller.start(deployment.id)
        assert exported_percent(deployment) == 10

        await advance(controller, clock, deployment.id)
        assert exported_percent(deployment) == 20

    @pytest.mark.asyncio
    async def test_promoted_series_removed(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config(name="gauge-promoted"))
        await controller.start(deployment.id)

        await controller.promote(deployment.id)

        assert exported_percent(deployment) is None

    @pytest.mark.asyncio
    async def test_cancelled_series_removed(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config(name="gauge-cancelled"))
        await controller.start(deployment.id)

        await controller.cancel(deployment.id)

        assert exported_percent(deployment) is None

    @pytest.mark.asyncio
    async def test_rolled_back_series_removed(self, controller, make_deployment_config):
        deployment = await controller.create(make_deployment_config(name="gauge-rolled-back"))
        await controller.start(deployment.id)
        record = await controller.rollback(deployment.id, "bad build")

        await controller.complete_rollback(record.id, True)

        assert exported_percent(deployment) is None

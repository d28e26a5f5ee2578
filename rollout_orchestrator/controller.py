import asyncio
import re

from .backends import validate_version_ref
from .burn_rate import BurnRateEvaluator, BurnRateMonitor
from .errors import (
    AttemptInProgress, HealthCheckExhausted, InvalidVersion, RestoreFailed, RolloutAborted,
    RolloutError, SnapshotFailed, StabilizationTimeout, UnsupportedStrategy
)
from .health import BackendSelfProbe, HealthVerifier
from .logger import get_logger
from .models import Classification, DeploymentAttempt, RolloutConfig, RolloutState, Strategy
from .rollback import RollbackManager
from .traffic import AbortSignal, TrafficShiftScheduler, resolve

SEMVER_TAG = re.compile(r"^v?[0-9]+\.[0-9]+\.[0-9]+(-[a-zA-Z0-9]+)?$")


class RolloutController:
    """Drive one deployment attempt per backend through the rollout state machine.

    Collaborators:
        probe           async (endpoint, timeout) -> status code; defaults to the
                        backend's own health report
        metrics_source  (attempt) -> WindowMetrics or None, may be async
        alarm_source    () -> bool, may be async; True aborts a traffic shift
    """

    def __init__(self, config=None, probe=None, metrics_source=None, alarm_source=None,
                 verifier=None, scheduler=None, rollback_manager=None, evaluator=None):
        self.config = config if config else RolloutConfig()
        self.probe = probe
        self.metrics_source = metrics_source
        self.alarm_source = alarm_source
        self.verifier = verifier if verifier else HealthVerifier(self.config.verifier)
        self.scheduler = scheduler if scheduler else TrafficShiftScheduler(
            gate_interval_s=self.config.burn_rate.window_s
        )
        self.rollback_manager = rollback_manager if rollback_manager else RollbackManager(
            self.config.restore_timeout_s
        )
        self.evaluator = evaluator if evaluator else BurnRateEvaluator(self.config.burn_rate)
        self.logger = get_logger("controller")
        self._in_flight = {}  # backend id -> attempt id
        self._signals = {}  # attempt id -> AbortSignal

    def in_flight(self):
        return dict(self._in_flight)

    def cancel(self, attempt_id, reason="cancelled by pipeline"):
        """Send an in-flight attempt to ROLLING_BACK; False if it is not running"""
        signal = self._signals.get(attempt_id)
        if signal is None:
            return False
        self.logger.warning(f"Abort requested for attempt {attempt_id}: {reason}")
        signal.trip(reason)
        return True

    def trip(self, backend_id, reason="critical alarm active"):
        """Abort whatever attempt is running on backend_id"""
        attempt_id = self._in_flight.get(backend_id)
        if attempt_id is None:
            return False
        return self.cancel(attempt_id, reason)

    async def run(self, target_version_ref, backend, strategy=Strategy.ALL_AT_ONCE, dry_run=False):
        """Run one attempt to a terminal state and return the DeploymentAttempt.

        With dry_run the attempt validates, snapshots and plans, then ends
        STABLE without touching the backend.
        """
        strategy = Strategy(strategy)
        backend_id = backend.backend_id
        if backend_id in self._in_flight:
            error_msg = f"attempt {self._in_flight[backend_id]} already in progress on {backend_id}"
            self.logger.error(error_msg)
            raise AttemptInProgress(error_msg)

        attempt = DeploymentAttempt(target_version_ref, strategy, backend_id)
        attempt.dry_run = dry_run
        signal = AbortSignal()
        self._in_flight[backend_id] = attempt.id
        self._signals[attempt.id] = signal
        self.logger.info(
            f"Starting attempt {attempt.id}: {target_version_ref} on {backend_id} ({strategy.value})"
        )

        try:
            await self._drive(attempt, backend, signal)
        finally:
            del self._in_flight[backend_id]
            self._signals.pop(attempt.id, None)
            self.rollback_manager.forget(attempt.id)
            self.logger.debug(f"Released {backend_id}")

        if attempt.outcome is not None:
            self.logger.info(f"Attempt {attempt.id} finished: {attempt.outcome.value}")
        return attempt

    async def _drive(self, attempt, backend, signal):
        attempt.transition(RolloutState.VALIDATING)
        try:
            self._validate_version(attempt)
            attempt.previous_version_ref = await self.rollback_manager.snapshot(backend)
            if attempt.target_version_ref == attempt.previous_version_ref:
                self.logger.info(f"{attempt.target_version_ref} already live on {backend.backend_id}, nothing to do")
                attempt.history.append({"event": "no_updates_needed", "versionRef": attempt.target_version_ref})
                attempt.transition(RolloutState.STABLE)
                return
            self._check_strategy(attempt, backend)
        except (InvalidVersion, UnsupportedStrategy, SnapshotFailed) as e:
            attempt.record_error(e)
            self.logger.error(f"Attempt {attempt.id} rejected before deploying: {e}")
            attempt.transition(RolloutState.FAILED)
            return

        if attempt.strategy.is_gradual:
            attempt.traffic_shift_plan = self.scheduler.build_plan(attempt.strategy)

        if attempt.dry_run:
            self.logger.info(
                f"DRY RUN: Would deploy {attempt.target_version_ref} over {attempt.previous_version_ref} "
                f"on {backend.backend_id} in {max(len(attempt.traffic_shift_plan), 1)} traffic steps"
            )
            attempt.history.append({
                "event": "dry_run",
                "previousVersionRef": attempt.previous_version_ref,
                "stepsPlanned": len(attempt.traffic_shift_plan),
            })
            attempt.transition(RolloutState.STABLE)
            return

        try:
            handle = await self._deploy(attempt, backend, signal)
            await self._verify(attempt, backend, handle, signal)
            if attempt.strategy.is_gradual:
                attempt.transition(RolloutState.TRAFFIC_SHIFTING)
                await self._shift(attempt, backend, handle, signal)
        except RolloutAborted as e:
            attempt.record_error(e)
            await self._roll_back(attempt, backend, e.reason)
            return
        except RolloutError as e:
            attempt.record_error(e)
            await self._roll_back(attempt, backend, f"{e.code}: {e}")
            return
        except Exception as e:
            # The backend may already be mutated; an unexpected error still rolls back.
            self.logger.exception(f"Unexpected error in {attempt.state.value} for attempt {attempt.id}")
            attempt.record_error(e)
            await self._roll_back(attempt, backend, f"{type(e).__name__}: {e}")
            return

        attempt.transition(RolloutState.STABLE)

    def _validate_version(self, attempt):
        validate_version_ref(attempt.target_version_ref)
        tag = attempt.target_version_ref.rsplit(":", 1)[-1]
        if not SEMVER_TAG.match(tag):
            self.logger.warning(f"Version '{attempt.target_version_ref}' doesn't follow semver format (x.y.z)")

    def _check_strategy(self, attempt, backend):
        if attempt.strategy.is_gradual and not backend.supports_traffic_shifting:
            raise UnsupportedStrategy(
                f"{attempt.strategy.value} needs traffic shifting, which {backend.kind.value} "
                f"backend {backend.backend_id} does not support"
            )

    async def _guarded(self, coro, signal):
        """Await coro unless the abort signal trips first"""
        if signal.tripped:
            coro.close()
            raise RolloutAborted(signal.reason)

        task = asyncio.ensure_future(coro)
        aborted = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait({task, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        raise RolloutAborted(signal.reason)

    async def _deploy(self, attempt, backend, signal):
        attempt.transition(RolloutState.DEPLOYING)
        # Gradual strategies come up dark and receive traffic step by step.
        traffic_percent = 0 if attempt.strategy.is_gradual else 100

        async def deploy():
            attempt.backend_mutated = True
            handle = await backend.deploy_version(attempt.target_version_ref, traffic_percent=traffic_percent)
            await backend.wait_stable(handle, self.config.stage_timeout_s)
            return handle

        handle = await self._guarded(deploy(), signal)
        if not await backend.is_healthy_self(handle):
            raise StabilizationTimeout(f"{backend.backend_id} reports {attempt.target_version_ref} unhealthy")
        self.logger.info(f"{attempt.target_version_ref} stable on {backend.backend_id}")
        return handle

    async def _verify(self, attempt, backend, handle, signal):
        attempt.transition(RolloutState.HEALTH_CHECKING)
        probe = self.probe if self.probe else BackendSelfProbe(backend, handle)
        collected = []
        try:
            await self._guarded(
                self.verifier.verify(self.config.endpoints, probe, phase="deploy", results=collected), signal
            )
        finally:
            # rounds that finished before an abort stay on the record
            attempt.health_results.extend(collected)

    async def _shift(self, attempt, backend, handle, signal):
        monitor = BurnRateMonitor(self.config.burn_rate)

        async def gate():
            return await self._sample_burn(attempt, monitor)

        await self.scheduler.run(
            backend, handle, attempt.traffic_shift_plan, signal, gate=gate, alarm=self.alarm_source
        )

    async def _sample_burn(self, attempt, monitor):
        """Sample the burn rate; return an abort reason when a critical burn fires"""
        if self.metrics_source is None:
            return None
        metrics = await resolve(self.metrics_source(attempt))
        if metrics is None:
            return None

        sample = self.evaluator.sample(self.config.burn_rate.availability_target_percent, metrics)
        attempt.burn_rate_samples.append(sample)
        fired = monitor.observe(sample)
        if fired == Classification.CRITICAL:
            return (
                f"burn rate critical (error {sample.error_rate_burn}, "
                f"availability {sample.availability_burn}, latency {sample.latency_burn})"
            )
        if fired == Classification.WARNING:
            self.logger.warning(f"Burn rate warning on attempt {attempt.id}, continuing")
        return None

    async def _roll_back(self, attempt, backend, reason):
        attempt.transition(RolloutState.ROLLING_BACK)
        attempt.rollback_reason = reason
        if not attempt.backend_mutated:
            self.logger.warning(f"Attempt {attempt.id} aborted before touching {backend.backend_id}: {reason}")
            attempt.history.append({"event": "restore_skipped", "reason": "backend not mutated"})
            attempt.transition(RolloutState.ROLLED_BACK)
            return
        self.logger.warning(f"Rolling back attempt {attempt.id} to {attempt.previous_version_ref}: {reason}")

        try:
            handle = await self.rollback_manager.restore(backend, attempt.previous_version_ref, attempt.id)
        except RestoreFailed as e:
            attempt.record_error(e)
            self.logger.error(f"ROLLBACK FAILED for attempt {attempt.id}, manual recovery required: {e}")
            attempt.transition(RolloutState.FAILED)
            return

        probe = self.probe if self.probe else BackendSelfProbe(backend, handle)
        try:
            result = await self.verifier.verify(self.config.endpoints, probe, phase="rollback")
        except HealthCheckExhausted as e:
            attempt.health_results.extend(e.results)
            attempt.record_error(e)
            self.logger.error(
                f"ROLLBACK FAILED for attempt {attempt.id}: restored version is not healthy"
            )
            attempt.transition(RolloutState.FAILED)
            return

        attempt.health_results.extend(result.results)
        attempt.transition(RolloutState.ROLLED_BACK)
        self.logger.info(f"Attempt {attempt.id} rolled back to {attempt.previous_version_ref}")

"""Compute backend adapters.

Both variants expose the same capability set, tagged by ``kind``:

    get_current_version() -> version_ref
    deploy_version(version_ref, traffic_percent=100) -> DeploymentHandle
    scale_traffic_percentage(handle, percent)
    wait_stable(handle, timeout)
    is_healthy_self(handle) -> bool

They are in-memory simulations driven by a FailureInjector; the controller
only requests transitions through these calls and observes the results.
"""
import asyncio
import re
from collections import Counter

from .errors import BackendUnavailable, InvalidVersion, StabilizationTimeout, UnsupportedStrategy
from .failure import FailureInjector
from .logger import get_logger
from .models import BackendKind, DeploymentHandle, Health, InstanceState, instance_to_dict

VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/@+-]*$")
MAX_VERSION_LENGTH = 255
MAX_BACKOFF_S = 30.0


def validate_version_ref(version_ref):
    if not isinstance(version_ref, str) or not version_ref:
        raise InvalidVersion("version reference must be a non-empty string")
    if len(version_ref) > MAX_VERSION_LENGTH:
        raise InvalidVersion(f"version reference longer than {MAX_VERSION_LENGTH} characters")
    if not VERSION_RE.match(version_ref):
        raise InvalidVersion(f"malformed version reference: {version_ref!r}")
    return version_ref


def plan_batches(instances, batch_size):
    """Split instances into batches for a configuration push"""
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    instance_list = list(instances)
    return [instance_list[i:i + batch_size] for i in range(0, len(instance_list), batch_size)]


async def _bring_up(instance, injector, logger, retry_max_attempts=None, retry_base_delay_s=0.1):
    """Start one instance on its version, retrying with exponential backoff.

    retry_max_attempts=None retries until cancelled, like a scheduler
    replacing tasks that fail to start.
    """
    attempt = 0
    while True:
        attempt += 1
        delay = injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        if not injector.should_fail(instance):
            instance.health = Health.HEALTHY
            logger.debug(f"Instance {instance.instance_id} healthy on {instance.code_version}")
            return True

        logger.warning(f"Start attempt {attempt} failed for {instance.instance_id}")
        if retry_max_attempts is not None and attempt > retry_max_attempts:
            instance.health = Health.FAILED
            logger.error(f"Instance {instance.instance_id} failed after {attempt} attempts")
            return False

        instance.health = Health.DEGRADED
        backoff_time = min((2 ** (attempt - 1)) * retry_base_delay_s, MAX_BACKOFF_S)
        await asyncio.sleep(backoff_time)


class _InFlight:
    """Per-backend registry of running deployments, keyed by version.

    A second deploy of the same version returns the running handle; a
    deploy of a different version supersedes (cancels) the running one.
    """

    def __init__(self, logger):
        self.logger = logger
        self.entries = {}

    def get(self, version_ref):
        entry = self.entries.get(version_ref)
        if entry and not entry[1].done():
            return entry[0]
        return None

    def task_for(self, handle):
        entry = self.entries.get(handle.version_ref)
        if entry and entry[0].deployment_id == handle.deployment_id:
            return entry[1]
        return None

    def start(self, handle, coro):
        for version_ref, (_, task) in list(self.entries.items()):
            if version_ref != handle.version_ref and not task.done():
                self.logger.warning(f"Superseding in-flight deployment of {version_ref}")
                task.cancel()
        task = asyncio.ensure_future(coro)
        self.entries[handle.version_ref] = (handle, task)
        task.add_done_callback(lambda t: self._finished(handle, t))
        return task

    def _finished(self, handle, task):
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug(f"Deployment {handle.deployment_id} ended with {task.exception()!r}")


async def _await_stable(task, timeout, handle):
    if task is None:
        return
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except asyncio.TimeoutError:
        raise StabilizationTimeout(
            f"{handle.version_ref} on {handle.backend_id} not stable after {timeout}s"
        ) from None


class TaskFleetBackend:
    """A pool of replaceable tasks behind a weighted load balancer target group.

    Deploying launches a replacement task set next to the live one; traffic
    moves between the two sets by target group weight and the old set is
    drained once the new one takes 100%.
    """

    kind = BackendKind.TASK_FLEET
    supports_traffic_shifting = True

    def __init__(self, backend_id, current_version, desired_count=2, known_versions=None,
                 failure_injector=None, retry_base_delay_s=0.1):
        if desired_count <= 0:
            raise ValueError("desired_count must be > 0")
        self.backend_id = backend_id
        self.desired_count = desired_count
        self.primary_version = current_version
        self.known_versions = set(known_versions) if known_versions is not None else None
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.retry_base_delay_s = retry_base_delay_s
        self.tasks = {current_version: self._launch_set(current_version, Health.HEALTHY)}
        self.weights = {current_version: 100}
        self.calls = []
        self.logger = get_logger(f"backend.{backend_id}")
        self._in_flight = _InFlight(self.logger)

    def _launch_set(self, version_ref, health):
        return [
            InstanceState(f"{self.backend_id}:{version_ref}:{i}", version_ref, health)
            for i in range(self.desired_count)
        ]

    def _check_available(self):
        if self.failure_injector.unavailable:
            raise BackendUnavailable(f"backend {self.backend_id} is not reachable")

    async def get_current_version(self):
        self._check_available()
        return self.primary_version

    async def deploy_version(self, version_ref, traffic_percent=100):
        self._check_available()
        validate_version_ref(version_ref)
        if self.known_versions is not None and version_ref not in self.known_versions:
            raise InvalidVersion(f"{version_ref} is not a published version")

        running = self._in_flight.get(version_ref)
        if running is not None:
            self.logger.info(f"Deployment of {version_ref} already in flight, reusing {running.deployment_id}")
            return running

        self.calls.append(("deploy_version", version_ref))
        handle = DeploymentHandle(self.backend_id, version_ref, traffic_percent=traffic_percent)
        self.tasks[version_ref] = self._launch_set(version_ref, Health.DEGRADED)
        self.logger.info(
            f"Launching {self.desired_count} tasks of {version_ref} "
            f"(deployment {handle.deployment_id}, initial traffic {traffic_percent}%)"
        )
        self._in_flight.start(handle, self._replace(handle))
        return handle

    async def _replace(self, handle):
        tasks = self.tasks[handle.version_ref]
        await asyncio.gather(*[
            _bring_up(t, self.failure_injector, self.logger, retry_base_delay_s=self.retry_base_delay_s)
            for t in tasks
        ])
        if handle.traffic_percent >= 100:
            self._promote(handle.version_ref)

    def _promote(self, version_ref):
        for version in list(self.tasks):
            if version != version_ref:
                self.logger.debug(f"Draining {len(self.tasks[version])} tasks of {version}")
                del self.tasks[version]
        self.weights = {version_ref: 100}
        self.primary_version = version_ref
        self.logger.info(f"{version_ref} is now primary on {self.backend_id}")

    async def scale_traffic_percentage(self, handle, percent):
        self._check_available()
        if not 0 <= percent <= 100:
            raise ValueError("percent must be within 0-100")
        if handle.version_ref not in self.tasks:
            raise BackendUnavailable(f"no task set for {handle.version_ref} on {self.backend_id}")

        self.calls.append(("scale_traffic_percentage", percent))
        if percent == 100:
            self._promote(handle.version_ref)
            return
        weights = {handle.version_ref: percent}
        if self.primary_version != handle.version_ref:
            weights[self.primary_version] = 100 - percent
        self.weights = weights
        self.logger.info(f"Target group weights on {self.backend_id}: {weights}")

    async def wait_stable(self, handle, timeout):
        self._check_available()
        await _await_stable(self._in_flight.task_for(handle), timeout, handle)

    async def is_healthy_self(self, handle):
        tasks = self.tasks.get(handle.version_ref, [])
        return len(tasks) == self.desired_count and all(t.health == Health.HEALTHY for t in tasks)

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "backend_id": self.backend_id,
            "current_version": self.primary_version,
            "desired_count": self.desired_count,
            "known_versions": sorted(self.known_versions) if self.known_versions is not None else None,
        }


class InPlaceBackend:
    """A fixed set of long-lived hosts updated by a batched configuration push.

    There is no second instance set to weight traffic against, so only a
    full (100%) traffic assignment is supported.
    """

    kind = BackendKind.IN_PLACE
    supports_traffic_shifting = False

    def __init__(self, backend_id, hosts, batch_size=5, failure_injector=None,
                 retry_max_attempts=2, retry_base_delay_s=0.1, host_timeout_s=None):
        self.backend_id = backend_id
        self.hosts = list(hosts)
        self.batch_size = batch_size
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_s = retry_base_delay_s
        self.host_timeout_s = host_timeout_s
        self.calls = []
        self.logger = get_logger(f"backend.{backend_id}")
        self._in_flight = _InFlight(self.logger)

    def _check_available(self):
        if self.failure_injector.unavailable or not self.hosts:
            raise BackendUnavailable(f"backend {self.backend_id} is not reachable")

    async def get_current_version(self):
        self._check_available()
        return Counter(h.code_version for h in self.hosts).most_common(1)[0][0]

    async def deploy_version(self, version_ref, traffic_percent=100):
        self._check_available()
        validate_version_ref(version_ref)

        running = self._in_flight.get(version_ref)
        if running is not None:
            self.logger.info(f"Push of {version_ref} already in flight, reusing {running.deployment_id}")
            return running

        self.calls.append(("deploy_version", version_ref))
        handle = DeploymentHandle(self.backend_id, version_ref, traffic_percent=100)
        self._in_flight.start(handle, self._push(handle))
        return handle

    async def _update_host(self, host, version_ref):
        host.code_version = version_ref
        host.health = Health.DEGRADED
        update = _bring_up(host, self.failure_injector, self.logger,
                           retry_max_attempts=self.retry_max_attempts,
                           retry_base_delay_s=self.retry_base_delay_s)
        if self.host_timeout_s and self.host_timeout_s > 0:
            try:
                return await asyncio.wait_for(update, timeout=self.host_timeout_s)
            except asyncio.TimeoutError:
                host.health = Health.FAILED
                self.logger.error(f"Push timed out for host {host.instance_id} after {self.host_timeout_s}s")
                return False
        return await update

    async def _push(self, handle):
        to_update = [h for h in self.hosts if h.code_version != handle.version_ref or h.health != Health.HEALTHY]
        batches = plan_batches(to_update, self.batch_size) if to_update else []
        self.logger.info(f"Pushing {handle.version_ref} to {len(to_update)} hosts in {len(batches)} batches")

        for batch_idx, batch in enumerate(batches, start=1):
            outcomes = await asyncio.gather(*[self._update_host(h, handle.version_ref) for h in batch])
            failed = [h.instance_id for h, ok in zip(batch, outcomes) if not ok]
            if failed:
                raise BackendUnavailable(
                    f"configuration push of {handle.version_ref} failed on {', '.join(failed)}"
                )
            self.logger.info(f"Batch {batch_idx}/{len(batches)} updated: {[h.instance_id for h in batch]}")

    async def scale_traffic_percentage(self, handle, percent):
        self._check_available()
        if not 0 <= percent <= 100:
            raise ValueError("percent must be within 0-100")
        if percent != 100:
            raise UnsupportedStrategy(f"in-place backend {self.backend_id} cannot serve a partial traffic split")
        self.calls.append(("scale_traffic_percentage", percent))

    async def wait_stable(self, handle, timeout):
        self._check_available()
        await _await_stable(self._in_flight.task_for(handle), timeout, handle)

    async def is_healthy_self(self, handle):
        return all(h.code_version == handle.version_ref and h.health == Health.HEALTHY for h in self.hosts)

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "backend_id": self.backend_id,
            "batch_size": self.batch_size,
            "hosts": [instance_to_dict(h) for h in self.hosts],
        }


def backend_from_dict(data, failure_injector=None):
    kind = BackendKind(data.get("kind", BackendKind.TASK_FLEET.value))
    if kind == BackendKind.TASK_FLEET:
        return TaskFleetBackend(
            backend_id=data["backend_id"],
            current_version=data["current_version"],
            desired_count=data.get("desired_count", 2),
            known_versions=data.get("known_versions"),
            failure_injector=failure_injector,
        )
    hosts = [
        InstanceState(h["instance_id"], h["code_version"], Health(h.get("health", "healthy")))
        for h in data["hosts"]
    ]
    return InPlaceBackend(
        backend_id=data["backend_id"],
        hosts=hosts,
        batch_size=data.get("batch_size", 5),
        failure_injector=failure_injector,
    )

import asyncio

from rollout_orchestrator.models import RolloutConfig, VerifierConfig, HealthEndpoint, Criticality
from rollout_orchestrator.backends import TaskFleetBackend
from rollout_orchestrator.errors import BackendUnavailable


def fast_config(max_attempts=3, interval_s=0.0, overall_timeout_s=5.0, probe_timeout_s=1.0, **kwargs):
    return RolloutConfig(
        stage_timeout_s=kwargs.pop("stage_timeout_s", 2.0),
        restore_timeout_s=kwargs.pop("restore_timeout_s", 2.0),
        verifier=VerifierConfig(
            max_attempts=max_attempts,
            interval_s=interval_s,
            overall_timeout_s=overall_timeout_s,
            probe_timeout_s=probe_timeout_s,
        ),
        **kwargs
    )


def fleet(backend_id="fleet", version="app:1.0.0", **kwargs):
    kwargs.setdefault("retry_base_delay_s", 0.0)
    return TaskFleetBackend(backend_id, version, **kwargs)


CRITICAL = HealthEndpoint("/health/ready", Criticality.CRITICAL)
LIVE = HealthEndpoint("/health/live", Criticality.CRITICAL)
INFO = HealthEndpoint("/health/started", Criticality.INFORMATIONAL)


class ScriptedProbe:
    """Answers each path from a list of status codes; the last one repeats"""

    def __init__(self, script=None, default=200, delays=None):
        self.script = {path: list(codes) for path, codes in (script or {}).items()}
        self.default = default
        self.delays = delays or {}
        self.calls = []

    async def __call__(self, endpoint, timeout):
        self.calls.append(endpoint.path)
        delay = self.delays.get(endpoint.path, 0)
        if delay:
            await asyncio.sleep(delay)
        codes = self.script.get(endpoint.path)
        if not codes:
            return self.default
        return codes.pop(0) if len(codes) > 1 else codes[0]


class VersionProbe:
    """Returns 503 on every endpoint while the backend serves a bad version"""

    def __init__(self, backend, bad_versions=(), delay=0):
        self.backend = backend
        self.bad_versions = set(bad_versions)
        self.delay = delay
        self.calls = 0

    async def __call__(self, endpoint, timeout):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        version = await self.backend.get_current_version()
        return 503 if version in self.bad_versions else 200


class RecordingBackend:
    """Wraps a backend, logging every call in order and optionally failing some"""

    def __init__(self, inner, fail_deploy_of=(), fail_snapshot=False, snapshot_delay=0):
        self.inner = inner
        self.fail_deploy_of = set(fail_deploy_of)
        self.fail_snapshot = fail_snapshot
        self.snapshot_delay = snapshot_delay
        self.log = []

    @property
    def backend_id(self):
        return self.inner.backend_id

    @property
    def kind(self):
        return self.inner.kind

    @property
    def supports_traffic_shifting(self):
        return self.inner.supports_traffic_shifting

    @property
    def mutations(self):
        return [c for c in self.log if c[0] in ("deploy_version", "scale_traffic_percentage")]

    async def get_current_version(self):
        self.log.append(("get_current_version",))
        if self.snapshot_delay:
            await asyncio.sleep(self.snapshot_delay)
        if self.fail_snapshot:
            raise BackendUnavailable("metadata endpoint down")
        return await self.inner.get_current_version()

    async def deploy_version(self, version_ref, traffic_percent=100):
        self.log.append(("deploy_version", version_ref))
        if version_ref in self.fail_deploy_of:
            raise BackendUnavailable(f"cannot deploy {version_ref}")
        return await self.inner.deploy_version(version_ref, traffic_percent=traffic_percent)

    async def scale_traffic_percentage(self, handle, percent):
        self.log.append(("scale_traffic_percentage", percent))
        return await self.inner.scale_traffic_percentage(handle, percent)

    async def wait_stable(self, handle, timeout):
        self.log.append(("wait_stable",))
        return await self.inner.wait_stable(handle, timeout)

    async def is_healthy_self(self, handle):
        return await self.inner.is_healthy_self(handle)

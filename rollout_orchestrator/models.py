import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow():
    return datetime.now(timezone.utc)


class Health(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class BackendKind(str, Enum):
    TASK_FLEET = "task-fleet"
    IN_PLACE = "in-place"


class Strategy(str, Enum):
    ALL_AT_ONCE = "all-at-once"
    LINEAR_10_1M = "linear-10-1m"
    LINEAR_10_3M = "linear-10-3m"
    CANARY_10_5M = "canary-10-5m"
    CANARY_10_15M = "canary-10-15m"

    @property
    def is_gradual(self):
        return self is not Strategy.ALL_AT_ONCE


class RolloutState(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    DEPLOYING = "DEPLOYING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    TRAFFIC_SHIFTING = "TRAFFIC_SHIFTING"
    ROLLING_BACK = "ROLLING_BACK"
    STABLE = "STABLE"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self):
        return self in (RolloutState.STABLE, RolloutState.ROLLED_BACK, RolloutState.FAILED)


class Outcome(str, Enum):
    STABLE = "stable"
    ROLLED_BACK = "rolledBack"
    ROLLBACK_FAILED = "rollbackFailed"


# Forward edges of the rollout state machine. ROLLING_BACK is the only
# edge that moves "backwards" and it is reachable from every mutating stage.
TRANSITIONS = {
    RolloutState.PENDING: {RolloutState.VALIDATING},
    RolloutState.VALIDATING: {RolloutState.DEPLOYING, RolloutState.STABLE, RolloutState.FAILED},
    RolloutState.DEPLOYING: {RolloutState.HEALTH_CHECKING, RolloutState.ROLLING_BACK},
    RolloutState.HEALTH_CHECKING: {
        RolloutState.STABLE, RolloutState.TRAFFIC_SHIFTING, RolloutState.ROLLING_BACK
    },
    RolloutState.TRAFFIC_SHIFTING: {RolloutState.STABLE, RolloutState.ROLLING_BACK},
    RolloutState.ROLLING_BACK: {RolloutState.ROLLED_BACK, RolloutState.FAILED},
}

TERMINAL_OUTCOMES = {
    RolloutState.STABLE: Outcome.STABLE,
    RolloutState.ROLLED_BACK: Outcome.ROLLED_BACK,
    RolloutState.FAILED: Outcome.ROLLBACK_FAILED,
}


class Criticality(str, Enum):
    CRITICAL = "critical"
    INFORMATIONAL = "informational"


class Classification(str, Enum):
    NOMINAL = "nominal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class InstanceState:
    """One task or host as seen by an in-memory backend"""
    instance_id: str
    code_version: str
    health: Health = Health.HEALTHY


@dataclass(frozen=True)
class HealthEndpoint:
    path: str
    criticality: Criticality = Criticality.CRITICAL

    @property
    def is_critical(self):
        return self.criticality == Criticality.CRITICAL


DEFAULT_ENDPOINTS = (
    HealthEndpoint("/health/ready", Criticality.CRITICAL),
    HealthEndpoint("/health/live", Criticality.CRITICAL),
    HealthEndpoint("/health/started", Criticality.INFORMATIONAL),
)


@dataclass
class HealthResult:
    """One probe of one endpoint"""
    endpoint: str
    criticality: Criticality
    round: int
    outcome: str  # "pass", "fail", "timeout" or "error"
    latency_ms: float
    status_code: Optional[int] = None
    error: Optional[str] = None
    phase: str = "deploy"
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def passed(self):
        return self.outcome == "pass"

    def to_dict(self):
        return {
            "endpoint": self.endpoint,
            "criticality": self.criticality.value,
            "round": self.round,
            "outcome": self.outcome,
            "latencyMs": round(self.latency_ms, 3),
            "statusCode": self.status_code,
            "error": self.error,
            "phase": self.phase,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class VerificationResult:
    passed: bool
    rounds: int
    results: List[HealthResult] = field(default_factory=list)


@dataclass
class WindowMetrics:
    """Trailing-window traffic metrics supplied by the metrics collaborator"""
    request_count: int
    error_count: int
    latency_ms: float = 0.0  # latency percentile (p99 by default)
    server_error_count: Optional[int] = None  # requests counted as unavailable; defaults to error_count

    @property
    def error_rate_percent(self):
        if self.request_count <= 0:
            return 0.0
        return self.error_count * 100.0 / self.request_count

    @property
    def unavailable_percent(self):
        if self.request_count <= 0:
            return 0.0
        unavailable = self.error_count if self.server_error_count is None else self.server_error_count
        return unavailable * 100.0 / self.request_count


@dataclass
class BurnRateSample:
    availability_burn: float
    latency_burn: float
    error_rate_burn: float
    classification: Classification
    latency_classification: Classification
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            "timestamp": self.timestamp.isoformat(),
            "availabilityBurn": self.availability_burn,
            "latencyBurn": self.latency_burn,
            "errorRateBurn": self.error_rate_burn,
            "classification": self.classification.value,
            "latencyClassification": self.latency_classification.value,
        }


@dataclass(frozen=True)
class TrafficStep:
    percent: int
    hold_s: float

    def to_dict(self):
        return {"percent": self.percent, "holdSeconds": self.hold_s}


@dataclass
class DeploymentHandle:
    """Returned by a backend's deploy_version; identifies one in-flight deployment"""
    backend_id: str
    version_ref: str
    deployment_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    traffic_percent: int = 100


@dataclass
class VerifierConfig:
    max_attempts: int = 30
    interval_s: float = 10.0
    overall_timeout_s: float = 300.0
    probe_timeout_s: float = 10.0


@dataclass
class BurnRateConfig:
    availability_target_percent: float = 99.9
    latency_threshold_ms: float = 500.0
    latency_warning_ratio: float = 0.8
    critical_burn: float = 14.4  # ~2 hour budget exhaustion
    warning_burn: float = 6.0  # ~5 day budget exhaustion
    critical_windows: int = 2
    warning_windows: int = 6
    window_s: float = 300.0


@dataclass
class RolloutConfig:
    """Configuration for one controller"""
    stage_timeout_s: float = 600.0  # deploy_version + wait_stable
    restore_timeout_s: float = 600.0
    endpoints: tuple = DEFAULT_ENDPOINTS
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    burn_rate: BurnRateConfig = field(default_factory=BurnRateConfig)

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        _check_keys(cls, data)
        if "endpoints" in data:
            data["endpoints"] = tuple(
                HealthEndpoint(e["path"], Criticality(e.get("criticality", "critical")))
                for e in data["endpoints"]
            )
        if "verifier" in data:
            _check_keys(VerifierConfig, data["verifier"])
            data["verifier"] = VerifierConfig(**data["verifier"])
        if "burn_rate" in data:
            _check_keys(BurnRateConfig, data["burn_rate"])
            data["burn_rate"] = BurnRateConfig(**data["burn_rate"])
        return cls(**data)


def _check_keys(klass, data):
    known = {f.name for f in fields(klass)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {klass.__name__} keys: {', '.join(sorted(unknown))}")


class DeploymentAttempt:
    """One rollout instance and its audit trail.

    previous_version_ref is write-once, the state only moves along
    TRANSITIONS and the outcome is assigned once, when a terminal state
    is entered.
    """

    def __init__(self, target_version_ref, strategy, backend_id):
        self.id = uuid.uuid4().hex
        self.target_version_ref = target_version_ref
        self.strategy = Strategy(strategy)
        self.backend_id = backend_id
        self.state = RolloutState.PENDING
        self.traffic_shift_plan = []
        self.health_results = []
        self.burn_rate_samples = []
        self.history = []
        self.stage_timings = {}
        self.error = None
        self.rollback_reason = None
        self.dry_run = False
        self.backend_mutated = False
        self.started_at = utcnow()
        self.ended_at = None
        self._previous_version_ref = None
        self._outcome = None
        self._state_entered = self.started_at

    @property
    def previous_version_ref(self):
        return self._previous_version_ref

    @previous_version_ref.setter
    def previous_version_ref(self, value):
        if self._previous_version_ref is not None:
            raise RuntimeError(f"previous version of attempt {self.id} already captured")
        self._previous_version_ref = value

    @property
    def outcome(self):
        return self._outcome

    @property
    def is_terminal(self):
        return self.state.is_terminal

    def transition(self, new_state):
        if new_state not in TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"illegal transition {self.state.value} -> {new_state.value}")
        now = utcnow()
        elapsed = (now - self._state_entered).total_seconds()
        self.stage_timings[self.state.value] = self.stage_timings.get(self.state.value, 0.0) + elapsed
        self.history.append({
            "event": "transition",
            "from": self.state.value,
            "to": new_state.value,
            "at": now.isoformat(),
        })
        self.state = new_state
        self._state_entered = now
        if new_state.is_terminal:
            self._outcome = TERMINAL_OUTCOMES[new_state]
            self.ended_at = now

    def record_error(self, error):
        self.error = {"code": getattr(error, "code", type(error).__name__), "message": str(error)}

    def to_dict(self):
        return {
            "id": self.id,
            "backendId": self.backend_id,
            "targetVersionRef": self.target_version_ref,
            "previousVersionRef": self.previous_version_ref,
            "strategy": self.strategy.value,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "trafficShiftPlan": [s.to_dict() for s in self.traffic_shift_plan],
            "healthResults": [r.to_dict() for r in self.health_results],
            "burnRateSamples": [s.to_dict() for s in self.burn_rate_samples],
            "history": list(self.history),
            "stageTimings": {k: round(v, 3) for k, v in self.stage_timings.items()},
            "error": self.error,
            "rollbackReason": self.rollback_reason,
            "dryRun": self.dry_run,
            "backendMutated": self.backend_mutated,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
        }


def instance_to_dict(instance):
    data = asdict(instance)
    data["health"] = instance.health.value
    return data

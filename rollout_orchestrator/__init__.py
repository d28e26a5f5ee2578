from .models import (
    Health, BackendKind, Strategy, RolloutState, Outcome, Criticality, Classification,
    InstanceState, HealthEndpoint, HealthResult, VerificationResult, WindowMetrics,
    BurnRateSample, TrafficStep, DeploymentHandle, DeploymentAttempt,
    VerifierConfig, BurnRateConfig, RolloutConfig, DEFAULT_ENDPOINTS
)
from .errors import (
    RolloutError, InvalidVersion, BackendUnavailable, SnapshotFailed, StabilizationTimeout,
    HealthCheckExhausted, UnsupportedStrategy, RestoreFailed, AttemptInProgress, RolloutAborted
)
from .backends import TaskFleetBackend, InPlaceBackend, backend_from_dict
from .health import HealthVerifier, HttpProbe, BackendSelfProbe
from .burn_rate import BurnRateEvaluator, BurnRateMonitor, BurnRateThresholds
from .traffic import TrafficShiftScheduler, AbortSignal
from .rollback import RollbackManager
from .controller import RolloutController
from .failure import FailureInjector

__all__ = [
    "Health", "BackendKind", "Strategy", "RolloutState", "Outcome", "Criticality", "Classification",
    "InstanceState", "HealthEndpoint", "HealthResult", "VerificationResult", "WindowMetrics",
    "BurnRateSample", "TrafficStep", "DeploymentHandle", "DeploymentAttempt",
    "VerifierConfig", "BurnRateConfig", "RolloutConfig", "DEFAULT_ENDPOINTS",
    "RolloutError", "InvalidVersion", "BackendUnavailable", "SnapshotFailed", "StabilizationTimeout",
    "HealthCheckExhausted", "UnsupportedStrategy", "RestoreFailed", "AttemptInProgress", "RolloutAborted",
    "TaskFleetBackend", "InPlaceBackend", "backend_from_dict",
    "HealthVerifier", "HttpProbe", "BackendSelfProbe",
    "BurnRateEvaluator", "BurnRateMonitor", "BurnRateThresholds",
    "TrafficShiftScheduler", "AbortSignal",
    "RollbackManager", "RolloutController", "FailureInjector"
]

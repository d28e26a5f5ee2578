class RolloutError(Exception):
    """Base class for rollout failures; code is stable across releases"""
    code = "RolloutError"


class InvalidVersion(RolloutError):
    code = "InvalidVersion"


class BackendUnavailable(RolloutError):
    code = "BackendUnavailable"


class SnapshotFailed(RolloutError):
    code = "SnapshotFailed"


class StabilizationTimeout(RolloutError):
    code = "StabilizationTimeout"


class HealthCheckExhausted(RolloutError):
    code = "HealthCheckExhausted"

    def __init__(self, message, results=None, rounds=0):
        super().__init__(message)
        self.results = list(results or [])
        self.rounds = rounds


class UnsupportedStrategy(RolloutError):
    code = "UnsupportedStrategy"


class RestoreFailed(RolloutError):
    code = "RestoreFailed"


class AttemptInProgress(RolloutError):
    code = "AttemptInProgress"


class RolloutAborted(RolloutError):
    """A stage was pre-empted by cancellation, an alarm or a burn-rate breach"""
    code = "RolloutAborted"

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason

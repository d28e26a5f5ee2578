class FailureInjector:
    """Fault hooks for the in-memory backends.

    fail_attempts maps an instance id to how many of its next updates fail.
    unavailable makes every backend call raise BackendUnavailable and
    never_healthy keeps replacement instances from ever becoming healthy.
    """

    def __init__(self, fail_attempts=None, delay=0, unavailable=False, never_healthy=False):
        self.fail_map = fail_attempts or {}
        self.delay = delay
        self.unavailable = unavailable
        self.never_healthy = never_healthy
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, instance):
        if self.never_healthy:
            return True
        id = instance.instance_id
        self.attempts[id] = self.attempts.get(id, 0) + 1
        return self.attempts[id] <= self.fail_map.get(id, 0)

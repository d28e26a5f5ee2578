import asyncio
import inspect

from .errors import RolloutAborted
from .logger import get_logger
from .models import Strategy, TrafficStep

PLANS = {
    Strategy.ALL_AT_ONCE: [(100, 0)],
    Strategy.LINEAR_10_1M: [(p, 60) for p in range(10, 101, 10)],
    Strategy.LINEAR_10_3M: [(p, 180) for p in range(10, 101, 10)],
    Strategy.CANARY_10_5M: [(10, 300), (100, 0)],
    Strategy.CANARY_10_15M: [(10, 900), (100, 0)],
}

# Timer wakeups can land a hair before the requested time.
GATE_SLACK_S = 0.001


async def resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class AbortSignal:
    """One-shot abort flag that wakes anything waiting on it"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    @property
    def tripped(self):
        return self._event.is_set()

    def trip(self, reason):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self, timeout=None):
        """Block until tripped or timeout seconds pass; True when tripped"""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()


class _Gate:
    """Abort checks for one run of a plan.

    The alarm is consulted at every check. The gate samples a metrics
    window, so it is only called once a full window has passed since its
    previous call; back-to-back checks share one sample.
    """

    def __init__(self, gate, alarm, signal, window, logger):
        self.gate = gate
        self.alarm = alarm
        self.signal = signal
        self.window = window
        self.logger = logger
        self.last_sample = None
        self.samples = 0

    def _due(self, now):
        return self.last_sample is None or now - self.last_sample >= self.window - GATE_SLACK_S

    async def check(self):
        if self.alarm is not None and await resolve(self.alarm()):
            self.signal.trip("critical alarm active")
        now = asyncio.get_running_loop().time()
        if self.gate is not None and not self.signal.tripped and self._due(now):
            self.last_sample = now
            self.samples += 1
            reason = await self.gate()
            if reason:
                self.signal.trip(reason)
        if self.signal.tripped:
            self.logger.warning(f"Traffic shift aborted: {self.signal.reason}")
            raise RolloutAborted(self.signal.reason)


class TrafficShiftScheduler:
    """Walk a traffic plan forward, holding between steps.

    Holds race a timer against the abort signal. The alarm source is
    consulted after each step, every gate_interval_s while holding and when
    a hold ends. The gate (a coroutine returning an abort reason or None) is
    consulted at the same points, but at most once per gate_interval_s.
    hold_scale stretches or compresses every hold and the gate interval.
    """

    def __init__(self, hold_scale=1.0, gate_interval_s=300.0):
        if hold_scale < 0:
            raise ValueError("hold_scale must be >= 0")
        self.hold_scale = hold_scale
        self.gate_interval_s = gate_interval_s
        self.logger = get_logger("traffic")

    @staticmethod
    def build_plan(strategy):
        return [TrafficStep(percent, hold) for percent, hold in PLANS[Strategy(strategy)]]

    async def run(self, backend, handle, plan, signal, gate=None, alarm=None):
        """Apply each step of plan; raise RolloutAborted as soon as the signal trips"""
        checks = _Gate(gate, alarm, signal, self.gate_interval_s * self.hold_scale, self.logger)
        applied = []
        last = 0
        for idx, step in enumerate(plan, start=1):
            if signal.tripped:
                raise RolloutAborted(signal.reason)
            if step.percent < last:
                raise ValueError(f"traffic plan decreases from {last}% to {step.percent}%")

            await backend.scale_traffic_percentage(handle, step.percent)
            applied.append(step.percent)
            last = step.percent
            self.logger.info(f"Step {idx}/{len(plan)}: {handle.version_ref} at {step.percent}%")

            await checks.check()
            await self._hold(step.hold_s * self.hold_scale, signal, checks)
        self.logger.debug(f"Plan finished after {checks.samples} gate samples")
        return applied

    async def _hold(self, hold, signal, checks):
        if hold <= 0:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + hold
        interval = checks.window
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            tick = min(remaining, interval) if interval > 0 else remaining
            if await signal.wait(tick):
                self.logger.warning(f"Hold interrupted: {signal.reason}")
                raise RolloutAborted(signal.reason)
            # the end of a hold is a check point too, before the next step is applied
            await checks.check()

"""SLO error-budget burn-rate math.

    errorBudget  = 100 - availabilityTargetPercent
    observedBurn = errorRatePercent / errorBudget

A burn of 14.4 exhausts a 30-day budget in about 2 hours, a burn of 6 in
about 5 days. Latency is judged against its own threshold and never mixed
into the error-rate ratio.
"""
from dataclasses import dataclass

from .logger import get_logger
from .models import BurnRateConfig, BurnRateSample, Classification

# Burns are rounded so that threshold comparisons are not at the mercy of
# float noise (100 - 99.9 is 0.0999...9432).
PRECISION = 6


def error_budget(availability_target_percent):
    if not 0 < availability_target_percent < 100:
        raise ValueError("availability target must be between 0 and 100 (exclusive)")
    return round(100.0 - availability_target_percent, 9)


def observed_burn(error_rate_percent, availability_target_percent):
    return round(error_rate_percent / error_budget(availability_target_percent), PRECISION)


@dataclass(frozen=True)
class BurnRateThresholds:
    """Error-rate percentages at which the warning and critical burns are reached"""
    error_budget: float
    critical_threshold: float
    warning_threshold: float

    @classmethod
    def for_target(cls, availability_target_percent, critical_burn=14.4, warning_burn=6.0):
        budget = error_budget(availability_target_percent)
        return cls(
            error_budget=budget,
            critical_threshold=round(budget * critical_burn, PRECISION),
            warning_threshold=round(budget * warning_burn, PRECISION),
        )


class BurnRateEvaluator:
    def __init__(self, config=None):
        self.config = config if config else BurnRateConfig()
        self.logger = get_logger("burn_rate")

    def thresholds(self, availability_target_percent=None):
        target = self.config.availability_target_percent if availability_target_percent is None \
            else availability_target_percent
        return BurnRateThresholds.for_target(target, self.config.critical_burn, self.config.warning_burn)

    def classify_burn(self, burn):
        if burn >= self.config.critical_burn:
            return Classification.CRITICAL
        if burn >= self.config.warning_burn:
            return Classification.WARNING
        return Classification.NOMINAL

    def classify_latency(self, latency_burn):
        if latency_burn >= 1.0:
            return Classification.CRITICAL
        if latency_burn >= self.config.latency_warning_ratio:
            return Classification.WARNING
        return Classification.NOMINAL

    def sample(self, availability_target_percent, window_metrics):
        """Turn one trailing window of metrics into a classified BurnRateSample"""
        error_rate_burn = observed_burn(window_metrics.error_rate_percent, availability_target_percent)
        availability_burn = observed_burn(window_metrics.unavailable_percent, availability_target_percent)
        latency_burn = round(window_metrics.latency_ms / self.config.latency_threshold_ms, PRECISION)

        sample = BurnRateSample(
            availability_burn=availability_burn,
            latency_burn=latency_burn,
            error_rate_burn=error_rate_burn,
            classification=self.classify_burn(max(error_rate_burn, availability_burn)),
            latency_classification=self.classify_latency(latency_burn),
        )
        self.logger.debug(
            f"Burn sample: error={error_rate_burn} availability={availability_burn} "
            f"latency={latency_burn} -> {sample.classification.value}/{sample.latency_classification.value}"
        )
        return sample


class BurnRateMonitor:
    """Consecutive-window alerting for a single attempt.

    A classification only fires once it has held for critical_windows
    (or warning_windows) samples in a row; any lower sample resets the run.
    """

    def __init__(self, config=None):
        self.config = config if config else BurnRateConfig()
        self.logger = get_logger("burn_rate")
        self.streaks = {
            ("error", Classification.CRITICAL): 0,
            ("error", Classification.WARNING): 0,
            ("latency", Classification.CRITICAL): 0,
            ("latency", Classification.WARNING): 0,
        }

    def _bump(self, signal, classification):
        for level in (Classification.CRITICAL, Classification.WARNING):
            reached = classification == Classification.CRITICAL or classification == level
            self.streaks[(signal, level)] = self.streaks[(signal, level)] + 1 if reached else 0

    def observe(self, sample):
        """Record a sample and return the level that is currently firing"""
        self._bump("error", sample.classification)
        self._bump("latency", sample.latency_classification)

        for signal in ("error", "latency"):
            if self.streaks[(signal, Classification.CRITICAL)] >= self.config.critical_windows:
                self.logger.error(f"Critical {signal} burn sustained for "
                                  f"{self.streaks[(signal, Classification.CRITICAL)]} windows")
                return Classification.CRITICAL
        for signal in ("error", "latency"):
            if self.streaks[(signal, Classification.WARNING)] >= self.config.warning_windows:
                self.logger.warning(f"Warning {signal} burn sustained for "
                                    f"{self.streaks[(signal, Classification.WARNING)]} windows")
                return Classification.WARNING
        return Classification.NOMINAL

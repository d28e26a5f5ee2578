"""Bounded-retry health verification.

A round probes every endpoint concurrently; it passes when every critical
endpoint answers 2xx within the probe timeout. Rounds start every
``interval_s`` until one passes, ``max_attempts`` rounds have run or
``overall_timeout_s`` has elapsed, whichever comes first.
"""
import asyncio

import httpx

from .errors import HealthCheckExhausted, RolloutError
from .logger import get_logger
from .models import Criticality, HealthResult, VerificationResult, VerifierConfig


class HttpProbe:
    """GET an endpoint path relative to base_url and return the status code"""

    def __init__(self, base_url, client=None, headers=None):
        self.base_url = base_url.rstrip("/")
        self.client = client if client else httpx.AsyncClient()
        self.headers = headers or {"Accept": "application/json"}

    async def __call__(self, endpoint, timeout):
        response = await self.client.get(
            f"{self.base_url}{endpoint.path}",
            headers=self.headers,
            timeout=timeout
        )
        return response.status_code

    async def aclose(self):
        await self.client.aclose()


class BackendSelfProbe:
    """Answer every endpoint from the backend's own health report (200 or 503)"""

    def __init__(self, backend, handle):
        self.backend = backend
        self.handle = handle

    async def __call__(self, endpoint, timeout):
        return 200 if await self.backend.is_healthy_self(self.handle) else 503


class HealthVerifier:
    def __init__(self, config=None):
        self.config = config if config else VerifierConfig()
        self.logger = get_logger("health")

    async def _probe_one(self, probe, endpoint, timeout, round_no, phase):
        loop = asyncio.get_running_loop()
        started = loop.time()
        status_code = None
        error = None
        try:
            status_code = await asyncio.wait_for(probe(endpoint, timeout), timeout=timeout)
            outcome = "pass" if 200 <= status_code < 300 else "fail"
        except asyncio.TimeoutError:
            outcome = "timeout"
            error = f"no response within {timeout}s"
        except (httpx.HTTPError, OSError, RolloutError) as e:
            outcome = "error"
            error = str(e) or type(e).__name__

        result = HealthResult(
            endpoint=endpoint.path,
            criticality=endpoint.criticality,
            round=round_no,
            outcome=outcome,
            latency_ms=(loop.time() - started) * 1000,
            status_code=status_code,
            error=error,
            phase=phase,
        )
        self.logger.debug(f"Round {round_no} {endpoint.path}: {outcome} ({result.latency_ms:.1f}ms)")
        return result

    async def verify(self, endpoints, probe, max_attempts=None, interval=None, overall_timeout=None,
                     phase="deploy", results=None):
        """Run rounds until one passes; raise HealthCheckExhausted when the bounds run out.

        Each finished round is appended to results (a new list by default) as
        it completes, so a caller that cancels verification keeps what ran.
        """
        max_attempts = self.config.max_attempts if max_attempts is None else max_attempts
        interval = self.config.interval_s if interval is None else interval
        overall_timeout = self.config.overall_timeout_s if overall_timeout is None else overall_timeout
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if interval < 0:
            raise ValueError("interval must be >= 0")
        if overall_timeout <= 0:
            raise ValueError("overall_timeout must be > 0")
        endpoints = list(endpoints)
        if not any(e.is_critical for e in endpoints):
            raise ValueError("at least one critical endpoint is required")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + overall_timeout
        results = [] if results is None else results
        rounds = 0

        for round_no in range(1, max_attempts + 1):
            round_started = loop.time()
            remaining = deadline - round_started
            if remaining <= 0:
                break

            timeout = min(self.config.probe_timeout_s, remaining)
            round_results = await asyncio.gather(*[
                self._probe_one(probe, e, timeout, round_no, phase) for e in endpoints
            ])
            results.extend(round_results)
            rounds = round_no

            for r in round_results:
                if not r.passed and r.criticality == Criticality.INFORMATIONAL:
                    self.logger.warning(f"Informational endpoint {r.endpoint} {r.outcome} in round {round_no}")

            if all(r.passed for r in round_results if r.criticality == Criticality.CRITICAL):
                self.logger.info(f"Health verification ({phase}) passed in round {round_no}")
                return VerificationResult(passed=True, rounds=round_no, results=results)

            failing = [r.endpoint for r in round_results if r.criticality == Criticality.CRITICAL and not r.passed]
            self.logger.info(f"Round {round_no}/{max_attempts} failing critical endpoints: {failing}")
            if round_no == max_attempts:
                break

            wait = min(round_started + interval, deadline) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)

        self.logger.error(f"Health verification ({phase}) exhausted after {rounds} rounds")
        raise HealthCheckExhausted(
            f"no passing round after {rounds} rounds", results=results, rounds=rounds
        )

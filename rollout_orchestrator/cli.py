import argparse
import asyncio
import json
import sys

from .backends import backend_from_dict
from .burn_rate import BurnRateEvaluator
from .controller import RolloutController
from .health import BackendSelfProbe, HealthVerifier, HttpProbe
from .logger import setup_logging, get_logger
from .models import BurnRateConfig, Outcome, RolloutConfig, Strategy, WindowMetrics
from .rollback import RollbackManager
from .traffic import TrafficShiftScheduler

EXIT_CODES = {
    Outcome.STABLE: 0,
    Outcome.ROLLED_BACK: 1,
    Outcome.ROLLBACK_FAILED: 2,
}
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def load_backend(path, failure_injector=None):
    logger = get_logger("cli")
    try:
        with open(path) as f:
            return backend_from_dict(json.load(f), failure_injector)
    except Exception as e:
        logger.error(f"Error loading backend state: {e}")
        raise


def save_backend(path, backend):
    with open(path, "w") as f:
        json.dump(backend.to_dict(), f, indent=2)


def save_snapshot(path, backend_id, version_ref):
    with open(path, "w") as f:
        json.dump({"backend_id": backend_id, "version_ref": version_ref}, f, indent=2)


def load_snapshot(path):
    with open(path) as f:
        snapshot = json.load(f)
    if not snapshot.get("backend_id") or not snapshot.get("version_ref"):
        raise ValueError(f"{path} is not a rollout snapshot")
    return snapshot


def load_config(path):
    if not path:
        return RolloutConfig()
    with open(path) as f:
        return RolloutConfig.from_dict(json.load(f))


class MetricsReplay:
    """Metrics source that hands out recorded windows in order, repeating the last one"""

    def __init__(self, windows):
        self.windows = list(windows)
        self.position = 0

    @classmethod
    def from_file(cls, path):
        with open(path) as f:
            return cls(WindowMetrics(**w) for w in json.load(f))

    def __call__(self, attempt):
        if not self.windows:
            return None
        window = self.windows[min(self.position, len(self.windows) - 1)]
        self.position += 1
        return window


def build_parser():
    parser = argparse.ArgumentParser(description="Deployment rollout and rollback orchestrator")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy", help="roll a version out to a backend")
    deploy.add_argument("--state", required=True, help="backend state file")
    deploy.add_argument("--version", required=True, help="version reference to deploy")
    deploy.add_argument("--strategy", default=Strategy.ALL_AT_ONCE.value, choices=[s.value for s in Strategy])
    deploy.add_argument("--config", help="JSON rollout configuration")
    deploy.add_argument("--base-url", help="probe health endpoints over HTTP at this URL")
    deploy.add_argument("--metrics", help="JSON list of recorded metric windows")
    deploy.add_argument("--snapshot", default=".snapshot.json")
    deploy.add_argument("--hold-scale", type=float, default=1.0,
                        help="multiply traffic hold durations (rehearsals)")
    deploy.add_argument("--dry-run", action="store_true",
                        help="validate, snapshot and plan without touching the backend")

    rollback = sub.add_parser("rollback", help="restore a snapshot and verify it")
    rollback.add_argument("--state", required=True)
    rollback.add_argument("--snapshot", required=True)
    rollback.add_argument("--config")
    rollback.add_argument("--base-url")

    plan = sub.add_parser("plan", help="print the traffic shift plan of a strategy")
    plan.add_argument("--strategy", required=True, choices=[s.value for s in Strategy])

    burn = sub.add_parser("burn-rate", help="classify one metrics window")
    burn.add_argument("--target", type=float, default=99.9, help="availability target percent")
    burn.add_argument("--requests", type=int, required=True)
    burn.add_argument("--errors", type=int, required=True)
    burn.add_argument("--latency-ms", type=float, default=0.0)
    return parser


def cmd_deploy(args):
    try:
        backend = load_backend(args.state)
        config = load_config(args.config)
        metrics_source = MetricsReplay.from_file(args.metrics) if args.metrics else None
    except Exception as e:
        print(f"Error: {e}")
        return 1

    probe = HttpProbe(args.base_url) if args.base_url else None
    controller = RolloutController(
        config,
        probe=probe,
        metrics_source=metrics_source,
        scheduler=TrafficShiftScheduler(hold_scale=args.hold_scale, gate_interval_s=config.burn_rate.window_s),
    )

    async def run():
        try:
            return await controller.run(args.version, backend, args.strategy, dry_run=args.dry_run)
        finally:
            if probe:
                await probe.aclose()

    attempt = asyncio.run(run())
    print(json.dumps(attempt.to_dict(), indent=2))
    if not args.dry_run:
        if attempt.previous_version_ref:
            save_snapshot(args.snapshot, backend.backend_id, attempt.previous_version_ref)
        save_backend(args.state, backend)
    return EXIT_CODES[attempt.outcome]


def cmd_rollback(args):
    try:
        backend = load_backend(args.state)
        snapshot = load_snapshot(args.snapshot)
        config = load_config(args.config)
        if snapshot["backend_id"] != backend.backend_id:
            raise ValueError(f"snapshot belongs to {snapshot['backend_id']}, not {backend.backend_id}")
    except Exception as e:
        print(f"Error: {e}")
        return 1

    async def run():
        handle = await RollbackManager(config.restore_timeout_s).restore(backend, snapshot["version_ref"])
        probe = HttpProbe(args.base_url) if args.base_url else BackendSelfProbe(backend, handle)
        try:
            await HealthVerifier(config.verifier).verify(config.endpoints, probe, phase="rollback")
        finally:
            if args.base_url:
                await probe.aclose()

    try:
        asyncio.run(run())
    except Exception as e:
        print(f"Error: {e}")
        return 2
    finally:
        save_backend(args.state, backend)
    print("Done.")
    return 0


def cmd_plan(args):
    plan = TrafficShiftScheduler.build_plan(args.strategy)
    print(json.dumps([s.to_dict() for s in plan], indent=2))
    return 0


def cmd_burn_rate(args):
    try:
        evaluator = BurnRateEvaluator(BurnRateConfig(availability_target_percent=args.target))
        thresholds = evaluator.thresholds()
        sample = evaluator.sample(args.target, WindowMetrics(args.requests, args.errors, args.latency_ms))
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    output = sample.to_dict()
    output["errorBudget"] = thresholds.error_budget
    output["criticalThreshold"] = thresholds.critical_threshold
    output["warningThreshold"] = thresholds.warning_threshold
    print(json.dumps(output, indent=2))
    return 0


COMMANDS = {
    "deploy": cmd_deploy,
    "rollback": cmd_rollback,
    "plan": cmd_plan,
    "burn-rate": cmd_burn_rate,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    return COMMANDS[args.cmd](args)


if __name__ == "__main__":
    sys.exit(main())

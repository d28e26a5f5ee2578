import json
import os
import tempfile
import pytest
from unittest.mock import patch
from rollout_orchestrator.backends import InPlaceBackend, TaskFleetBackend
from rollout_orchestrator.cli import (
    MetricsReplay, load_backend, load_config, load_snapshot, main, save_backend, save_snapshot
)
from rollout_orchestrator.models import Health, InstanceState


def write_json(directory, name, data):
    path = os.path.join(directory, name)
    with open(path, "w") as f:
        json.dump(data, f)
    return path


def read_json(path):
    with open(path) as f:
        return json.load(f)


FLEET_STATE = {"kind": "task-fleet", "backend_id": "orders", "current_version": "app:1.0.0", "desired_count": 2}


class TestCLIFileOperations:
    """Loading and saving backend state, snapshots and config."""

    def test_load_task_fleet_state(self):
        with tempfile.TemporaryDirectory() as d:
            backend = load_backend(write_json(d, "state.json", FLEET_STATE))

        assert isinstance(backend, TaskFleetBackend)
        assert backend.backend_id == "orders"
        assert backend.primary_version == "app:1.0.0"

    def test_in_place_state_roundtrip(self):
        hosts = [InstanceState("h1", "app:1.0.0"), InstanceState("h2", "app:1.0.0", Health.FAILED)]
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "state.json")
            save_backend(path, InPlaceBackend("liberty", hosts, batch_size=3))
            loaded = load_backend(path)

        assert isinstance(loaded, InPlaceBackend)
        assert loaded.batch_size == 3
        assert [(h.instance_id, h.health) for h in loaded.hosts] == [("h1", Health.HEALTHY), ("h2", Health.FAILED)]

    def test_load_backend_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            load_backend("non_existent_state.json")

    def test_load_backend_invalid_json(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            f.write("invalid json content")
            temp_path = f.name

        try:
            with pytest.raises(json.JSONDecodeError):
                load_backend(temp_path)
        finally:
            os.unlink(temp_path)

    def test_snapshot_roundtrip(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "snapshot.json")
            save_snapshot(path, "orders", "app:1.0.0")
            assert load_snapshot(path) == {"backend_id": "orders", "version_ref": "app:1.0.0"}

    def test_snapshot_must_name_a_version(self):
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(ValueError):
                load_snapshot(write_json(d, "snapshot.json", {"backend_id": "orders"}))

    def test_config_file(self):
        with tempfile.TemporaryDirectory() as d:
            config = load_config(write_json(d, "config.json", {
                "stage_timeout_s": 120,
                "verifier": {"max_attempts": 5},
                "endpoints": [{"path": "/ready"}, {"path": "/info", "criticality": "informational"}],
            }))

        assert config.stage_timeout_s == 120
        assert config.verifier.max_attempts == 5
        assert config.verifier.interval_s == 10.0
        assert [e.is_critical for e in config.endpoints] == [True, False]

    def test_config_rejects_unknown_keys(self):
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(ValueError, match="max_retries"):
                load_config(write_json(d, "config.json", {"verifier": {"max_retries": 5}}))

    def test_metrics_replay_repeats_last_window(self):
        with tempfile.TemporaryDirectory() as d:
            replay = MetricsReplay.from_file(write_json(d, "metrics.json", [
                {"request_count": 100, "error_count": 0},
                {"request_count": 100, "error_count": 5, "latency_ms": 300},
            ]))

        assert [replay(None).error_count for _ in range(4)] == [0, 5, 5, 5]
        assert MetricsReplay([])(None) is None


class TestCLIArgumentParsing:
    """Argument parsing without running a rollout."""

    def test_help_displays_correctly(self):
        with patch('sys.argv', ['rollout-orchestrator', '--help']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 0

    @pytest.mark.parametrize("command", ["deploy", "rollback", "plan", "burn-rate"])
    def test_command_help_displays_correctly(self, command):
        with patch('sys.argv', ['rollout-orchestrator', command, '--help']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 0

    def test_missing_command_fails(self):
        with patch('sys.argv', ['rollout-orchestrator']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code != 0

    def test_missing_required_arguments_fails(self):
        with patch('sys.argv', ['rollout-orchestrator', 'deploy', '--state', 's.json']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code != 0

        with patch('sys.argv', ['rollout-orchestrator', 'rollback', '--state', 's.json']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code != 0

    def test_invalid_argument_values_fail(self):
        # Invalid log level
        with patch('sys.argv', ['rollout-orchestrator', '--log-level', 'INVALID', 'plan', '--strategy', 'linear-10-1m']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code != 0

        # Unknown strategy
        with patch('sys.argv', ['rollout-orchestrator', 'plan', '--strategy', 'blue-green']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code != 0

        # Non-numeric request count
        with patch('sys.argv', ['rollout-orchestrator', 'burn-rate', '--requests', 'many', '--errors', '1']):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code != 0

    def test_log_level_is_case_insensitive(self, capsys):
        assert main(['--log-level', 'debug', 'plan', '--strategy', 'all-at-once']) == 0
        assert json.loads(capsys.readouterr().out) == [{"percent": 100, "holdSeconds": 0}]


class TestCLICommands:
    """Commands run end to end against state files."""

    def test_plan(self, capsys):
        assert main(['plan', '--strategy', 'canary-10-15m']) == 0
        assert json.loads(capsys.readouterr().out) == [
            {"percent": 10, "holdSeconds": 900},
            {"percent": 100, "holdSeconds": 0},
        ]

    def test_burn_rate_at_critical_boundary(self, capsys):
        assert main(['burn-rate', '--target', '99.9', '--requests', '10000', '--errors', '144']) == 0
        output = json.loads(capsys.readouterr().out)

        assert output["errorRateBurn"] == 14.4
        assert output["classification"] == "critical"
        assert output["errorBudget"] == pytest.approx(0.1)

    def test_burn_rate_rejects_impossible_target(self, capsys):
        assert main(['burn-rate', '--target', '100', '--requests', '10', '--errors', '0']) == 1
        assert capsys.readouterr().out.startswith("Error:")

    def test_deploy_all_at_once(self, capsys):
        with tempfile.TemporaryDirectory() as d:
            state = write_json(d, "state.json", FLEET_STATE)
            snapshot = os.path.join(d, "snapshot.json")

            code = main(['deploy', '--state', state, '--version', 'app:2.0.0', '--snapshot', snapshot])

            record = json.loads(capsys.readouterr().out)
            assert code == 0
            assert record["outcome"] == "stable"
            assert record["previousVersionRef"] == "app:1.0.0"
            assert read_json(state)["current_version"] == "app:2.0.0"
            assert read_json(snapshot) == {"backend_id": "orders", "version_ref": "app:1.0.0"}

    def test_deploy_canary_rolls_back_on_error_spike(self, capsys):
        windows = [{"request_count": 10000, "error_count": 200}]
        with tempfile.TemporaryDirectory() as d:
            state = write_json(d, "state.json", FLEET_STATE)
            metrics = write_json(d, "metrics.json", windows)

            code = main([
                'deploy', '--state', state, '--version', 'app:2.0.0', '--strategy', 'canary-10-5m',
                '--metrics', metrics, '--hold-scale', '0', '--snapshot', os.path.join(d, "snapshot.json"),
            ])

            record = json.loads(capsys.readouterr().out)
            assert code == 1
            assert record["outcome"] == "rolledBack"
            assert "burn rate critical" in record["rollbackReason"]
            assert read_json(state)["current_version"] == "app:1.0.0"

    def test_deploy_invalid_version_fails_without_mutating(self, capsys):
        with tempfile.TemporaryDirectory() as d:
            state = write_json(d, "state.json", FLEET_STATE)

            code = main(['deploy', '--state', state, '--version', 'app 2', '--snapshot', os.path.join(d, "s.json")])

            record = json.loads(capsys.readouterr().out)
            assert code == 2
            assert record["error"]["code"] == "InvalidVersion"
            assert read_json(state)["current_version"] == "app:1.0.0"

    def test_deploy_dry_run_leaves_files_alone(self, capsys):
        with tempfile.TemporaryDirectory() as d:
            state = write_json(d, "state.json", FLEET_STATE)
            snapshot = os.path.join(d, "snapshot.json")

            code = main(['deploy', '--state', state, '--version', 'app:2.0.0', '--strategy', 'canary-10-5m',
                         '--snapshot', snapshot, '--dry-run'])

            record = json.loads(capsys.readouterr().out)
            assert code == 0
            assert record["dryRun"] is True
            assert record["backendMutated"] is False
            assert record["history"][-2]["event"] == "dry_run"
            assert read_json(state) == FLEET_STATE
            assert not os.path.exists(snapshot)

    def test_deploy_missing_state_file(self, capsys):
        assert main(['deploy', '--state', 'missing.json', '--version', 'app:2.0.0']) == 1
        assert capsys.readouterr().out.startswith("Error:")

    def test_rollback_restores_snapshot(self, capsys):
        with tempfile.TemporaryDirectory() as d:
            state = write_json(d, "state.json", dict(FLEET_STATE, current_version="app:2.0.0"))
            snapshot = write_json(d, "snapshot.json", {"backend_id": "orders", "version_ref": "app:1.0.0"})

            assert main(['rollback', '--state', state, '--snapshot', snapshot]) == 0
            assert "Done." in capsys.readouterr().out
            assert read_json(state)["current_version"] == "app:1.0.0"

    def test_rollback_refuses_foreign_snapshot(self, capsys):
        with tempfile.TemporaryDirectory() as d:
            state = write_json(d, "state.json", FLEET_STATE)
            snapshot = write_json(d, "snapshot.json", {"backend_id": "payments", "version_ref": "app:0.9.0"})

            assert main(['rollback', '--state', state, '--snapshot', snapshot]) == 1
            assert "payments" in capsys.readouterr().out
            assert read_json(state)["current_version"] == "app:1.0.0"


class TestCLIExampleFiles:
    """The sample files shipped in examples/ stay loadable."""

    def test_load_example_states(self):
        for name in ("examples/fleet.json", "examples/liberty-hosts.json"):
            if not os.path.exists(name):
                pytest.skip("Example files not found")
            backend = load_backend(name)
            assert backend.backend_id

    def test_load_example_metrics(self):
        if not os.path.exists("examples/metrics-spike.json"):
            pytest.skip("Example metrics file not found")
        replay = MetricsReplay.from_file("examples/metrics-spike.json")
        assert replay.windows

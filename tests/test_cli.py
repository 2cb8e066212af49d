"""
Tests for the rcluster CLI.

These tests verify the commands correctly:
- Render JSON output from the same projections as the tables
- Map operation failures to their exit codes (3, 10, 11, ...)
- Reject bad configuration and arguments with exit code 2
- Wire chaos runs to the configured keyspace probe and controller
"""

import json
import os

import pytest
from typer.testing import CliRunner

from operator_rediscluster.cli.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def wired(cluster, monkeypatch):
    """Route every CLI command to the in-memory cluster."""
    for name in list(os.environ):
        if name.startswith("RCLUSTER_"):
            monkeypatch.delenv(name)
    monkeypatch.setattr("operator_rediscluster.cli.common.make_pool", lambda settings: cluster.pool())
    monkeypatch.setattr(
        "operator_rediscluster.cli.chaos.make_keyspace", lambda settings: cluster.keyspace()
    )
    monkeypatch.setattr(
        "operator_rediscluster.cli.chaos.make_controller",
        lambda kind, settings, pool: cluster.controller(),
    )
    return cluster


@pytest.fixture
def fast_config(tmp_path):
    path = tmp_path / "fast.yaml"
    path.write_text(
        "poll_interval: 0.01\n"
        "poll_deadline: 0.2\n"
        "promotion_deadline: 0.2\n"
        "bgsave_deadline: 0.2\n"
        "chaos:\n"
        "  key_count: 10\n"
        "  poll_interval: 0.01\n"
        "  poll_deadline: 0.2\n"
        "  recovery_deadline: 0.2\n"
        "  reshard_count: 50\n"
    )
    return path


def invoke(*args: str):
    return runner.invoke(app, list(args))


class TestInspection:
    """Tests for status, nodes, slots, info, check and metrics."""

    def test_status_json(self):
        result = invoke("--json", "status")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert set(data) == {"summary", "health", "snapshot"}
        assert data["health"]["state"] == "ok"
        assert len(data["snapshot"]["nodes"]) == 6

    def test_status_table(self):
        result = invoke("status")

        assert result.exit_code == 0, result.output
        assert "Health" in result.stdout

    def test_nodes_json(self):
        data = json.loads(invoke("--json", "nodes").stdout)

        assert [n["role"] for n in data["nodes"]].count("master") == 3

    def test_slots_json(self):
        data = json.loads(invoke("--json", "slots").stdout)

        assert sum(m["slot_count"] for m in data["masters"]) == 16384
        assert data["uncovered_count"] == 0

    def test_check_ok(self):
        assert invoke("check").exit_code == 0

    def test_check_failed_exits_10(self, wired):
        wired.auto_failover = False
        wired.stop(7002)

        result = invoke("--json", "check")

        assert result.exit_code == 10
        assert json.loads(result.stdout)["state"] == "failed"

    def test_info_json(self):
        result = invoke("--json", "info")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["state"] == "ok"
        assert len(data["nodes"]) == 6
        assert {row["slots_assigned"] for row in data["nodes"]} == {16384}
        assert {row["size"] for row in data["nodes"]} == {3}
        assert data["unreachable"] == []

    def test_info_table_shows_failed_state(self, wired):
        wired.auto_failover = False
        wired.stop(7003)

        result = invoke("info")

        assert result.exit_code == 0, result.output
        assert "Cluster info: fail" in result.stdout

    def test_metrics_json(self):
        rows = json.loads(invoke("--json", "metrics").stdout)

        assert len(rows) == 6
        assert {"used_memory_bytes", "keys", "last_bgsave_ok"} <= set(rows[0])


class TestOperations:
    """Tests for failover, reshard, rebalance, fix, backup, meet and forget."""

    def test_failover(self, wired, fast_config):
        result = invoke("--config", str(fast_config), "--json", "failover", "127.0.0.1:7004")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["promoted"] == wired.node(7004).node_id
        assert data["states"][-1] == "done"

    def test_failover_of_master_exits_3(self, fast_config):
        result = invoke("--config", str(fast_config), "--json", "failover", "127.0.0.1:7001")

        assert result.exit_code == 3
        data = json.loads(result.stdout)
        assert data["error"] == "PreconditionError"
        assert data["exit_code"] == 3
        assert data["snapshot"] is not None

    def test_failover_error_text(self, fast_config):
        result = invoke("--config", str(fast_config), "failover", "127.0.0.1:7001")

        assert result.exit_code == 3
        assert "Remediation" in result.output

    def test_reshard(self, wired, fast_config):
        source, target = wired.node(7001), wired.node(7002)

        result = invoke(
            "--config", str(fast_config), "--json", "reshard", source.node_id, target.node_id, "10"
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["moved_count"] == 10
        assert len(source.slots) == 5461 - 10

    def test_reshard_zero_is_usage_error(self, wired):
        result = invoke("reshard", wired.node(7001).node_id, wired.node(7002).node_id, "0")
        assert result.exit_code == 2

    def test_reshard_unknown_node_exits_3(self, fast_config):
        result = invoke("--config", str(fast_config), "reshard", "zzzz", "yyyy", "10")
        assert result.exit_code == 3

    def test_rebalance_balanced(self, fast_config):
        result = invoke("--config", str(fast_config), "rebalance")

        assert result.exit_code == 0, result.output
        assert "Already balanced" in result.stdout

    def test_rebalance_bad_weight(self):
        result = invoke("rebalance", "--weight", "nonsense")
        assert result.exit_code == 2

    def test_fix_nothing_open(self, fast_config):
        result = invoke("--config", str(fast_config), "fix")

        assert result.exit_code == 0, result.output
        assert "No open slots" in result.stdout

    def test_backup(self, fast_config, tmp_path):
        target = tmp_path / "backups"

        result = invoke("--config", str(fast_config), "--json", "backup", "--dir", str(target))

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["archive"].endswith(".tar.gz")
        assert len(data["nodes"]) == 6


    def test_meet_standalone_node(self, wired, fast_config):
        new = wired.add_standalone(7010)

        result = invoke(
            "--config", str(fast_config), "--json", "meet", "127.0.0.1:7010", "127.0.0.1:7001"
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["node_id"] == new.node_id
        assert new.node_id in wired.node(7001).known
        assert wired.sent(7001, "CLUSTER", "MEET") == [("CLUSTER", "MEET", "127.0.0.1", "7010")]

    def test_meet_existing_member_exits_3(self, fast_config):
        result = invoke("--config", str(fast_config), "meet", "127.0.0.1:7004", "127.0.0.1:7001")
        assert result.exit_code == 3

    def test_forget_replica(self, wired, fast_config):
        gone = wired.node(7006)

        result = invoke("--config", str(fast_config), "--json", "forget", gone.node_id)

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert [s["name"] for s in data["plan"]["steps"]] == ["forget"]
        for port in (7001, 7002, 7003, 7004, 7005):
            assert gone.node_id not in wired.node(port).known
        assert wired.sent(7006, "CLUSTER", "RESET") == []

    def test_forget_slot_owner_exits_3(self, wired, fast_config):
        result = invoke("--config", str(fast_config), "forget", "127.0.0.1:7001")

        assert result.exit_code == 3
        assert wired.sent(7002, "CLUSTER", "FORGET") == []

class TestConfiguration:
    """Tests for root options and settings errors."""

    def test_invalid_config_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- not\n- a mapping\n")

        result = invoke("--config", str(path), "status")

        assert result.exit_code == 2

    def test_invalid_node_flag(self):
        result = invoke("--node", "nonsense", "status")
        assert result.exit_code == 2

    def test_alert_without_webhook(self):
        result = invoke("alert")
        assert result.exit_code == 2


class TestChaosCommands:
    """Tests for chaos list and chaos run."""

    def test_list(self):
        result = invoke("--json", "chaos", "list")

        assert result.exit_code == 0
        names = [row["name"] for row in json.loads(result.stdout)]
        assert "master-down" in names
        assert "conflicting-operation" in names

    def test_unknown_scenario_exits_2(self):
        result = invoke("chaos", "run", "meteor-strike")
        assert result.exit_code == 2

    def test_run_passes(self, wired, fast_config):
        result = invoke("--config", str(fast_config), "--json", "chaos", "run", "replica-down")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["passed"] is True
        assert data["scenario"] == "replica-down"

    def test_failed_scenario_exits_11(self, wired, fast_config):
        wired.auto_failover = False

        result = invoke("--config", str(fast_config), "--json", "chaos", "run", "master-down")

        assert result.exit_code == 11
        data = json.loads(result.stdout)
        assert data["passed"] is False
        assert "replica_promoted" in [f["name"] for f in data["failures"]]

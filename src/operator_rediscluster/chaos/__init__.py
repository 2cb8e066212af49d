"""
Chaos testing: fault injection, seeded-key integrity and named scenarios.
"""

from operator_rediscluster.chaos.faults import (
    CommandNodeController,
    DockerNodeController,
    FaultInjectionError,
    NodeController,
)
from operator_rediscluster.chaos.harness import (
    AssertionFailure,
    ChaosContext,
    ChaosHarness,
    ChaosSettings,
    Phase,
    PhaseRecord,
    Scenario,
    ScenarioError,
    ScenarioResult,
    ScenarioState,
)
from operator_rediscluster.chaos.keyspace import KeyspaceProbe, connect_keyspace, seeded_keys
from operator_rediscluster.chaos.scenarios import SCENARIOS, get_scenario

__all__ = [
    "AssertionFailure",
    "ChaosContext",
    "ChaosHarness",
    "ChaosSettings",
    "CommandNodeController",
    "DockerNodeController",
    "FaultInjectionError",
    "KeyspaceProbe",
    "NodeController",
    "Phase",
    "PhaseRecord",
    "SCENARIOS",
    "Scenario",
    "ScenarioError",
    "ScenarioResult",
    "ScenarioState",
    "connect_keyspace",
    "get_scenario",
    "seeded_keys",
]

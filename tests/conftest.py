"""Shared fixtures: an in-memory cluster wired into real clients and orchestrators."""

import pytest

from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.orchestration.base import OrchestratorContext
from operator_rediscluster.retry import PollPolicy
from tests.fakes import FakeCluster

FAST_POLL = PollPolicy(interval=0.01, deadline=0.3)


@pytest.fixture
def cluster():
    """Three masters (7001-7003) each with one replica (7004-7006)."""
    return FakeCluster.create(masters=3, replicas=1)


@pytest.fixture
def two_shards():
    """Master A (7001) owns 0-8191 and has replica 7003; master B (7002) owns 8192-16383."""
    fake = FakeCluster()
    fake.add_master(7001, range(0, 8192))
    fake.add_master(7002, range(8192, 16384))
    fake.add_replica(7003, 7001)
    return fake


def make_context(fake: FakeCluster, poll: PollPolicy = FAST_POLL) -> OrchestratorContext:
    pool = fake.pool()
    observer = ClusterObserver(pool=pool, seeds=[fake.endpoint(min(fake.nodes))])
    return OrchestratorContext(pool=pool, observer=observer, poll=poll)


@pytest.fixture
def context(cluster):
    return make_context(cluster)


@pytest.fixture
def shard_context(two_shards):
    return make_context(two_shards)

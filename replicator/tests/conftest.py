from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from replicator.src.metrics import ReplicatorMetrics
from replicator.tests.fakes import FakeCoreApi, make_secret


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def metrics() -> ReplicatorMetrics:
    return ReplicatorMetrics.create(CollectorRegistry())


@pytest.fixture
def cluster(core_api: FakeCoreApi) -> FakeCoreApi:
    """Scenario cluster: namespaces src, ns1, ns2 and source secret creds={user: a}."""
    core_api.add_namespace("src")
    core_api.add_namespace("ns1")
    core_api.add_namespace("ns2")
    core_api.add_secret(make_secret("creds", data={"user": "YQ=="}))
    return core_api

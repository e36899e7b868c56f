from __future__ import annotations

import pytest

from dnssync.src.config import ControllerConfig, CoreDNSConfig
from dnssync.tests.fakes import COREFILE, FakeCluster, make_config_map, make_deployment


@pytest.fixture
def coredns_config() -> CoreDNSConfig:
    return CoreDNSConfig()


@pytest.fixture
def controller_config() -> ControllerConfig:
    return ControllerConfig(conflict_backoff_seconds=0)


@pytest.fixture
def cluster() -> FakeCluster:
    """A cluster with a stock CoreDNS install and no Ingresses."""
    fake = FakeCluster()
    fake.add_config_map(make_config_map("coredns", data={"Corefile": COREFILE}))
    fake.add_deployment(make_deployment())
    fake.writes.clear()
    return fake

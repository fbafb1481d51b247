"""
Shared fixtures: a fresh SQLite database per test and small-dimension engines.
"""

import numpy as np
import pytest

from reunite.core.crypto import LocalKeyManager
from reunite.core.engine import DiscoveryEngine
from reunite.core.errors import OperationalAlerts
from reunite.core.ledger import AuditLedger
from reunite.dispatch.transport import LoggingTransport
from reunite.vector.index import SegmentedIndex

DIM = 16


def unit(vector):
    vector = np.asarray(vector, dtype=np.float32)
    return vector / np.linalg.norm(vector)


def random_vector(rng, dim=DIM):
    return unit(rng.normal(size=dim))


def near(vector, cosine, rng):
    """A unit vector with the given cosine similarity to `vector`."""
    base = unit(vector)
    noise = rng.normal(size=base.shape[0])
    noise = noise - np.dot(noise, base) * base
    noise = unit(noise)
    return unit(cosine * base + np.sqrt(1.0 - cosine ** 2) * noise)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture
def alerts():
    return OperationalAlerts()


@pytest.fixture
def ledger(db_path, alerts):
    return AuditLedger(db_path, alerts=alerts)


@pytest.fixture
def key_manager():
    return LocalKeyManager(master_secret="test-master-secret", active_ref="k-test")


@pytest.fixture
def transport():
    return LoggingTransport()


@pytest.fixture
def engine(db_path, key_manager, transport, alerts):
    return DiscoveryEngine(
        db_path=db_path,
        index=SegmentedIndex(dimension=DIM, segment_size=64),
        key_manager=key_manager,
        transport=transport,
        alerts=alerts,
        dimension=DIM,
        dispatcher_options={"sleep": lambda seconds: None},
    )

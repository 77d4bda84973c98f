import sys
from pathlib import Path

import pytest

# Ensure repo root and this directory are importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from dual_gravity.backfill import Backfiller, WorkQueue  # noqa: E402
from dual_gravity.cache import TTLCache  # noqa: E402
from dual_gravity.resolver import ArtistResolver  # noqa: E402
from dual_gravity.store import CatalogStore  # noqa: E402

from fakes import build_world, seed_store  # noqa: E402


@pytest.fixture
def store():
    s = CatalogStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def work_queue():
    q = WorkQueue(maxsize=512)
    yield q
    q.close()


@pytest.fixture
def seeded_store(store):
    seed_store(store)
    return store


@pytest.fixture
def world():
    return build_world()


@pytest.fixture
def resolver_for(store, work_queue):
    """Factory: resolver over a given catalog, sharing the test store."""
    def factory(catalog):
        backfiller = Backfiller(work_queue, store, catalog)
        return ArtistResolver(catalog, store, TTLCache(), backfiller)
    return factory

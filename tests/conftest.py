import os

import pytest

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")

from config import get_settings
from contact_store import ContactStore
from db_models import AddContactRequest
from db_setup import Database
from disjoint_set_store import DisjointSetStore
from identity_resolver import IdentityResolver
from logging_setup import configure_logging
from union_find import UnionFind

configure_logging(get_settings())


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "contacts.db"), timeout=10.0)
    database.init_db()
    return database


@pytest.fixture
def contacts(db):
    return ContactStore(db)


@pytest.fixture
def sets(db):
    return DisjointSetStore(db)


@pytest.fixture
def engine(sets):
    return UnionFind(sets, max_retries=50, retry_backoff_seconds=0.001)


@pytest.fixture
def resolver(db, contacts, sets, engine):
    return IdentityResolver(db, contacts, sets, engine)


@pytest.fixture
def make_sets(db, sets):
    """Create singleton disjoint sets for the given ids, without contacts."""
    def _make(*ids):
        with db.transaction() as conn:
            for member_id in ids:
                sets.create_singleton(conn, member_id)
    return _make


@pytest.fixture
def add(resolver):
    def _add(email=None, phone=None, **kwargs):
        return resolver.ingest(AddContactRequest(email=email, phoneNumber=phone, **kwargs))
    return _add


@pytest.fixture
def check_partition(sets, contacts):
    """Every contact sits in exactly one set and every root is its set's minimum."""
    def _check():
        rows = sets.list_rows()
        seen = []
        for row in rows:
            assert row.rootId == min(row.members)
            seen.extend(row.members)
            for member_id in row.members:
                assert sets.find_root_of(member_id) == row.rootId
        assert len(seen) == len(set(seen))
        assert sorted(seen) == [c.id for c in contacts.list_all()]
    return _check

import itertools
import threading

import pytest

from db_setup import Database
from disjoint_set_store import DisjointSetStore
from errors import ConcurrencyConflict, InvalidState, NotFound, ServiceUnavailable
from union_find import UnionFind


def test_singleton_is_its_own_root(make_sets, engine, sets):
    make_sets(7)
    assert engine.find(7) == 7
    assert sets.get_row(7).members == [7]


def test_find_unknown_id_raises_not_found(engine):
    with pytest.raises(NotFound):
        engine.find(42)


def test_union_keeps_smaller_root(make_sets, engine, sets):
    make_sets(3, 8)

    assert engine.union(8, 3) == 3

    row = sets.get_row(3)
    assert row.members == [3, 8]
    assert row.version == 1
    assert engine.find(8) == 3
    with pytest.raises(NotFound):
        sets.get_row(8)


def test_union_of_non_roots_merges_their_groups(make_sets, engine, sets):
    make_sets(1, 2, 3, 4)
    engine.union(1, 2)
    engine.union(3, 4)

    assert engine.union(4, 2) == 1
    assert sets.get_row(1).members == [1, 2, 3, 4]
    assert [row.rootId for row in sets.list_rows()] == [1]


def test_union_same_group_is_noop(make_sets, engine, sets):
    make_sets(1, 2)
    engine.union(1, 2)
    version = sets.get_row(1).version

    assert engine.union(2, 1) == 1
    assert engine.union(1, 2) == 1
    assert sets.get_row(1).version == version


@pytest.mark.parametrize("order", list(itertools.permutations([5, 2, 9])))
def test_union_all_converges_on_minimum(tmp_path, order):
    db = Database(str(tmp_path / "uf.db"))
    db.init_db()
    sets = DisjointSetStore(db)
    engine = UnionFind(sets)
    with db.transaction() as conn:
        for member_id in (2, 5, 9, 6, 10):
            sets.create_singleton(conn, member_id)
    engine.union(5, 6)
    engine.union(9, 10)

    assert engine.union_all(order) == 2
    assert sets.get_row(2).members == [2, 5, 6, 9, 10]
    assert [row.rootId for row in sets.list_rows()] == [2]


def test_union_without_row_is_invalid_state(make_sets, engine):
    make_sets(1)
    with pytest.raises(InvalidState):
        engine.union(1, 99)


def test_union_all_requires_ids(engine):
    with pytest.raises(InvalidState):
        engine.union_all([])


def test_merge_into_rejects_stale_version(make_sets, engine, sets):
    make_sets(1, 2, 3)
    stale_one = sets.get_row(1)
    two = sets.get_row(2)
    engine.union(1, 3)

    with pytest.raises(ConcurrencyConflict):
        sets.merge_into(stale_one, two)

    # nothing from the failed merge is visible
    assert sets.get_row(1).members == [1, 3]
    assert sets.get_row(2).members == [2]
    assert engine.find(2) == 2


def test_merge_into_rejects_larger_surviving_root(make_sets, sets):
    make_sets(1, 2)
    with pytest.raises(InvalidState):
        sets.merge_into(sets.get_row(2), sets.get_row(1))


def test_union_retries_after_conflict(make_sets, engine, sets, monkeypatch):
    make_sets(1, 2)
    merge_into = sets.merge_into
    calls = []

    def flaky(surviving, losing):
        calls.append(losing.rootId)
        if len(calls) == 1:
            raise ConcurrencyConflict("lost the race")
        return merge_into(surviving, losing)

    monkeypatch.setattr(sets, "merge_into", flaky)

    assert engine.union(2, 1) == 1
    assert calls == [2, 2]
    assert sets.get_row(1).members == [1, 2]


def test_union_gives_up_after_max_retries(make_sets, sets, monkeypatch):
    make_sets(1, 2)
    engine = UnionFind(sets, max_retries=3, retry_backoff_seconds=0)
    attempts = []

    def always_conflicts(surviving, losing):
        attempts.append(1)
        raise ConcurrencyConflict("lost the race")

    monkeypatch.setattr(sets, "merge_into", always_conflicts)

    with pytest.raises(ServiceUnavailable):
        engine.union(1, 2)
    assert len(attempts) == 3
    assert engine.find(2) == 2


def test_concurrent_unions_keep_partition(make_sets, engine, sets):
    ids = list(range(1, 21))
    make_sets(*ids)
    errors = []

    def link(a, b):
        try:
            engine.union(a, b)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=link, args=(b, a)) for a, b in zip(ids, ids[1:])]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    rows = sets.list_rows()
    assert [row.rootId for row in rows] == [1]
    assert rows[0].members == ids
    assert all(engine.find(member_id) == 1 for member_id in ids)

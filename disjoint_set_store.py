import json
import sqlite3
from typing import List

import structlog

from db_models import DisjointSetRow
from db_setup import Database
from errors import ConcurrencyConflict, InvalidState, NotFound

logger = structlog.get_logger()


def _row(row: dict) -> DisjointSetRow:
    return DisjointSetRow(
        rootId=row["rootId"],
        members=json.loads(row["members"]),
        version=row["version"],
    )


class DisjointSetStore:
    def __init__(self, db: Database):
        self.db = db

    def create_singleton(self, conn: sqlite3.Connection, member_id: int) -> DisjointSetRow:
        """Create ``{member_id}`` on ``conn``, which must be inside a transaction."""
        conn.execute(
            "INSERT INTO DisjointSet (rootId, members, version) VALUES (?, ?, 0)",
            (member_id, json.dumps([member_id])),
        )
        conn.execute(
            "INSERT INTO DisjointSetMember (memberId, rootId) VALUES (?, ?)",
            (member_id, member_id),
        )
        return DisjointSetRow(rootId=member_id, members=[member_id], version=0)

    def find_root_of(self, member_id: int) -> int:
        rows = self.db.execute_query(
            "SELECT rootId FROM DisjointSetMember WHERE memberId = ?", (member_id,)
        )
        if not rows:
            raise NotFound(f"No disjoint set contains {member_id}")
        return rows[0]["rootId"]

    def get_row(self, root_id: int) -> DisjointSetRow:
        rows = self.db.execute_query(
            "SELECT rootId, members, version FROM DisjointSet WHERE rootId = ?", (root_id,)
        )
        if not rows:
            raise NotFound(f"No disjoint set rooted at {root_id}")
        return _row(rows[0])

    def list_rows(self) -> List[DisjointSetRow]:
        rows = self.db.execute_query(
            "SELECT rootId, members, version FROM DisjointSet ORDER BY rootId ASC"
        )
        return [_row(row) for row in rows]

    def merge_into(self, surviving: DisjointSetRow, losing: DisjointSetRow) -> DisjointSetRow:
        """Move every member of ``losing`` into ``surviving`` and delete ``losing``.

        Both writes are conditional on the versions the caller read. If either
        row changed since then nothing is written and ``ConcurrencyConflict``
        is raised.
        """
        if surviving.rootId >= losing.rootId:
            raise InvalidState(
                f"Cannot merge root {losing.rootId} into larger or equal root {surviving.rootId}"
            )

        members = sorted(set(surviving.members) | set(losing.members))

        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE DisjointSet
                SET members = ?, version = version + 1
                WHERE rootId = ? AND version = ?
            """, (json.dumps(members), surviving.rootId, surviving.version))
            if cursor.rowcount != 1:
                raise ConcurrencyConflict(f"Disjoint set {surviving.rootId} changed concurrently")

            cursor = conn.execute(
                "DELETE FROM DisjointSet WHERE rootId = ? AND version = ?",
                (losing.rootId, losing.version),
            )
            if cursor.rowcount != 1:
                raise ConcurrencyConflict(f"Disjoint set {losing.rootId} changed concurrently")

            conn.execute(
                "UPDATE DisjointSetMember SET rootId = ? WHERE rootId = ?",
                (surviving.rootId, losing.rootId),
            )

        return DisjointSetRow(rootId=surviving.rootId, members=members, version=surviving.version + 1)

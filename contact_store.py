import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from db_models import Contact
from db_setup import Database
from errors import NotFound, ValidationError

logger = structlog.get_logger()


class ContactStore:
    """Contact rows. Soft-deleted rows are invisible to every lookup."""

    def __init__(self, db: Database):
        self.db = db

    def insert(
        self,
        conn: sqlite3.Connection,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        linked_id: Optional[int] = None,
        precedence: str = "primary",
        contact_id: Optional[int] = None,
    ) -> Contact:
        """Insert a contact on ``conn``, which must be inside a transaction."""
        now = datetime.now().isoformat()

        try:
            if contact_id:
                conn.execute("""
                    INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (contact_id, phone, email, linked_id, precedence, now, now))
                result_id = contact_id
            else:
                cursor = conn.execute("""
                    INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (phone, email, linked_id, precedence, now, now))
                result_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Contact {contact_id} already exists") from exc

        return Contact(
            id=result_id,
            email=email,
            phoneNumber=phone,
            linkedId=linked_id,
            linkPrecedence=precedence,
            createdAt=now,
            updatedAt=now,
        )

    def find_by_id(self, contact_id: int) -> Contact:
        rows = self.db.execute_query(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        )
        if not rows:
            raise NotFound(f"Contact {contact_id} does not exist")
        return Contact(**rows[0])

    def find_by_email_or_phone(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        exclude_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Contact]:
        # NULL never compares equal, so a missing identifier matches nothing.
        query = """
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (email = ? OR phoneNumber = ?)
            AND id IS NOT ?
            ORDER BY id ASC
        """
        params = (email, phone, exclude_id)
        if conn is None:
            rows = self.db.execute_query(query, params)
        else:
            rows = [dict(row) for row in conn.execute(query, params).fetchall()]
        return [Contact(**row) for row in rows]

    def find_by_ids(self, ids: Iterable[int]) -> List[Contact]:
        ids = sorted(set(ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = self.db.execute_query(f"""
            SELECT * FROM Contact
            WHERE id IN ({placeholders}) AND deletedAt IS NULL
            ORDER BY id ASC
        """, ids)
        return [Contact(**row) for row in rows]

    def list_all(self) -> List[Contact]:
        rows = self.db.execute_query(
            "SELECT * FROM Contact WHERE deletedAt IS NULL ORDER BY id ASC"
        )
        return [Contact(**row) for row in rows]

    def mark_group(self, root_id: int, member_ids: Iterable[int]) -> int:
        """Mark the root primary and the rest its secondaries; returns rows changed."""
        now = datetime.now().isoformat()
        secondary_ids = [m for m in member_ids if m != root_id]
        updated = 0

        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE Contact
                SET linkedId = NULL, linkPrecedence = 'primary', updatedAt = ?
                WHERE id = ? AND (linkPrecedence != 'primary' OR linkedId IS NOT NULL)
            """, (now, root_id))
            updated += cursor.rowcount

            for contact_id in secondary_ids:
                cursor = conn.execute("""
                    UPDATE Contact
                    SET linkedId = ?, linkPrecedence = 'secondary', updatedAt = ?
                    WHERE id = ? AND (linkPrecedence != 'secondary' OR linkedId IS NOT ?)
                """, (root_id, now, contact_id, root_id))
                updated += cursor.rowcount

        if updated:
            logger.debug("Rewrote contact precedence", root_id=root_id, updated=updated)
        return updated

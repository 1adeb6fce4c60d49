import time
from functools import reduce
from typing import Callable, Iterable, Set, TypeVar

import structlog

from db_models import DisjointSetRow
from disjoint_set_store import DisjointSetStore
from errors import ConcurrencyConflict, InvalidState, NotFound, ServiceUnavailable

logger = structlog.get_logger()

T = TypeVar("T")


class UnionFind:
    def __init__(
        self,
        sets: DisjointSetStore,
        max_retries: int = 5,
        retry_backoff_seconds: float = 0.01,
    ):
        self.sets = sets
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def retry(self, operation: Callable[..., T], *args) -> T:
        """Re-run ``operation`` on ConcurrencyConflict, then give up with ServiceUnavailable."""
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation(*args)
            except ConcurrencyConflict as exc:
                logger.warning(
                    "Concurrent write conflict, retrying",
                    operation=operation.__name__,
                    attempt=attempt,
                    error=exc.message,
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_backoff_seconds * attempt)

        raise ServiceUnavailable(
            f"{operation.__name__} still conflicting after {self.max_retries} attempts"
        )

    def find(self, member_id: int) -> int:
        return self.sets.find_root_of(member_id)

    def find_roots(self, member_ids: Iterable[int]) -> Set[int]:
        roots = set()
        for member_id in member_ids:
            try:
                roots.add(self.find(member_id))
            except NotFound as exc:
                logger.error("Contact has no disjoint set", member_id=member_id)
                raise InvalidState(f"Contact {member_id} has no disjoint set") from exc
        return roots

    def union(self, id_a: int, id_b: int) -> int:
        """Merge the groups of ``id_a`` and ``id_b`` and return the surviving root."""
        return self.retry(self._union_once, id_a, id_b)

    def union_all(self, member_ids: Iterable[int]) -> int:
        member_ids = list(member_ids)
        if not member_ids:
            raise InvalidState("union_all needs at least one id")
        if len(member_ids) == 1:
            return self.find_roots(member_ids).pop()
        return reduce(self.union, member_ids)

    def group_of(self, member_id: int) -> DisjointSetRow:
        return self.retry(self._group_once, member_id)

    def _group_once(self, member_id: int) -> DisjointSetRow:
        root_id = self.find_roots([member_id]).pop()
        try:
            return self.sets.get_row(root_id)
        except NotFound as exc:
            # The root was absorbed between the two reads.
            raise ConcurrencyConflict(f"Disjoint set {root_id} merged concurrently") from exc

    def _union_once(self, id_a: int, id_b: int) -> int:
        root_a, root_b = (self.find_roots([member_id]).pop() for member_id in (id_a, id_b))
        if root_a == root_b:
            return root_a

        try:
            row_a = self.sets.get_row(root_a)
            row_b = self.sets.get_row(root_b)
        except NotFound as exc:
            raise ConcurrencyConflict(str(exc)) from exc

        surviving, losing = (row_a, row_b) if row_a.rootId < row_b.rootId else (row_b, row_a)
        merged = self.sets.merge_into(surviving, losing)
        logger.info(
            "Merged identity groups",
            root_id=merged.rootId,
            absorbed_root_id=losing.rootId,
            size=len(merged.members),
        )
        return merged.rootId

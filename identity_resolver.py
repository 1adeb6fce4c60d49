from typing import List, Optional, Tuple

import structlog

from contact_store import ContactStore
from db_models import AddContactRequest, Contact, ContactResponse
from db_setup import Database
from disjoint_set_store import DisjointSetStore
from errors import InvalidState, NotFound, ValidationError
from union_find import UnionFind

logger = structlog.get_logger()


# blank values become NULL; anything else is stored and matched exactly as sent
def _clean(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


class IdentityResolver:
    def __init__(
        self,
        db: Database,
        contacts: ContactStore,
        sets: DisjointSetStore,
        engine: UnionFind,
        accept_client_ids: bool = True,
        rewrite_precedence: bool = True,
    ):
        self.db = db
        self.contacts = contacts
        self.sets = sets
        self.engine = engine
        self.accept_client_ids = accept_client_ids
        self.rewrite_precedence = rewrite_precedence

    def ingest(self, request: AddContactRequest) -> Contact:
        email = _clean(request.email)
        phone = _clean(request.phoneNumber)

        if request.id is not None:
            if not self.accept_client_ids:
                raise ValidationError("Contact ids are assigned by the server")
            if request.id <= 0:
                raise ValidationError("Contact id must be a positive integer")
        if request.linkPrecedence == "secondary" and request.linkedId is None:
            raise ValidationError("linkedId required for secondary contacts")
        if request.linkedId is not None:
            try:
                self.contacts.find_by_id(request.linkedId)
            except NotFound as exc:
                raise ValidationError(f"linkedId {request.linkedId} does not exist") from exc

        contact = self.engine.retry(
            self._create_contact, email, phone, request.linkedId, request.linkPrecedence, request.id
        )

        matches = self.contacts.find_by_email_or_phone(email, phone, exclude_id=contact.id)
        roots = self.engine.find_roots(m.id for m in matches)
        if request.linkPrecedence == "secondary":
            roots |= self.engine.find_roots([request.linkedId])
        roots.discard(contact.id)

        root_id = self.engine.union_all([contact.id, *sorted(roots)])
        logger.info(
            "Ingested contact",
            contact_id=contact.id,
            root_id=root_id,
            linked_roots=sorted(roots),
        )

        if roots:
            self._rewrite_precedence(root_id)
        return contact

    def resolve(self, email: Optional[str] = None, phone: Optional[str] = None) -> ContactResponse:
        """Merge every group matching ``email`` or ``phone`` and summarise it.

        With no match at all a new primary contact is created.
        """
        email = _clean(email)
        phone = _clean(phone)

        if not email and not phone:
            raise ValidationError("Either email or phoneNumber must be provided")

        matches = self.contacts.find_by_email_or_phone(email, phone)

        if not matches:
            contact, matches = self.engine.retry(self._create_if_unmatched, email, phone)
            if contact is not None:
                logger.info("Created new identity", contact_id=contact.id)
                return ContactResponse(
                    primaryContactId=contact.id,
                    emails=[email] if email else [],
                    phoneNumbers=[phone] if phone else [],
                    secondaryContactIds=[],
                )

        roots = self.engine.find_roots(m.id for m in matches)
        base_root = self.engine.union_all(sorted(roots))
        if len(roots) > 1:
            self._rewrite_precedence(base_root)

        group = self.engine.group_of(base_root)
        members = self.contacts.find_by_ids(group.members)

        missing = set(group.members) - {m.id for m in members}
        if missing:
            logger.error("Disjoint set references missing contacts", root_id=group.rootId, missing=sorted(missing))
            raise InvalidState(f"Disjoint set {group.rootId} references missing contacts {sorted(missing)}")

        return self._summarise(group.rootId, members)

    def list_all(self) -> List[Contact]:
        return self.contacts.list_all()

    def _create_contact(self, email, phone, linked_id, precedence, contact_id) -> Contact:
        with self.db.transaction() as conn:
            contact = self.contacts.insert(conn, email, phone, linked_id, precedence, contact_id)
            self.sets.create_singleton(conn, contact.id)
        return contact

    def _create_if_unmatched(self, email, phone) -> Tuple[Optional[Contact], List[Contact]]:
        # BEGIN IMMEDIATE holds the write lock, so no other resolve can insert
        # the same identifiers between this lookup and the insert.
        with self.db.transaction() as conn:
            matches = self.contacts.find_by_email_or_phone(email, phone, conn=conn)
            if matches:
                return None, matches
            contact = self.contacts.insert(conn, email, phone, None, "primary", None)
            self.sets.create_singleton(conn, contact.id)
        return contact, []

    def _rewrite_precedence(self, root_id: int) -> None:
        if not self.rewrite_precedence:
            return
        self.engine.retry(self._mark_group_once, root_id)

    def _mark_group_once(self, root_id: int) -> None:
        group = self.engine.group_of(root_id)
        self.contacts.mark_group(group.rootId, group.members)

    @staticmethod
    def _summarise(root_id: int, members: List[Contact]) -> ContactResponse:
        emails = []
        phone_numbers = []
        secondary_ids = []

        # members arrive in ascending id order, so the root comes first
        for contact in members:
            if contact.email and contact.email not in emails:
                emails.append(contact.email)
            if contact.phoneNumber and contact.phoneNumber not in phone_numbers:
                phone_numbers.append(contact.phoneNumber)
            if contact.id != root_id:
                secondary_ids.append(contact.id)

        return ContactResponse(
            primaryContactId=root_id,
            emails=emails,
            phoneNumbers=phone_numbers,
            secondaryContactIds=secondary_ids,
        )

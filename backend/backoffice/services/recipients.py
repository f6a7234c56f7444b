"""Recipient resolution

Queue items carry opaque recipient tokens: either a user id (resolved against
the users table at send time, since contact data can change between attempts)
or a literal email address.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.models.user import User

logger = logging.getLogger(__name__)

# local@domain.tld, nothing stricter; the provider does the real validation
_ADDRESS_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Address:
    value: str


@dataclass(frozen=True)
class UserRef:
    user_id: str


@dataclass(frozen=True)
class Malformed:
    raw: str


RecipientToken = Union[Address, UserRef, Malformed]


def parse_token(raw) -> RecipientToken:
    """Classify a raw recipient string"""
    if not isinstance(raw, str):
        return Malformed(str(raw))
    token = raw.strip()
    try:
        return UserRef(str(uuid.UUID(token)))
    except ValueError:
        pass
    if _ADDRESS_RE.match(token):
        return Address(token)
    return Malformed(raw)


@dataclass
class Resolution:
    """Partition of a token list after resolution"""
    addresses: List[str] = field(default_factory=list)
    unresolved_refs: List[str] = field(default_factory=list)
    malformed: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.addresses


class RecipientResolver:
    """Maps recipient tokens to concrete addresses with a single user lookup"""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, tokens: List[str]) -> Resolution:
        resolution = Resolution()
        parsed = [parse_token(t) for t in tokens]

        ref_ids = list(dict.fromkeys(t.user_id for t in parsed if isinstance(t, UserRef)))
        emails_by_id = {}
        lookup_failed = False
        if ref_ids:
            try:
                rows = self.db.query(User.id, User.email).filter(User.id.in_(ref_ids)).all()
                emails_by_id = {row.id: row.email for row in rows if row.email}
            except SQLAlchemyError as e:
                logger.error(f"User lookup failed for {len(ref_ids)} recipients: {e}")
                self.db.rollback()
                lookup_failed = True

        seen = set()

        def _add(address: str):
            key = address.lower()
            if key not in seen:
                seen.add(key)
                resolution.addresses.append(address)

        for token in parsed:
            if isinstance(token, Address):
                _add(token.value)
            elif isinstance(token, UserRef):
                email = None if lookup_failed else emails_by_id.get(token.user_id)
                if email:
                    _add(email)
                elif token.user_id not in resolution.unresolved_refs:
                    resolution.unresolved_refs.append(token.user_id)
            else:
                resolution.malformed.append(token.raw)

        return resolution


def get_admin_user_ids(db: Session) -> List[str]:
    """Current admin user ids, queried fresh on every call"""
    return [row.id for row in db.query(User.id).filter(User.is_admin.is_(True)).all()]


def get_admin_emails(db: Session) -> List[str]:
    """Current admin addresses, queried fresh on every call"""
    rows = db.query(User.email).filter(User.is_admin.is_(True), User.email.isnot(None)).all()
    return [row.email for row in rows]

"""
Decoupled Auth - Field Constraints

Validation rules that differ from a plain user account because the login
name is optional:

- name: optional, but when present it must be a valid login name
- name: required when a user registers through the registration path
- mail: required for decoupled records, which have nothing else to
  identify them
- mail: unique among coupled records only; decoupled records may share an
  address with each other and with one coupled record
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from .exceptions import ConstraintViolationError
from .matching import decoupled_condition
from .record import IdentityRecord
from .store import IdentityStore, FieldCondition

logger = logging.getLogger(__name__)


USERNAME_MAX_LENGTH = 60

_DISALLOWED_NAME_CHARS = re.compile(r"[^\u0080-\U0010FFFF a-z0-9@+_.'-]", re.IGNORECASE)
_ILLEGAL_NAME_CHARS = re.compile(
    r"["
    r"\u00AD"          # Soft-hyphen
    r"\u2000-\u200F"   # Various space characters
    r"\u2028-\u202F"   # Bidirectional text overrides
    r"\u205F-\u206F"   # Various text hinting characters
    r"\uFEFF"          # Byte order mark
    r"\uFF01-\uFF60"   # Full-width latin
    r"\uFFF9-\uFFFD"   # Replacement characters
    r"\x00-\x1F"       # NULL byte and control characters
    r"]"
)


@dataclass(frozen=True)
class ConstraintViolation:
    """A single failed constraint."""
    field: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "code": self.code, "message": self.message}

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


def validate_name(name: Optional[str]) -> List[ConstraintViolation]:
    """Validate a login name; None is allowed (decoupled)."""
    if name is None:
        return []

    def violation(code: str, message: str) -> List[ConstraintViolation]:
        return [ConstraintViolation("name", code, message)]

    if name == "":
        return violation("name_empty", "You must enter a username.")
    if name.startswith(" "):
        return violation("name_leading_space", "The username cannot begin with a space.")
    if name.endswith(" "):
        return violation("name_trailing_space", "The username cannot end with a space.")
    if "  " in name:
        return violation("name_multiple_spaces", "The username cannot contain multiple spaces in a row.")
    if _DISALLOWED_NAME_CHARS.search(name) or _ILLEGAL_NAME_CHARS.search(name):
        return violation("name_invalid_chars", "The username contains an illegal character.")
    if len(name) > USERNAME_MAX_LENGTH:
        return violation(
            "name_too_long",
            f"The username {name} is too long: it must be {USERNAME_MAX_LENGTH} characters or less."
        )
    return []


def validate_name_required(record: IdentityRecord) -> List[ConstraintViolation]:
    """Registered users must choose a username."""
    if record.name is None:
        return [ConstraintViolation("name", "name_required", "You must enter a username.")]
    return []


def validate_mail_required(record: IdentityRecord) -> List[ConstraintViolation]:
    if record.is_decoupled() and record.is_field_empty("mail"):
        return [ConstraintViolation("mail", "mail_required", "Email is required for users without a username.")]
    return []


async def validate_mail_unique(record: IdentityRecord, store: IdentityStore) -> List[ConstraintViolation]:
    """Coupled records may not share an email with another coupled record."""
    if record.is_decoupled() or record.is_field_empty("mail"):
        return []

    others = await store.find_by_fields([
        FieldCondition(field="mail", value=record.mail, case_insensitive=True),
        decoupled_condition(False),
    ])
    if any(other.id != record.id for other in others):
        return [ConstraintViolation("mail", "mail_taken", f"The email address {record.mail} is already taken.")]
    return []


async def validate_record(
    record: IdentityRecord,
    store: IdentityStore,
    require_name: bool = False
) -> List[ConstraintViolation]:
    """Run every constraint; returns all violations found."""
    violations = validate_name(record.name)
    if require_name:
        violations.extend(validate_name_required(record))
    violations.extend(validate_mail_required(record))
    violations.extend(await validate_mail_unique(record, store))
    return violations


async def assert_valid(record: IdentityRecord, store: IdentityStore, require_name: bool = False) -> None:
    """
    Raises:
        ConstraintViolationError: If any constraint fails
    """
    violations = await validate_record(record, store, require_name)
    if violations:
        logger.info(f"Record {record.id} failed validation: {[v.code for v in violations]}")
        raise ConstraintViolationError(violations)

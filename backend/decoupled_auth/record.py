"""
Decoupled Auth - Identity Records

A single record type represents every user account. Whether an account can
log in is a state tag derived from its login name, not a subclass:

- DECOUPLED: no login name (and therefore no usable credentials)
- COUPLED: login name set

The flag is derived, so it must be recomputed after every load and after any
write to the login name. Writes through IdentityRecord.set() do this
automatically; stores call calculate_decoupled() after hydrating.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Iterable, List, Set


LOGIN_FIELD = "name"
CREDENTIAL_FIELD = "pass"
ROLES_FIELD = "roles"

BASE_FIELDS = (
    "uid",
    "uuid",
    "name",
    "pass",
    "mail",
    "init",
    "status",
    "timezone",
    "langcode",
    "created",
    "changed",
    "access",
    "login",
)

# Fields that are never rendered outside the record
PRIVATE_FIELDS = (CREDENTIAL_FIELD,)


class CouplingState(str, Enum):
    """Coupling state of an identity record"""
    DECOUPLED = "decoupled"
    COUPLED = "coupled"


def is_empty_value(value: Any) -> bool:
    """Check whether a field value counts as unset."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


class IdentityRecord:
    """
    Identity Record - a user account with or without credentials.

    Fields live in an ordered mapping. Base fields are always present (None
    when unset); any other key is an extension field. Roles are kept as a
    set alongside the fields.
    """

    def __init__(
        self,
        fields: Optional[Dict[str, Any]] = None,
        roles: Optional[Iterable[str]] = None,
        enforce_is_new: bool = True,
        schema: Optional[Iterable[str]] = None
    ):
        self._fields: Dict[str, Any] = {}
        for name in (BASE_FIELDS if schema is None else schema):
            self._fields[name] = None

        values = dict(fields or {})
        if ROLES_FIELD in values:
            roles = list(roles or []) + list(values.pop(ROLES_FIELD) or [])
        self._fields.update(values)

        self.roles: Set[str] = set(roles or ())
        self.enforce_is_new = enforce_is_new
        self.decoupled = False
        self.calculate_decoupled()

    # ==================== FIELD ACCESS ====================

    @property
    def id(self) -> Optional[int]:
        return self._fields.get("uid")

    @property
    def uuid(self) -> Optional[str]:
        return self._fields.get("uuid")

    @property
    def name(self) -> Optional[str]:
        return self._fields.get(LOGIN_FIELD)

    @property
    def mail(self) -> Optional[str]:
        return self._fields.get("mail")

    def get(self, field_name: str, default: Any = None) -> Any:
        return self._fields.get(field_name, default)

    def set(self, field_name: str, value: Any) -> "IdentityRecord":
        """Set a field value, keeping the derived decoupled flag current."""
        if field_name == ROLES_FIELD:
            self.roles = set(value or ())
            return self
        self._fields[field_name] = value
        if field_name == LOGIN_FIELD:
            self.calculate_decoupled()
        return self

    def has_field(self, field_name: str) -> bool:
        """Whether the field is part of this record's schema."""
        return field_name in self._fields

    def field_names(self) -> List[str]:
        return list(self._fields)

    def is_field_empty(self, field_name: str) -> bool:
        return is_empty_value(self._fields.get(field_name))

    # ==================== ROLES ====================

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def add_role(self, role: str) -> "IdentityRecord":
        self.roles.add(role)
        return self

    def remove_role(self, role: str) -> "IdentityRecord":
        self.roles.discard(role)
        return self

    # ==================== COUPLING ====================

    def calculate_decoupled(self) -> None:
        """Recompute the decoupled flag from the login name."""
        self.decoupled = self._fields.get(LOGIN_FIELD) is None

    def is_coupled(self) -> bool:
        return not self.decoupled

    def is_decoupled(self) -> bool:
        return self.decoupled

    @property
    def state(self) -> CouplingState:
        return CouplingState.DECOUPLED if self.decoupled else CouplingState.COUPLED

    def couple(self) -> "IdentityRecord":
        """
        Mark the record as coupled.

        No fields are touched. The caller sets the login name and
        credentials, before or straight after this call; the flag is
        recomputed from the login name on the next write or load.
        """
        self.decoupled = False
        return self

    def decouple(self) -> "IdentityRecord":
        """
        Mark the record as decoupled and discard its login credentials.

        The login name and credential hash are cleared, not archived.
        """
        self.decoupled = True
        self._fields[LOGIN_FIELD] = None
        self._fields[CREDENTIAL_FIELD] = None
        return self

    # ==================== SERIALISATION ====================

    def to_fields(self) -> Dict[str, Any]:
        """Copy of all fields, credentials included, for persistence."""
        return copy.deepcopy(self._fields)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            key: value for key, value in self._fields.items()
            if key not in PRIVATE_FIELDS
        }
        data["roles"] = sorted(self.roles)
        data["decoupled"] = self.decoupled
        return data

    def copy(self) -> "IdentityRecord":
        clone = IdentityRecord(
            fields=self.to_fields(),
            roles=self.roles,
            enforce_is_new=self.enforce_is_new,
            schema=()
        )
        clone.decoupled = self.decoupled
        return clone

    def __repr__(self) -> str:
        return f"<IdentityRecord uid={self.id} state={self.state.value}>"


@dataclass
class ProfileRecord:
    """
    Profile Record - secondary data attached to an identity record.

    owner_id is a weak back reference: the owner may have been deleted by
    the host, in which case the profile is orphaned.
    """
    bundle: str
    owner_id: Optional[int] = None
    profile_id: Optional[int] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    status: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "bundle": self.bundle,
            "owner_id": self.owner_id,
            "fields": dict(self.fields),
            "status": self.status,
        }

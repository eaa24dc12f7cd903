"""
Decoupled Auth - Identity Store

The store is the persistence collaborator of the acquisition engine. The
engine only relies on the IdentityStore interface:

- find_by_fields(conditions) -> records in creation order
- create(initial_fields) -> record
- load_multiple(ids) -> records
- save(record) -> record (insert when enforce_is_new, else update)

Every record handed out by a store has passed through _post_load(), which
recomputes the derived decoupled flag and notifies load listeners.

InMemoryIdentityStore keeps everything in process and is used by hosts
without a database and by the test suite. The SQLAlchemy implementation
lives in sql_store.py.
"""

import copy
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable, Callable, Set

from .exceptions import StoreError, RecordNotFoundError
from .record import IdentityRecord, ProfileRecord, BASE_FIELDS

logger = logging.getLogger(__name__)


LoadListener = Callable[[List[IdentityRecord]], None]


# ==================== QUERY CONDITIONS ====================

class Operator:
    """Comparison operators understood by find_by_fields."""
    EQUALS = "="
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


def normalise_value(value: Any) -> Any:
    """Normalisation applied to case-insensitive comparisons."""
    if isinstance(value, str):
        return value.strip().lower()
    return value


@dataclass(frozen=True)
class FieldCondition:
    """A single field constraint for find_by_fields."""
    field: str
    value: Any = None
    operator: str = Operator.EQUALS
    case_insensitive: bool = False

    def matches(self, record: IdentityRecord) -> bool:
        current = record.get(self.field)
        if self.operator == Operator.IS_NULL:
            return current is None
        if self.operator == Operator.IS_NOT_NULL:
            return current is not None
        if self.case_insensitive:
            return normalise_value(current) == normalise_value(self.value)
        return current == self.value


# ==================== INTERFACE ====================

class IdentityStore(ABC):
    """Persistence interface consumed by the acquisition engine."""

    def __init__(self):
        self._load_listeners: List[LoadListener] = []

    def add_load_listener(self, listener: LoadListener) -> None:
        """Register a callback invoked with every batch of loaded records."""
        self._load_listeners.append(listener)

    def _post_load(self, records: List[IdentityRecord]) -> List[IdentityRecord]:
        for record in records:
            record.calculate_decoupled()
        for listener in self._load_listeners:
            listener(records)
        return records

    def queryable_fields(self) -> Set[str]:
        """Fields find_by_fields can filter on."""
        return set(BASE_FIELDS)

    @abstractmethod
    async def find_by_fields(self, conditions: List[FieldCondition]) -> List[IdentityRecord]:
        """Records satisfying every condition, ordered by uid ascending."""

    @abstractmethod
    async def create(self, initial_fields: Dict[str, Any]) -> IdentityRecord:
        """Insert a new record built from initial_fields and return it."""

    @abstractmethod
    async def load_multiple(self, ids: Iterable[int]) -> List[IdentityRecord]:
        """Load records by uid; unknown ids are left out."""

    @abstractmethod
    async def save(self, record: IdentityRecord) -> IdentityRecord:
        """Insert (enforce_is_new) or update the record."""

    @abstractmethod
    async def load_profiles(
        self,
        owner_ids: Optional[Iterable[int]] = None,
        bundle: Optional[str] = None
    ) -> List[ProfileRecord]:
        """Load profile records, optionally filtered by owner and bundle."""

    @abstractmethod
    async def save_profile(self, profile: ProfileRecord) -> ProfileRecord:
        """Insert or update a profile record."""

    async def load(self, uid: int) -> Optional[IdentityRecord]:
        records = await self.load_multiple([uid])
        return records[0] if records else None


# ==================== IN-MEMORY STORE ====================

class InMemoryIdentityStore(IdentityStore):
    """
    Process-local identity store.

    Records are deep-copied in and out so callers never hold a reference to
    stored state; a record only changes in the store through save().
    """

    def __init__(self, extra_fields: Optional[Iterable[str]] = None):
        super().__init__()
        self._extra_fields = set(extra_fields or ())
        self._rows: Dict[int, Dict[str, Any]] = {}
        self._roles: Dict[int, Set[str]] = {}
        self._profiles: Dict[int, ProfileRecord] = {}
        self._next_uid = 1
        self._next_profile_id = 1

    def queryable_fields(self) -> Set[str]:
        return set(BASE_FIELDS) | self._extra_fields

    def _hydrate(self, uid: int) -> IdentityRecord:
        return IdentityRecord(
            fields=copy.deepcopy(self._rows[uid]),
            roles=set(self._roles.get(uid, ())),
            enforce_is_new=False,
            schema=()
        )

    def _write(self, record: IdentityRecord) -> None:
        fields = record.to_fields()
        self._rows[record.id] = fields
        self._roles[record.id] = set(record.roles)
        self._extra_fields.update(k for k in fields if k not in BASE_FIELDS)

    async def find_by_fields(self, conditions: List[FieldCondition]) -> List[IdentityRecord]:
        matched = []
        for uid in sorted(self._rows):
            record = self._hydrate(uid)
            if all(condition.matches(record) for condition in conditions):
                matched.append(record)
        return self._post_load(matched)

    async def create(self, initial_fields: Dict[str, Any]) -> IdentityRecord:
        record = IdentityRecord(fields=initial_fields)
        return await self.save(record)

    async def load_multiple(self, ids: Iterable[int]) -> List[IdentityRecord]:
        records = [self._hydrate(uid) for uid in ids if uid in self._rows]
        return self._post_load(records)

    async def save(self, record: IdentityRecord) -> IdentityRecord:
        now = datetime.now(timezone.utc)

        if record.enforce_is_new:
            if record.id is None:
                record.set("uid", self._next_uid)
            elif record.id in self._rows:
                raise StoreError(
                    f"Cannot insert record {record.id}: key already exists",
                    details={"uid": record.id}
                )
            self._next_uid = max(self._next_uid, record.id + 1)
            if record.uuid is None:
                record.set("uuid", str(uuid.uuid4()))
            if record.get("created") is None:
                record.set("created", now)
        elif record.id not in self._rows:
            raise RecordNotFoundError(
                f"Cannot update record {record.id}: no such key",
                details={"uid": record.id}
            )

        record.set("changed", now)
        self._write(record)
        record.enforce_is_new = False
        return record

    async def load_profiles(
        self,
        owner_ids: Optional[Iterable[int]] = None,
        bundle: Optional[str] = None
    ) -> List[ProfileRecord]:
        owners = set(owner_ids) if owner_ids is not None else None
        profiles = []
        for profile_id in sorted(self._profiles):
            profile = self._profiles[profile_id]
            if owners is not None and profile.owner_id not in owners:
                continue
            if bundle is not None and profile.bundle != bundle:
                continue
            profiles.append(copy.deepcopy(profile))
        return profiles

    async def save_profile(self, profile: ProfileRecord) -> ProfileRecord:
        if profile.profile_id is None:
            profile.profile_id = self._next_profile_id
            self._next_profile_id += 1
        self._profiles[profile.profile_id] = copy.deepcopy(profile)
        return profile

    async def delete(self, uid: int) -> None:
        """
        Remove a record, leaving its profiles behind.

        Deletion is a host concern; this exists so hosts and tests can
        reproduce orphaned profiles.
        """
        self._rows.pop(uid, None)
        self._roles.pop(uid, None)
        logger.info(f"Deleted identity record {uid}")

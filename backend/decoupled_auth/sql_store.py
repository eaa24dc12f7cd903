"""
Decoupled Auth - SQLAlchemy Identity Store

IdentityStore backed by an AsyncSession. Base fields map to columns on the
users table; any other field is kept in the JSON data column.

create() and save() commit, so a record created by one acquisition is
visible to the next. Every SQLAlchemyError is rolled back and re-raised as
StoreError; nothing is retried.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable, Set

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import StoreError, RecordNotFoundError
from .models import UserDB, UserRoleDB, ProfileDB
from .record import IdentityRecord, ProfileRecord, BASE_FIELDS
from .store import IdentityStore, FieldCondition, Operator, normalise_value

logger = logging.getLogger(__name__)


# Record field name -> UserDB attribute
COLUMN_ATTRIBUTES = {name: name for name in BASE_FIELDS}
COLUMN_ATTRIBUTES["pass"] = "pass_hash"

COLUMNS_WITH_DEFAULTS = ("uid", "uuid", "status", "created", "changed")


class SQLAlchemyIdentityStore(IdentityStore):
    """Identity store on the users, user_roles and profiles tables."""

    def __init__(self, db: AsyncSession, extra_fields: Optional[Iterable[str]] = None):
        super().__init__()
        self.db = db
        self._extra_fields = set(extra_fields or ())

    def queryable_fields(self) -> Set[str]:
        return set(BASE_FIELDS) | self._extra_fields

    # ==================== MAPPING ====================

    def _field_expression(self, field: str):
        if field in COLUMN_ATTRIBUTES:
            return getattr(UserDB, COLUMN_ATTRIBUTES[field])
        return UserDB.extra_data[field].as_string()

    def _clause(self, condition: FieldCondition):
        expression = self._field_expression(condition.field)
        if condition.operator == Operator.IS_NULL:
            return expression.is_(None)
        if condition.operator == Operator.IS_NOT_NULL:
            return expression.is_not(None)
        if condition.case_insensitive:
            return func.lower(func.trim(expression)) == normalise_value(condition.value)
        if condition.field not in COLUMN_ATTRIBUTES:
            return self._extension_equals(condition.field, condition.value)
        return expression == condition.value

    def _extension_equals(self, field: str, value: Any):
        """Typed comparison against a value stored in the JSON data column."""
        element = UserDB.extra_data[field]
        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return element.as_boolean() == value
        if isinstance(value, int):
            return element.as_integer() == value
        if isinstance(value, float):
            return element.as_float() == value
        if isinstance(value, str):
            return element.as_string() == value
        return element.as_json() == value

    def _to_record(self, row: UserDB) -> IdentityRecord:
        fields = {
            name: getattr(row, attribute)
            for name, attribute in COLUMN_ATTRIBUTES.items()
        }
        fields.update(row.extra_data or {})
        return IdentityRecord(
            fields=fields,
            roles=[r.role for r in row.roles],
            enforce_is_new=False
        )

    def _apply(self, row: UserDB, record: IdentityRecord) -> None:
        for name, attribute in COLUMN_ATTRIBUTES.items():
            value = record.get(name)
            if value is None and name in COLUMNS_WITH_DEFAULTS:
                # Leave database defaults in place
                continue
            setattr(row, attribute, value)

        row.extra_data = {
            name: record.get(name)
            for name in record.field_names()
            if name not in COLUMN_ATTRIBUTES
        }

        wanted = set(record.roles)
        current = {r.role: r for r in row.roles}
        for role, role_row in current.items():
            if role not in wanted:
                row.roles.remove(role_row)
        for role in sorted(wanted - set(current)):
            row.roles.append(UserRoleDB(role=role))

    # ==================== IDENTITY RECORDS ====================

    async def find_by_fields(self, conditions: List[FieldCondition]) -> List[IdentityRecord]:
        query = select(UserDB)
        for condition in conditions:
            query = query.where(self._clause(condition))
        query = query.order_by(UserDB.uid)

        try:
            result = await self.db.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Identity lookup failed: {e}")
            raise StoreError(f"Identity lookup failed: {e}") from e

        return self._post_load([self._to_record(row) for row in rows])

    async def create(self, initial_fields: Dict[str, Any]) -> IdentityRecord:
        record = IdentityRecord(fields=initial_fields)
        return await self.save(record)

    async def load_multiple(self, ids: Iterable[int]) -> List[IdentityRecord]:
        ids = list(ids)
        if not ids:
            return []

        try:
            result = await self.db.execute(
                select(UserDB).where(UserDB.uid.in_(ids)).order_by(UserDB.uid)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Identity load failed: {e}")
            raise StoreError(f"Identity load failed: {e}") from e

        return self._post_load([self._to_record(row) for row in rows])

    async def save(self, record: IdentityRecord) -> IdentityRecord:
        try:
            if record.enforce_is_new:
                row = UserDB(roles=[])
                self._apply(row, record)
                self.db.add(row)
            else:
                row = await self.db.get(UserDB, record.id)
                if row is None:
                    raise RecordNotFoundError(
                        f"Cannot update record {record.id}: no such key",
                        details={"uid": record.id}
                    )
                self._apply(row, record)
                row.changed = datetime.now(timezone.utc)

            await self.db.commit()
            await self.db.refresh(row)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Identity save failed for record {record.id}: {e}")
            raise StoreError(f"Identity save failed: {e}", details={"uid": record.id}) from e

        for name in ("uid", "uuid", "created", "changed"):
            record.set(name, getattr(row, name))
        record.enforce_is_new = False
        return record

    # ==================== PROFILES ====================

    def _to_profile(self, row: ProfileDB) -> ProfileRecord:
        return ProfileRecord(
            bundle=row.type,
            owner_id=row.uid,
            profile_id=row.profile_id,
            fields=dict(row.data or {}),
            status=bool(row.status)
        )

    async def load_profiles(
        self,
        owner_ids: Optional[Iterable[int]] = None,
        bundle: Optional[str] = None
    ) -> List[ProfileRecord]:
        query = select(ProfileDB).order_by(ProfileDB.profile_id)
        if owner_ids is not None:
            query = query.where(ProfileDB.uid.in_(list(owner_ids)))
        if bundle is not None:
            query = query.where(ProfileDB.type == bundle)

        try:
            result = await self.db.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Profile load failed: {e}")
            raise StoreError(f"Profile load failed: {e}") from e

        return [self._to_profile(row) for row in rows]

    async def save_profile(self, profile: ProfileRecord) -> ProfileRecord:
        try:
            row = None
            if profile.profile_id is not None:
                row = await self.db.get(ProfileDB, profile.profile_id)
            if row is None:
                row = ProfileDB()
                self.db.add(row)

            row.type = profile.bundle
            row.uid = profile.owner_id
            row.status = profile.status
            row.data = dict(profile.fields)

            await self.db.commit()
            await self.db.refresh(row)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Profile save failed for profile {profile.profile_id}: {e}")
            raise StoreError(f"Profile save failed: {e}") from e

        profile.profile_id = row.profile_id
        return profile

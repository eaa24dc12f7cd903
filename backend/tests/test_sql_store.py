"""
Unit Tests for the SQLAlchemy Identity Store

The AsyncSession is mocked; tests check query construction, row mapping
and error handling without a database.

Run with: pytest backend/tests/test_sql_store.py -v
"""

from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from decoupled_auth.exceptions import StoreError, RecordNotFoundError
from decoupled_auth.matching import decoupled_condition
from decoupled_auth.models import UserDB, UserRoleDB, ProfileDB
from decoupled_auth.record import IdentityRecord, ProfileRecord
from decoupled_auth.sql_store import SQLAlchemyIdentityStore
from decoupled_auth.store import FieldCondition


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def store(db):
    return SQLAlchemyIdentityStore(db, extra_fields=["field_customer_no"])


def mock_rows(db, rows):
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    db.execute.return_value = result


class TestQueryConstruction:
    """Test conditions translate to SQL."""

    def test_case_insensitive_clause(self, store):
        clause = store._clause(FieldCondition(field="mail", value=" A@B.com", case_insensitive=True))

        compiled = clause.compile()
        assert "lower(trim(users.mail))" in str(compiled)
        assert "a@b.com" in compiled.params.values()

    def test_decoupled_clause(self, store):
        assert "users.name IS NULL" in str(store._clause(decoupled_condition(True)))
        assert "users.name IS NOT NULL" in str(store._clause(decoupled_condition(False)))

    def test_credential_field_maps_to_pass_column(self, store):
        clause = store._clause(FieldCondition(field="pass", value="x"))

        assert "users.pass" in str(clause)

    def test_extension_boolean_compares_as_boolean(self, store):
        clause = store._clause(FieldCondition(field="field_customer_no", value=True))

        compiled = clause.compile(dialect=postgresql.dialect())
        assert "BOOLEAN" in str(compiled)
        assert True in compiled.params.values()
        assert "True" not in compiled.params.values()

    def test_extension_integer_compares_as_integer(self, store):
        clause = store._clause(FieldCondition(field="field_customer_no", value=1042))

        compiled = clause.compile(dialect=postgresql.dialect())
        assert "INTEGER" in str(compiled)
        assert 1042 in compiled.params.values()

    def test_extension_string_compares_as_text(self, store):
        clause = store._clause(FieldCondition(field="field_customer_no", value="C-9"))

        compiled = clause.compile(dialect=postgresql.dialect())
        assert "->>" in str(compiled)
        assert "C-9" in compiled.params.values()

    @pytest.mark.asyncio
    async def test_find_orders_by_uid(self, store, db):
        mock_rows(db, [])

        await store.find_by_fields([decoupled_condition(True)])

        statement = str(db.execute.call_args[0][0])
        assert "ORDER BY users.uid" in statement
        assert "users.name IS NULL" in statement


class TestIdentityRecords:
    """Test loading and saving identity records."""

    @pytest.mark.asyncio
    async def test_find_maps_rows_to_records(self, store, db):
        row = UserDB(
            uid=2,
            uuid="u-2",
            name=None,
            mail="a@b.com",
            extra_data={"field_customer_no": "C-9"},
            roles=[UserRoleDB(role="customer")]
        )
        mock_rows(db, [row])

        records = await store.find_by_fields([])

        assert len(records) == 1
        record = records[0]
        assert record.id == 2
        assert record.is_decoupled() is True
        assert record.roles == {"customer"}
        assert record.get("field_customer_no") == "C-9"
        assert record.enforce_is_new is False

    @pytest.mark.asyncio
    async def test_load_listeners_see_loaded_records(self, store, db):
        mock_rows(db, [UserDB(uid=1, name="alice", mail="a@b.com", roles=[])])
        seen = []
        store.add_load_listener(seen.extend)

        await store.load_multiple([1])

        assert [r.id for r in seen] == [1]
        assert seen[0].is_coupled() is True

    @pytest.mark.asyncio
    async def test_load_multiple_without_ids_skips_query(self, store, db):
        assert await store.load_multiple([]) == []
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_inserts_row(self, store, db):
        async def assign_keys(row):
            row.uid = 5
            row.uuid = "u-5"
            row.created = NOW
            row.changed = NOW

        db.refresh.side_effect = assign_keys

        record = await store.create({"mail": "a@b.com", "field_customer_no": "C-1", "roles": ["customer"]})

        added = db.add.call_args[0][0]
        assert added.mail == "a@b.com"
        assert added.name is None
        assert added.extra_data == {"field_customer_no": "C-1"}
        assert [r.role for r in added.roles] == ["customer"]
        db.commit.assert_awaited_once()

        assert record.id == 5
        assert record.uuid == "u-5"
        assert record.get("created") == NOW
        assert record.enforce_is_new is False

    @pytest.mark.asyncio
    async def test_update_syncs_roles(self, store, db):
        row = UserDB(
            uid=3,
            uuid="u-3",
            name="alice",
            mail="a@b.com",
            roles=[UserRoleDB(role="old"), UserRoleDB(role="keep")]
        )
        db.get.return_value = row
        record = IdentityRecord(
            {"uid": 3, "uuid": "u-3", "name": "alice", "mail": "a@b.com"},
            roles=["keep", "new"],
            enforce_is_new=False
        )

        await store.save(record)

        assert sorted(r.role for r in row.roles) == ["keep", "new"]
        db.add.assert_not_called()
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_of_missing_row_raises(self, store, db):
        db.get.return_value = None
        record = IdentityRecord({"uid": 9, "mail": "a@b.com"}, enforce_is_new=False)

        with pytest.raises(RecordNotFoundError):
            await store.save(record)

        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lookup_failure_raises_store_error(self, store, db):
        db.execute.side_effect = SQLAlchemyError("connection refused")

        with pytest.raises(StoreError):
            await store.find_by_fields([])

        assert db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back(self, store, db):
        db.commit.side_effect = SQLAlchemyError("duplicate key")

        with pytest.raises(StoreError):
            await store.create({"mail": "a@b.com"})

        db.rollback.assert_awaited_once()


class TestProfiles:
    """Test profile persistence."""

    @pytest.mark.asyncio
    async def test_load_profiles_maps_rows(self, store, db):
        mock_rows(db, [ProfileDB(profile_id=1, type="customer", uid=4, status=True, data={"city": "Berlin"})])

        profiles = await store.load_profiles(owner_ids=[4], bundle="customer")

        assert profiles == [ProfileRecord(
            bundle="customer", owner_id=4, profile_id=1, fields={"city": "Berlin"}, status=True
        )]
        statement = str(db.execute.call_args[0][0])
        assert "profiles.type" in statement
        assert "profiles.uid IN" in statement

    @pytest.mark.asyncio
    async def test_save_new_profile(self, store, db):
        async def assign_id(row):
            row.profile_id = 11

        db.refresh.side_effect = assign_id

        profile = await store.save_profile(ProfileRecord(bundle="billing", owner_id=2))

        added = db.add.call_args[0][0]
        assert added.type == "billing"
        assert added.uid == 2
        assert profile.profile_id == 11

    @pytest.mark.asyncio
    async def test_profile_save_failure_rolls_back(self, store, db):
        db.commit.side_effect = SQLAlchemyError("disk full")

        with pytest.raises(StoreError):
            await store.save_profile(ProfileRecord(bundle="billing", owner_id=2))

        db.rollback.assert_awaited_once()

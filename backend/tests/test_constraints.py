"""
Unit Tests for Field Constraints

Run with: pytest backend/tests/test_constraints.py -v
"""

import pytest

from decoupled_auth.constraints import (
    validate_name,
    validate_name_required,
    validate_mail_required,
    validate_mail_unique,
    validate_record,
    assert_valid,
    USERNAME_MAX_LENGTH
)
from decoupled_auth.exceptions import ConstraintViolationError
from decoupled_auth.record import IdentityRecord
from decoupled_auth.store import InMemoryIdentityStore


class TestValidateName:
    """Test login name validation."""

    def test_missing_name_is_allowed(self):
        assert validate_name(None) == []

    @pytest.mark.parametrize("name", ["alice", "alice.smith", "o'brien", "a-b_c@d+e", "Jörg Müller"])
    def test_valid_names(self, name):
        assert validate_name(name) == []

    @pytest.mark.parametrize("name,code", [
        ("", "name_empty"),
        (" alice", "name_leading_space"),
        ("alice ", "name_trailing_space"),
        ("alice  smith", "name_multiple_spaces"),
        ("alice<script>", "name_invalid_chars"),
        ("alice\x00", "name_invalid_chars"),
        ("alice\u200bsmith", "name_invalid_chars"),
        ("a" * (USERNAME_MAX_LENGTH + 1), "name_too_long"),
    ])
    def test_invalid_names(self, name, code):
        violations = validate_name(name)

        assert len(violations) == 1
        assert violations[0].code == code
        assert violations[0].field == "name"


class TestMailConstraints:
    """Test mail required/unique rules."""

    def test_decoupled_record_requires_mail(self):
        violations = validate_mail_required(IdentityRecord({}))

        assert [v.code for v in violations] == ["mail_required"]

    def test_coupled_record_does_not_require_mail(self):
        assert validate_mail_required(IdentityRecord({"name": "alice"})) == []

    @pytest.mark.asyncio
    async def test_decoupled_records_may_share_mail(self):
        store = InMemoryIdentityStore()
        await store.create({"mail": "a@b.com"})

        violations = await validate_mail_unique(IdentityRecord({"mail": "a@b.com"}), store)

        assert violations == []

    @pytest.mark.asyncio
    async def test_coupled_record_may_share_mail_with_decoupled(self):
        store = InMemoryIdentityStore()
        await store.create({"mail": "a@b.com"})

        violations = await validate_mail_unique(
            IdentityRecord({"name": "alice", "mail": "a@b.com"}), store
        )

        assert violations == []

    @pytest.mark.asyncio
    async def test_coupled_records_may_not_share_mail(self):
        store = InMemoryIdentityStore()
        await store.create({"name": "bob", "mail": "A@b.com"})

        violations = await validate_mail_unique(
            IdentityRecord({"name": "alice", "mail": "a@B.com"}), store
        )

        assert [v.code for v in violations] == ["mail_taken"]

    @pytest.mark.asyncio
    async def test_record_does_not_conflict_with_itself(self):
        store = InMemoryIdentityStore()
        existing = await store.create({"name": "bob", "mail": "a@b.com"})

        assert await validate_mail_unique(existing, store) == []


class TestNameRequired:
    """Test the registration-only username requirement."""

    def test_missing_name_is_reported(self):
        violations = validate_name_required(IdentityRecord({"mail": "a@b.com"}))

        assert [v.code for v in violations] == ["name_required"]

    def test_empty_name_is_left_to_name_validation(self):
        assert validate_name_required(IdentityRecord({"name": "", "mail": "a@b.com"})) == []

    @pytest.mark.asyncio
    async def test_require_name_is_opt_in(self):
        store = InMemoryIdentityStore()
        record = IdentityRecord({"mail": "a@b.com"})

        assert await validate_record(record, store) == []
        assert [v.code for v in await validate_record(record, store, require_name=True)] == ["name_required"]


class TestAssertValid:
    """Test assert_valid()."""

    @pytest.mark.asyncio
    async def test_valid_record_passes(self):
        await assert_valid(IdentityRecord({"mail": "a@b.com"}), InMemoryIdentityStore())

    @pytest.mark.asyncio
    async def test_all_violations_are_reported(self):
        store = InMemoryIdentityStore()
        record = IdentityRecord({"name": "bad<name>"})

        violations = await validate_record(record, store)
        with pytest.raises(ConstraintViolationError) as exc_info:
            await assert_valid(record, store)

        assert [v.code for v in violations] == ["name_invalid_chars"]
        assert exc_info.value.details["violations"][0]["code"] == "name_invalid_chars"

"""
Unit Tests for Profile Owners

Tests that profiles pointing at deleted users are tolerated:
- Role sync skips missing owners instead of failing
- Orphaned profiles can be listed
- Owners are acquired and linked for new profiles

Run with: pytest backend/tests/test_profiles.py -v
"""

import logging
import pytest

from config import AcquisitionSettings
from decoupled_auth.acquisition import AcquisitionMethod
from decoupled_auth.profiles import ProfileOwnerService
from decoupled_auth.record import ProfileRecord
from decoupled_auth.store import InMemoryIdentityStore


def role_settings():
    return AcquisitionSettings(PROFILE_ROLES={"customer": "customer", "billing": "payer"})


class TestProfileOwnerService:
    """Test ProfileOwnerService."""

    @pytest.fixture
    def store(self):
        return InMemoryIdentityStore()

    @pytest.fixture
    def service(self, store):
        return ProfileOwnerService(store, settings_provider=role_settings)

    # ==================== OWNER LOOKUP ====================

    @pytest.mark.asyncio
    async def test_owner_of_deleted_user_is_none(self, service, store, caplog):
        owner = await store.create({"mail": "a@b.com"})
        profile = await store.save_profile(ProfileRecord(bundle="customer", owner_id=owner.id))
        await store.delete(owner.id)

        assert await service.owner_of(profile) is None
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    @pytest.mark.asyncio
    async def test_owner_of_unowned_profile_is_none(self, service):
        assert await service.owner_of(ProfileRecord(bundle="customer")) is None

    # ==================== ROLE SYNC ====================

    @pytest.mark.asyncio
    async def test_sync_grants_bundle_role(self, service, store):
        owner = await store.create({"mail": "a@b.com"})
        profile = await store.save_profile(ProfileRecord(bundle="billing", owner_id=owner.id))

        report = await service.sync_owner_roles([profile])

        assert report.owners_updated == [owner.id]
        assert (await store.load(owner.id)).roles == {"payer"}

    @pytest.mark.asyncio
    async def test_sync_skips_missing_owner(self, service, store):
        """A profile whose owner was deleted does not break the sync."""
        live = await store.create({"mail": "a@b.com"})
        gone = await store.create({"mail": "b@b.com"})
        orphan = await store.save_profile(ProfileRecord(bundle="customer", owner_id=gone.id))
        kept = await store.save_profile(ProfileRecord(bundle="customer", owner_id=live.id))
        await store.delete(gone.id)

        report = await service.sync_owner_roles([orphan, kept])

        assert report.missing_owner_profiles == [orphan.profile_id]
        assert report.owners_updated == [live.id]
        assert (await store.load(live.id)).has_role("customer")
        assert await store.load(gone.id) is None

    @pytest.mark.asyncio
    async def test_sync_does_not_save_unchanged_owners(self, service, store):
        owner = await store.create({"mail": "a@b.com", "roles": ["customer"]})
        profile = await store.save_profile(ProfileRecord(bundle="customer", owner_id=owner.id))

        report = await service.sync_owner_roles([profile])

        assert report.owners_updated == []

    @pytest.mark.asyncio
    async def test_sync_ignores_unmapped_bundles(self, service, store):
        owner = await store.create({"mail": "a@b.com"})
        profile = await store.save_profile(ProfileRecord(bundle="shipping", owner_id=owner.id))

        report = await service.sync_owner_roles([profile])

        assert report.to_dict()["counts"] == {"owners_updated": 0, "missing_owner": 0}

    # ==================== ORPHANS ====================

    @pytest.mark.asyncio
    async def test_list_orphaned_profiles(self, service, store):
        live = await store.create({"mail": "a@b.com"})
        gone = await store.create({"mail": "b@b.com"})
        await store.save_profile(ProfileRecord(bundle="customer", owner_id=live.id))
        orphan = await store.save_profile(ProfileRecord(bundle="customer", owner_id=gone.id))
        unowned = await store.save_profile(ProfileRecord(bundle="billing"))
        await store.delete(gone.id)

        orphans = await service.list_orphaned_profiles()
        customer_orphans = await service.list_orphaned_profiles(bundle="customer")

        assert [p.profile_id for p in orphans] == [orphan.profile_id, unowned.profile_id]
        assert [p.profile_id for p in customer_orphans] == [orphan.profile_id]

    # ==================== ACQUISITION ====================

    @pytest.mark.asyncio
    async def test_acquire_for_profile_creates_and_links_owner(self, service, store):
        profile = ProfileRecord(bundle="customer", fields={"address": "1 Main St"})

        result = await service.acquire_for_profile(profile, {"mail": "a@b.com", "decoupled": True})

        assert result.method == AcquisitionMethod.CREATED_NEW
        assert profile.owner_id == result.record.id
        assert profile.profile_id is not None

        owner = await store.load(result.record.id)
        assert owner.is_decoupled() is True
        assert owner.has_role("customer")

    @pytest.mark.asyncio
    async def test_acquire_for_profile_reuses_existing_owner(self, service, store):
        existing = await store.create({"mail": "a@b.com"})
        profile = ProfileRecord(bundle="billing")

        result = await service.acquire_for_profile(profile, {"mail": "a@b.com", "decoupled": True})

        assert result.method == AcquisitionMethod.MATCHED_EXISTING
        assert profile.owner_id == existing.id
        assert len(await store.load_profiles(owner_ids=[existing.id])) == 1

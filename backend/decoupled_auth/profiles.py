"""
Decoupled Auth - Profile Owners

Profiles (customer details, billing information...) point back at the
identity record that owns them. The reference is weak: the host may delete
a user and leave its profiles behind. Such a missing owner is tolerated,
the dependent update is skipped and logged, never raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Mapping, Iterable

from config import AcquisitionSettings, load_acquisition_settings

from .acquisition import AcquisitionService, AcquisitionContext, AcquisitionResult
from .record import IdentityRecord, ProfileRecord
from .store import IdentityStore

logger = logging.getLogger(__name__)


PROFILE_ACQUISITION_LABEL = "profile_owner"


@dataclass
class ProfileSyncReport:
    """Result of syncing owner roles from profiles."""
    owners_updated: List[int] = field(default_factory=list)
    missing_owner_profiles: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owners_updated": list(self.owners_updated),
            "missing_owner_profiles": list(self.missing_owner_profiles),
            "counts": {
                "owners_updated": len(self.owners_updated),
                "missing_owner": len(self.missing_owner_profiles),
            }
        }


class ProfileOwnerService:
    """Keeps identity records in step with the profiles they own."""

    def __init__(
        self,
        store: IdentityStore,
        acquisitions: Optional[AcquisitionService] = None,
        settings_provider: Callable[[], AcquisitionSettings] = load_acquisition_settings
    ):
        self.store = store
        self.acquisitions = acquisitions or AcquisitionService(store)
        self.settings_provider = settings_provider

    async def owner_of(self, profile: ProfileRecord) -> Optional[IdentityRecord]:
        """Load a profile's owner; None when it has none or it was deleted."""
        if profile.owner_id is None:
            return None
        owner = await self.store.load(profile.owner_id)
        if owner is None:
            logger.warning(f"Profile {profile.profile_id} ({profile.bundle}) has missing owner {profile.owner_id}")
        return owner

    async def sync_owner_roles(self, profiles: Iterable[ProfileRecord]) -> ProfileSyncReport:
        """
        Grant each profile owner the role configured for the profile bundle.

        Profiles whose owner no longer exists are skipped.
        """
        role_map: Mapping[str, str] = self.settings_provider().PROFILE_ROLES
        report = ProfileSyncReport()

        profiles = [p for p in profiles if p.bundle in role_map and p.owner_id is not None]
        if not profiles:
            return report

        owner_ids = sorted({p.owner_id for p in profiles})
        owners = {record.id: record for record in await self.store.load_multiple(owner_ids)}
        dirty: Dict[int, IdentityRecord] = {}

        for profile in profiles:
            owner = owners.get(profile.owner_id)
            if owner is None:
                logger.warning(
                    f"Skipping role sync for profile {profile.profile_id}: owner {profile.owner_id} is missing"
                )
                report.missing_owner_profiles.append(profile.profile_id)
                continue

            role = role_map[profile.bundle]
            if not owner.has_role(role):
                owner.add_role(role)
                dirty[owner.id] = owner

        for uid in sorted(dirty):
            await self.store.save(dirty[uid])
            report.owners_updated.append(uid)

        if report.owners_updated:
            logger.info(f"Profile role sync updated owners: {report.owners_updated}")
        return report

    async def list_orphaned_profiles(self, bundle: Optional[str] = None) -> List[ProfileRecord]:
        """Profiles without an owner or whose owner has been deleted."""
        profiles = await self.store.load_profiles(bundle=bundle)
        owner_ids = sorted({p.owner_id for p in profiles if p.owner_id is not None})
        existing = {record.id for record in await self.store.load_multiple(owner_ids)}
        return [p for p in profiles if p.owner_id is None or p.owner_id not in existing]

    async def acquire_for_profile(
        self,
        profile: ProfileRecord,
        candidate_values: Mapping[str, Any],
        context: Optional[AcquisitionContext] = None
    ) -> AcquisitionResult:
        """
        Find or create an owner for a profile and link them.

        Typically called with the email captured on an order or profile,
        e.g. {"mail": ..., "decoupled": True}.
        """
        context = context or AcquisitionContext(label=PROFILE_ACQUISITION_LABEL)
        result = await self.acquisitions.acquire(candidate_values, context)

        if result.record is not None:
            profile.owner_id = result.record.id
            await self.store.save_profile(profile)
            await self.sync_owner_roles([profile])
            logger.info(f"Profile {profile.profile_id} ({profile.bundle}) linked to record {result.record.id}")

        return result

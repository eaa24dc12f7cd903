"""
Decoupled Auth - Registration Acquisition

When someone registers, there may already be a decoupled record for their
email address (created from an order, a newsletter signup, a profile...).
With acquisition enabled, the registration takes that record over instead
of creating a second identity:

1. Validate the entity as submitted (a username is required)
2. Acquire a decoupled record by email (never create one)
3. Reconcile: the new entity assumes the record's identity and backfills
   empty fields from it
4. Couple the entity and save it as an update

Settings are read fresh for every registration.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Callable, Dict, Any

from config import AcquisitionSettings, load_acquisition_settings

from .acquisition import (
    AcquisitionService, AcquisitionContext, AcquisitionMethod, BehaviorMode
)
from .constraints import assert_valid
from .matching import DECOUPLED_KEY
from .reconciliation import FieldReconciler, ReconciliationReport
from .record import IdentityRecord

logger = logging.getLogger(__name__)


REGISTRATION_LABEL = "user_register"


@dataclass
class RegistrationResult:
    """Outcome of registering a new entity."""
    record: IdentityRecord
    method: Optional[AcquisitionMethod] = None
    report: Optional[ReconciliationReport] = None

    @property
    def acquired(self) -> bool:
        return self.method == AcquisitionMethod.MATCHED_EXISTING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "method": self.method.value if self.method else None,
            "acquired": self.acquired,
            "report": self.report.to_dict() if self.report else None,
        }


class RegistrationAcquirer:
    """Registers new coupled entities, taking over matching decoupled records."""

    def __init__(
        self,
        acquisitions: AcquisitionService,
        reconciler: Optional[FieldReconciler] = None,
        settings_provider: Callable[[], AcquisitionSettings] = load_acquisition_settings
    ):
        self.acquisitions = acquisitions
        self.store = acquisitions.store
        self.reconciler = reconciler or FieldReconciler()
        self.settings_provider = settings_provider

    def build_context(self, settings: AcquisitionSettings) -> AcquisitionContext:
        return AcquisitionContext(
            label=REGISTRATION_LABEL,
            behavior_mode=BehaviorMode.FIRST if settings.REGISTRATION_PREFER_FIRST else BehaviorMode.DEFAULT,
            allow_create=False
        )

    async def register(self, entity: IdentityRecord) -> RegistrationResult:
        """
        Save a newly submitted entity, acquiring a decoupled record if one
        matches its email.

        The entity is validated before anything is copied onto it; a
        rejected registration leaves it exactly as submitted.

        Raises:
            ConstraintViolationError: If the entity fails validation
            StoreError: If the store fails
        """
        settings = self.settings_provider()

        await assert_valid(entity, self.store, require_name=True)

        if not settings.ACQUIRE_ON_REGISTRATION or entity.is_field_empty("mail"):
            record = await self.store.save(entity)
            logger.info(f"Registered record {record.id} without acquisition")
            return RegistrationResult(record=record)

        result = await self.acquisitions.acquire(
            {"mail": entity.mail, DECOUPLED_KEY: True},
            self.build_context(settings)
        )

        if result.record is None:
            record = await self.store.save(entity)
            logger.info(f"Registered record {record.id}; no decoupled record to acquire")
            return RegistrationResult(record=record, method=result.method)

        report = self.reconciler.reconcile(entity, result.record)
        entity.couple()
        entity.calculate_decoupled()

        record = await self.store.save(entity)

        logger.info(f"Registration acquired decoupled record {record.id}")
        return RegistrationResult(record=record, method=result.method, report=report)

"""
Decoupled Auth - Field Reconciliation

Merge-on-acquire: when a registration matches an existing decoupled record,
the newly submitted entity takes over that record's identity and inherits
its history.

Rules, in order:
1. Identity fields (uid, uuid, created) are copied from the acquired record
   unconditionally.
2. Every other field is copied only where the new entity's value is empty;
   values supplied with the registration win.
3. Roles are merged as a union.
4. The new entity is flagged as not new, so saving it updates the existing
   row instead of inserting.

A field missing from either side is skipped (schema drift), never an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Sequence

from .record import IdentityRecord, BASE_FIELDS

logger = logging.getLogger(__name__)


OVERRIDE_FIELDS = ("uid", "uuid", "created")


@dataclass
class ReconciliationReport:
    """What a reconciliation copied and skipped."""
    overridden: List[str] = field(default_factory=list)
    backfilled: List[str] = field(default_factory=list)
    roles_added: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overridden": list(self.overridden),
            "backfilled": list(self.backfilled),
            "roles_added": list(self.roles_added),
            "skipped": list(self.skipped),
        }


class FieldReconciler:
    """Copies data from an acquired record onto a new entity."""

    def __init__(self, override_fields: Sequence[str] = OVERRIDE_FIELDS):
        self.override_fields = tuple(override_fields)

    def reconcile(self, entity: IdentityRecord, acquired: IdentityRecord) -> ReconciliationReport:
        """
        Merge acquired into entity in place.

        Args:
            entity: The newly submitted record, about to be coupled
            acquired: The existing record it is taking over

        Returns:
            ReconciliationReport describing the copy
        """
        report = ReconciliationReport()

        for name in self.override_fields:
            if not (entity.has_field(name) and acquired.has_field(name)):
                report.skipped.append(name)
                continue
            entity.set(name, acquired.get(name))
            report.overridden.append(name)

        for name in self._known_fields(entity):
            if name in self.override_fields:
                continue
            if not acquired.has_field(name):
                report.skipped.append(name)
                continue
            if entity.is_field_empty(name) and not acquired.is_field_empty(name):
                entity.set(name, acquired.get(name))
                report.backfilled.append(name)

        for role in sorted(acquired.roles - entity.roles):
            entity.add_role(role)
            report.roles_added.append(role)

        entity.enforce_is_new = False

        if report.skipped:
            logger.debug(f"Reconciliation skipped fields missing on one side: {report.skipped}")
        logger.info(
            f"Reconciled new entity onto record {acquired.id}: "
            f"{len(report.backfilled)} field(s) backfilled, {len(report.roles_added)} role(s) added"
        )
        return report

    def _known_fields(self, entity: IdentityRecord) -> List[str]:
        names = [name for name in BASE_FIELDS if entity.has_field(name)]
        names.extend(name for name in entity.field_names() if name not in BASE_FIELDS)
        return names

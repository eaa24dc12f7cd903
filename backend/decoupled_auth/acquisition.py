"""
Decoupled Auth - Acquisition Engine

Find-or-create for identity records. Given candidate values such as
{"mail": "a@b.com", "decoupled": True}, the engine asks the match policy for
existing records and, depending on the behavior mode, reuses one or creates
a new record through the identity store.

Behavior modes:
- DEFAULT: one match -> use it; several -> use the first and signal
  ambiguity; none -> create (unless the context disallows creation)
- FIRST: never create; use the first match if there is one

Ambiguity is a soft condition: it is logged, flagged on the result and
passed to listeners, but acquisition always completes. Store failures
propagate as StoreError and are never retried here, since the caller owns
the transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Mapping, Callable, Iterator, Tuple

from pydantic import BaseModel, ConfigDict, Field

from logging_config import acquisition_log_context

from .matching import (
    MatchPolicy, FieldMatchPolicy, DECOUPLED_KEY,
    decoupled_condition, strip_pseudo_fields
)
from .record import IdentityRecord, LOGIN_FIELD, CREDENTIAL_FIELD
from .store import IdentityStore

logger = logging.getLogger(__name__)


# ==================== TYPES ====================

class BehaviorMode(str, Enum):
    """Match selection and creation policy"""
    DEFAULT = "default"
    FIRST = "first"


class AcquisitionMethod(str, Enum):
    """How the acquired record was obtained"""
    MATCHED_EXISTING = "matched_existing"
    CREATED_NEW = "created_new"
    NO_MATCH_NO_CREATE = "no_match_no_create"


class AcquisitionContext(BaseModel):
    """Configuration for a single acquisition call"""
    model_config = ConfigDict(frozen=True)

    label: str = Field("acquisition", description="Free-text label for logs")
    behavior_mode: BehaviorMode = Field(BehaviorMode.DEFAULT)
    allow_create: bool = Field(True, description="Create a record when nothing matches")
    prefer_coupled: bool = Field(
        False,
        description="With several matches, take the single coupled one if there is exactly one"
    )
    decoupled_only: bool = Field(False, description="Only match decoupled records")


@dataclass
class AcquisitionResult:
    """
    Result of acquire().

    Unpacks as (record, method).
    """
    record: Optional[IdentityRecord]
    method: AcquisitionMethod
    candidate_count: int = 0
    ambiguous: bool = False

    def __iter__(self) -> Iterator[Any]:
        yield self.record
        yield self.method

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": self.record.to_dict() if self.record else None,
            "method": self.method.value,
            "candidate_count": self.candidate_count,
            "ambiguous": self.ambiguous,
        }


@dataclass(frozen=True)
class AmbiguousMatch:
    """Signal raised (not thrown) when several records match in DEFAULT mode."""
    label: str
    candidate_ids: Tuple[int, ...]
    chosen_id: int
    match_fields: Tuple[str, ...] = field(default_factory=tuple)


AmbiguityListener = Callable[[AmbiguousMatch], None]


# ==================== AUDIT EVENTS ====================

class AcquisitionAuditEvent:
    """Audit event types for acquisition operations."""
    MATCHED = "acquisition.matched"
    CREATED = "acquisition.created"
    NO_MATCH = "acquisition.no_match"
    AMBIGUOUS = "acquisition.ambiguous"


def log_acquisition_event(
    event_type: str,
    uid: Optional[int],
    label: str,
    details: Dict[str, Any]
):
    """
    Log an acquisition for the audit trail.

    Never logs login names, credentials or full email addresses; only the
    email domain is kept.
    """
    pii_fields = ('mail', 'name', 'pass', 'init')
    safe_details = {k: v for k, v in details.items() if k not in pii_fields}

    mail = details.get('mail')
    if isinstance(mail, str) and '@' in mail:
        safe_details['mail_domain'] = mail.split('@')[-1].lower()

    log_entry = {
        "event": event_type,
        "uid": uid,
        "label": label,
        "details": safe_details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

    if event_type == AcquisitionAuditEvent.AMBIGUOUS:
        logger.warning(f"Acquisition event: {event_type} for uid {uid} ({label})", extra=log_entry)
    else:
        logger.info(f"Acquisition event: {event_type} for uid {uid} ({label})", extra=log_entry)


# ==================== ACQUISITION SERVICE ====================

class AcquisitionService:
    """
    Acquisition Engine - find or create identity records.

    The store, match policy and ambiguity listeners are injected; nothing
    is looked up globally.
    """

    def __init__(
        self,
        store: IdentityStore,
        match_policy: Optional[MatchPolicy] = None,
        ambiguity_listeners: Optional[List[AmbiguityListener]] = None
    ):
        self.store = store
        self.match_policy = match_policy or FieldMatchPolicy(store)
        self._ambiguity_listeners: List[AmbiguityListener] = list(ambiguity_listeners or [])

    def add_ambiguity_listener(self, listener: AmbiguityListener) -> None:
        self._ambiguity_listeners.append(listener)

    async def acquire(
        self,
        candidate_values: Mapping[str, Any],
        context: Optional[AcquisitionContext] = None
    ) -> AcquisitionResult:
        """
        Find or create the identity record described by candidate_values.

        Args:
            candidate_values: Field values to match on; the "decoupled"
                pseudo-field restricts matches by coupling state
            context: Behavior for this call (defaults to DEFAULT mode with
                creation allowed)

        Returns:
            AcquisitionResult with the record (or None) and the method used

        Raises:
            StoreError: If the store fails during lookup or creation
        """
        context = context or AcquisitionContext()

        with acquisition_log_context(context.label):
            constraints = [decoupled_condition(True)] if context.decoupled_only else []
            matches = list(await self.match_policy.find(candidate_values, constraints))

            if matches:
                record, ambiguous = self._select(matches, candidate_values, context)
                log_acquisition_event(
                    AcquisitionAuditEvent.MATCHED,
                    record.id,
                    context.label,
                    {
                        "mail": candidate_values.get("mail"),
                        "behavior_mode": context.behavior_mode.value,
                        "candidate_count": len(matches),
                        "decoupled": record.is_decoupled(),
                    }
                )
                return AcquisitionResult(
                    record=record,
                    method=AcquisitionMethod.MATCHED_EXISTING,
                    candidate_count=len(matches),
                    ambiguous=ambiguous
                )

            if context.behavior_mode == BehaviorMode.FIRST or not context.allow_create:
                log_acquisition_event(
                    AcquisitionAuditEvent.NO_MATCH,
                    None,
                    context.label,
                    {
                        "mail": candidate_values.get("mail"),
                        "behavior_mode": context.behavior_mode.value,
                    }
                )
                return AcquisitionResult(record=None, method=AcquisitionMethod.NO_MATCH_NO_CREATE)

            record = await self.store.create(self._initial_fields(candidate_values, context))
            log_acquisition_event(
                AcquisitionAuditEvent.CREATED,
                record.id,
                context.label,
                {
                    "mail": candidate_values.get("mail"),
                    "behavior_mode": context.behavior_mode.value,
                    "decoupled": record.is_decoupled(),
                }
            )
            return AcquisitionResult(record=record, method=AcquisitionMethod.CREATED_NEW)

    def _select(
        self,
        matches: List[IdentityRecord],
        candidate_values: Mapping[str, Any],
        context: AcquisitionContext
    ) -> Tuple[IdentityRecord, bool]:
        """Pick one of several matches; returns (record, ambiguous)."""
        if len(matches) == 1 or context.behavior_mode == BehaviorMode.FIRST:
            return matches[0], False

        if context.prefer_coupled:
            coupled = [record for record in matches if record.is_coupled()]
            if len(coupled) == 1:
                return coupled[0], False

        chosen = matches[0]
        signal = AmbiguousMatch(
            label=context.label,
            candidate_ids=tuple(record.id for record in matches),
            chosen_id=chosen.id,
            match_fields=tuple(sorted(candidate_values))
        )
        log_acquisition_event(
            AcquisitionAuditEvent.AMBIGUOUS,
            chosen.id,
            context.label,
            {
                "mail": candidate_values.get("mail"),
                "candidate_ids": list(signal.candidate_ids),
            }
        )
        for listener in self._ambiguity_listeners:
            listener(signal)

        return chosen, True

    def _initial_fields(
        self,
        candidate_values: Mapping[str, Any],
        context: AcquisitionContext
    ) -> Dict[str, Any]:
        """Field set for a new record: candidate values plus forced fields."""
        fields = strip_pseudo_fields(candidate_values)
        if candidate_values.get(DECOUPLED_KEY) or context.decoupled_only:
            fields[LOGIN_FIELD] = None
            fields[CREDENTIAL_FIELD] = None
        return fields

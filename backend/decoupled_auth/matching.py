"""
Decoupled Auth - Match Policy

Turns a set of candidate values (e.g. {"mail": "a@b.com"}) into the identity
records that could be meant by them.

Matches are always returned in creation order (ascending uid). The engine's
"first match" semantics depend on this, so the policy re-sorts whatever the
store returns instead of trusting backend default ordering.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from .record import IdentityRecord, LOGIN_FIELD
from .store import IdentityStore, FieldCondition, Operator

logger = logging.getLogger(__name__)


# Candidate pseudo-field constraining the coupling state
DECOUPLED_KEY = "decoupled"

DEFAULT_CASE_INSENSITIVE_FIELDS = ("mail",)


def decoupled_condition(decoupled: bool) -> FieldCondition:
    """Condition restricting matches to decoupled (or coupled) records."""
    operator = Operator.IS_NULL if decoupled else Operator.IS_NOT_NULL
    return FieldCondition(field=LOGIN_FIELD, operator=operator)


class MatchPolicy(ABC):
    """Finds identity records that could match a candidate value set."""

    @abstractmethod
    async def find(
        self,
        candidate_values: Mapping[str, Any],
        constraints: Sequence[FieldCondition] = ()
    ) -> Iterator[IdentityRecord]:
        """
        Find matching records.

        Returns a one-shot iterator in creation order; empty when nothing
        matches. Store failures propagate as StoreError.
        """


class FieldMatchPolicy(MatchPolicy):
    """
    Exact field-equality matching.

    Fields in case_insensitive_fields are compared trimmed and lower-cased
    on both sides (email addresses by default).
    """

    def __init__(
        self,
        store: IdentityStore,
        case_insensitive_fields: Optional[Iterable[str]] = None
    ):
        self.store = store
        self.case_insensitive_fields = set(
            DEFAULT_CASE_INSENSITIVE_FIELDS if case_insensitive_fields is None
            else case_insensitive_fields
        )

    def build_conditions(
        self,
        candidate_values: Mapping[str, Any],
        constraints: Sequence[FieldCondition] = ()
    ) -> List[FieldCondition]:
        """
        Translate candidate values into store conditions.

        Raises:
            ValueError: If a candidate key is not a queryable field
        """
        queryable = self.store.queryable_fields()
        conditions: List[FieldCondition] = []

        for field, value in candidate_values.items():
            if field == DECOUPLED_KEY:
                conditions.append(decoupled_condition(bool(value)))
                continue

            if field not in queryable:
                raise ValueError(f"Cannot match on unknown field: {field}")

            if value is None:
                conditions.append(FieldCondition(field=field, operator=Operator.IS_NULL))
            else:
                conditions.append(FieldCondition(
                    field=field,
                    value=value,
                    case_insensitive=field in self.case_insensitive_fields
                ))

        conditions.extend(constraints)
        return conditions

    async def find(
        self,
        candidate_values: Mapping[str, Any],
        constraints: Sequence[FieldCondition] = ()
    ) -> Iterator[IdentityRecord]:
        conditions = self.build_conditions(candidate_values, constraints)
        records = await self.store.find_by_fields(conditions)
        records = sorted(records, key=lambda record: record.id)

        logger.debug(f"Match policy found {len(records)} candidate(s) on {sorted(candidate_values)}")
        return iter(records)


def strip_pseudo_fields(candidate_values: Mapping[str, Any]) -> Dict[str, Any]:
    """Candidate values without keys that are not real record fields."""
    return {k: v for k, v in candidate_values.items() if k != DECOUPLED_KEY}

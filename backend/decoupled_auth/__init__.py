"""
Decoupled Auth Module

Lets a user account exist without login credentials (a decoupled user,
e.g. created from an order with only an email address) and later be coupled
to real credentials, merging the data acquired in the meantime.

Features:
- Identity records with a derived coupled/decoupled state
- Acquisition engine: find-or-create by candidate values
- Registration path that takes over matching decoupled users
- Field reconciliation (identity override, empty-field backfill, role union)
- Profile owner role sync tolerant of deleted owners
"""

from .record import IdentityRecord, ProfileRecord, CouplingState
from .exceptions import (
    DecoupledAuthError,
    StoreError,
    RecordNotFoundError,
    ConstraintViolationError
)
from .store import IdentityStore, InMemoryIdentityStore, FieldCondition, Operator
from .matching import MatchPolicy, FieldMatchPolicy
from .acquisition import (
    AcquisitionService,
    AcquisitionContext,
    AcquisitionResult,
    AcquisitionMethod,
    AmbiguousMatch,
    BehaviorMode
)
from .reconciliation import FieldReconciler, ReconciliationReport
from .registration import RegistrationAcquirer, RegistrationResult
from .profiles import ProfileOwnerService, ProfileSyncReport

__all__ = [
    'IdentityRecord',
    'ProfileRecord',
    'CouplingState',
    'DecoupledAuthError',
    'StoreError',
    'RecordNotFoundError',
    'ConstraintViolationError',
    'IdentityStore',
    'InMemoryIdentityStore',
    'FieldCondition',
    'Operator',
    'MatchPolicy',
    'FieldMatchPolicy',
    'AcquisitionService',
    'AcquisitionContext',
    'AcquisitionResult',
    'AcquisitionMethod',
    'AmbiguousMatch',
    'BehaviorMode',
    'FieldReconciler',
    'ReconciliationReport',
    'RegistrationAcquirer',
    'RegistrationResult',
    'ProfileOwnerService',
    'ProfileSyncReport'
]

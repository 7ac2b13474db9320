"""Typed failures raised while applying or undoing a reconciliation."""

from typing import List, Optional

from ..models import FailureKind


class ReconciliationError(Exception):
    """Base class; carries the failure kind reported to callers."""

    kind: FailureKind = FailureKind.VALIDATION_FAILURE

    def __init__(self, message: str, refs: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.refs = refs or []


class StaleReferenceError(ReconciliationError):
    """A target record or bank entry was deleted or already reconciled."""

    kind = FailureKind.STALE_REFERENCE


class ImbalancedGroupError(ReconciliationError):
    """Linked or offset amounts do not net within tolerance."""

    kind = FailureKind.IMBALANCED_GROUP


class PersistenceError(ReconciliationError):
    """A store create/update/delete call failed."""

    kind = FailureKind.PERSISTENCE_FAILURE


class SplitValidationError(ReconciliationError):
    """A user-provided split does not sum to the bank amount."""

    kind = FailureKind.VALIDATION_FAILURE

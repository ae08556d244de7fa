"""
Error taxonomy for kvledger.

Invariants:
    - Store failures are propagated, never retried inside this package
    - Duplicate link creation is not an error (create_link returns False)
    - Integrity faults are reported by reconcile(), never raised

How to change safely:
    - New errors must derive from KvLedgerError so callers can catch broadly
    - Keep RollbackFailure carrying the failed keys for manual repair
"""

from __future__ import annotations


class KvLedgerError(Exception):
    """Base class for all kvledger errors."""

    pass


class StoreError(KvLedgerError):
    """Base class for store adapter errors."""

    pass


class StoreUnavailableError(StoreError):
    """The store could not complete an operation."""

    pass


class LinkValidationError(KvLedgerError):
    """Link type, endpoints or metadata are not acceptable."""

    pass


class UnknownIndexError(KvLedgerError):
    """No index policy is registered for the requested entity type and name."""

    pass


class ConcurrentTransactionError(KvLedgerError):
    """execute() was called while a transaction is already active."""

    pass


class RollbackFailure(KvLedgerError):
    """Rollback could not restore one or more captured keys.

    The store may be in a state between pre- and post-workflow. The
    failed keys are listed so an operator can repair them by hand.

    Attributes:
        failed_keys: Store keys that could not be restored
        original_error: The error that triggered the rollback
        errors: Per-key restore errors
    """

    def __init__(
        self,
        failed_keys: list[str],
        original_error: BaseException | None = None,
        errors: dict[str, BaseException] | None = None,
    ) -> None:
        self.failed_keys = list(failed_keys)
        self.original_error = original_error
        self.errors = dict(errors or {})
        preview = ", ".join(self.failed_keys[:10])
        if len(self.failed_keys) > 10:
            preview += f", ... ({len(self.failed_keys) - 10} more)"
        message = f"Rollback failed for {len(self.failed_keys)} key(s): {preview}"
        if original_error is not None:
            message += f" (original error: {original_error!r})"
        super().__init__(message)


class WorkflowTimeoutError(KvLedgerError):
    """A workflow step exceeded the configured time budget."""

    pass


class EntityNotFoundError(KvLedgerError):
    """The requested entity does not exist."""

    pass

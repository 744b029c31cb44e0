"""
Error taxonomy for the harness.

Infrastructure failures are exceptions. Assertion outcomes (missing results,
unexpected problems, ...) are recorded into the result tree as failures tagged
with a ``FailureKind`` and never raised.
"""

from __future__ import annotations

from enum import Enum

import httpx


class HarnessError(Exception):
    """Base class for all harness exceptions."""


class EnginePoolError(HarnessError):
    """Base class for engine pool failures."""


class NoEngineAvailable(EnginePoolError):
    """The pool is empty, so no engine can ever be leased."""


class ProvisionFailed(EnginePoolError):
    """The remote service failed to provision an engine."""

    def __init__(self, engine_name: str, reason: str):
        super().__init__(f"Provisioning engine '{engine_name}' failed: {reason}")
        self.engine_name = engine_name
        self.reason = reason


class DuplicateEngineName(EnginePoolError):
    """A name generator produced a name that is already in the pool."""

    def __init__(self, engine_name: str):
        super().__init__(f"Engine name already exists: {engine_name}")
        self.engine_name = engine_name


class TransactionError(HarnessError):
    """Base class for transaction execution failures."""


class TransactionTimeout(TransactionError):
    def __init__(self, transaction_id: str, timeout_sec: float):
        super().__init__(
            f"Transaction {transaction_id} timed out after {timeout_sec} seconds"
        )
        self.transaction_id = transaction_id
        self.timeout_sec = timeout_sec


class TransactionSubmitFailed(TransactionError):
    def __init__(self, request_id: str, attempts: int):
        super().__init__(
            f"Transaction submission failed after {attempts} attempts "
            f"(ReqId={request_id})"
        )
        self.request_id = request_id
        self.attempts = attempts


class NotFoundError(HarnessError):
    """Raised by collaborators when a remote resource does not exist (HTTP 404)."""


class ConflictError(HarnessError):
    """Raised by collaborators when a remote resource already exists (HTTP 409)."""


class FailureKind(str, Enum):
    """Why a recorded assertion failed."""

    UNEXPECTED_PROBLEM = "unexpected_problem"
    MISSING_EXPECTED_RESULT = "missing_expected_result"
    RESULT_MISMATCH = "result_mismatch"
    MISSING_EXPECTED_PROBLEM = "missing_expected_problem"
    UNEXPECTED_STATE = "unexpected_state"


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_not_found(exc: BaseException) -> bool:
    """True for a harness ``NotFoundError`` or an httpx 404 response error."""
    return isinstance(exc, NotFoundError) or _status_code(exc) == 404


def is_conflict(exc: BaseException) -> bool:
    """True for a harness ``ConflictError`` or an httpx 409 response error."""
    return isinstance(exc, ConflictError) or _status_code(exc) == 409

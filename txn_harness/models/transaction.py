"""
Transaction Models

Requests submitted to the remote service and the responses assembled once a
transaction reaches a terminal state.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class TransactionState(str, Enum):
    """Remote transaction state. Anything but RUNNING is terminal."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionState.RUNNING


class TransactionRequest(BaseModel):
    """A program ready for submission. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    program: str = Field(..., description="Full program text")
    database: str = Field(..., description="Target database")
    engine: str = Field(..., description="Target engine")
    readonly: bool = Field(False, description="Run as a read-only transaction")
    request_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Correlation id sent with the submission",
    )
    timeout_sec: float = Field(..., gt=0, description="Polling budget in seconds")


class TransactionResponse(BaseModel):
    """
    Terminal outcome of one transaction.

    Metadata, problems and results are independently nullable: an engine that
    crashed mid-transaction yields ABORTED with no payloads at all.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    transaction_id: str = Field(..., description="Remote transaction id")
    state: TransactionState = Field(..., description="Terminal state")
    abort_reason: Optional[str] = Field(None, description="Reason reported on abort")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Transaction metadata")
    problems: Optional[List[Dict[str, Any]]] = Field(
        None, description="Problems reported by the service"
    )
    results: Optional[Dict[str, Any]] = Field(
        None, description="Relation key -> pyarrow.Table (or row sequence)"
    )

"""
Data models for the transaction test harness.

This package contains Pydantic models for:
- Engines and their provisioning states
- Transaction requests and responses
- Test steps and reported problems
"""

from txn_harness.models.engine import EngineInfo, EngineState

from txn_harness.models.transaction import (
    TransactionRequest,
    TransactionResponse,
    TransactionState,
)

from txn_harness.models.step import (
    Problem,
    Severity,
    Step,
    contains_problem,
    counts_as_failure,
    install_step,
    read_query,
    write_query,
)

__all__ = [
    # engine
    "EngineInfo",
    "EngineState",
    # transaction
    "TransactionRequest",
    "TransactionResponse",
    "TransactionState",
    # step
    "Problem",
    "Severity",
    "Step",
    "contains_problem",
    "counts_as_failure",
    "install_step",
    "read_query",
    "write_query",
]

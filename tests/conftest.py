"""
Global pytest configuration and fixtures for txn_harness tests.

This module provides:
- In-memory fakes for the provisioning, transaction and database services
- Engine pool, transaction runner and orchestrator fixtures wired to the fakes
  with tiny delays so tests run fast
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from txn_harness.connectors.clients import (
    DatabaseProvisioner,
    ProvisioningClient,
    TransactionClient,
)
from txn_harness.connectors.engine_pool import EnginePool
from txn_harness.core.errors import ConflictError, NotFoundError
from txn_harness.core.result_tree import ResultTree
from txn_harness.core.test_orchestrator import TestOrchestrator
from txn_harness.core.transaction_runner import TransactionRunner
from txn_harness.models import EngineInfo, EngineState


# =============================================================================
# Fake services
# =============================================================================


class FakeProvisioning(ProvisioningClient):
    """Engines live in a dict; creation succeeds unless the name is in ``fail_create``."""

    def __init__(self) -> None:
        self.engines: Dict[str, EngineState] = {}
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.fail_create: set[str] = set()
        # name -> number of get_engine calls that still report PROVISIONING
        self.pending_polls: Dict[str, int] = {}

    async def create_engine(self, name: str, size: str) -> None:
        self.created.append(name)
        if name in self.fail_create:
            raise RuntimeError(f"cannot create {name}")
        if self.pending_polls.get(name):
            self.engines[name] = EngineState.PROVISIONING
        else:
            self.engines[name] = EngineState.PROVISIONED

    async def get_engine(self, name: str) -> EngineInfo:
        if name not in self.engines:
            raise NotFoundError(f"engine {name} not found")
        if self.engines[name] == EngineState.PROVISIONING:
            remaining = self.pending_polls.get(name, 0)
            if remaining <= 0:
                self.engines[name] = EngineState.PROVISIONED
            else:
                self.pending_polls[name] = remaining - 1
        return EngineInfo(name=name, state=self.engines[name])

    async def delete_engine(self, name: str) -> None:
        self.deleted.append(name)
        if name not in self.engines:
            raise NotFoundError(f"engine {name} not found")
        del self.engines[name]


class FakeTransactions(TransactionClient):
    """
    Transactions complete according to a per-program script.

    ``script(program, ...)`` sets the outcome for a program; unscripted programs
    complete with no problems and no results.
    """

    def __init__(self) -> None:
        self.scripts: Dict[str, Dict[str, Any]] = {}
        self.submitted: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.loaded: List[Dict[str, Any]] = []
        self.submit_failures = 0
        self.fail_programs: set[str] = set()
        self.status_error: Optional[Exception] = None
        self.fetch_errors: Dict[str, Exception] = {}

        self._ids = itertools.count(1)
        self._programs: Dict[str, str] = {}
        self._polls: Dict[str, List[str]] = {}

    def script(
        self,
        program: str,
        *,
        states: Optional[List[str]] = None,
        results: Optional[Dict[str, Any]] = None,
        problems: Optional[List[Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        abort_reason: Optional[str] = None,
    ) -> None:
        self.scripts[program] = {
            "states": states or ["COMPLETED"],
            "results": results if results is not None else {},
            "problems": problems if problems is not None else [],
            "metadata": metadata if metadata is not None else {},
            "abort_reason": abort_reason,
        }

    def _script_for(self, transaction_id: str) -> Dict[str, Any]:
        program = self._programs[transaction_id]
        if program not in self.scripts:
            self.script(program)
        return self.scripts[program]

    async def submit_async(
        self,
        database: str,
        engine: str,
        program: str,
        *,
        readonly: bool,
        request_id: str,
    ) -> str:
        self.submitted.append(
            {
                "database": database,
                "engine": engine,
                "program": program,
                "readonly": readonly,
                "request_id": request_id,
            }
        )
        if self.submit_failures > 0:
            self.submit_failures -= 1
            raise RuntimeError("connection reset")
        if program in self.fail_programs:
            raise RuntimeError(f"cannot submit {program}")

        transaction_id = f"txn-{next(self._ids)}"
        self._programs[transaction_id] = program
        self._polls[transaction_id] = list(self._script_for(transaction_id)["states"])
        return transaction_id

    async def get_status(self, transaction_id: str) -> Dict[str, Any]:
        if self.status_error is not None:
            raise self.status_error
        polls = self._polls[transaction_id]
        state = polls.pop(0) if len(polls) > 1 else polls[0]
        return {
            "state": state,
            "abort_reason": self._script_for(transaction_id)["abort_reason"],
        }

    async def _fetch(self, what: str, transaction_id: str) -> Any:
        if what in self.fetch_errors:
            raise self.fetch_errors[what]
        return self._script_for(transaction_id)[what]

    async def get_metadata(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch("metadata", transaction_id)

    async def get_problems(self, transaction_id: str) -> Optional[List[Dict[str, Any]]]:
        return await self._fetch("problems", transaction_id)

    async def get_results(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch("results", transaction_id)

    async def cancel(self, transaction_id: str) -> None:
        self.cancelled.append(transaction_id)

    async def load_sources(
        self,
        database: str,
        engine: str,
        sources: Dict[str, str],
        *,
        timeout_sec: float,
    ) -> None:
        self.loaded.append({"database": database, "engine": engine, "sources": sources})

    @property
    def programs(self) -> List[str]:
        return [s["program"] for s in self.submitted]


class FakeDatabases(DatabaseProvisioner):
    """Databases live in a set; the first ``conflicts`` creations report 409."""

    def __init__(self) -> None:
        self.existing: set[str] = set()
        self.created: List[tuple[str, Optional[str]]] = []
        self.deleted: List[str] = []
        self.conflicts = 0

    async def create(self, name: str, clone_source: Optional[str] = None) -> None:
        self.created.append((name, clone_source))
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictError(f"database {name} already exists")
        self.existing.add(name)

    async def delete(self, name: str) -> None:
        self.deleted.append(name)
        self.existing.discard(name)


# =============================================================================
# Fixtures
# =============================================================================


def eng_name(engine_id: int) -> str:
    return f"eng-{engine_id}"


@pytest.fixture
def provisioning() -> FakeProvisioning:
    return FakeProvisioning()


@pytest.fixture
def transactions() -> FakeTransactions:
    return FakeTransactions()


@pytest.fixture
def databases() -> FakeDatabases:
    return FakeDatabases()


@pytest.fixture
def tree() -> ResultTree:
    return ResultTree()


@pytest.fixture
def pool(provisioning: FakeProvisioning) -> EnginePool:
    return EnginePool(
        provisioning,
        concurrency=1,
        engine_size="XS",
        name_generator=eng_name,
        acquire_backoff_sec=0.01,
        provision_timeout_sec=1.0,
        provision_poll_sec=0.01,
    )


@pytest.fixture
def runner(transactions: FakeTransactions) -> TransactionRunner:
    return TransactionRunner(
        transactions,
        submit_attempts=3,
        submit_retry_delay_sec=0,
        poll_interval_sec=0.001,
        fetch_timeout_sec=1.0,
    )


@pytest_asyncio.fixture
async def orchestrator(
    pool: EnginePool,
    runner: TransactionRunner,
    databases: FakeDatabases,
    tree: ResultTree,
) -> TestOrchestrator:
    await pool.resize(2)
    return TestOrchestrator(pool, runner, databases, tree=tree)

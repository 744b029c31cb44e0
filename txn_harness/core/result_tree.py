"""
Result Tree

Hierarchical, concurrency-aware recorder of test outcomes.

A ``ResultNode`` is entered with ``async with``; nodes entered while another node
is current become its children when they finish. Three flags change behaviour:

- ``distributed``: test bodies started under this node via ``distribute`` run as
  background tasks; the node merges their resolved nodes when it finishes.
- ``broken``: failures and errors recorded into the node become "broken"
  results. A broken node that records no broken result finishes with a single
  "unexpectedly fixed" error instead.
- ``nested``: the node is merged by someone else, so it is never flushed as a
  root report even when it has no current parent.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from txn_harness.core.errors import FailureKind

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    BROKEN = "broken"


@dataclass(frozen=True)
class Result:
    """A single recorded assertion or error."""

    outcome: Outcome
    description: str = ""
    message: Optional[str] = None
    kind: Optional[FailureKind] = None

    def __str__(self) -> str:
        text = f"{self.outcome.value.upper()}: {self.description}"
        if self.kind is not None:
            text += f" [{self.kind.value}]"
        if self.message:
            text += f" - {self.message}"
        return text


@dataclass
class Counts:
    passed: int = 0
    failed: int = 0
    errored: int = 0
    broken: int = 0

    def __add__(self, other: "Counts") -> "Counts":
        return Counts(
            self.passed + other.passed,
            self.failed + other.failed,
            self.errored + other.errored,
            self.broken + other.broken,
        )

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.errored + self.broken


UNBROKEN_MESSAGE = "Test marked as broken unexpectedly passed"

CURRENT_NODE: ContextVar[Optional["ResultNode"]] = ContextVar(
    "txn_harness_current_node", default=None
)


def current_node() -> Optional["ResultNode"]:
    return CURRENT_NODE.get()


class ResultTree:
    """Collects finished root nodes."""

    def __init__(self) -> None:
        self.reports: list[ResultNode] = []
        self._lock = threading.Lock()

    def flush(self, node: "ResultNode") -> None:
        with self._lock:
            self.reports.append(node)
        level = logging.ERROR if node.any_error() or node.any_fail() else logging.INFO
        logger.log(level, "Test summary:\n%s", node.summary())

    def clear(self) -> None:
        with self._lock:
            self.reports.clear()


result_tree = ResultTree()


class ResultNode:
    """One test set in the result tree."""

    def __init__(
        self,
        description: str,
        *,
        nested: bool = False,
        broken: bool = False,
        distributed: bool = False,
        tree: Optional[ResultTree] = None,
    ) -> None:
        self.description = description
        self.nested = nested
        self.broken = broken
        self.distributed = distributed
        self.tree = tree or result_tree

        self.results: list[Union[Result, ResultNode]] = []
        self.pending: list[asyncio.Task] = []
        self.broken_found = False
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self.logs: Optional[list[logging.LogRecord]] = None
        self.error_message: Optional[str] = None

        self.parent: Optional[ResultNode] = None
        self._token: Any = None
        self._finished = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Context management
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "ResultNode":
        self.parent = CURRENT_NODE.get()
        self._token = CURRENT_NODE.set(self)
        self.start_time = time.time()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        CURRENT_NODE.reset(self._token)
        if exc is not None and not isinstance(exc, Exception):
            # Cancellation and interpreter exits are not test outcomes.
            for task in self.pending:
                task.cancel()
            return False
        if exc is not None:
            self.record_error(exc)
        await self.finish()
        return True

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, item: Union[Result, "ResultNode"]) -> Union[Result, "ResultNode"]:
        if isinstance(item, Result) and item.outcome in (Outcome.FAIL, Outcome.ERROR):
            if self.broken:
                item = Result(Outcome.BROKEN, item.description, item.message, item.kind)
                with self._lock:
                    self.broken_found = True
                logger.info(f"{self.description}: {item}")
            elif item.outcome == Outcome.FAIL:
                logger.warning(f"{self.description}: {item}")
            else:
                logger.error(f"{self.description}: {item}")

        with self._lock:
            self.results.append(item)
        return item

    def check(
        self,
        condition: bool,
        description: str,
        *,
        kind: Optional[FailureKind] = None,
        message: Optional[str] = None,
    ) -> bool:
        """Record a pass if ``condition`` holds, otherwise a failure."""
        if condition:
            self.record(Result(Outcome.PASS, description))
        else:
            self.record(Result(Outcome.FAIL, description, message, kind))
        return bool(condition)

    def record_error(self, exc: BaseException, description: str = "") -> None:
        self.record(
            Result(
                Outcome.ERROR,
                description or self.description,
                f"{type(exc).__name__}: {exc}",
            )
        )

    def add_pending(self, task: asyncio.Task) -> None:
        with self._lock:
            self.pending.append(task)

    # ------------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------------

    async def finish(self) -> "ResultNode":
        """
        Merge background children, apply broken inversion and attach this node
        to its parent (or flush it as a root report). Runs once.
        """
        if self._finished:
            return self
        self._finished = True

        while self.pending:
            with self._lock:
                task = self.pending.pop(0)
            try:
                child = await task
            except Exception as e:
                self.record_error(e, "background test")
                continue
            if isinstance(child, (ResultNode, Result)):
                self.record(child)
            elif child is not None:
                logger.debug(
                    f"{self.description}: ignoring background result of type "
                    f"{type(child).__name__}"
                )

        if self.broken and not self.broken_found:
            # Everything passed although the node is marked broken: drop the
            # results and report the fix as an error.
            with self._lock:
                self.results = [Result(Outcome.ERROR, self.description, UNBROKEN_MESSAGE)]
            logger.error(f"{self.description}: {UNBROKEN_MESSAGE}")

        self.end_time = time.time()

        if self.parent is not None:
            self.parent.record(self)
        elif not self.nested:
            self.tree.flush(self)
        return self

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    def counts(self) -> Counts:
        total = Counts()
        with self._lock:
            items = list(self.results)
        for item in items:
            if isinstance(item, ResultNode):
                total = total + item.counts()
            elif item.outcome == Outcome.PASS:
                total.passed += 1
            elif item.outcome == Outcome.FAIL:
                total.failed += 1
            elif item.outcome == Outcome.ERROR:
                total.errored += 1
            else:
                total.broken += 1
        return total

    def any_error(self) -> bool:
        return self.counts().errored > 0

    def any_fail(self) -> bool:
        return self.counts().failed > 0

    def children(self) -> list["ResultNode"]:
        return [r for r in self.results if isinstance(r, ResultNode)]

    def summary(self, indent: int = 0) -> str:
        c = self.counts()
        pad = "  " * indent
        lines = [
            f"{pad}{self.description}: {c.passed} passed, {c.failed} failed, "
            f"{c.errored} errored, {c.broken} broken ({self.duration:.2f}s)"
        ]
        for item in self.results:
            if isinstance(item, ResultNode):
                lines.append(item.summary(indent + 1))
            elif item.outcome != Outcome.PASS:
                lines.append(f"{pad}  {item}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"ResultNode({self.description!r}, {self.counts()})"


def testset(
    description: str,
    *,
    nested: bool = False,
    broken: bool = False,
    distributed: bool = False,
) -> ResultNode:
    """
    Usage:
        async with testset("suite", distributed=True):
            await run_test(...)
    """
    return ResultNode(description, nested=nested, broken=broken, distributed=distributed)


testset.__test__ = False  # type: ignore[attr-defined]


def is_distributed(node: Optional[ResultNode]) -> bool:
    return node is not None and node.distributed


async def _detached(body: Callable[[], Awaitable[Any]]) -> Any:
    # Runs in the task's own context copy; the parent merges the result.
    CURRENT_NODE.set(None)
    return await body()


async def distribute(body: Callable[[], Awaitable[Any]]) -> Any:
    """
    Run ``body`` under the current node.

    Under a distributed node the body becomes a background task registered with
    that node and the task is returned; otherwise the body is awaited inline and
    its result returned.
    """
    parent = CURRENT_NODE.get()
    if is_distributed(parent):
        task = asyncio.create_task(_detached(body))
        parent.add_pending(task)
        return task
    return await body()


def check_flaky(name: str, records: list[logging.LogRecord]) -> int:
    """
    Warn when captured logs show transaction submissions had to be retried.

    Returns:
        int: Highest retry number seen (0 if none)
    """
    retries = 0
    request_ids: list[str] = []
    for record in records:
        if not getattr(record, "submit_failed", False):
            continue
        retries = max(retries, int(getattr(record, "retry_number", 0) or 0))
        request_ids.append(str(getattr(record, "request_id", "")))

    if retries > 0:
        logger.warning(
            f"[FLAKY] {name}: transaction submission had to be retried {retries} "
            f"times ReqIds=[{', '.join(request_ids)}]"
        )
    return retries

"""
Comparison of transaction responses against a step's expectations.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import pyarrow as pa

from txn_harness.connectors.clients import ProgramComposer
from txn_harness.core.errors import FailureKind
from txn_harness.models import Problem

logger = logging.getLogger(__name__)


def to_rows(values: Any) -> list[tuple]:
    """
    Normalize expected values to a list of row tuples.

    ``{k: v}`` -> ``[(k, v)]`` (tuple keys are spread), ``[1, 2]`` -> ``[(1,), (2,)]``,
    ``(1, "a")`` -> ``[(1, "a")]`` and a scalar ``x`` -> ``[(x,)]``.
    """
    if isinstance(values, Mapping):
        rows = []
        for key, value in values.items():
            head = tuple(key) if isinstance(key, tuple) else (key,)
            rows.append(head + (value,))
        return rows
    if isinstance(values, tuple):
        return [values]
    if isinstance(values, (list, set, frozenset)):
        return [v if isinstance(v, tuple) else (v,) for v in values]
    return [(values,)]


def table_rows(table: Any) -> list[tuple]:
    """Rows of an actual result relation. An empty relation is ``[()]``."""
    if isinstance(table, pa.Table):
        if table.num_rows == 0:
            return [()]
        columns = [col.to_pylist() for col in table.columns]
        return list(zip(*columns))
    rows = to_rows(table)
    return rows or [()]


def _sorted(rows: list[tuple]) -> list[tuple]:
    try:
        return sorted(rows)
    except TypeError:
        # Mixed types within a column; any stable total order will do.
        return sorted(rows, key=repr)


def check_expected(
    expected: Mapping[Any, Any],
    results: Optional[Mapping[str, Any]],
    name: str,
    composer: Optional[ProgramComposer] = None,
) -> tuple[bool, Optional[FailureKind], Optional[str]]:
    """
    Test that ``results`` contain every expected relation with matching contents.

    Extra relations in ``results`` are ignored. An expected relation with no rows
    passes if the relation is absent or empty. ``[()]`` only checks existence.

    Returns:
        (passed, failure kind, message)
    """
    if not expected:
        return True, None, None
    if results is None:
        logger.info(f"{name}: No results")
        return False, FailureKind.MISSING_EXPECTED_RESULT, "no results returned"

    composer = composer or ProgramComposer()
    for binding, values in expected.items():
        key = composer.relation_key(binding, values)
        logger.debug(f"{name}: looking for expected result for relation {binding}")
        expected_rows = _sorted(to_rows(values))

        if key not in results:
            if not expected_rows:
                logger.debug(f"{name}: Expected empty {key} was successfully not found")
                continue
            logger.info(f"{name}: Expected relation {key} not found")
            return (
                False,
                FailureKind.MISSING_EXPECTED_RESULT,
                f"expected relation {key} not found",
            )

        # Existence check only
        if expected_rows == [()]:
            continue

        actual_rows = _sorted(table_rows(results[key]))
        if not expected_rows and actual_rows == [()]:
            continue

        if expected_rows != actual_rows:
            logger.warning(
                f"{name}: Expected result vs. actual for {key}: "
                f"{expected_rows} != {actual_rows}"
            )
            return (
                False,
                FailureKind.RESULT_MISMATCH,
                f"{key}: expected {expected_rows}, got {actual_rows}",
            )
        logger.debug(f"{name}: Expected result matches actual for {key}")

    return True, None, None


def extract_problems(payload: Optional[list[Any]]) -> list[Problem]:
    """Problems from a response payload. A missing payload means no problems."""
    if not payload:
        return []
    return [p if isinstance(p, Problem) else Problem.model_validate(p) for p in payload]


def extract_integrity_violations(metadata: Optional[Mapping[str, Any]]) -> list[Any]:
    if not metadata:
        return []
    return list(metadata.get("integrity_violations") or [])

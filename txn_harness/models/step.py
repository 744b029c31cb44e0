"""
Step Models

Defines the value objects a test case is built from:
- Problems reported by the remote service
- Severity thresholds for unexpected problems
- Steps (one transaction plus its assertions)
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from txn_harness.config import settings


class Severity(str, Enum):
    """Highest severity of unexpected problems a step tolerates."""

    NONE = "none"
    WARNING = "warning"
    ERROR = "error"


_SEVERITY_RANK = {"none": 0, "info": 0, "warning": 1, "error": 2}


def counts_as_failure(severity: Optional[str], allowed: Severity) -> bool:
    """
    Whether an unexpected problem of ``severity`` fails a step.

    Exceptions always count. Otherwise the problem counts when its severity is
    above the allowed threshold. Unknown severities never count.
    """
    if severity is None:
        return False
    sev = str(severity).lower()
    if sev == "exception":
        return True
    rank = _SEVERITY_RANK.get(sev)
    if rank is None:
        return False
    return rank > _SEVERITY_RANK[allowed.value]


class Problem(BaseModel):
    """A diagnostic reported by the remote service for one transaction."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Problem code, e.g. UNDEFINED")
    severity: Optional[str] = Field(None, description="warning, error, exception")
    line: Optional[int] = Field(None, description="Source line")
    message: Optional[str] = Field(None, description="Human readable message")

    @field_validator("code", mode="before")
    @classmethod
    def _code_to_str(cls, v: Any) -> str:
        return str(v)

    @field_validator("severity", mode="before")
    @classmethod
    def _severity_to_str(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(getattr(v, "value", v))

    def matches(self, other: "Problem") -> bool:
        """Match on code, plus line and severity where both sides carry them."""
        if self.code != other.code:
            return False
        if self.line is not None and other.line is not None and self.line != other.line:
            return False
        if (
            self.severity is not None
            and other.severity is not None
            and self.severity.lower() != other.severity.lower()
        ):
            return False
        return True

    def __str__(self) -> str:
        parts = [self.code]
        if self.severity:
            parts.append(f"severity={self.severity}")
        if self.line is not None:
            parts.append(f"line={self.line}")
        if self.message:
            parts.append(f"message={self.message!r}")
        return " ".join(parts)


def contains_problem(problems: List[Problem], needle: Problem) -> bool:
    return any(p.matches(needle) for p in problems)


def _install_to_dict(install: Any) -> Dict[str, str]:
    if install is None:
        return {}
    if isinstance(install, dict):
        return {str(k): str(v) for k, v in install.items()}
    if isinstance(install, str):
        return {"test_install_1": install}
    if (
        isinstance(install, tuple)
        and len(install) == 2
        and all(isinstance(x, str) for x in install)
    ):
        return {install[0]: install[1]}
    return {f"test_install_{i}": str(src) for i, src in enumerate(install, start=1)}


class Step(BaseModel):
    """
    One transaction of a test case and the assertions made on its response.

    A step without a query and without inputs or expected bindings only installs
    its sources; no transaction is submitted for it.
    """

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = Field(None, description="Step name (generated if unset)")
    query: Optional[str] = Field(None, description="Program text")
    install: Dict[str, str] = Field(
        default_factory=dict, description="Named sources to install first"
    )
    inputs: Dict[Any, Any] = Field(default_factory=dict, description="Input bindings")
    expected: Dict[Any, Any] = Field(
        default_factory=dict, description="Expected result bindings"
    )
    expected_problems: List[Problem] = Field(
        default_factory=list, description="Problems that must be reported"
    )
    allow_unexpected: Severity = Field(
        default_factory=lambda: Severity(settings.SEVERITY_ALLOWED),
        description="Tolerated severity for unexpected problems",
    )
    expect_abort: bool = Field(False, description="The transaction must abort")
    broken: bool = Field(False, description="Known failure; record as broken")
    readonly: bool = Field(False, description="Submit as read-only")
    timeout_sec: int = Field(
        default_factory=lambda: settings.TEST_TIMEOUT_SEC,
        gt=0,
        description="Upper bound on transaction execution time",
    )

    @field_validator("install", mode="before")
    @classmethod
    def _normalize_install(cls, v: Any) -> Dict[str, str]:
        return _install_to_dict(v)

    @field_validator("expected_problems", mode="before")
    @classmethod
    def _normalize_problems(cls, v: Any) -> List[Any]:
        out = []
        for p in v or []:
            # Accept ("code", "X") or (("code", "X"), ("line", 1)) as well as mappings
            if isinstance(p, tuple) and len(p) == 2 and isinstance(p[0], str):
                p = {p[0]: p[1]}
            elif isinstance(p, (tuple, list)):
                p = dict(p)
            out.append(p)
        return out


def read_query(query: str, **kwargs: Any) -> Step:
    return Step(query=query, readonly=True, **kwargs)


def write_query(query: str, **kwargs: Any) -> Step:
    return Step(query=query, readonly=False, **kwargs)


def install_step(sources: Any, **kwargs: Any) -> Step:
    return Step(install=sources, **kwargs)

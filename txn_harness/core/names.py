"""
Name generation for engines and test databases.
"""

from __future__ import annotations

from typing import Callable
from uuid import uuid4

from txn_harness.config import settings

NameGenerator = Callable[[int], str]

# Remote resource names are limited to 63 characters.
MAX_NAME_LENGTH = 63


def default_engine_name(engine_id: int) -> str:
    """Engine names are ``<base>-<id>``; unique as long as ids are."""
    return f"{settings.ENGINE_NAME}-{engine_id}"


def gen_safe_name(basename: str) -> str:
    """
    Unique name for ``basename`` across processes.

    Names are truncated to 63 characters, which is reached once the base name is
    28 characters long. Longer base names still work but uniqueness is no longer
    guaranteed.
    """
    name = f"{basename}-{uuid4()}"[:MAX_NAME_LENGTH]
    return name.rstrip("-")


def new_database_name() -> str:
    return gen_safe_name(settings.DB_NAME)

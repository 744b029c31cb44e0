"""
Engine Models

Remote engine states as reported by the provisioning API.
"""

from enum import Enum

from pydantic import BaseModel, Field


class EngineState(str, Enum):
    """Provisioning lifecycle of a remote engine."""

    REQUESTED = "REQUESTED"
    PROVISIONING = "PROVISIONING"
    PROVISIONED = "PROVISIONED"
    PROVISION_FAILED = "PROVISION_FAILED"
    DELETING = "DELETING"

    @property
    def is_transitional(self) -> bool:
        return self in (EngineState.REQUESTED, EngineState.PROVISIONING)


class EngineInfo(BaseModel):
    """Engine description returned by ``get_engine``."""

    name: str = Field(..., description="Engine name")
    state: EngineState = Field(..., description="Current provisioning state")

"""
Remote Service Clients

Abstract interfaces for the collaborators the harness drives. Concrete clients
wrap the remote service SDK; failures on missing resources are reported as
``NotFoundError`` (or an httpx 404) and creation conflicts as ``ConflictError``
(or an httpx 409).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from txn_harness.models import EngineInfo


class ProvisioningClient(ABC):
    """Creates, inspects and deletes remote engines."""

    @abstractmethod
    async def create_engine(self, name: str, size: str) -> None:
        pass

    @abstractmethod
    async def get_engine(self, name: str) -> EngineInfo:
        """
        Fetch the engine description.

        Raises:
            NotFoundError: If the engine does not exist
        """
        pass

    @abstractmethod
    async def delete_engine(self, name: str) -> None:
        pass


class TransactionClient(ABC):
    """Submits and tracks transactions on an engine."""

    @abstractmethod
    async def submit_async(
        self,
        database: str,
        engine: str,
        program: str,
        *,
        readonly: bool,
        request_id: str,
    ) -> str:
        """
        Submit a program for asynchronous execution.

        Returns:
            str: Transaction id
        """
        pass

    @abstractmethod
    async def get_status(self, transaction_id: str) -> Dict[str, Any]:
        """
        Fetch the transaction description.

        Returns:
            Dict with at least ``state`` and optionally ``abort_reason``
        """
        pass

    @abstractmethod
    async def get_metadata(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_problems(self, transaction_id: str) -> Optional[List[Dict[str, Any]]]:
        pass

    @abstractmethod
    async def get_results(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the output relations.

        Returns:
            Mapping of relation key to ``pyarrow.Table``
        """
        pass

    @abstractmethod
    async def cancel(self, transaction_id: str) -> None:
        pass

    @abstractmethod
    async def load_sources(
        self,
        database: str,
        engine: str,
        sources: Dict[str, str],
        *,
        timeout_sec: float,
    ) -> None:
        """Install named sources into the database."""
        pass


class DatabaseProvisioner(ABC):
    """Creates and deletes databases."""

    @abstractmethod
    async def create(self, name: str, clone_source: Optional[str] = None) -> None:
        """
        Create a database, optionally cloned from ``clone_source``.

        Raises:
            ConflictError: If a database with this name already exists
        """
        pass

    @abstractmethod
    async def delete(self, name: str) -> None:
        pass


class ProgramComposer:
    """
    Turns a step's bindings into program text.

    The default composer knows no query language: it adds no text for inputs or
    expected bindings and uses a binding's name as its result relation key.
    Subclass it to render bindings in the target language.
    """

    def render_inputs(self, inputs: Dict[Any, Any]) -> str:
        return ""

    def render_outputs(self, expected: Dict[Any, Any]) -> str:
        return ""

    def relation_key(self, name: Any, values: Any) -> str:
        return str(name)

    def compose(self, query: Optional[str], inputs: Dict[Any, Any], expected: Dict[Any, Any]) -> str:
        return (query or "") + self.render_inputs(inputs) + self.render_outputs(expected)

"""
Transaction Runner

Drives one transaction from submission to a terminal response:
SUBMITTING -> POLLING -> DONE (or FAILED).
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from txn_harness.config import settings
from txn_harness.connectors.clients import TransactionClient
from txn_harness.core.errors import (
    TransactionSubmitFailed,
    TransactionTimeout,
    is_not_found,
)
from txn_harness.models import (
    TransactionRequest,
    TransactionResponse,
    TransactionState,
)

logger = logging.getLogger(__name__)


def parse_state(status: Dict[str, Any]) -> TransactionState:
    """Map a status payload to a state. Anything not COMPLETED/ABORTED is still running."""
    raw = str(status.get("state", "")).strip().upper()
    if raw in (TransactionState.COMPLETED.value, TransactionState.ABORTED.value):
        return TransactionState(raw)
    return TransactionState.RUNNING


class TransactionRunner:
    """Submits transactions with retry and polls them to completion."""

    def __init__(
        self,
        client: TransactionClient,
        *,
        submit_attempts: Optional[int] = None,
        submit_retry_delay_sec: Optional[float] = None,
        poll_interval_sec: Optional[float] = None,
        fetch_timeout_sec: Optional[float] = None,
    ):
        self.client = client
        self.submit_attempts = int(
            settings.SUBMIT_ATTEMPTS if submit_attempts is None else submit_attempts
        )
        if self.submit_attempts < 1:
            raise ValueError(f"submit_attempts must be at least 1: {self.submit_attempts}")
        self.submit_retry_delay_sec = (
            settings.SUBMIT_RETRY_DELAY_SEC
            if submit_retry_delay_sec is None
            else float(submit_retry_delay_sec)
        )
        self.poll_interval_sec = (
            settings.POLL_INTERVAL_SEC
            if poll_interval_sec is None
            else float(poll_interval_sec)
        )
        self.fetch_timeout_sec = (
            settings.FETCH_TIMEOUT_SEC
            if fetch_timeout_sec is None
            else float(fetch_timeout_sec)
        )

    async def execute(
        self, request: TransactionRequest, name: str = "transaction"
    ) -> TransactionResponse:
        """
        Submit ``request`` and wait for its terminal response.

        A client-side timeout leaves the remote transaction running. Any other
        failure after submission cancels it (best effort) before re-raising.

        Raises:
            TransactionSubmitFailed: If every submission attempt failed
            TransactionTimeout: If polling exceeded ``request.timeout_sec``
        """
        transaction_id = await self._submit(request, name)
        logger.info(
            f"{name}: Executing with txn {transaction_id}",
            extra={"transaction_id": transaction_id, "request_id": request.request_id},
        )

        try:
            return await self._wait_until_done(transaction_id, request.timeout_sec)
        except TransactionTimeout:
            raise
        except Exception as e:
            logger.info(f"{name}: Cancelling failed transaction ({transaction_id}): {e}")
            await self._cancel_quietly(transaction_id)
            raise

    async def _submit(self, request: TransactionRequest, name: str) -> str:
        logger.debug(f"{name}: Starting execution ReqId={request.request_id}")
        for attempt in range(1, self.submit_attempts + 1):
            try:
                return await self.client.submit_async(
                    request.database,
                    request.engine,
                    request.program,
                    readonly=request.readonly,
                    request_id=request.request_id,
                )
            except Exception as e:
                logger.error(
                    f"{name}: Failed to submit transaction (attempt {attempt}): {e}",
                    extra={
                        "submit_failed": True,
                        "retry_number": attempt,
                        "request_id": request.request_id,
                    },
                )
                if attempt >= self.submit_attempts:
                    raise TransactionSubmitFailed(request.request_id, attempt) from e
                await asyncio.sleep(self.submit_retry_delay_sec)

        raise RuntimeError("unreachable")

    async def _wait_until_done(
        self, transaction_id: str, timeout_sec: float
    ) -> TransactionResponse:
        start = time.monotonic()
        status = await self._poll_status(transaction_id, start, timeout_sec)
        state = parse_state(status)
        while not state.is_terminal:
            if time.monotonic() - start > timeout_sec:
                raise TransactionTimeout(transaction_id, timeout_sec)
            await asyncio.sleep(self.poll_interval_sec)
            status = await self._poll_status(transaction_id, start, timeout_sec)
            state = parse_state(status)

        metadata, problems, results = await asyncio.gather(
            self._fetch(self.client.get_metadata, transaction_id),
            self._fetch(self.client.get_problems, transaction_id),
            self._fetch(self.client.get_results, transaction_id),
            return_exceptions=True,
        )
        errors = [r for r in (metadata, problems, results) if isinstance(r, BaseException)]
        if any(is_not_found(e) for e in errors):
            # Expected when the engine crashed or the transaction was cancelled:
            # the transaction is marked ABORTED but has no results.
            logger.info(f"Transaction {transaction_id} has no results; treating as aborted")
            return TransactionResponse(
                transaction_id=transaction_id,
                state=TransactionState.ABORTED,
                abort_reason=status.get("abort_reason"),
            )
        if errors:
            raise errors[0]

        return TransactionResponse(
            transaction_id=transaction_id,
            state=state,
            abort_reason=status.get("abort_reason"),
            metadata=metadata,
            problems=problems,
            results=results,
        )

    async def _poll_status(
        self, transaction_id: str, start: float, timeout_sec: float
    ) -> Dict[str, Any]:
        # A status call may not outlive the remaining budget.
        remaining = max(0.0, timeout_sec - (time.monotonic() - start))
        try:
            return await asyncio.wait_for(
                self.client.get_status(transaction_id), timeout=remaining
            )
        except asyncio.TimeoutError as e:
            raise TransactionTimeout(transaction_id, timeout_sec) from e

    async def _fetch(
        self, fetch: Callable[[str], Awaitable[Any]], transaction_id: str
    ) -> Any:
        return await asyncio.wait_for(fetch(transaction_id), timeout=self.fetch_timeout_sec)

    async def _cancel_quietly(self, transaction_id: str) -> None:
        try:
            await self.client.cancel(transaction_id)
        except Exception as e:
            logger.warning(f"Could not cancel transaction {transaction_id}: {e}")

"""
Fire-and-forget deployment callbacks with bounded retry.

Each notification runs as its own asyncio task so a slow or failing
issuer never holds up a deployment pass. Attempts for one notification
are sequential; a shared cancellation event abandons pending retries on
shutdown.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Set

from core.api_client import APIError
from models.certificate import CallbackRequest

logger = logging.getLogger(__name__)


class CallbackClient(Protocol):
    async def callback(self, request: CallbackRequest) -> None: ...


class CallbackNotifier:
    """
    Reports deployment outcomes to the issuing service.

    Attempt ``n`` that fails waits ``backoff_seconds * n`` before the next
    one; after ``max_attempts`` the failure is logged and dropped.
    """

    def __init__(
        self,
        client: CallbackClient,
        max_attempts: int = 3,
        backoff_seconds: float = 10.0,
        server_type: str = "IIS",
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.client = client
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.server_type = server_type
        self.cancel_event = cancel_event or asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify(self, order_id: int, domain: str, success: bool, message: str) -> Optional[asyncio.Task]:
        """
        Schedule a callback and return immediately.

        Returns:
            The background task, or None when the notifier is shut down or there is no order to report on
        """
        if order_id <= 0:
            logger.debug(f"No order id for {domain}, skipping callback")
            return None
        if self.cancel_event.is_set():
            logger.warning(f"Notifier stopped, dropping callback for {domain}")
            return None

        request = CallbackRequest(
            order_id=order_id,
            domain=domain,
            status="success" if success else "failure",
            deployed_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            server_type=self.server_type,
            message=message,
        )
        task = asyncio.create_task(self._deliver(request), name=f"callback-{order_id}-{domain}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, request: CallbackRequest) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.client.callback(request)
                logger.info(f"Callback delivered for {request.domain} (order {request.order_id})")
                return True
            except APIError as e:
                logger.warning(
                    f"Callback for {request.domain} failed (attempt {attempt}/{self.max_attempts}): {e.message}"
                )
            except Exception:
                logger.exception(
                    f"Unexpected error delivering callback for {request.domain} (attempt {attempt}/{self.max_attempts})"
                )

            if attempt < self.max_attempts and await self._wait_or_cancelled(self.backoff_seconds * attempt):
                logger.info(f"Callback for {request.domain} abandoned on shutdown")
                return False

        logger.error(f"Callback for {request.domain} (order {request.order_id}) failed after {self.max_attempts} attempts")
        return False

    async def _wait_or_cancelled(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; True if cancellation arrived first."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight callbacks, e.g. before an unattended run exits."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} callbacks still pending after {timeout}s")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop retrying and give in-flight deliveries a moment to finish."""
        self.cancel_event.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

"""
Bounded retry rounds over failed and still-pending identifiers
"""
import asyncio
from typing import Optional

from loguru import logger

from config import Settings, get_settings
from credential_pool import CredentialPoolManager, CredentialsExhaustedError
from database import WorkQueueStore
from dispatcher import Dispatcher
from models import IdentifierStatus, RetrySummary
from run_logger import LoguruRunLogger, RunLogger


class RetryController:
    """
    Re-dispatches Failed + Pending identifiers for up to `retry_rounds` rounds

    A round stops the phase when nothing is left, when the remaining count
    did not decrease, or when no credential can be obtained.
    """

    def __init__(
        self,
        store: WorkQueueStore,
        pool: CredentialPoolManager,
        dispatcher: Dispatcher,
        settings: Optional[Settings] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.pool = pool
        self.dispatcher = dispatcher
        self.run_logger = run_logger or LoguruRunLogger()

    async def _wait(self, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep `retry_delay`; True if cancellation fired meanwhile"""
        delay = self.settings.retry_delay
        if cancel_event is None:
            if delay > 0:
                await asyncio.sleep(delay)
            return False
        if delay > 0:
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        return cancel_event.is_set()

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> RetrySummary:
        """
        Run the retry phase

        Args:
            cancel_event: Shared cancellation signal

        Returns:
            RetrySummary with rounds run and the stop reason
        """
        summary = RetrySummary()
        initial = await self.store.stats()
        summary.remaining_before = initial.remaining
        summary.remaining_after = initial.remaining

        for round_number in range(1, self.settings.retry_rounds + 1):
            if cancel_event is not None and cancel_event.is_set():
                summary.stop_reason = "cancelled"
                break

            failed = await self.store.get_by_status(IdentifierStatus.FAILED)
            pending = await self.store.get_by_status(IdentifierStatus.PENDING)
            before = len(failed) + len(pending)
            if before == 0:
                summary.stop_reason = "completed"
                break

            self.run_logger.info(f"Retry round {round_number}/{self.settings.retry_rounds}: "
                                 f"{before} identifiers (failed {len(failed)}, pending {len(pending)})")
            if failed:
                await self.store.reset_failed_to_pending()

            if await self._wait(cancel_event):
                summary.stop_reason = "cancelled"
                break

            try:
                credentials = await self.pool.ensure(min_count=1)
            except CredentialsExhaustedError as e:
                if cancel_event is not None and cancel_event.is_set():
                    summary.stop_reason = "cancelled"
                    break
                self.run_logger.warning(f"No credentials for retry: {e}")
                summary.stop_reason = "credentials_exhausted"
                break

            identifiers = await self.store.get_by_status(IdentifierStatus.PENDING)
            summary.rounds_run = round_number
            await self.dispatcher.dispatch(identifiers, credentials, cancel_event)

            after = (await self.store.stats()).remaining
            summary.remaining_after = after
            logger.info(f"Retry round {round_number} done: remaining {before} -> {after}")

            if after == 0:
                summary.stop_reason = "completed"
                break
            if cancel_event is not None and cancel_event.is_set():
                summary.stop_reason = "cancelled"
                break
            if after >= before:
                self.run_logger.warning(f"Retry round {round_number} made no progress, stopping retries")
                summary.stop_reason = "no_progress"
                break
        else:
            summary.stop_reason = "max_rounds"

        summary.remaining_after = (await self.store.stats()).remaining
        self.run_logger.info(f"Retry phase finished after {summary.rounds_run} rounds "
                             f"({summary.stop_reason}), {summary.remaining_after} identifiers remaining")
        return summary

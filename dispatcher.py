"""
Dispatch engine: fans pending identifiers out to a bounded pool of lookup workers
"""
import asyncio
from typing import List, Optional

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from config import Settings, get_settings
from credential_pool import CredentialSet
from database import StoreError, WorkQueueStore
from lookup_client import LookupAPIError, LookupAuthError, LookupClient
from models import DispatchStats, IdentifierStatus
from result_sink import ResultSink, extract_profile
from run_logger import LoguruRunLogger, RunLogger


class _Abandoned(Exception):
    """Processing of one identifier stopped before a terminal outcome"""
    pass


class RunState:
    """
    Run-scoped state shared by the workers of one dispatch round

    Counters are only touched from the event loop thread, so plain integer
    updates are atomic with respect to the workers.
    """

    def __init__(self, credentials: CredentialSet, total: int,
                 cancel_event: Optional[asyncio.Event] = None):
        self.credentials = credentials
        self.cancel_event = cancel_event or asyncio.Event()
        self.total = total
        self.processed = 0
        self.success = 0
        self.failed = 0
        self.has_result = 0
        self.store_error: Optional[StoreError] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.credentials.all_invalid or self.store_error is not None

    def to_stats(self) -> DispatchStats:
        return DispatchStats(
            total=self.total,
            processed=self.processed,
            success=self.success,
            failed=self.failed,
            has_result=self.has_result,
            credentials_exhausted=self.credentials.all_invalid,
            cancelled=self.cancelled,
        )


class Dispatcher:
    """Runs one dispatch round over a list of pending identifiers"""

    def __init__(
        self,
        store: WorkQueueStore,
        lookup_client: LookupClient,
        result_sink: ResultSink,
        settings: Optional[Settings] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.lookup_client = lookup_client
        self.result_sink = result_sink
        self.run_logger = run_logger or LoguruRunLogger()

    async def dispatch(
        self,
        identifiers: List[str],
        credentials: CredentialSet,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchStats:
        """
        Process identifiers until the list is drained, cancellation fires or
        every credential has been rejected

        Args:
            identifiers: Pending identifiers for this round
            credentials: Validated credential set
            cancel_event: Shared cancellation signal

        Returns:
            DispatchStats for the round

        Raises:
            StoreError: The work queue store failed; the round is aborted
        """
        state = RunState(credentials, len(identifiers), cancel_event)
        if not identifiers:
            return state.to_stats()

        worker_count = max(1, min(self.settings.max_concurrency, len(identifiers)))
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.queue_size)

        self.run_logger.info(f"Dispatching {len(identifiers)} identifiers with {worker_count} workers "
                             f"and {credentials.valid_count} credentials")

        producer = asyncio.create_task(self._produce(identifiers, queue, state, worker_count))
        ticker = asyncio.create_task(self._status_ticker(state))
        workers = [asyncio.create_task(self._worker(queue, state)) for _ in range(worker_count)]

        try:
            await asyncio.gather(*workers)
        finally:
            for task in (producer, ticker, *workers):
                task.cancel()
            await asyncio.gather(producer, ticker, *workers, return_exceptions=True)

        stats = state.to_stats()
        if state.store_error is not None:
            self.run_logger.error(f"Dispatch aborted, work queue store failed: {state.store_error}")
            raise state.store_error

        if stats.credentials_exhausted:
            self.run_logger.warning("All credentials are invalid, stopping dispatch")
        elif stats.cancelled:
            self.run_logger.warning(f"Dispatch cancelled after {stats.processed}/{stats.total} identifiers")

        self.run_logger.info(f"Dispatch round finished: {stats.processed}/{stats.total} processed, "
                             f"{stats.success} success ({stats.has_result} with data), {stats.failed} failed")
        return stats

    async def _produce(self, identifiers: List[str], queue: asyncio.Queue,
                       state: RunState, worker_count: int):
        """Feed identifiers once, then one sentinel per worker"""
        for identifier in identifiers:
            if state.stopped:
                break
            await queue.put(identifier)
        for _ in range(worker_count):
            await queue.put(None)

    async def _worker(self, queue: asyncio.Queue, state: RunState):
        while not state.stopped:
            identifier = await queue.get()
            if identifier is None or state.stopped:
                break

            try:
                await self._process(identifier, state)
            except _Abandoned:
                logger.debug(f"Left {identifier} pending")
            except StoreError as e:
                if state.store_error is None:
                    state.store_error = e
                break
            except Exception as e:
                logger.error(f"Unexpected error while processing {identifier}: {e}")

    async def _process(self, identifier: str, state: RunState):
        """Query one identifier with bounded attempts and persist the outcome"""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_attempts),
                wait=wait_random(self.settings.attempt_delay_min, self.settings.attempt_delay_max),
                retry=retry_if_exception_type(LookupAPIError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1 and state.cancelled:
                        raise _Abandoned()
                    token = await state.credentials.next_valid()
                    if token is None:
                        raise _Abandoned()
                    try:
                        response = await self.lookup_client.query(identifier, token)
                    except LookupAuthError:
                        await state.credentials.mark_invalid(token)
                        raise
        except LookupAPIError as e:
            logger.debug(f"{identifier} failed after {self.settings.max_attempts} attempts: {e}")
            if await self.store.update_status(identifier, IdentifierStatus.FAILED):
                state.processed += 1
                state.failed += 1
            return

        profile = extract_profile(response.payload)
        if profile.is_usable:
            # sink first: a failed write leaves the row pending, a repeated one is deduplicated
            await asyncio.to_thread(self.result_sink.write, identifier, profile)
            changed = await self.store.update_status(identifier, IdentifierStatus.SUCCESS, has_result=True)
            if changed:
                state.has_result += 1
                logger.info(f"{identifier} -> {profile.name}")
        else:
            changed = await self.store.update_status(identifier, IdentifierStatus.SUCCESS, no_result=True)

        if changed:
            state.processed += 1
            state.success += 1

    async def _status_ticker(self, state: RunState):
        """Report progress every `status_poll_interval` until the round stops"""
        interval = self.settings.status_poll_interval
        while not state.stopped:
            await asyncio.sleep(interval)
            if state.credentials.all_invalid:
                self.run_logger.warning("All credentials invalid, workers are stopping")
                break
            try:
                stats = await self.store.stats()
            except StoreError as e:
                logger.warning(f"Status ticker could not read stats: {e}")
                break

            batch_pct = state.processed / state.total * 100 if state.total else 100.0
            done = stats.success + stats.failed
            total_pct = done / stats.total * 100 if stats.total else 100.0
            self.run_logger.update_progress(
                state.processed,
                state.total,
                f"Batch {batch_pct:.1f}% | Total {total_pct:.1f}% | "
                f"Success {stats.success} | Failed {stats.failed}",
            )

"""
Run coordinator: import, main dispatch loop, retry phase and graceful shutdown
"""
import asyncio
import signal
import sys
import threading
from datetime import datetime
from typing import Optional

from loguru import logger

from config import Settings, get_settings
from credential_pool import CredentialPoolManager, CredentialSet, CredentialsExhaustedError
from database import StoreClosedError, StoreError, WorkQueueStore
from dispatcher import Dispatcher
from file_store import AccountStore, CredentialCache, FileManager, load_identifier_file
from lookup_client import LookupClient
from models import IdentifierStatus, ImportReport, RetrySummary, RunReport, RunStats
from provisioning_client import CredentialProvisioner, ProvisioningClient
from result_sink import ResultSink
from retry_controller import RetryController
from run_logger import LoguruRunLogger, RunLogger


class RunCoordinator:
    """Owns one crawler run from import to hand-off export"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[WorkQueueStore] = None,
        lookup_client: Optional[LookupClient] = None,
        provisioner: Optional[CredentialProvisioner] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.settings = settings or get_settings()
        self.run_logger = run_logger or LoguruRunLogger()
        self.file_manager = FileManager()

        self.store = store or WorkQueueStore(self.settings.database_path)
        self.lookup_client = lookup_client or LookupClient(self.settings)
        self.provisioner = provisioner or ProvisioningClient(self.settings)
        self.cache = CredentialCache(self.settings.credentials_file, self.file_manager)
        self.accounts = AccountStore(self.settings.accounts_file, self.file_manager)
        self.result_sink = ResultSink(self.settings.results_file, self.file_manager)

        self.pool = CredentialPoolManager(
            self.lookup_client, self.provisioner, self.cache, self.accounts,
            settings=self.settings, run_logger=self.run_logger,
        )
        self.dispatcher = Dispatcher(
            self.store, self.lookup_client, self.result_sink,
            settings=self.settings, run_logger=self.run_logger,
        )
        self.retry_controller = RetryController(
            self.store, self.pool, self.dispatcher,
            settings=self.settings, run_logger=self.run_logger,
        )

        self.shutdown_event = asyncio.Event()
        self.pool.cancel_event = self.shutdown_event
        self.shutdown_reason: Optional[str] = None
        self.phase = "idle"
        self.round = 0
        self._credentials: Optional[CredentialSet] = None
        self._final_stats: Optional[RunStats] = None
        self._shutdown_lock = threading.Lock()
        self._shutdown_done = False
        self._queue_loaded = False
        self._previous_handlers: dict = {}

    @property
    def final_stats(self) -> Optional[RunStats]:
        return self._final_stats

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def request_shutdown(self, reason: str = "requested"):
        """Ask the run to stop; safe to call repeatedly"""
        if self.shutdown_reason is None:
            self.shutdown_reason = reason
            logger.info(f"Shutdown requested ({reason})")
        self.shutdown_event.set()

    def install_signal_handlers(self):
        """First SIGINT/SIGTERM requests graceful shutdown, a second one exits immediately"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum} ({signal.Signals(signum).name}), initiating graceful shutdown")
            loop.call_soon_threadsafe(self.request_shutdown, "signal")

            def force_shutdown(signum, frame):
                logger.warning("Received second shutdown signal, forcing immediate exit")
                sys.exit(1)

            signal.signal(signum, force_shutdown)

        signals_to_handle = [signal.SIGTERM, signal.SIGINT]
        for sig in signals_to_handle:
            try:
                previous = signal.signal(sig, signal_handler)
                if previous is not None:
                    self._previous_handlers[sig] = previous
                logger.debug(f"Registered signal handler for {signal.Signals(sig).name}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to register signal handler for {signal.Signals(sig).name}: {e}")

    def restore_signal_handlers(self):
        """Put back the handlers that were active before install_signal_handlers"""
        for sig, handler in self._previous_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to restore signal handler for {signal.Signals(sig).name}: {e}")
        self._previous_handlers.clear()

    async def import_identifiers(self, path: Optional[str] = None, fresh: bool = True) -> ImportReport:
        """Parse the identifier file and load it into the work queue"""
        path = path or self.settings.identifiers_file
        report = await asyncio.to_thread(load_identifier_file, path, self.file_manager)
        pending = await self.store.load(report.identifiers, fresh=fresh)
        # an empty import has nothing to hand off; keep the file (or its sample) as is
        self._queue_loaded = report.valid > 0 or pending > 0
        self.run_logger.info(f"Loaded {report.valid} identifiers from {path} "
                             f"({report.invalid} invalid, {report.duplicates} duplicates), {pending} pending")
        return report

    async def _pause(self, seconds: float):
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _main_loop(self) -> bool:
        """
        Provision and dispatch until no pending work remains

        Returns:
            True if the loop stopped because credentials ran out
        """
        while not self.shutdown_requested:
            stats = await self.store.stats()
            if stats.pending == 0:
                logger.info("No pending identifiers left")
                return False

            self.round += 1
            self.phase = "provisioning"
            self.run_logger.info(f"Round {self.round}: {stats.pending} identifiers pending")

            try:
                self._credentials = await self.pool.ensure()
            except CredentialsExhaustedError as e:
                if self.shutdown_requested:
                    self.run_logger.info("Shutdown requested while acquiring credentials")
                    break
                self.run_logger.error(f"Stopping: {e}")
                return True

            if self.shutdown_requested:
                break

            self.phase = "dispatching"
            pending = await self.store.get_by_status(IdentifierStatus.PENDING)
            result = await self.dispatcher.dispatch(pending, self._credentials, self.shutdown_event)

            if self._credentials.invalid_tokens:
                await asyncio.to_thread(self.cache.remove, self._credentials.invalid_tokens)

            if self.shutdown_requested:
                break
            if result.processed == 0 and not result.credentials_exhausted:
                self.run_logger.error("Round made no progress, stopping")
                return False
            if result.processed == 0 and self.pool.provisioning_exhausted:
                self.run_logger.error("Round made no progress and no raw accounts remain, stopping")
                return True

            if result.credentials_exhausted and not self.shutdown_requested:
                await self._pause(self.settings.round_pause)

        return False

    async def run(self, fresh: bool = True, import_file: bool = True,
                  install_signals: bool = False) -> RunReport:
        """
        Execute a full run

        Args:
            fresh: Replace the work queue contents with the identifier file
            import_file: Load the identifier file before dispatching
            install_signals: Register SIGINT/SIGTERM handlers

        Returns:
            RunReport with final statistics
        """
        started_at = datetime.now()
        credentials_exhausted = False
        retry_summary: Optional[RetrySummary] = None

        if install_signals:
            self.install_signal_handlers()

        try:
            if import_file:
                self.phase = "importing"
                await self.import_identifiers(fresh=fresh)
            else:
                self._queue_loaded = True

            credentials_exhausted = await self._main_loop()

            if not self.shutdown_requested and not credentials_exhausted:
                self.phase = "retrying"
                retry_summary = await self.retry_controller.run(self.shutdown_event)
                credentials_exhausted = retry_summary.stop_reason == "credentials_exhausted"

            if self.shutdown_reason is None:
                if credentials_exhausted:
                    self.shutdown_reason = "credentials_exhausted"
                elif self.shutdown_requested:
                    self.shutdown_reason = "cancelled"
                else:
                    self.shutdown_reason = "completed"
        except StoreError as e:
            logger.error(f"Work queue store failed: {e}")
            self.shutdown_reason = self.shutdown_reason or "store_error"
        finally:
            final_stats = await self.shutdown()
            self.restore_signal_handlers()

        report = RunReport(
            stats=final_stats or RunStats(),
            started_at=started_at,
            finished_at=datetime.now(),
            dispatch_rounds=self.round,
            retry=retry_summary,
            credentials_exhausted=credentials_exhausted,
            shutdown_reason=self.shutdown_reason or "completed",
        )
        self._log_report(report)
        return report

    async def shutdown(self) -> Optional[RunStats]:
        """
        Export pending work, emit final statistics and release resources

        Runs at most once; later calls return the statistics of the first.
        """
        with self._shutdown_lock:
            if self._shutdown_done:
                return self._final_stats
            self._shutdown_done = True

        self.phase = "shutting_down"
        self.shutdown_event.set()

        try:
            if self._queue_loaded:
                exported = await self.store.export_pending(self.settings.handoff_path, self.file_manager)
                self.run_logger.info(f"Saved {exported} pending identifiers to {self.settings.handoff_path}")
            else:
                # the hand-off may be the identifier file itself
                self.run_logger.warning(f"Work queue was never loaded, leaving {self.settings.handoff_path} untouched")
            self._final_stats = await self.store.stats()
        except StoreClosedError as e:
            self.run_logger.error(f"Cannot read the work queue, store is closed: {e}")
        except StoreError as e:
            self.run_logger.error(f"Failed to export pending identifiers: {e}")

        if self._final_stats is not None:
            s = self._final_stats
            self.run_logger.info(f"Final stats: success {s.success} | failed {s.failed} | pending {s.pending} | "
                                 f"has_result {s.has_result} | no_result {s.no_result}")

        await asyncio.gather(
            self._safe_close(self.store, "Work queue store"),
            self._safe_close(self.lookup_client, "Lookup client"),
            self._safe_close(self.provisioner, "Provisioning client"),
        )
        self.phase = "stopped"
        return self._final_stats

    async def _safe_close(self, client, name: str):
        """Safely close a client with timeout and error handling"""
        try:
            if hasattr(client, "close"):
                await asyncio.wait_for(client.close(), timeout=self.settings.shutdown_timeout)
                logger.debug(f"{name} closed successfully")
        except asyncio.TimeoutError:
            logger.warning(f"Timeout while closing {name}")
        except Exception as e:
            logger.error(f"Error closing {name}: {e}")

    def _log_report(self, report: RunReport):
        s = report.stats
        success_pct = s.success / s.total * 100 if s.total else 0.0
        result_pct = s.has_result / s.success * 100 if s.success else 0.0
        self.run_logger.success(
            f"Run finished ({report.shutdown_reason}) in {report.duration_seconds:.1f}s: "
            f"{s.total} identifiers, success {s.success} ({success_pct:.1f}%), "
            f"with data {s.has_result} ({result_pct:.1f}% of success), "
            f"failed {s.failed}, pending {s.pending}"
        )

    def status(self) -> dict:
        """Snapshot of the coordinator state for monitoring"""
        credentials = self._credentials
        return {
            "phase": self.phase,
            "round": self.round,
            "shutdown_requested": self.shutdown_requested,
            "shutdown_reason": self.shutdown_reason,
            "credentials_valid": credentials.valid_count if credentials else 0,
            "credentials_total": credentials.total if credentials else 0,
            "accounts_used": self.pool.accounts_used,
            "accounts_total": self.pool.accounts_total,
            "accounts_remaining": self.pool.accounts_remaining,
            "provisioning_exhausted": self.pool.provisioning_exhausted,
        }

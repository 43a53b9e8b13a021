"""
Credential pool: the active credential set and its replenishment
"""
import asyncio
from typing import Iterable, List, Optional, Set, Tuple

import httpx
from loguru import logger

from config import Settings, get_settings
from file_store import AccountStore, CredentialCache
from lookup_client import LookupAPIError, LookupClient
from models import ProvisioningResult, RawAccount
from provisioning_client import CredentialProvisioner, ProvisioningError
from run_logger import LoguruRunLogger, RunLogger


class CredentialsExhaustedError(Exception):
    """No valid credential is available and no raw account is left to provision"""
    pass


class CredentialSet:
    """
    Credentials handed to one dispatch round

    Workers draw credentials round-robin and mark the ones the API rejects.
    `all_invalid` flips only once every known credential has been marked.
    """

    def __init__(self, tokens: Iterable[str]):
        self._tokens: List[str] = list(dict.fromkeys(t for t in tokens if t))
        self._invalid: Set[str] = set()
        self._index = 0
        self._all_invalid = not self._tokens
        self._lock = asyncio.Lock()

    @property
    def total(self) -> int:
        return len(self._tokens)

    @property
    def valid_count(self) -> int:
        return len(self._tokens) - len(self._invalid)

    @property
    def valid_tokens(self) -> List[str]:
        return [t for t in self._tokens if t not in self._invalid]

    @property
    def invalid_tokens(self) -> List[str]:
        return [t for t in self._tokens if t in self._invalid]

    @property
    def all_invalid(self) -> bool:
        return self._all_invalid

    def is_invalid(self, token: str) -> bool:
        return token in self._invalid

    async def next_valid(self) -> Optional[str]:
        """Next credential not yet marked invalid, or None"""
        async with self._lock:
            for _ in range(len(self._tokens)):
                token = self._tokens[self._index % len(self._tokens)]
                self._index += 1
                if token not in self._invalid:
                    return token
            return None

    async def mark_invalid(self, token: str) -> bool:
        """
        Record an auth rejection for a credential

        Returns:
            True if this call left the set with no valid credential
        """
        async with self._lock:
            if token not in self._tokens or token in self._invalid:
                return False
            self._invalid.add(token)
            logger.warning(f"Credential ...{token[-6:]} marked invalid "
                           f"({self.valid_count}/{self.total} still valid)")
            if len(self._invalid) == len(self._tokens) and not self._all_invalid:
                self._all_invalid = True
                return True
            return False


class CredentialPoolManager:
    """Validates cached credentials and provisions new ones from raw accounts"""

    def __init__(
        self,
        lookup_client: LookupClient,
        provisioner: CredentialProvisioner,
        cache: CredentialCache,
        accounts: AccountStore,
        settings: Optional[Settings] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.settings = settings or get_settings()
        self.lookup_client = lookup_client
        self.provisioner = provisioner
        self.cache = cache
        self.accounts = accounts
        self.run_logger = run_logger or LoguruRunLogger()
        self.cancel_event: Optional[asyncio.Event] = None

        self._attempted: Set[str] = set()
        self._accounts_used = 0
        self._accounts_total: Optional[int] = None
        self._accounts_remaining = 0
        self._exhausted = False

    @property
    def accounts_used(self) -> int:
        return self._accounts_used

    @property
    def accounts_total(self) -> int:
        return self._accounts_total or 0

    @property
    def accounts_remaining(self) -> int:
        return self._accounts_remaining

    @property
    def provisioning_exhausted(self) -> bool:
        return self._exhausted

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _pause(self, seconds: float) -> None:
        """Sleep between waves, waking early on cancellation"""
        if seconds <= 0:
            return
        if self.cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def probe_all(self, candidates: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Probe candidates in parallel, returning (valid, rejected)"""
        tokens = list(dict.fromkeys(CredentialCache.clean(t) for t in candidates))
        tokens = [t for t in tokens if t]
        if not tokens:
            return [], []

        semaphore = asyncio.Semaphore(self.settings.validation_concurrency)

        async def probe_with_semaphore(token: str) -> Optional[bool]:
            async with semaphore:
                try:
                    return await self.lookup_client.probe(token)
                except (httpx.TransportError, LookupAPIError) as e:
                    logger.warning(f"Could not verify credential ...{token[-6:]}: {e}")
                    return None

        results = await asyncio.gather(*[probe_with_semaphore(t) for t in tokens])

        valid = [t for t, ok in zip(tokens, results) if ok is True]
        rejected = [t for t, ok in zip(tokens, results) if ok is False]
        logger.info(f"Credential validation: {len(valid)}/{len(tokens)} valid, {len(rejected)} rejected")
        return valid, rejected

    async def validate(self, candidates: Iterable[str]) -> List[str]:
        """
        Probe candidate credentials against the lookup API

        Args:
            candidates: Credentials to check

        Returns:
            Credentials the API accepted, in input order
        """
        valid, _ = await self.probe_all(candidates)
        return valid

    async def _load_fresh_accounts(self) -> List[RawAccount]:
        accounts = await asyncio.to_thread(self.accounts.load)
        fresh = [a for a in accounts if a.to_line() not in self._attempted]
        if self._accounts_total is None:
            self._accounts_total = len(accounts)
        self._accounts_remaining = len(fresh)
        return fresh

    async def _provision_one(self, account: RawAccount) -> ProvisioningResult:
        self._attempted.add(account.to_line())
        try:
            token = await self.provisioner.provision(account)
        except ProvisioningError as e:
            logger.warning(f"Provisioning failed for {account.identifier}: {e}")
            return ProvisioningResult(account=account, error=str(e))

        await asyncio.to_thread(self.accounts.remove, account)
        self._accounts_used += 1
        return ProvisioningResult(account=account, token=token)

    async def _provision_wave(self, accounts: List[RawAccount]) -> List[str]:
        """Provision accounts in parallel chunks of `provisioning_batch_size`"""
        tokens: List[str] = []
        batch_size = self.settings.provisioning_batch_size

        for start in range(0, len(accounts), batch_size):
            if self._cancelled():
                break
            chunk = accounts[start:start + batch_size]
            results = await asyncio.gather(*[self._provision_one(a) for a in chunk])
            tokens.extend(r.token for r in results if r.ok)

        return tokens

    async def acquire(self, min_count: int) -> List[str]:
        """
        Provision credentials until `min_count` valid ones are collected

        Each wave requests `provisioning_multiplier` times the remaining need,
        validates what came back and merges it into the credential cache.

        Args:
            min_count: Number of valid credentials wanted

        Returns:
            Valid credentials collected (possibly fewer than requested)

        Raises:
            CredentialsExhaustedError: Nothing was collected and no accounts remain
        """
        collected: List[str] = []
        wave = 0

        while len(collected) < min_count and not self._cancelled():
            fresh = await self._load_fresh_accounts()
            if not fresh:
                self._exhausted = True
                self.run_logger.warning("No raw accounts left for provisioning")
                break

            wave += 1
            need = min_count - len(collected)
            batch = fresh[:need * self.settings.provisioning_multiplier]
            self.run_logger.info(f"Provisioning wave {wave}: {len(batch)} accounts for {need} credentials")

            tokens = await self._provision_wave(batch)
            if tokens:
                valid = await self.validate(tokens)
                new = [t for t in valid if t not in collected]
                collected.extend(new)
                if new:
                    await asyncio.to_thread(self.cache.merge, new)

            self._accounts_remaining = max(self._accounts_remaining - len(batch), 0)
            self.run_logger.info(f"Accounts used: {self.accounts_used}/{self.accounts_total}, "
                                 f"credentials collected: {len(collected)}/{min_count}")

            if len(collected) >= min_count:
                break
            if self._accounts_remaining == 0:
                self._exhausted = True
                break

            await self._pause(self.settings.provisioning_wave_pause)

        if not collected and self._exhausted:
            raise CredentialsExhaustedError("no valid credentials obtained and no raw accounts remain")

        return collected

    async def ensure(self, min_count: Optional[int] = None) -> CredentialSet:
        """
        Build a credential set with at least `min_count` valid credentials if possible

        Cached credentials are validated first (rejected ones are pruned from
        the cache); provisioning tops up the shortfall. A partial set is
        returned when the account source runs dry.

        Raises:
            CredentialsExhaustedError: No valid credential at all
        """
        min_count = self.settings.min_tokens if min_count is None else min_count

        cached = await asyncio.to_thread(self.cache.load)
        valid, rejected = await self.probe_all(cached)
        if rejected:
            await asyncio.to_thread(self.cache.remove, rejected)

        if len(valid) < min_count and not self._exhausted and not self._cancelled():
            target = max(min_count, self.settings.max_tokens)
            try:
                fresh = await self.acquire(target - len(valid))
            except CredentialsExhaustedError:
                if not valid:
                    raise
                fresh = []
                self.run_logger.warning(f"Provisioning exhausted, continuing with {len(valid)} credentials")
            valid.extend(t for t in fresh if t not in valid)

        if not valid:
            raise CredentialsExhaustedError("no valid credentials available")

        self.run_logger.info(f"Using {len(valid)} valid credentials")
        return CredentialSet(valid)

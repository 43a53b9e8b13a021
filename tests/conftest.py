"""Shared fixtures: temp-dir settings, work queue store, fake lookup API and provisioner."""

import json
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from config import Settings
from database import WorkQueueStore
from lookup_client import LookupClient
from models import RawAccount
from provisioning_client import ProvisioningError

PROFILE = {"persons": [{"displayName": "Jane Doe", "linkedInUrl": "https://www.linkedin.com/in/janedoe",
                        "location": "Berlin", "connectionCount": 500}]}
EMPTY = {"persons": []}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        identifiers_file=str(tmp_path / "emails.txt"),
        credentials_file=str(tmp_path / "tokens.txt"),
        accounts_file=str(tmp_path / "accounts.txt"),
        results_file=str(tmp_path / "hit.txt"),
        database_path=str(tmp_path / "emails.db"),
        lookup_base_url="https://lookup.test",
        lookup_path="/v1/people/search",
        probe_identifier="probe@example.com",
        requests_per_second=100000,
        max_concurrency=5,
        max_attempts=5,
        attempt_delay_min=0,
        attempt_delay_max=0,
        status_poll_interval=0.05,
        provisioning_wave_pause=0,
        retry_delay=0,
        round_pause=0,
        min_tokens=2,
        max_tokens=2,
        log_file_enabled=False,
    )


@pytest_asyncio.fixture
async def store(settings):
    store = WorkQueueStore(settings.database_path)
    await store.open()
    yield store
    await store.close()


class FakeLookupAPI:
    """
    In-memory lookup API behind httpx.MockTransport

    `scripts` maps an identifier to the (status, payload) answers it returns on
    successive calls; the last answer repeats. Unscripted identifiers get a
    200 without profile data. Tokens outside `valid_tokens` get a 401.
    """

    def __init__(self, valid_tokens=None):
        self.valid_tokens = set(valid_tokens or [])
        self.scripts: Dict[str, List[Tuple[int, dict]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.on_query: Optional[Callable[[str, int], None]] = None
        self.query_count = 0

    def script(self, identifier: str, *answers: Tuple[int, dict]):
        self.scripts[identifier] = list(answers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        identifier = request.url.params.get("email", "")
        token = request.headers.get("Authorization", "").replace("Bearer ", "", 1)
        self.calls.append((identifier, token))

        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": "unauthorized"})

        if identifier == "probe@example.com":
            return httpx.Response(200, json=EMPTY)

        self.query_count += 1
        answers = self.scripts.get(identifier)
        if answers:
            status, payload = answers.pop(0) if len(answers) > 1 else answers[0]
        else:
            status, payload = 200, EMPTY

        if self.on_query is not None:
            self.on_query(identifier, self.query_count)

        return httpx.Response(status, content=json.dumps(payload).encode(),
                              headers={"Content-Type": "application/json"})

    def queries_for(self, identifier: str) -> int:
        return sum(1 for i, _ in self.calls if i == identifier)


class FakeProvisioner:
    """Returns `token-<identifier>` for each account unless told to fail it"""

    def __init__(self, failing=None):
        self.failing = set(failing or [])
        self.calls: List[str] = []
        self.closed = False

    async def provision(self, account: RawAccount) -> str:
        self.calls.append(account.identifier)
        if account.identifier in self.failing:
            raise ProvisioningError(f"login failed for {account.identifier}", 401)
        return f"token-{account.identifier}"

    async def close(self):
        self.closed = True


class RecordingRunLogger:
    def __init__(self):
        self.records: List[Tuple[str, str]] = []
        self.progress: List[Tuple[int, int, str]] = []

    def info(self, message):
        self.records.append(("info", message))

    def warning(self, message):
        self.records.append(("warning", message))

    def error(self, message):
        self.records.append(("error", message))

    def success(self, message):
        self.records.append(("success", message))

    def update_progress(self, processed, total, message):
        self.progress.append((processed, total, message))

    def messages(self, level: str) -> List[str]:
        return [m for lvl, m in self.records if lvl == level]


@pytest.fixture
def fake_api() -> FakeLookupAPI:
    return FakeLookupAPI(valid_tokens={"good-1", "good-2"})


@pytest_asyncio.fixture
async def lookup_client(settings, fake_api):
    client = LookupClient(settings, transport=httpx.MockTransport(fake_api.handler))
    yield client
    await client.close()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def run_logger() -> RecordingRunLogger:
    return RecordingRunLogger()


def write_lines(path: str, lines: List[str]):
    with open(path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")


def read_lines(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read().splitlines()

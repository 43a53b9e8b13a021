"""
Profile decoding and the append-only result sink
"""
import json
import threading
from pathlib import Path
from typing import Any, Optional, Set

from loguru import logger

from file_store import FileManager
from models import ProfileData
from validator import normalize_identifier


def extract_profile(payload: Any) -> ProfileData:
    """
    Decode the first person of a lookup payload

    Args:
        payload: Parsed JSON body (dict) or raw bytes/str

    Returns:
        ProfileData, empty when the payload carries no person
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError:
            return ProfileData()

    if not isinstance(payload, dict):
        return ProfileData()

    persons = payload.get("persons")
    if not isinstance(persons, list) or not persons or not isinstance(persons[0], dict):
        return ProfileData()

    person = persons[0]
    connections = person.get("connectionCount")
    if isinstance(connections, float):
        connections = int(connections)

    return ProfileData(
        name=_as_text(person.get("displayName")),
        url=_as_text(person.get("linkedInUrl")),
        location=_as_text(person.get("location")),
        extra="" if connections is None else str(connections),
    )


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class ResultSink:
    """Writes `identifier|name|url|location|extra` lines, once per identifier"""

    def __init__(self, path: str, file_manager: Optional[FileManager] = None):
        self.path = path
        self.file_manager = file_manager or FileManager()
        self._written: Set[str] = set()
        self._lock = threading.Lock()
        self._load_existing()

    def _load_existing(self):
        """Seed the dedup set from a previous run's output"""
        if not Path(self.path).exists():
            return

        for line in self.file_manager.read_lines(self.path):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            identifier = line.split("|", 1)[0].strip()
            if identifier:
                self._written.add(normalize_identifier(identifier))

        if self._written:
            logger.info(f"Result sink loaded {len(self._written)} existing entries from {self.path}")

    def contains(self, identifier: str) -> bool:
        with self._lock:
            return normalize_identifier(identifier) in self._written

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._written)

    def write(self, identifier: str, profile: ProfileData) -> bool:
        """
        Append a profile line if the identifier has not been written yet

        Args:
            identifier: Identifier the profile belongs to
            profile: Decoded profile

        Returns:
            True if a line was written, False for a duplicate
        """
        key = normalize_identifier(identifier)
        fields = [identifier, profile.name, profile.url, profile.location, profile.extra]
        line = "|".join(field.replace("|", "/").replace("\n", " ") for field in fields)

        with self._lock:
            if key in self._written:
                logger.debug(f"Skip duplicate result for {identifier}")
                return False
            self.file_manager.append_line(self.path, line)
            self._written.add(key)

        logger.debug(f"Written result: {identifier} -> {profile.name}")
        return True

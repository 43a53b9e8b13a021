"""
Flat-file storage: identifier lists, credential cache, raw accounts and hand-off export
"""
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

from loguru import logger

from models import ImportReport, RawAccount
from validator import parse_identifiers

SAMPLE_IDENTIFIERS = """# Target email addresses
# One email per line (CSV rows use the last column)
example@example.com
"""

SAMPLE_ACCOUNTS = """# Format: email|password
# user1@example.com|password123
"""


class FileManager:
    """Line-oriented file access serialized by a single lock"""

    def __init__(self):
        self._lock = threading.Lock()

    def read_lines(self, path: str) -> List[str]:
        """Read all lines of a file without trailing newlines; undecodable bytes become U+FFFD"""
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read().splitlines()

    def write_lines(self, path: str, lines: Iterable[str]) -> None:
        """Replace a file with the given lines via a temp file and rename"""
        target = Path(path)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = target.with_name(target.name + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as handle:
                for line in lines:
                    handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)

    def append_line(self, path: str, line: str) -> None:
        """Append one line and force it to disk"""
        target = Path(path)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())


def load_identifier_file(path: str, file_manager: FileManager = None) -> ImportReport:
    """
    Read and validate an identifier file, creating a sample if it is missing

    Args:
        path: Identifier file path
        file_manager: Optional shared FileManager

    Returns:
        ImportReport with normalized unique identifiers
    """
    file_manager = file_manager or FileManager()
    if not Path(path).exists():
        logger.warning(f"Identifier file not found at {path}, creating sample file")
        file_manager.write_lines(path, SAMPLE_IDENTIFIERS.strip().splitlines())
        return ImportReport()

    report = parse_identifiers(file_manager.read_lines(path))
    logger.info(f"Parsed {report.valid} identifiers from {path} "
                f"({report.invalid} invalid, {report.duplicates} duplicates)")
    return report


def write_handoff(path: str, identifiers: List[str], file_manager: FileManager = None) -> None:
    """
    Overwrite the hand-off file with the pending identifiers

    Args:
        path: Hand-off file path
        identifiers: Identifiers still pending
        file_manager: Optional shared FileManager
    """
    file_manager = file_manager or FileManager()
    lines = [
        "# Pending identifiers for the next crawler run",
        f"# Exported on: {datetime.now().isoformat(timespec='seconds')}",
        f"# Total pending: {len(identifiers)}",
        "",
    ]
    lines.extend(identifiers)
    file_manager.write_lines(path, lines)
    logger.info(f"Exported {len(identifiers)} pending identifiers to {path}")


class CredentialCache:
    """Flat-file cache of bearer credentials"""

    BEARER_PREFIX = "Bearer "

    def __init__(self, path: str, file_manager: FileManager = None):
        self.path = path
        self.file_manager = file_manager or FileManager()
        self._lock = threading.Lock()

    @classmethod
    def clean(cls, token: str) -> str:
        token = token.strip()
        if token.startswith(cls.BEARER_PREFIX):
            token = token[len(cls.BEARER_PREFIX):].strip()
        return token

    def load(self) -> List[str]:
        """Load cached credentials in file order, without duplicates"""
        if not Path(self.path).exists():
            logger.debug(f"Credential cache {self.path} does not exist yet")
            return []

        tokens: List[str] = []
        seen = set()
        for line in self.file_manager.read_lines(self.path):
            if not line.strip() or line.strip().startswith("#"):
                continue
            token = self.clean(line)
            if token and token not in seen:
                seen.add(token)
                tokens.append(token)
        return tokens

    def merge(self, tokens: Iterable[str]) -> List[str]:
        """
        Union new credentials into the cache

        Args:
            tokens: Credentials to add

        Returns:
            Full cache contents after the merge
        """
        with self._lock:
            merged = self.load()
            seen = set(merged)
            added = 0
            for token in tokens:
                token = self.clean(token)
                if token and token not in seen:
                    seen.add(token)
                    merged.append(token)
                    added += 1

            self.file_manager.write_lines(self.path, merged)
        logger.info(f"Saved {len(merged)} credentials to {self.path} ({added} new)")
        return merged

    def remove(self, tokens: Iterable[str]) -> int:
        """Drop credentials from the cache, returning how many were removed"""
        to_remove = {self.clean(t) for t in tokens}
        if not to_remove:
            return 0

        with self._lock:
            current = self.load()
            kept = [t for t in current if t not in to_remove]
            removed = len(current) - len(kept)
            if removed:
                self.file_manager.write_lines(self.path, kept)
                logger.info(f"Pruned {removed} invalid credentials from {self.path}")
        return removed


class AccountStore:
    """Raw-account file; accounts are removed once exchanged for a credential"""

    def __init__(self, path: str, file_manager: FileManager = None):
        self.path = path
        self.file_manager = file_manager or FileManager()
        self._lock = threading.Lock()

    def load(self) -> List[RawAccount]:
        """Load `identifier|secret` pairs, creating a sample file if missing"""
        if not Path(self.path).exists():
            logger.warning(f"Account file not found at {self.path}, creating sample file")
            self.file_manager.write_lines(self.path, SAMPLE_ACCOUNTS.strip().splitlines())
            return []

        accounts: List[RawAccount] = []
        for line_number, line in enumerate(self.file_manager.read_lines(self.path), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split("|")
            if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
                logger.warning(f"Account file line {line_number} is malformed, skipped")
                continue

            accounts.append(RawAccount(identifier=parts[0], secret=parts[1]))

        return accounts

    def remove(self, account: RawAccount) -> None:
        """Rewrite the account file without the given account"""
        with self._lock:
            if not Path(self.path).exists():
                return

            kept = []
            for line in self.file_manager.read_lines(self.path):
                parts = line.strip().split("|")
                if (len(parts) == 2 and parts[0].strip() == account.identifier
                        and parts[1].strip() == account.secret):
                    continue
                kept.append(line)

            self.file_manager.write_lines(self.path, kept)
        logger.debug(f"Removed consumed account {account.identifier}")

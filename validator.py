"""
Identifier validation and identifier-file parsing
"""
import re
from typing import Iterable, Optional

from loguru import logger

from models import ImportReport

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")


def normalize_identifier(identifier: str) -> str:
    """Canonical form used as the work queue key"""
    return identifier.strip().lower()


def is_valid_identifier(identifier: str) -> bool:
    """Check an identifier against the address pattern"""
    return bool(EMAIL_PATTERN.match(identifier.strip()))


def parse_identifier_line(line: str) -> Optional[str]:
    """
    Extract the candidate identifier from one input line

    Args:
        line: Raw line from the identifier file

    Returns:
        The stripped candidate, or None for blank and comment lines
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    # CSV rows carry the identifier in the last column
    if "," in line:
        line = line.rsplit(",", 1)[1].strip()

    return line or None


def parse_identifiers(lines: Iterable[str]) -> ImportReport:
    """
    Validate, normalize and deduplicate identifier lines

    Args:
        lines: Lines of an identifier file

    Returns:
        ImportReport with unique normalized identifiers in file order
    """
    report = ImportReport()
    seen = set()

    for line_number, line in enumerate(lines, start=1):
        candidate = parse_identifier_line(line)
        if candidate is None:
            continue

        if not is_valid_identifier(candidate):
            report.invalid += 1
            report.errors.append(f"Line {line_number}: invalid identifier format: {candidate}")
            logger.debug(f"Line {line_number} - invalid identifier skipped: {candidate}")
            continue

        identifier = normalize_identifier(candidate)
        if identifier in seen:
            report.duplicates += 1
            continue

        seen.add(identifier)
        report.identifiers.append(identifier)

    if report.invalid:
        logger.warning(f"Skipped {report.invalid} invalid identifiers")
    if report.duplicates:
        logger.info(f"Removed {report.duplicates} duplicate identifiers")

    return report

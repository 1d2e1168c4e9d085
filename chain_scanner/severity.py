# chain_scanner/severity.py
import logging
from enum import Enum
from typing import Iterable, Optional

from cvss import CVSS2, CVSS3  # For scoring OSV severity entries that carry a vector

from .models import VulnerabilityRecord

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Ordinal severity scale. SAFE only describes a package with zero vulnerabilities."""

    CRITICAL = "CRITICAL"  # CVSS 9.0-10.0
    HIGH = "HIGH"  # CVSS 7.0-8.9
    MEDIUM = "MEDIUM"  # CVSS 4.0-6.9
    LOW = "LOW"  # below 4.0
    SAFE = "SAFE"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.SAFE: 0,
}

# Labels found in OSV database_specific.severity (GHSA uses MODERATE)
_LABEL_ALIASES = {
    "CRITICAL": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "MEDIUM": Severity.MEDIUM,
    "MODERATE": Severity.MEDIUM,
    "LOW": Severity.LOW,
}

CVSS_TYPES = ("CVSS_V3", "CVSS_V2")


def severity_from_score(score: float) -> Severity:
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    return Severity.LOW


def parse_score(entry_type: str, raw_score: str) -> Optional[float]:
    """
    Reads a CVSS score from an OSV severity entry.
    Plain decimals are parsed with float() (always '.' as separator, whatever the locale).
    Vector strings ('CVSS:3.1/AV:N/...' or a bare v2 vector) are scored with the cvss library.
    """
    if raw_score is None:
        return None
    text = str(raw_score).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass

    try:
        if text.startswith("CVSS:3"):
            return float(CVSS3(text).base_score)
        if entry_type == "CVSS_V2" and text.startswith("AV:"):
            return float(CVSS2(text).base_score)
    except Exception as e:
        logger.debug(f"Could not score CVSS vector '{text}': {e}")
    return None


def score_of(vuln: VulnerabilityRecord) -> Optional[float]:
    """First parseable CVSS_V3/CVSS_V2 score in list order, or None."""
    for entry in vuln.severity_entries:
        if entry.type not in CVSS_TYPES:
            continue
        score = parse_score(entry.type, entry.score)
        if score is not None:
            return score
    return None


def classify(vuln: VulnerabilityRecord) -> Severity:
    if vuln.database_specific_severity:
        label = vuln.database_specific_severity.strip().upper()
        severity = _LABEL_ALIASES.get(label)
        if severity is not None:
            return severity
        logger.debug(f"Unrecognised severity label '{label}' on {vuln.id}, falling back to CVSS")

    score = score_of(vuln)
    if score is not None:
        return severity_from_score(score)
    return Severity.MEDIUM


def highest_severity(vulnerabilities: Iterable[VulnerabilityRecord]) -> Severity:
    highest = Severity.SAFE
    for vuln in vulnerabilities:
        severity = classify(vuln)
        if severity.rank > highest.rank:
            highest = severity
    return highest


def parse_threshold(value: Optional[str]) -> Optional[Severity]:
    if not value:
        return None
    try:
        return Severity(value.strip().upper())
    except ValueError:
        return None

# chain_scanner/remediation.py
"""
Fixed-version lookup and remediation planning.

A package reached through a chain of length <= 1 (or with no chain information)
is upgraded directly. A package reached through a longer chain is fixed by
upgrading the chain's root. Both can apply to the same package.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from packaging.version import InvalidVersion, Version

from .models import Package, ScanResult, VulnerabilityRecord

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


def find_fixed_version(vuln: VulnerabilityRecord, package_name: str) -> str:
    """First 'fixed' event for package_name in source order, or UNKNOWN."""
    for affected in vuln.affected:
        if affected.package_name is not None and affected.package_name != package_name:
            continue
        for version_range in affected.ranges:
            for event in version_range.events:
                if event.fixed is not None:
                    return event.fixed
    return UNKNOWN


def _version_sort_key(value: str):
    try:
        return (0, Version(value), value)
    except InvalidVersion:
        # Maven style versions such as 2.17.1.Final still sort after the PEP 440 ones
        return (1, Version("0"), value)


def sort_versions(versions: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted(set(versions), key=_version_sort_key))


@dataclass(frozen=True)
class RemediationPlan:
    package: Package
    direct: bool
    transitive_roots: tuple[str, ...]
    fixed_versions: tuple[str, ...]

    @property
    def fix_available(self) -> bool:
        return bool(self.fixed_versions)

    @property
    def is_transitive(self) -> bool:
        return bool(self.transitive_roots)

    @property
    def fixed_version_label(self) -> str:
        return ", ".join(self.fixed_versions) if self.fixed_versions else UNKNOWN

    def instructions(self) -> list[str]:
        name = self.package.name
        lines = []
        if self.direct:
            if self.fix_available:
                lines.append(f"Upgrade {name} to version {self.fixed_version_label}")
            else:
                lines.append(f"No fixed version available for {name} at this time.")
        if self.transitive_roots:
            roots = ", ".join(self.transitive_roots)
            if self.fix_available:
                lines.append(
                    f"For transitive dependencies, upgrade {roots} to a version that uses "
                    f"{name} version {self.fixed_version_label}"
                )
            else:
                lines.append(f"Transitive dependency {name} has no fixed version available. Affected roots: {roots}")
        return lines


def plan_remediation(package: Package, fixed_versions: Iterable[str]) -> RemediationPlan:
    known = [v for v in fixed_versions if v and v != UNKNOWN]
    return RemediationPlan(
        package=package,
        direct=package.is_direct,
        transitive_roots=tuple(package.transitive_roots),
        fixed_versions=sort_versions(known),
    )


class RemediationResolver:
    """
    Resolves fixed versions for a ScanResult. When the structured data has no
    'fixed' marker, falls back to the scraper's cache and schedules a lookup.
    """

    def __init__(self, scraper=None):
        self.scraper = scraper

    def fixed_version_for(self, vuln: VulnerabilityRecord, package_name: str) -> str:
        fixed = find_fixed_version(vuln, package_name)
        if fixed != UNKNOWN or self.scraper is None:
            return fixed
        cached = self.scraper.lookup(vuln.id)
        if cached:
            return cached
        self.scraper.request(vuln.id)
        return UNKNOWN

    def fixed_versions_for(self, result: ScanResult) -> set[str]:
        fixed_versions = set()
        for vuln in result.vulnerabilities:
            fixed = self.fixed_version_for(vuln, result.package.name)
            if fixed != UNKNOWN:
                fixed_versions.add(fixed)
        return fixed_versions

    def plan_for(self, result: ScanResult) -> Optional[RemediationPlan]:
        if not result.vulnerable:
            return None
        return plan_remediation(result.package, self.fixed_versions_for(result))

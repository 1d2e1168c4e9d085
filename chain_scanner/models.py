# chain_scanner/models.py
from dataclasses import dataclass, field
from typing import Any, Optional

# A dependency chain lists package names root-first. Length 1 means "declared directly".
DependencyChain = tuple[str, ...]


@dataclass(frozen=True)
class PackageIdentity:
    name: str
    ecosystem: str
    version: str

    def to_osv_query(self) -> dict:
        """Single-item OSV query envelope."""
        return {
            "version": self.version,
            "package": {"name": self.name, "ecosystem": self.ecosystem},
        }

    def __str__(self) -> str:
        return f"{self.name}@{self.version} ({self.ecosystem})"


@dataclass(frozen=True)
class Package:
    identity: PackageIdentity
    chains: frozenset[DependencyChain] = frozenset()

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def ecosystem(self) -> str:
        return self.identity.ecosystem

    @property
    def version(self) -> str:
        return self.identity.version

    @property
    def is_direct(self) -> bool:
        # No path information counts as direct
        return not self.chains or any(len(chain) <= 1 for chain in self.chains)

    @property
    def is_transitive(self) -> bool:
        return any(len(chain) > 1 for chain in self.chains)

    @property
    def transitive_roots(self) -> list[str]:
        return sorted({chain[0] for chain in self.chains if len(chain) > 1})

    def sorted_chains(self) -> list[DependencyChain]:
        return sorted(self.chains, key=lambda chain: (len(chain), chain))


# --- OSV vulnerability records ---

def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


@dataclass(frozen=True)
class SeverityEntry:
    type: str
    score: str


@dataclass(frozen=True)
class RangeEvent:
    introduced: Optional[str] = None
    fixed: Optional[str] = None
    last_affected: Optional[str] = None
    limit: Optional[str] = None

    @classmethod
    def from_osv(cls, data: dict) -> "RangeEvent":
        return cls(
            introduced=_str_or_none(data.get("introduced")),
            fixed=_str_or_none(data.get("fixed")),
            last_affected=_str_or_none(data.get("last_affected")),
            limit=_str_or_none(data.get("limit")),
        )


@dataclass(frozen=True)
class AffectedRange:
    type: Optional[str] = None
    events: tuple[RangeEvent, ...] = ()

    @classmethod
    def from_osv(cls, data: dict) -> "AffectedRange":
        events = data.get("events")
        if not isinstance(events, list):
            events = []
        return cls(
            type=_str_or_none(data.get("type")),
            events=tuple(RangeEvent.from_osv(e) for e in events if isinstance(e, dict)),
        )


@dataclass(frozen=True)
class AffectedEntry:
    """One element of an OSV 'affected' list. package_name is None when OSV omits the package."""
    package_name: Optional[str] = None
    ecosystem: Optional[str] = None
    ranges: tuple[AffectedRange, ...] = ()
    versions: tuple[str, ...] = ()

    @classmethod
    def from_osv(cls, data: dict) -> "AffectedEntry":
        pkg = data.get("package")
        package_name = ecosystem = None
        if isinstance(pkg, dict):
            package_name = _str_or_none(pkg.get("name"))
            ecosystem = _str_or_none(pkg.get("ecosystem"))
        ranges = data.get("ranges")
        if not isinstance(ranges, list):
            ranges = []
        versions = data.get("versions")
        if not isinstance(versions, list):
            versions = []
        return cls(
            package_name=package_name,
            ecosystem=ecosystem,
            ranges=tuple(AffectedRange.from_osv(r) for r in ranges if isinstance(r, dict)),
            versions=tuple(str(v) for v in versions),
        )


@dataclass(frozen=True)
class VulnerabilityRecord:
    id: str
    summary: Optional[str] = None
    details: Optional[str] = None
    aliases: tuple[str, ...] = ()
    severity_entries: tuple[SeverityEntry, ...] = ()
    database_specific_severity: Optional[str] = None
    affected: tuple[AffectedEntry, ...] = ()
    modified: Optional[str] = None

    @property
    def is_stub(self) -> bool:
        """True for the id-only records the OSV batch endpoint returns."""
        return not (self.summary or self.details or self.severity_entries
                    or self.database_specific_severity or self.affected)

    @property
    def cve_id(self) -> Optional[str]:
        if self.id.upper().startswith("CVE-"):
            return self.id
        for alias in self.aliases:
            if alias.upper().startswith("CVE-"):
                return alias
        return None

    @classmethod
    def from_osv(cls, data: dict) -> Optional["VulnerabilityRecord"]:
        """
        Builds a record from one OSV vulnerability object.
        Returns None when the object has no usable id.
        """
        if not isinstance(data, dict):
            return None
        vuln_id = _str_or_none(data.get("id"))
        if not vuln_id:
            return None

        severity_entries = []
        raw_severity = data.get("severity")
        if isinstance(raw_severity, list):
            for entry in raw_severity:
                if isinstance(entry, dict) and entry.get("type") and entry.get("score") is not None:
                    severity_entries.append(SeverityEntry(type=str(entry["type"]), score=str(entry["score"])))

        db_severity = None
        db_specific = data.get("database_specific")
        if isinstance(db_specific, dict):
            db_severity = _str_or_none(db_specific.get("severity"))

        affected = data.get("affected")
        if not isinstance(affected, list):
            affected = []
        aliases = data.get("aliases")
        if not isinstance(aliases, list):
            aliases = []

        return cls(
            id=vuln_id,
            summary=_str_or_none(data.get("summary")),
            details=_str_or_none(data.get("details")),
            aliases=tuple(str(a) for a in aliases),
            severity_entries=tuple(severity_entries),
            database_specific_severity=db_severity,
            affected=tuple(AffectedEntry.from_osv(a) for a in affected if isinstance(a, dict)),
            modified=_str_or_none(data.get("modified")),
        )


def records_from_osv(vulns: Any) -> list[VulnerabilityRecord]:
    """Converts an OSV 'vulns' array, skipping entries without an id."""
    if not isinstance(vulns, list):
        return []
    records = []
    for item in vulns:
        record = VulnerabilityRecord.from_osv(item)
        if record is not None:
            records.append(record)
    return records


@dataclass(frozen=True)
class ScanResult:
    package: Package
    vulnerable: bool
    vulnerabilities: tuple[VulnerabilityRecord, ...] = field(default_factory=tuple)

    @classmethod
    def for_package(cls, package: Package, vulnerabilities: Optional[list[VulnerabilityRecord]]) -> "ScanResult":
        vulns = tuple(vulnerabilities or ())
        return cls(package=package, vulnerable=bool(vulns), vulnerabilities=vulns)

    @property
    def highest_severity(self):
        from .severity import highest_severity
        return highest_severity(self.vulnerabilities)

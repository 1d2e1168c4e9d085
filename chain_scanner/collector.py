# chain_scanner/collector.py
import logging
from collections import defaultdict
from typing import Iterable, Optional

from .errors import SourceUnavailable
from .models import DependencyChain, Package, PackageIdentity
from .sources import MAVEN, SourceAdapter

logger = logging.getLogger(__name__)


def normalize_version(version: str) -> str:
    """Strips a packaging suffix such as '@aar' from a version."""
    at_index = version.find("@")
    if at_index >= 0:
        version = version[:at_index]
    return version.strip()


def to_identity(name, ecosystem, version) -> Optional[PackageIdentity]:
    """Validates one raw source tuple. Returns None when it has to be discarded."""
    if not isinstance(name, str) or not name.strip():
        return None
    if not isinstance(version, str) or not version.strip():
        return None
    if not isinstance(ecosystem, str) or not ecosystem.strip():
        return None
    name = name.strip()
    if ecosystem.strip().lower() == MAVEN.lower():
        group, sep, artifact = name.partition(":")
        if not sep or not group.strip() or not artifact.strip():
            return None
    version = normalize_version(version)
    if not version:
        return None
    return PackageIdentity(name=name, ecosystem=ecosystem.strip(), version=version)


class DependencyCollector:
    """
    Merges the packages reported by several sources into one deduplicated list.
    Packages are keyed by PackageIdentity and their chains are unioned.
    """

    def _drain(self, source: SourceAdapter, grouped: dict) -> int:
        """Pulls every tuple from one source into `grouped`. Returns the number of valid packages."""
        accepted = 0
        discarded = 0
        try:
            for entry in source.fetch():
                try:
                    name, ecosystem, version, chain = entry
                except (TypeError, ValueError):
                    discarded += 1
                    continue
                identity = to_identity(name, ecosystem, version)
                if identity is None:
                    discarded += 1
                    continue
                chains = grouped[identity]
                if chain:
                    chains.add(tuple(str(part) for part in chain))
                accepted += 1
        except Exception as e:
            # Keep what was read before the failure; the other sources still run
            logger.warning(str(SourceUnavailable(source.name, e)), exc_info=logger.isEnabledFor(logging.DEBUG))
        if discarded:
            logger.info(f"Discarded {discarded} incomplete entries from source '{source.name}'")
        if accepted == 0:
            logger.debug(f"Source '{source.name}' reported no packages")
        return accepted

    def collect(self, sources: Iterable[SourceAdapter]) -> list[Package]:
        sources = list(sources)
        tree_sources = [s for s in sources if s.tree_aware]
        flat_sources = [s for s in sources if not s.tree_aware]
        grouped: dict[PackageIdentity, set[DependencyChain]] = defaultdict(set)

        tree_count = 0
        for source in tree_sources:
            tree_count += self._drain(source, grouped)

        if tree_count > 0:
            if flat_sources:
                logger.info(f"Build system sources reported {tree_count} packages, skipping {len(flat_sources)} flat source(s)")
        else:
            for source in flat_sources:
                self._drain(source, grouped)

        packages = [Package(identity=identity, chains=frozenset(chains)) for identity, chains in grouped.items()]
        packages.sort(key=lambda p: (p.name, p.version, p.ecosystem))
        logger.info(f"Collected {len(packages)} unique packages from {len(sources)} source(s)")
        return packages

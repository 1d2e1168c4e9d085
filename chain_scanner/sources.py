# chain_scanner/sources.py
"""
Dependency source adapters.

Every adapter exposes `name`, `tree_aware` and `fetch()`, which yields
(name, ecosystem, version, chain) tuples. Chains list ancestors root-first,
exclude the project itself and end with the package's own name.

Tree-aware adapters come from a build system's own dependency model. When any
of them reports a package, the collector skips the flat adapters.
"""
import json
import logging
import re
from pathlib import Path
from typing import Iterable, Iterator, Optional

from . import java_archive

logger = logging.getLogger(__name__)

MAVEN = "Maven"

SourceTuple = tuple[str, str, str, list[str]]


class SourceAdapter:
    name = "source"
    tree_aware = False

    def fetch(self) -> Iterable[SourceTuple]:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, tree_aware={self.tree_aware})"


class StaticSource(SourceAdapter):
    """Tuples handed over by the host as-is."""

    def __init__(self, entries: Iterable[SourceTuple], name: str = "static", tree_aware: bool = False):
        self.entries = list(entries)
        self.name = name
        self.tree_aware = tree_aware

    def fetch(self) -> Iterable[SourceTuple]:
        for name, ecosystem, version, chain in self.entries:
            yield name, ecosystem, version, list(chain or [])


# --- Maven dependency tree ---

# Tree branch markers printed by `mvn dependency:tree`, three characters per level
_TREE_CHILD = re.compile(r"^(?P<prefix>(?:[| ]  )*)(?:[+\\]- )(?P<coord>\S+)")
_TREE_ROOT = re.compile(r"^(?P<coord>[^\s:]+:[^\s:]+:[^\s:]+:[^\s:]+)\s*$")
_LOG_PREFIX = re.compile(r"^\[(?:INFO|WARNING)\]\s?")


def parse_maven_coordinate(coord: str) -> Optional[dict]:
    """
    Splits groupId:artifactId:type[:classifier]:version[:scope] into a node dict.
    """
    parts = coord.split(":")
    if len(parts) < 4:
        return None
    if len(parts) == 4:
        version = parts[3]  # project root line has no scope
    elif len(parts) == 5:
        version = parts[3]
    else:
        version = parts[4]
    return {"groupId": parts[0], "artifactId": parts[1], "version": version, "children": []}


def parse_maven_tree_text(text: str) -> list[dict]:
    """
    Parses `mvn dependency:tree` output into node dicts. Returns the project roots
    (one per module); their children are the direct dependencies.
    """
    roots: list[dict] = []
    stack: list[dict] = []
    for raw_line in text.splitlines():
        line = _LOG_PREFIX.sub("", raw_line.rstrip())
        if not line:
            continue
        child = _TREE_CHILD.match(line)
        if child:
            if not stack:
                continue
            depth = len(child.group("prefix")) // 3 + 1
            node = parse_maven_coordinate(child.group("coord"))
            if node is None or depth > len(stack):
                logger.debug(f"Skipping unparseable tree line: {raw_line}")
                continue
            del stack[depth:]
            stack[-1]["children"].append(node)
            stack.append(node)
            continue
        root = _TREE_ROOT.match(line)
        if root:
            node = parse_maven_coordinate(root.group("coord"))
            if node is not None:
                roots.append(node)
                stack = [node]
    return roots


class MavenTreeSource(SourceAdapter):
    """Walks Maven dependency trees. `roots` are the project nodes."""
    name = "maven-tree"
    tree_aware = True

    def __init__(self, roots: list[dict]):
        self.roots = roots

    @classmethod
    def from_text(cls, text: str) -> "MavenTreeSource":
        return cls(parse_maven_tree_text(text))

    @classmethod
    def from_json(cls, text: str) -> "MavenTreeSource":
        """Output of `mvn dependency:tree -DoutputType=json` (a single project root, or a list of them)."""
        data = json.loads(text)
        return cls(data if isinstance(data, list) else [data])

    @classmethod
    def from_file(cls, path: str) -> "MavenTreeSource":
        content = Path(path).read_text(encoding="utf-8", errors="ignore")
        if content.lstrip().startswith(("{", "[")):
            return cls.from_json(content)
        return cls.from_text(content)

    def _walk(self, node: dict, parent_chain: list[str]) -> Iterator[SourceTuple]:
        full_name = f"{node.get('groupId')}:{node.get('artifactId')}"
        chain = parent_chain + [full_name]
        yield full_name, MAVEN, node.get("version"), chain
        for child in node.get("children") or []:
            yield from self._walk(child, chain)

    def fetch(self) -> Iterable[SourceTuple]:
        for project in self.roots:
            # The project itself is not a dependency
            for direct in project.get("children") or []:
                yield from self._walk(direct, [])


class GradleLibrarySource(SourceAdapter):
    """Libraries resolved by Gradle's project model. No ancestry, but still the build system's view."""
    name = "gradle-libraries"
    tree_aware = True

    def __init__(self, libraries: list[dict]):
        self.libraries = libraries

    @classmethod
    def from_file(cls, path: str) -> "GradleLibrarySource":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{path} must contain a JSON list of libraries")
        return cls(data)

    def fetch(self) -> Iterable[SourceTuple]:
        for lib in self.libraries:
            group, artifact, version = lib.get("groupId"), lib.get("artifactId"), lib.get("version")
            if group and artifact and version:
                full_name = f"{group}:{artifact}"
                yield full_name, MAVEN, version, [full_name]


# --- Flat classpath enumeration ---

# Gradle cache path: .../modules-2/files-2.1/group/artifact/version/...
GRADLE_CACHE_PATTERN = re.compile(r".*/modules-2/files-2\.1/([^/]+)/([^/]+)/([^/]+)/.*")
_LIBRARY_PREFIXES = ("Gradle: ", "Maven: ")


def parse_library_entry(entry: str) -> Optional[tuple[str, str]]:
    """Returns (group:artifact, version) for a library name or a Gradle cache jar path."""
    entry = entry.strip()
    if not entry:
        return None
    clean_name = entry
    for prefix in _LIBRARY_PREFIXES:
        if clean_name.startswith(prefix):
            clean_name = clean_name[len(prefix):]
            break

    parts = clean_name.split(":")
    if len(parts) >= 3 and parts[0].strip() and parts[1].strip() and "/" not in parts[0]:
        return f"{parts[0]}:{parts[1]}", parts[2]

    match = GRADLE_CACHE_PATTERN.match(entry.replace("\\", "/"))
    if match:
        group, artifact, version = match.groups()
        return f"{group}:{artifact}", version
    return None


class LibraryNameSource(SourceAdapter):
    """Flat list of classpath libraries (names like 'Gradle: g:a:v@aar' or jar paths)."""
    name = "classpath-libraries"
    tree_aware = False

    def __init__(self, entries: Iterable[str]):
        self.entries = list(entries)

    @classmethod
    def from_file(cls, path: str) -> "LibraryNameSource":
        lines = Path(path).read_text(encoding="utf-8", errors="ignore").splitlines()
        return cls(line for line in lines if line.strip() and not line.lstrip().startswith("#"))

    def fetch(self) -> Iterable[SourceTuple]:
        for entry in self.entries:
            parsed = parse_library_entry(entry)
            if parsed is None:
                logger.debug(f"Could not read coordinates from library entry '{entry}'")
                continue
            full_name, version = parsed
            yield full_name, MAVEN, version, [full_name]


class JavaArchiveSource(SourceAdapter):
    """Libraries bundled inside a WAR/EAR/Spring Boot JAR."""
    name = "java-archive"
    tree_aware = False

    def __init__(self, path: str):
        self.path = path

    def fetch(self) -> Iterable[SourceTuple]:
        for gav in java_archive.analyze_archive(self.path):
            full_name = f"{gav['groupId']}:{gav['artifactId']}"
            yield full_name, MAVEN, gav["version"], [full_name]

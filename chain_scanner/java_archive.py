# chain_scanner/java_archive.py
# GAV extraction for libraries bundled in Java archives (WAR, EAR, Spring Boot JAR, plain JAR)
import io
import logging
import zipfile
from typing import Optional

from lxml import etree

logger = logging.getLogger(__name__)

# Where each archive flavour keeps its bundled libraries
NESTED_LIBRARY_DIRS = ("WEB-INF/lib/", "BOOT-INF/lib/", "lib/")
GAV_KEYS = ("groupId", "artifactId", "version")


def _decode(raw: bytes, member_name: str, library_filename: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning(f"{member_name} in {library_filename} is not valid UTF-8, trying 'latin-1'")
        return raw.decode("latin-1", errors="replace")


def _find_member(jar_zip: zipfile.ZipFile, suffix: str) -> Optional[str]:
    for member_name in jar_zip.namelist():
        if member_name.startswith("META-INF/maven/") and member_name.endswith(suffix):
            return member_name
    return None


def parse_pom_properties(content: str) -> dict:
    gav = {}
    for line in content.splitlines():
        line = line.strip()
        if line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key in GAV_KEYS and value.strip():
            gav[key] = value.strip()
    return gav


def parse_pom_xml(raw: bytes) -> dict:
    """Reads groupId/artifactId/version from a pom.xml, inheriting groupId and version from <parent>."""
    parser = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)
    root = etree.fromstring(raw, parser=parser)

    def child_text(element, tag_name):
        if element is None:
            return None
        for child in element:
            if isinstance(child.tag, str) and etree.QName(child).localname == tag_name and child.text:
                return child.text.strip()
        return None

    parent = None
    for child in root:
        if isinstance(child.tag, str) and etree.QName(child).localname == "parent":
            parent = child
            break

    gav = {key: child_text(root, key) for key in GAV_KEYS}
    if gav["groupId"] is None:
        gav["groupId"] = child_text(parent, "groupId")
    if gav["version"] is None:
        gav["version"] = child_text(parent, "version")
    return {k: v for k, v in gav.items() if v}


def extract_gav_from_jar_bytes(jar_bytes: bytes, library_filename: str = "unknown.jar") -> Optional[dict]:
    """
    Returns {'groupId', 'artifactId', 'version'} for a jar, preferring pom.properties over pom.xml.
    Returns None when neither yields a complete GAV.
    """
    try:
        with io.BytesIO(jar_bytes) as jar_bio, zipfile.ZipFile(jar_bio, "r") as jar_zip:
            props_path = _find_member(jar_zip, "/pom.properties")
            if props_path:
                gav = parse_pom_properties(_decode(jar_zip.read(props_path), props_path, library_filename))
                if all(gav.get(k) for k in GAV_KEYS):
                    return gav
                logger.debug(f"pom.properties in {library_filename} is incomplete: {gav}")

            pom_path = _find_member(jar_zip, "/pom.xml")
            if pom_path:
                gav = parse_pom_xml(jar_zip.read(pom_path))
                if all(gav.get(k) for k in GAV_KEYS):
                    return gav
                logger.debug(f"pom.xml in {library_filename} is incomplete: {gav}")
    except zipfile.BadZipFile:
        logger.warning(f"{library_filename} is not a valid ZIP/JAR file")
    except etree.XMLSyntaxError as e:
        logger.warning(f"Could not parse pom.xml in {library_filename}: {e}")
    return None


def analyze_archive(file_path: str) -> list[dict]:
    """
    Lists the GAVs of the libraries bundled in a WAR/EAR/Spring Boot JAR.
    A plain library JAR with no nested libraries yields its own GAV.
    Each dict also carries 'filename_in_archive'.
    """
    libraries = []
    archive_name = file_path.replace("\\", "/").rsplit("/", 1)[-1]
    with zipfile.ZipFile(file_path, "r") as archive:
        for member_name in archive.namelist():
            if not member_name.lower().endswith(".jar"):
                continue
            if not member_name.startswith(NESTED_LIBRARY_DIRS):
                continue
            gav = extract_gav_from_jar_bytes(archive.read(member_name), member_name)
            if gav:
                gav["filename_in_archive"] = member_name
                libraries.append(gav)
            else:
                logger.info(f"No GAV found for bundled library {member_name}")

    if not libraries:
        with open(file_path, "rb") as f:
            gav = extract_gav_from_jar_bytes(f.read(), archive_name)
        if gav:
            gav["filename_in_archive"] = archive_name
            libraries.append(gav)

    logger.info(f"Found {len(libraries)} libraries with GAV data in {archive_name}")
    return libraries

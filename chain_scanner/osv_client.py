# chain_scanner/osv_client.py
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import requests

from .config import ScannerConfig
from .errors import TransportFailure
from .models import PackageIdentity, VulnerabilityRecord, records_from_osv

logger = logging.getLogger(__name__)

# Mapping common ecosystem spellings to the names OSV expects
# OSV ecosystems list: https://osv.dev/docs/#tag/ecosystems
ECOSYSTEM_MAP = {
    "maven": "Maven",
    "gradle": "Maven",
    "python": "PyPI",
    "pypi": "PyPI",
    "node.js": "npm",
    "npm": "npm",
    "go": "Go",
    "nuget": "NuGet",
    "rubygems": "RubyGems",
    "cargo": "crates.io",
    "crates.io": "crates.io",
    "packagist": "Packagist",
}


def osv_ecosystem(ecosystem: str) -> str:
    """Maps to OSV's spelling; unknown names are passed through unchanged."""
    return ECOSYSTEM_MAP.get(ecosystem.strip().lower(), ecosystem)


def build_query(identity: PackageIdentity) -> dict:
    return {
        "version": identity.version,
        "package": {"name": identity.name, "ecosystem": osv_ecosystem(identity.ecosystem)},
    }


class OsvClient:
    """
    Client for the OSV.dev API.

    Every public query method fails soft: network errors, timeouts, non-200
    statuses and malformed bodies are logged and reported as None ("no data").
    Blocking calls can be run on the client's bounded worker pool through the
    submit_* variants. Each worker thread keeps its own requests.Session.
    """

    def __init__(self, config: Optional[ScannerConfig] = None,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.config = config or ScannerConfig()
        self._session_factory = session_factory
        self._local = threading.local()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.query_workers, thread_name_prefix="osv-query"
        )

    # --- Lifecycle ---

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
        return session

    # --- Transport ---

    def _request_json(self, method: str, url: str, payload: Optional[dict] = None):
        """Performs one request and returns the decoded JSON body. Raises TransportFailure."""
        try:
            if method == "GET":
                response = self.session.get(url, timeout=self.config.timeout)
            else:
                response = self.session.post(url, json=payload, timeout=self.config.timeout)
        except requests.exceptions.Timeout as e:
            raise TransportFailure(url, f"timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportFailure(url, str(e)) from e

        if response.status_code != 200:
            raise TransportFailure(url, "unexpected status", status_code=response.status_code)
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise TransportFailure(url, f"malformed JSON body: {e}", status_code=response.status_code) from e

    # --- Queries ---

    def query_one(self, identity: PackageIdentity) -> Optional[list[VulnerabilityRecord]]:
        """
        Queries OSV for a single package version.
        Returns the vulnerability list ([] when OSV answers '{}'), or None on any failure.
        """
        url = self.config.osv_api_url
        try:
            body = self._request_json("POST", url, build_query(identity))
            if not isinstance(body, dict):
                raise TransportFailure(url, f"expected a JSON object, got {type(body).__name__}")
        except TransportFailure as e:
            logger.warning(f"OSV query failed for {identity}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error querying OSV for {identity}: {e}", exc_info=True)
            return None
        return records_from_osv(body.get("vulns", []))

    def query_batch(self, identities: list[PackageIdentity]) -> Optional[list[Optional[list[VulnerabilityRecord]]]]:
        """
        Queries the OSV batch endpoint. The returned list is aligned with `identities`.
        Returns None when the whole batch failed, including a results array of the wrong length.
        """
        if not identities:
            return []
        url = self.config.osv_batch_url
        request_body = {"queries": [build_query(identity) for identity in identities]}
        try:
            body = self._request_json("POST", url, request_body)
            results = body.get("results") if isinstance(body, dict) else None
            if not isinstance(results, list):
                raise TransportFailure(url, "response has no 'results' array")
            if len(results) != len(identities):
                raise TransportFailure(url, f"expected {len(identities)} results, got {len(results)}")
        except TransportFailure as e:
            logger.warning(f"OSV batch query for {len(identities)} packages failed: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error during OSV batch query: {e}", exc_info=True)
            return None

        aligned = []
        for identity, result in zip(identities, results):
            if not isinstance(result, dict):
                logger.warning(f"Malformed batch result entry for {identity}")
                aligned.append(None)
                continue
            aligned.append(records_from_osv(result.get("vulns", [])))
        logger.info(f"OSV batch query returned {len(aligned)} result entries.")
        return aligned

    def fetch_vulnerability(self, vuln_id: str) -> Optional[VulnerabilityRecord]:
        """Fetches the full OSV record for one vulnerability ID, or None on error."""
        if not vuln_id:
            return None
        url = self.config.osv_vuln_url + vuln_id
        try:
            body = self._request_json("GET", url)
        except TransportFailure as e:
            logger.warning(f"Could not fetch OSV details for {vuln_id}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error fetching OSV details for {vuln_id}: {e}", exc_info=True)
            return None
        return VulnerabilityRecord.from_osv(body)

    # --- Pool-backed variants ---

    def submit_one(self, identity: PackageIdentity) -> Future:
        return self._executor.submit(self.query_one, identity)

    def submit_batch(self, identities: list[PackageIdentity]) -> Future:
        return self._executor.submit(self.query_batch, list(identities))

    def submit_vulnerability(self, vuln_id: str) -> Future:
        return self._executor.submit(self.fetch_vulnerability, vuln_id)

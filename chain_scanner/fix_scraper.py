# chain_scanner/fix_scraper.py
"""
Best-effort fixed-version lookup on the osv.dev web page of a vulnerability.

Used only when the structured record carries no 'fixed' event. Results live in
a scan-scoped cache that the orchestrator clears at the start of every scan.
Nothing in here ever raises to the caller.
"""
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

import requests

from .config import ScannerConfig
from .errors import ScrapeFailure

logger = logging.getLogger(__name__)

# "Fixed" followed by up to 100 tags or whitespace runs, then a version number
FIXED_VERSION_PATTERN = re.compile(r"Fixed(?:<[^>]+>|\s){1,100}(\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)


def extract_fixed_version(html: str) -> Optional[str]:
    match = FIXED_VERSION_PATTERN.search(html or "")
    return match.group(1) if match else None


class FixVersionScraper:

    def __init__(self, config: Optional[ScannerConfig] = None,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.config = config or ScannerConfig()
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._cache: dict[str, str] = {}
        self._in_flight: set[str] = set()
        self._pending: set[Future] = set()
        # Bumped by clear() so lookups started for an earlier scan do not fill the new cache
        self._generation = 0
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.scrape_workers, thread_name_prefix="fix-scrape"
        )

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def clear(self):
        with self._lock:
            self._generation += 1
            self._cache.clear()
            self._in_flight.clear()

    def lookup(self, vuln_id: str) -> Optional[str]:
        with self._lock:
            return self._cache.get(vuln_id)

    def is_in_flight(self, vuln_id: str) -> bool:
        with self._lock:
            return vuln_id in self._in_flight

    def _fetch_page(self, vuln_id: str) -> str:
        url = self.config.osv_web_url + vuln_id
        session = self._session_factory()
        try:
            response = session.get(url, timeout=self.config.timeout)
            response.raise_for_status()
            return response.text
        except requests.exceptions.RequestException as e:
            raise ScrapeFailure(f"Could not fetch {url}: {e}") from e
        finally:
            session.close()

    def fetch(self, vuln_id: str, generation: Optional[int] = None) -> Optional[str]:
        """Fetches and parses the page now. Returns the version or None."""
        try:
            version = extract_fixed_version(self._fetch_page(vuln_id))
        except ScrapeFailure as e:
            logger.debug(str(e))
            return None
        except Exception as e:
            logger.debug(f"Fixed-version scrape for {vuln_id} failed: {e}")
            return None
        if version:
            with self._lock:
                if generation is not None and generation != self._generation:
                    return None
                self._cache[vuln_id] = version
            logger.debug(f"Scraped fixed version {version} for {vuln_id}")
        return version

    def _run(self, vuln_id: str, on_found, generation: int) -> Optional[str]:
        try:
            version = self.fetch(vuln_id, generation)
            if version and on_found is not None:
                try:
                    on_found(vuln_id, version)
                except Exception as e:
                    logger.debug(f"Fixed-version callback for {vuln_id} raised: {e}")
            return version
        finally:
            with self._lock:
                if generation == self._generation:
                    self._in_flight.discard(vuln_id)

    def request(self, vuln_id: str, on_found: Optional[Callable[[str, str], None]] = None) -> Optional[Future]:
        """
        Schedules a background lookup unless the id is cached or already being fetched.
        Returns the Future of the scheduled lookup, or None when nothing was scheduled.
        """
        if not vuln_id:
            return None
        with self._lock:
            if vuln_id in self._cache or vuln_id in self._in_flight:
                return None
            self._in_flight.add(vuln_id)
            generation = self._generation
        try:
            future = self._executor.submit(self._run, vuln_id, on_found, generation)
        except RuntimeError as e:
            # Executor already shut down
            logger.debug(f"Could not schedule fixed-version scrape for {vuln_id}: {e}")
            with self._lock:
                self._in_flight.discard(vuln_id)
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Waits for scheduled lookups to finish. Returns False if some were still running at the timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

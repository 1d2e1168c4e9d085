# chain_scanner/orchestrator.py
"""
Top-level scan: collect dependencies, query OSV in batches, correlate the
answers back onto packages and emit one ScanResult per package.

    Idle -> Collecting -> Querying -> Correlating -> Done
    Collecting or Querying -> Failed    (catastrophic errors only)
    any running state -> Cancelled      (after cancel())

Per-package query failures never fail the scan; they produce a ScanResult with
no vulnerabilities and a warning in the log.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional

from .collector import DependencyCollector
from .config import ScannerConfig
from .errors import OrchestrationFailure, ScanAlreadyRunning
from .fix_scraper import FixVersionScraper
from .models import Package, PackageIdentity, ScanResult, VulnerabilityRecord
from .osv_client import OsvClient
from .remediation import RemediationResolver
from .sources import SourceAdapter

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    QUERYING = "querying"
    CORRELATING = "correlating"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanOutcome:
    """Completion signal for background scans."""
    success: bool
    result_count: int = 0
    vulnerable_count: int = 0
    cancelled: bool = False
    error: Optional[BaseException] = None


def chunked(packages: list[Package], size: int) -> list[list[Package]]:
    return [packages[i:i + size] for i in range(0, len(packages), size)]


class ScanOrchestrator:

    def __init__(self, sources: Iterable[SourceAdapter], client: Optional[OsvClient] = None,
                 config: Optional[ScannerConfig] = None, collector: Optional[DependencyCollector] = None,
                 scraper: Optional[FixVersionScraper] = None):
        self.config = config or (client.config if client is not None else ScannerConfig())
        self.sources = list(sources)
        self._owns_client = client is None
        self.client = client or OsvClient(self.config)
        self.collector = collector or DependencyCollector()
        self._owns_scraper = scraper is None and self.config.scrape_fixed_versions
        if self._owns_scraper:
            scraper = FixVersionScraper(self.config)
        self.scraper = scraper
        self.remediation = RemediationResolver(self.scraper)

        self._state = ScanState.IDLE
        self._state_lock = threading.Lock()
        self._running = threading.Lock()
        self._cancelled = threading.Event()
        self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan")
        # Scan-scoped: one detail fetch per vulnerability id per scan
        self._detail_lock = threading.Lock()
        self._detail_futures: dict[str, Future] = {}

    # --- State ---

    @property
    def state(self) -> ScanState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ScanState):
        with self._state_lock:
            logger.debug(f"Scan state {self._state.value} -> {state.value}")
            self._state = state

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def cancel(self):
        """Abandons the running scan. Results that arrive afterwards are discarded."""
        if self.is_running:
            logger.info("Cancelling scan")
        self._cancelled.set()

    def close(self):
        self.cancel()
        self._background.shutdown(wait=False, cancel_futures=True)
        if self._owns_client:
            self.client.close()
        if self._owns_scraper and self.scraper is not None:
            self.scraper.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- Public scan entry points ---

    def stream(self) -> Iterator[ScanResult]:
        """
        Lazily yields one ScanResult per distinct package, in batch completion order.
        Raises ScanAlreadyRunning if another scan is in flight on this instance and
        OrchestrationFailure if the scan cannot proceed.
        """
        if not self._running.acquire(blocking=False):
            logger.warning("Scan requested while another scan is still running, rejecting")
            raise ScanAlreadyRunning()
        try:
            yield from self._run_scan()
        finally:
            self._running.release()

    def scan(self) -> list[ScanResult]:
        return list(self.stream())

    def scan_in_background(self, on_result: Optional[Callable[[ScanResult], None]] = None,
                           on_complete: Optional[Callable[[ScanOutcome], None]] = None) -> Future:
        """
        Runs the scan on a background thread. on_result is called once per package and
        on_complete once at the end, both from the scan thread. The returned Future
        resolves to the ScanOutcome.
        """
        if self.is_running:
            outcome = ScanOutcome(success=False, error=ScanAlreadyRunning())
            _notify(on_complete, outcome)
            future = Future()
            future.set_result(outcome)
            return future
        return self._background.submit(self._drain_to_callbacks, on_result, on_complete)

    def _drain_to_callbacks(self, on_result, on_complete) -> ScanOutcome:
        count = vulnerable = 0
        try:
            for result in self.stream():
                count += 1
                if result.vulnerable:
                    vulnerable += 1
                _notify(on_result, result)
        except OrchestrationFailure as e:
            logger.error(f"Scan failed: {e}")
            outcome = ScanOutcome(success=False, result_count=count, vulnerable_count=vulnerable, error=e)
        except Exception as e:
            logger.error(f"Unexpected error during scan: {e}", exc_info=True)
            outcome = ScanOutcome(success=False, result_count=count, vulnerable_count=vulnerable,
                                  error=OrchestrationFailure(str(e)))
        else:
            cancelled = self.state == ScanState.CANCELLED
            outcome = ScanOutcome(success=not cancelled, result_count=count,
                                  vulnerable_count=vulnerable, cancelled=cancelled)
        _notify(on_complete, outcome)
        return outcome

    # --- Scan pipeline ---

    def _reset_scan_scope(self):
        self._cancelled.clear()
        with self._detail_lock:
            self._detail_futures = {}
        if self.scraper is not None:
            self.scraper.clear()

    def _run_scan(self) -> Iterator[ScanResult]:
        self._reset_scan_scope()
        self._set_state(ScanState.COLLECTING)
        try:
            packages = self.collector.collect(self.sources)
        except Exception as e:
            self._set_state(ScanState.FAILED)
            raise OrchestrationFailure(f"Dependency collection failed: {e}") from e

        if self._cancelled.is_set():
            self._set_state(ScanState.CANCELLED)
            return
        if not packages:
            logger.info("No dependencies to scan")
            self._set_state(ScanState.DONE)
            return

        self._set_state(ScanState.QUERYING)
        batches = chunked(packages, self.config.batch_size)
        logger.info(f"Scanning {len(packages)} packages in {len(batches)} batch(es)")
        executor = ThreadPoolExecutor(max_workers=min(self.config.batch_workers, len(batches)),
                                      thread_name_prefix="osv-batch")
        futures = []
        try:
            try:
                futures = [executor.submit(self._scan_batch, batch) for batch in batches]
            except Exception as e:
                self._set_state(ScanState.FAILED)
                raise OrchestrationFailure(f"Could not dispatch batch queries: {e}") from e

            for future in as_completed(futures):
                if self._cancelled.is_set():
                    break
                try:
                    results = future.result()
                except Exception as e:
                    self._set_state(ScanState.FAILED)
                    raise OrchestrationFailure(f"Batch processing failed: {e}") from e
                self._set_state(ScanState.CORRELATING)
                for result in results:
                    if self._cancelled.is_set():
                        break
                    yield result

            if self._cancelled.is_set():
                logger.info("Scan cancelled, discarding outstanding results")
                self._set_state(ScanState.CANCELLED)
            else:
                self._set_state(ScanState.DONE)
        finally:
            for future in futures:
                future.cancel()
            executor.shutdown(wait=False)

    def _scan_batch(self, batch: list[Package]) -> list[ScanResult]:
        identities = [package.identity for package in batch]
        responses = self.client.query_batch(identities)
        if responses is None:
            logger.warning(f"Batch query for {len(batch)} packages failed, querying them one at a time")
            responses = self._query_individually(identities)

        results = []
        for package, vulns in zip(batch, responses):
            if self._cancelled.is_set():
                break
            if vulns is None:
                logger.warning(f"No vulnerability data for {package.identity}")
                vulns = []
            elif vulns and self.config.hydrate_details:
                vulns = self._hydrate(vulns)
            results.append(ScanResult.for_package(package, vulns))
        return results

    def _query_individually(self, identities: list[PackageIdentity]) -> list[Optional[list[VulnerabilityRecord]]]:
        futures = [self.client.submit_one(identity) for identity in identities]
        responses = []
        for identity, future in zip(identities, futures):
            try:
                responses.append(future.result())
            except Exception as e:
                logger.warning(f"Single query for {identity} failed: {e}")
                responses.append(None)
        return responses

    def _detail_future(self, vuln_id: str) -> Future:
        with self._detail_lock:
            future = self._detail_futures.get(vuln_id)
            if future is None:
                future = self.client.submit_vulnerability(vuln_id)
                self._detail_futures[vuln_id] = future
            return future

    def _hydrate(self, vulns: list[VulnerabilityRecord]) -> list[VulnerabilityRecord]:
        """Replaces id-only batch records with full OSV records; keeps the stub when the fetch fails."""
        pending = {v.id: self._detail_future(v.id) for v in vulns if v.is_stub}
        if not pending:
            return vulns
        hydrated = []
        for vuln in vulns:
            future = pending.get(vuln.id)
            if future is None:
                hydrated.append(vuln)
                continue
            try:
                full = future.result()
            except Exception as e:
                logger.warning(f"Detail fetch for {vuln.id} failed: {e}")
                full = None
            hydrated.append(full or vuln)
        return hydrated


def _notify(callback, value):
    if callback is None:
        return
    try:
        callback(value)
    except Exception as e:
        logger.error(f"Scan listener raised: {e}", exc_info=True)

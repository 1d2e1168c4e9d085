import sys
import threading
import unittest
from pathlib import Path
from unittest import mock

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from chain_scanner.config import ScannerConfig
from chain_scanner.errors import OrchestrationFailure, ScanAlreadyRunning
from chain_scanner.orchestrator import ScanOrchestrator, ScanState, chunked
from chain_scanner.osv_client import OsvClient
from chain_scanner.sources import StaticSource

from fakes import FakeResponse, FakeSession, osv_handler

LOG4J_DETAIL = {
    "id": "GHSA-jfh8-c2jp-5v3q",
    "summary": "Remote code injection in Log4j",
    "aliases": ["CVE-2021-44228"],
    "database_specific": {"severity": "CRITICAL"},
    "affected": [{
        "package": {"name": "org.apache.logging.log4j:log4j-core", "ecosystem": "Maven"},
        "ranges": [{"type": "ECOSYSTEM", "events": [{"introduced": "2.0-beta9"}, {"fixed": "2.15.0"}]}],
    }],
}


def artifact_vuln_id(query):
    """Each package gets a vulnerability named after its artifact so alignment can be checked."""
    return "OSV-" + query["package"]["name"].split(":")[1]


def per_package_batch(queries):
    return FakeResponse(200, {"results": [{"vulns": [{"id": artifact_vuln_id(q)}]} for q in queries]})


class OrchestratorTestCase(unittest.TestCase):
    def make_orchestrator(self, entries, handler, **config):
        config.setdefault("hydrate_details", False)
        self.config = ScannerConfig(**config)
        self.session = FakeSession(handler)
        self.client = OsvClient(self.config, session_factory=lambda: self.session)
        sources = [StaticSource(e) if isinstance(e, list) else e for e in entries]
        orchestrator = ScanOrchestrator(sources, client=self.client, config=self.config)
        self.addCleanup(self.client.close)
        self.addCleanup(orchestrator.close)
        return orchestrator


class TestScanOrchestrator(OrchestratorTestCase):
    def test_chunking(self):
        self.assertEqual([len(c) for c in chunked(list(range(7)), 3)], [3, 3, 1])

    def test_batch_results_follow_query_order(self):
        entries = [[(f"org.example:lib{i}", "Maven", "1.0", []) for i in range(5)]]
        orchestrator = self.make_orchestrator(entries, osv_handler(batch=per_package_batch), batch_size=2)

        results = orchestrator.scan()

        self.assertEqual(len(results), 5)
        for result in results:
            self.assertTrue(result.vulnerable)
            self.assertEqual([v.id for v in result.vulnerabilities],
                             ["OSV-" + result.package.name.split(":")[1]])
        self.assertEqual(len(self.session.calls_to("/querybatch")), 3)
        self.assertEqual(orchestrator.state, ScanState.DONE)

    def test_server_error_for_one_package_degrades_to_no_data(self):
        def single(query):
            if query["package"]["name"] == "org.example:broken":
                return FakeResponse(500, text="Internal Server Error")
            return FakeResponse(200, {"vulns": [{"id": artifact_vuln_id(query), "summary": "found"}]})

        entries = [[
            ("org.example:first", "Maven", "1.0", []),
            ("org.example:broken", "Maven", "1.0", []),
            ("org.example:last", "Maven", "1.0", []),
        ]]
        handler = osv_handler(batch=lambda queries: FakeResponse(500, text="Internal Server Error"), single=single)
        orchestrator = self.make_orchestrator(entries, handler)

        results = {r.package.name: r for r in orchestrator.scan()}

        self.assertEqual(len(results), 3)
        self.assertFalse(results["org.example:broken"].vulnerable)
        self.assertEqual(results["org.example:broken"].vulnerabilities, ())
        self.assertTrue(results["org.example:first"].vulnerable)
        self.assertTrue(results["org.example:last"].vulnerable)
        self.assertEqual(orchestrator.state, ScanState.DONE)

    def test_end_to_end_empty_answer(self):
        first = StaticSource([("org.slf4j:slf4j-api", "Maven", "2.0.12", [])], name="first")
        second = StaticSource([("org.slf4j:slf4j-api", "Maven", "2.0.12", ["org.example:app"])], name="second")
        orchestrator = self.make_orchestrator(
            [first, second], osv_handler(batch=lambda queries: FakeResponse(200, {"results": [{}]}))
        )

        results = orchestrator.scan()

        self.assertEqual(len(results), 1)
        result = results[0]
        self.assertEqual(result.package.chains, frozenset({("org.example:app",)}))
        self.assertFalse(result.vulnerable)
        self.assertEqual(result.vulnerabilities, ())
        self.assertEqual(len(self.session.calls_to("/querybatch")), 1)

    def test_no_packages(self):
        orchestrator = self.make_orchestrator([[]], osv_handler())
        self.assertEqual(orchestrator.scan(), [])
        self.assertEqual(self.session.calls, [])
        self.assertEqual(orchestrator.state, ScanState.DONE)

    def test_batch_stubs_are_hydrated_once_per_scan(self):
        def batch(queries):
            return FakeResponse(200, {"results": [{"vulns": [{"id": "GHSA-jfh8-c2jp-5v3q"}]} for _ in queries]})

        entries = [[
            ("org.apache.logging.log4j:log4j-core", "Maven", "2.14.1", []),
            ("org.apache.logging.log4j:log4j-core", "Maven", "2.14.0", []),
        ]]
        handler = osv_handler(batch=batch, details=lambda vuln_id: FakeResponse(200, LOG4J_DETAIL))
        orchestrator = self.make_orchestrator(entries, handler, hydrate_details=True)

        results = orchestrator.scan()

        for result in results:
            self.assertEqual(result.vulnerabilities[0].summary, "Remote code injection in Log4j")
        self.assertEqual(len(self.session.calls_to("/vulns/GHSA-jfh8-c2jp-5v3q")), 1)

        plan = orchestrator.remediation.plan_for(results[0])
        self.assertEqual(plan.instructions(),
                         ["Upgrade org.apache.logging.log4j:log4j-core to version 2.15.0"])

    def test_failed_hydration_keeps_stub(self):
        batch = lambda queries: FakeResponse(200, {"results": [{"vulns": [{"id": "GHSA-x"}]}]})
        handler = osv_handler(batch=batch, details=lambda vuln_id: FakeResponse(503, text="unavailable"))
        orchestrator = self.make_orchestrator([[("org.example:lib", "Maven", "1.0", [])]], handler,
                                              hydrate_details=True)
        results = orchestrator.scan()
        self.assertTrue(results[0].vulnerable)
        self.assertTrue(results[0].vulnerabilities[0].is_stub)

    def test_collection_failure_fails_the_scan(self):
        collector = mock.Mock()
        collector.collect.side_effect = RuntimeError("model corrupted")
        config = ScannerConfig()
        client = mock.Mock(spec=OsvClient)
        orchestrator = ScanOrchestrator([], client=client, config=config, collector=collector)
        self.addCleanup(orchestrator.close)

        with self.assertRaises(OrchestrationFailure):
            orchestrator.scan()
        self.assertEqual(orchestrator.state, ScanState.FAILED)
        self.assertFalse(orchestrator.is_running)


class TestScanLifecycle(OrchestratorTestCase):
    def many_packages(self, count=6):
        return [[(f"org.example:lib{i}", "Maven", "1.0", []) for i in range(count)]]

    def test_second_scan_is_rejected_while_running(self):
        orchestrator = self.make_orchestrator(self.many_packages(), osv_handler(batch=per_package_batch),
                                              batch_size=1, batch_workers=1)
        stream = orchestrator.stream()
        next(stream)

        with self.assertRaises(ScanAlreadyRunning):
            orchestrator.scan()
        outcome = orchestrator.scan_in_background().result(timeout=5)
        self.assertFalse(outcome.success)
        self.assertIsInstance(outcome.error, ScanAlreadyRunning)

        stream.close()
        self.assertFalse(orchestrator.is_running)
        self.assertEqual(len(orchestrator.scan()), 6)

    def test_cancel_discards_remaining_results(self):
        orchestrator = self.make_orchestrator(self.many_packages(), osv_handler(batch=per_package_batch),
                                              batch_size=1, batch_workers=1)
        stream = orchestrator.stream()
        first = next(stream)
        orchestrator.cancel()

        self.assertEqual(list(stream), [])
        self.assertTrue(first.vulnerable)
        self.assertEqual(orchestrator.state, ScanState.CANCELLED)

        # The next scan starts fresh
        self.assertEqual(len(orchestrator.scan()), 6)
        self.assertEqual(orchestrator.state, ScanState.DONE)

    def test_background_scan_delivers_results_and_completion(self):
        orchestrator = self.make_orchestrator(self.many_packages(3), osv_handler(batch=per_package_batch))
        received = []
        done = threading.Event()
        outcomes = []

        def on_complete(outcome):
            outcomes.append(outcome)
            done.set()

        future = orchestrator.scan_in_background(on_result=received.append, on_complete=on_complete)
        outcome = future.result(timeout=5)

        self.assertTrue(done.wait(5))
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.result_count, 3)
        self.assertEqual(outcome.vulnerable_count, 3)
        self.assertEqual(outcomes, [outcome])
        self.assertEqual(sorted(r.package.name for r in received),
                         ["org.example:lib0", "org.example:lib1", "org.example:lib2"])

    def test_listener_errors_do_not_stop_the_scan(self):
        orchestrator = self.make_orchestrator(self.many_packages(2), osv_handler(batch=per_package_batch))

        def bad_listener(result):
            raise ValueError("listener bug")

        with self.assertLogs("chain_scanner.orchestrator", level="ERROR"):
            outcome = orchestrator.scan_in_background(on_result=bad_listener).result(timeout=5)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.result_count, 2)


if __name__ == "__main__":
    unittest.main()

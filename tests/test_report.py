import json
import sys
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from chain_scanner.models import Package, PackageIdentity, ScanResult, VulnerabilityRecord
from chain_scanner.report import filter_results, render_json, render_text, summarize


def result(name, *vulns, chains=()):
    package = Package(PackageIdentity(name, "Maven", "1.0"), frozenset(tuple(c) for c in chains))
    return ScanResult.for_package(package, [VulnerabilityRecord.from_osv(v) for v in vulns])


HIGH = {"id": "GHSA-high", "aliases": ["CVE-2024-0001"], "database_specific": {"severity": "HIGH"}}
LOW = {"id": "GHSA-low", "severity": [{"type": "CVSS_V3", "score": "2.1"}]}


class TestReport(unittest.TestCase):
    def test_threshold_filter(self):
        filtered = filter_results([result("org.example:a", HIGH, LOW), result("org.example:b", LOW)], "medium")
        self.assertEqual([v.id for v in filtered[0].vulnerabilities], ["GHSA-high"])
        self.assertFalse(filtered[1].vulnerable)

    def test_ignore_matches_id_or_alias(self):
        filtered = filter_results([result("org.example:a", HIGH, LOW)], ignore_ids=["CVE-2024-0001", "ghsa-low"])
        self.assertFalse(filtered[0].vulnerable)

    def test_invalid_threshold_is_ignored(self):
        original = [result("org.example:a", LOW)]
        with self.assertLogs("chain_scanner.report", level="WARNING"):
            self.assertEqual(filter_results(original, "severe"), original)

    def test_summary_counts(self):
        summary = summarize([result("org.example:a", HIGH, LOW), result("org.example:b")])
        self.assertEqual(summary["packages"], 2)
        self.assertEqual(summary["vulnerablePackages"], 1)
        self.assertEqual(summary["bySeverity"], {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 0, "LOW": 1})

    def test_json_orders_by_severity(self):
        report = json.loads(render_json([result("org.example:a", LOW), result("org.example:z", HIGH),
                                         result("org.example:clean")]))
        self.assertEqual([r["packageName"] for r in report["results"]],
                         ["org.example:z", "org.example:a", "org.example:clean"])
        self.assertEqual(report["results"][2]["severity"], "SAFE")
        self.assertEqual(report["results"][2]["remediation"], [])

    def test_text_shows_chains_and_remediation(self):
        text = render_text([result("org.example:lib", HIGH, chains=[["org.example:root", "org.example:lib"]])])
        self.assertIn("Via:      org.example:root -> org.example:lib", text)
        self.assertIn("Transitive dependency org.example:lib has no fixed version available. "
                      "Affected roots: org.example:root", text)

    def test_text_without_findings(self):
        self.assertIn("No vulnerabilities found in 1 packages.", render_text([result("org.example:clean")]))


if __name__ == "__main__":
    unittest.main()

# chain_scanner/report.py
# Filtering and rendering of scan results (text and JSON)
import json
import logging
from typing import Iterable, Optional

from .models import ScanResult, VulnerabilityRecord
from .remediation import RemediationResolver
from .severity import Severity, classify, parse_threshold, score_of

logger = logging.getLogger(__name__)


def _vuln_keys(vuln: VulnerabilityRecord) -> set[str]:
    return {vuln.id.lower(), *(alias.lower() for alias in vuln.aliases)}


def filter_results(results: Iterable[ScanResult], severity_threshold: Optional[str] = None,
                   ignore_ids: Iterable[str] = ()) -> list[ScanResult]:
    """
    Drops ignored vulnerabilities (matched on ID or alias, case-insensitive) and those
    below the threshold. A package left with no vulnerabilities is reported as not vulnerable.
    """
    threshold = parse_threshold(severity_threshold)
    if severity_threshold and threshold is None:
        logger.warning(f"Invalid severity threshold '{severity_threshold}'. Ignoring filter.")
    ignored = {i.strip().lower() for i in ignore_ids if i and i.strip()}
    if threshold is None and not ignored:
        return list(results)

    filtered = []
    for result in results:
        kept = [
            v for v in result.vulnerabilities
            if not (_vuln_keys(v) & ignored)
            and (threshold is None or classify(v).rank >= threshold.rank)
        ]
        if len(kept) == len(result.vulnerabilities):
            filtered.append(result)
        else:
            filtered.append(ScanResult.for_package(result.package, kept))
    return filtered


def _sort_key(result: ScanResult):
    return (-result.highest_severity.rank, result.package.name, result.package.version)


def result_to_dict(result: ScanResult, resolver: RemediationResolver) -> dict:
    pkg = result.package
    plan = resolver.plan_for(result)
    vulns = []
    for vuln in result.vulnerabilities:
        score = score_of(vuln)
        fixed = resolver.fixed_version_for(vuln, pkg.name)
        vulns.append({
            "id": vuln.id,
            "cveId": vuln.cve_id,
            "aliases": list(vuln.aliases),
            "summary": vuln.summary,
            "severity": classify(vuln).value,
            "cvssScore": score,
            "fixedVersion": fixed,
        })
    return {
        "packageName": pkg.name,
        "packageVersion": pkg.version,
        "ecosystem": pkg.ecosystem,
        "vulnerable": result.vulnerable,
        "severity": result.highest_severity.value,
        "chains": [list(chain) for chain in pkg.sorted_chains()],
        "direct": pkg.is_direct,
        "transitiveRoots": pkg.transitive_roots,
        "vulnerabilities": vulns,
        "remediation": plan.instructions() if plan else [],
    }


def render_json(results: list[ScanResult], resolver: Optional[RemediationResolver] = None) -> str:
    resolver = resolver or RemediationResolver()
    ordered = sorted(results, key=_sort_key)
    return json.dumps({
        "summary": summarize(results),
        "results": [result_to_dict(r, resolver) for r in ordered],
    }, indent=2)


def summarize(results: list[ScanResult]) -> dict:
    counts = {severity.value: 0 for severity in Severity if severity is not Severity.SAFE}
    for result in results:
        for vuln in result.vulnerabilities:
            counts[classify(vuln).value] += 1
    return {
        "packages": len(results),
        "vulnerablePackages": sum(1 for r in results if r.vulnerable),
        "vulnerabilities": sum(len(r.vulnerabilities) for r in results),
        "bySeverity": counts,
    }


def render_text(results: list[ScanResult], resolver: Optional[RemediationResolver] = None) -> str:
    resolver = resolver or RemediationResolver()
    vulnerable = sorted((r for r in results if r.vulnerable), key=_sort_key)
    summary = summarize(results)
    lines = ["", "--- Scan Report (Text) ---"]
    if not vulnerable:
        lines.append(f"No vulnerabilities found in {len(results)} packages.")
    else:
        lines.append(f"Found {summary['vulnerabilities']} vulnerabilities in "
                     f"{summary['vulnerablePackages']} of {len(results)} packages:")
        for result in vulnerable:
            pkg = result.package
            lines.append(f"  - [{result.highest_severity.value}] {pkg.name}:{pkg.version} (Ecosystem: {pkg.ecosystem})")
            for chain in pkg.sorted_chains():
                lines.append(f"    Via:      {' -> '.join(chain)}")
            for vuln in result.vulnerabilities:
                score = score_of(vuln)
                score_text = f"{score:.1f}" if score is not None else "N/A"
                lines.append(f"    {vuln.id}: {classify(vuln).value} ({score_text})"
                             f" fixed in {resolver.fixed_version_for(vuln, pkg.name)}")
                if vuln.summary:
                    lines.append(f"      {vuln.summary}")
            plan = resolver.plan_for(result)
            for instruction in plan.instructions() if plan else []:
                lines.append(f"    Fix:      {instruction}")
            lines.append("-" * 20)
    lines.append("--- End Report ---")
    return "\n".join(lines)

#!/usr/bin/env python3
import logging
import sys

import click

from chain_scanner.config import load_config
from chain_scanner.errors import ConfigError, OrchestrationFailure
from chain_scanner.models import Package, PackageIdentity, ScanResult
from chain_scanner.orchestrator import ScanOrchestrator
from chain_scanner.osv_client import OsvClient
from chain_scanner.report import filter_results, render_json, render_text
from chain_scanner.severity import Severity
from chain_scanner.sources import (
    GradleLibrarySource,
    JavaArchiveSource,
    LibraryNameSource,
    MavenTreeSource,
)

logger = logging.getLogger("chaintrace")

# How long to wait for background fixed-version lookups before printing the report
SCRAPE_WAIT_SECONDS = 30.0

SEVERITY_CHOICES = [s.value for s in Severity if s is not Severity.SAFE]


def _configure_logging(verbose: int):
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def _load_config(config_path, **overrides):
    try:
        return load_config(config_path).with_overrides(**overrides)
    except ConfigError as e:
        raise click.UsageError(str(e))


def _ignore_ids(config, ignore):
    ids = set(config.ignore_vulnerabilities)
    if ignore:
        ids.update(v.strip() for v in ignore.split(',') if v.strip())
    return ids


def _emit(results: list[ScanResult], output_format: str, resolver, severity_threshold, ignore_ids):
    results = filter_results(results, severity_threshold, ignore_ids)
    if output_format == 'json':
        click.echo(render_json(results, resolver))
    else:
        click.echo(render_text(results, resolver))


@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option("-v", "--verbose", count=True, help="Increase log output (-v info, -vv debug).")
def cli(verbose):
    """
    chaintrace: correlates a project's Maven dependencies with OSV.dev vulnerabilities
    and explains which direct dependency to upgrade.
    """
    _configure_logging(verbose)


@cli.command("scan")
@click.option("--maven-tree", type=click.Path(exists=True, dir_okay=False), multiple=True,
              help="Output of 'mvn dependency:tree' (text, or JSON with -DoutputType=json).")
@click.option("--gradle-libraries", type=click.Path(exists=True, dir_okay=False), multiple=True,
              help="JSON list of {groupId, artifactId, version} resolved by Gradle.")
@click.option("--libraries", type=click.Path(exists=True, dir_okay=False), multiple=True,
              help="Classpath library names or jar paths, one per line.")
@click.option("--java-archive", type=click.Path(exists=True, dir_okay=False), multiple=True,
              help="WAR, EAR, Spring Boot JAR or plain JAR to read bundled libraries from.")
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False), default='text', show_default=True, help="Output format.")
@click.option("--severity-threshold", type=click.Choice(SEVERITY_CHOICES, case_sensitive=False), help="Minimum severity to report.")
@click.option("--ignore", type=str, help="Comma-separated vulnerability IDs to ignore.")
@click.option("--scrape-fixes/--no-scrape-fixes", default=None, help="Look up missing fixed versions on osv.dev.")
@click.option("--batch-size", type=int, help="Packages per OSV batch request.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to a chaintrace.yaml file.")
def scan(maven_tree, gradle_libraries, libraries, java_archive, output_format, severity_threshold, ignore,
         scrape_fixes, batch_size, config_path):
    """Scans the given dependency sources against OSV.dev."""
    config = _load_config(config_path, scrape_fixed_versions=scrape_fixes, batch_size=batch_size)

    sources = []
    try:
        sources.extend(MavenTreeSource.from_file(path) for path in maven_tree)
        sources.extend(GradleLibrarySource.from_file(path) for path in gradle_libraries)
        sources.extend(LibraryNameSource.from_file(path) for path in libraries)
    except (OSError, ValueError) as e:
        raise click.BadParameter(f"Could not read dependency source: {e}")
    sources.extend(JavaArchiveSource(path) for path in java_archive)
    if not sources:
        raise click.UsageError("Give at least one of --maven-tree, --gradle-libraries, --libraries or --java-archive.")

    with ScanOrchestrator(sources, config=config) as orchestrator:
        try:
            results = orchestrator.scan()
        except OrchestrationFailure as e:
            click.secho(f"Scan failed: {e}", fg="red", err=True)
            sys.exit(1)

        if orchestrator.scraper is not None:
            # Schedule lookups for every missing fixed version, then give them time to land
            for result in results:
                orchestrator.remediation.plan_for(result)
            if not orchestrator.scraper.wait_idle(SCRAPE_WAIT_SECONDS):
                logger.warning("Some fixed-version lookups did not finish in time")

        _emit(results, output_format.lower(), orchestrator.remediation,
              severity_threshold or config.severity_threshold, _ignore_ids(config, ignore))


@cli.command("query")
@click.argument("name")
@click.argument("version")
@click.option("--ecosystem", default="Maven", show_default=True, help="OSV ecosystem of the package.")
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False), default='text', show_default=True, help="Output format.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to a chaintrace.yaml file.")
def query(name, version, ecosystem, output_format, config_path):
    """Looks up a single package version on OSV.dev."""
    config = _load_config(config_path)
    identity = PackageIdentity(name=name, ecosystem=ecosystem, version=version)
    with OsvClient(config) as client:
        vulns = client.query_one(identity)
        if vulns is None:
            click.secho(f"Could not get vulnerability data for {identity}", fg="red", err=True)
            sys.exit(1)
        if vulns and config.hydrate_details:
            vulns = [(client.fetch_vulnerability(v.id) or v) if v.is_stub else v for v in vulns]
    result = ScanResult.for_package(Package(identity), vulns)
    _emit([result], output_format.lower(), None, config.severity_threshold, config.ignore_vulnerabilities)


if __name__ == "__main__":
    cli()

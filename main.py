"""
NewsHarvest CLI

Usage:
    python main.py list                          # Show configured regions and sources
    python main.py test Assam "Sentinel Assam"   # Selector diagnostics for one source
    python main.py run                           # Scrape every region
    python main.py run --region Manipur --region Tripura --report report.json

`run` exits with status 1 when any source failed.
"""
import argparse
import json
import os
import sys
from datetime import datetime, timezone
from typing import Dict, List, Optional

import settings
from errors import ConfigError
from extraction import Extractor
from geo_filter import GeoRelevanceFilter
from health import report as health_report, update_streaks
from orchestrator import BatchOrchestrator
from registry import SourceRegistry, load_registry
from store import GuardedStore, MemoryArticleStore, SqliteArticleStore

logger = settings.get_logger('cli')


# =============================================================================
# HELPERS
# =============================================================================

def load_streaks(path: Optional[str]) -> Dict[str, int]:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable streaks file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed streaks file %s", path)
        return {}
    return {k: int(v) for k, v in data.items() if isinstance(v, int)}


def write_json(path: str, payload: Dict) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)


def build_store(db_path: str, in_memory: bool = False) -> GuardedStore:
    backend = MemoryArticleStore() if in_memory else SqliteArticleStore(db_path)
    return GuardedStore(backend)


def print_summary(payload: Dict) -> None:
    summary = payload['report']['summary']
    health = payload['health']

    print(f"Sources: {summary['sourcesAttempted']} attempted, {summary['sourcesPassed']} passed, "
          f"{summary['sourcesWarned']} warned, {summary['sourcesFailed']} failed")
    print(f"Articles: {summary['totalCandidates']} candidates, {summary['validCandidates']} valid, "
          f"{summary['inserted']} inserted ({summary['duplicatesRemoved']} duplicates, "
          f"{summary['alreadyStored']} already stored, {summary['geoFiltered']} off-region)")
    print(f"Overall health: {health['overallHealth']:g}%")

    for region, rate in health['regionHealth'].items():
        print(f"  {region:<20} {rate:g}%")

    if health['recommendations']:
        print("Recommendations:")
        for rec in health['recommendations']:
            print(f"  [{rec['priority']}] {rec['message']}")


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_list(registry: SourceRegistry, args) -> int:
    for region in registry.regions():
        sources = registry.sources_for_region(region)
        print(f"{region} ({len(sources)})")
        for d in sources:
            flag = ' [aggregator]' if d.aggregator else ''
            print(f"  - {d.name}: {d.url}{flag}")
    return 0


def cmd_test(registry: SourceRegistry, args) -> int:
    descriptor = registry.find_source(args.region, args.source)
    if descriptor is None:
        print(f"Unknown source {args.source!r} in region {args.region!r}", file=sys.stderr)
        return 2

    result = Extractor().preview(descriptor, limit=args.limit)
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 1 if result['error'] else 0


def cmd_run(registry: SourceRegistry, args) -> int:
    store = build_store(args.db, in_memory=args.memory)
    orchestrator = BatchOrchestrator(
        store,
        extractor=Extractor(),
        geo_filter=GeoRelevanceFilter.from_registry(registry),
        pause_seconds=args.pause,
    )

    batch_report = orchestrator.run_regions(registry, args.region, max_concurrency=args.max_concurrency)

    previous = load_streaks(args.streaks)
    streaks = update_streaks(previous, batch_report)
    health = health_report(batch_report, streaks)

    payload = {
        'generatedAt': datetime.now(timezone.utc).isoformat(),
        'report': batch_report.to_dict(),
        'health': health.to_dict(),
    }

    if args.report:
        write_json(args.report, payload)
        logger.info("Wrote report to %s", args.report)
    if args.streaks:
        write_json(args.streaks, streaks)

    print_summary(payload)
    return 1 if batch_report.failed_sources() else 0


COMMANDS = {
    'list': cmd_list,
    'test': cmd_test,
    'run': cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NewsHarvest regional news scraper")
    parser.add_argument("--sources", default=None, help="Path to sources.json")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List configured regions and sources")

    test = sub.add_parser("test", help="Show which selectors match for one source")
    test.add_argument("region")
    test.add_argument("source")
    test.add_argument("--limit", type=int, default=3, help="Containers to show")

    run = sub.add_parser("run", help="Scrape sources and persist new articles")
    run.add_argument("--region", action="append", help="Region to scrape (repeatable, default all)")
    run.add_argument("--max-concurrency", type=int, default=settings.MAX_CONCURRENCY,
                     help="Sources fetched at once")
    run.add_argument("--pause", type=float, default=settings.BATCH_PAUSE_SECONDS,
                     help="Seconds to wait between batches")
    run.add_argument("--db", default=settings.DB_PATH, help="SQLite database path")
    run.add_argument("--memory", action="store_true", help="Use an in-memory store (dry run)")
    run.add_argument("--report", default=None, help="Write the JSON report here")
    run.add_argument("--streaks", default=None, help="Zero-result streaks file, read and updated")
    return parser


def main(argv: List[str] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings.configure_logging(args.log_level)

    if getattr(args, 'max_concurrency', 1) < 1:
        parser.error("--max-concurrency must be at least 1")

    try:
        registry = load_registry(args.sources)
        return COMMANDS[args.command](registry, args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e, extra={'error_type': 'config'})
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())

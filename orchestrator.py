"""
Batch Orchestrator

Runs the Extraction -> Normalize -> Dedup -> Geo-filter -> persist pipeline for
many sources in sequential batches of bounded size.

Within a batch, extraction and normalization run concurrently on a thread pool
and each source races its own timeout. Dedup, geo filtering and persistence
run on the calling thread in descriptor order, so the only state shared with
workers is what they return.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

import settings
from deduplication import ArticleDeduplicator
from errors import StoreUnavailable
from extraction import ExtractionResult, Extractor
from geo_filter import GeoRelevanceFilter
from normalization import CanonicalArticle, normalize
from registry import SourceDescriptor, SourceRegistry
from store import ArticleStore

logger = settings.get_logger('orchestrator')

PASS = 'pass'
WARNING = 'warning'
FAIL = 'fail'


@dataclass
class RunResult:
    source: str
    region: str
    status: str = FAIL
    candidate_count: int = 0
    container_count: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    duplicate_count: int = 0
    existing_count: int = 0
    geo_filtered_count: int = 0
    unique_count: int = 0
    inserted_count: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict:
        return {
            'source': self.source,
            'region': self.region,
            'status': self.status,
            'containers': self.container_count,
            'candidates': self.candidate_count,
            'valid': self.valid_count,
            'invalid': self.invalid_count,
            'duplicates': self.duplicate_count,
            'alreadyStored': self.existing_count,
            'geoFiltered': self.geo_filtered_count,
            'unique': self.unique_count,
            'inserted': self.inserted_count,
            'error': self.error,
            'errorType': self.error_type,
            'durationMs': round(self.duration_ms, 2),
        }


def _rate(passed: int, total: int) -> float:
    return round(passed / total * 100, 1) if total else 0.0


@dataclass
class BatchReport:
    results: List[RunResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    max_concurrency: int = 0

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    def failed_sources(self) -> List[RunResult]:
        return [r for r in self.results if r.status == FAIL]

    def totals(self) -> Dict:
        return {
            'sourcesAttempted': len(self.results),
            'sourcesPassed': self.count(PASS),
            'sourcesWarned': self.count(WARNING),
            'sourcesFailed': self.count(FAIL),
            'totalCandidates': sum(r.candidate_count for r in self.results),
            'validCandidates': sum(r.valid_count for r in self.results),
            'uniqueCandidates': sum(r.unique_count for r in self.results),
            'duplicatesRemoved': sum(r.duplicate_count for r in self.results),
            'alreadyStored': sum(r.existing_count for r in self.results),
            'geoFiltered': sum(r.geo_filtered_count for r in self.results),
            'inserted': sum(r.inserted_count for r in self.results),
        }

    def regions(self) -> Dict[str, Dict]:
        breakdown: Dict[str, Dict] = {}
        for r in self.results:
            stats = breakdown.setdefault(r.region, {
                'attempted': 0, 'passed': 0, 'warned': 0, 'failed': 0,
                'candidates': 0, 'inserted': 0,
            })
            stats['attempted'] += 1
            stats[{PASS: 'passed', WARNING: 'warned', FAIL: 'failed'}[r.status]] += 1
            stats['candidates'] += r.candidate_count
            stats['inserted'] += r.inserted_count

        for stats in breakdown.values():
            stats['successRate'] = _rate(stats['passed'], stats['attempted'])
        return breakdown

    def to_dict(self) -> Dict:
        return {
            'startedAt': self.started_at.isoformat() if self.started_at else None,
            'finishedAt': self.finished_at.isoformat() if self.finished_at else None,
            'maxConcurrency': self.max_concurrency,
            'summary': self.totals(),
            'regions': self.regions(),
            'results': [r.to_dict() for r in self.results],
        }


class ResultCollector:
    """Append-only, one entry per source."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: List[RunResult] = []
        self._keys = set()

    def add(self, result: RunResult) -> None:
        key = (result.region, result.source)
        with self._lock:
            if key in self._keys:
                raise ValueError(f"duplicate result for {result.region}/{result.source}")
            self._keys.add(key)
            self._results.append(result)

    def snapshot(self) -> List[RunResult]:
        with self._lock:
            return list(self._results)


@dataclass
class SourceOutcome:
    """What a worker hands back: the extraction plus its normalized articles."""
    extraction: ExtractionResult
    articles: List[CanonicalArticle] = field(default_factory=list)

    @property
    def examined_count(self) -> int:
        """Containers read, including those skipped for a missing title or link."""
        return max(self.extraction.container_count, len(self.extraction.candidates))

    @property
    def invalid_count(self) -> int:
        return self.examined_count - len(self.articles)


@dataclass
class RunContext:
    deduplicator: ArticleDeduplicator
    collector: ResultCollector = field(default_factory=ResultCollector)
    # One slot per live worker, held until its thread exits
    slots: threading.BoundedSemaphore = field(default_factory=lambda: threading.BoundedSemaphore(settings.MAX_CONCURRENCY))


def classify(valid_count: int, examined_count: int, min_articles: int) -> str:
    """
    pass / warning / fail for one source.

    examined_count is every container read, so containers dropped for a
    missing title or link count against the source.
    """
    if valid_count == 0:
        return FAIL
    invalid = examined_count - valid_count
    if valid_count < min_articles:
        return WARNING
    if examined_count and invalid / examined_count > settings.INVALID_RATIO_THRESHOLD:
        return WARNING
    return PASS


def batched(items: List, size: int) -> Iterable[List]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class BatchOrchestrator:

    def __init__(self, store: ArticleStore, extractor: Extractor = None,
                 geo_filter: GeoRelevanceFilter = None,
                 pause_seconds: float = settings.BATCH_PAUSE_SECONDS,
                 timeout_grace: float = settings.TIMEOUT_GRACE_SECONDS,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.extractor = extractor or Extractor()
        self.geo_filter = geo_filter
        self.pause_seconds = pause_seconds
        self.timeout_grace = timeout_grace
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def scrape_source(self, descriptor: SourceDescriptor) -> SourceOutcome:
        """Extract and normalize one source. Runs on a worker thread."""
        extraction = self.extractor.extract(descriptor)
        articles = [a for a in (normalize(c) for c in extraction.candidates) if a is not None]
        return SourceOutcome(extraction=extraction, articles=articles)

    def _failed_outcome(self, descriptor: SourceDescriptor, error: str, error_type: str,
                        duration_ms: float) -> SourceOutcome:
        return SourceOutcome(extraction=ExtractionResult(
            source=descriptor.name,
            region=descriptor.region,
            error=error,
            error_type=error_type,
            duration_ms=duration_ms,
        ))

    def _scrape_in_slot(self, descriptor: SourceDescriptor, slots: threading.BoundedSemaphore) -> SourceOutcome:
        try:
            return self.scrape_source(descriptor)
        finally:
            slots.release()

    def _run_batch(self, batch: List[SourceDescriptor], slots: threading.BoundedSemaphore) -> List[SourceOutcome]:
        """
        Run one batch concurrently. Late results of timed-out sources are discarded.

        A worker holds its slot until its thread exits, not until its future
        resolves, so workers abandoned by an earlier batch delay new submissions
        and no more than the slot count ever run at once.
        """
        executor = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix='harvest')
        outcomes = []
        try:
            futures = []
            for d in batch:
                slots.acquire()
                try:
                    futures.append((d, time.monotonic(), executor.submit(self._scrape_in_slot, d, slots)))
                except Exception:
                    slots.release()
                    raise

            for descriptor, started, future in futures:
                deadline = started + descriptor.timeout + self.timeout_grace
                try:
                    outcome = future.result(timeout=max(deadline - time.monotonic(), 0))
                except FuturesTimeoutError:
                    elapsed = (time.monotonic() - started) * 1000
                    logger.warning("Timed out %s after %.0fms", descriptor.key, elapsed,
                                   extra={'region': descriptor.region, 'source': descriptor.name,
                                          'error_type': 'timeout'})
                    outcome = self._failed_outcome(
                        descriptor, f"timed out after {descriptor.timeout:g}s", 'timeout', elapsed)
                except Exception as e:
                    elapsed = (time.monotonic() - started) * 1000
                    logger.exception("Pipeline error for %s", descriptor.key,
                                     extra={'region': descriptor.region, 'source': descriptor.name,
                                            'error_type': 'pipeline_error'})
                    outcome = self._failed_outcome(descriptor, f"pipeline error: {e}", 'pipeline_error', elapsed)
                outcomes.append(outcome)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return outcomes

    # -------------------------------------------------------------------------
    # Orchestrator side
    # -------------------------------------------------------------------------

    def _settle(self, descriptor: SourceDescriptor, outcome: SourceOutcome, context: RunContext) -> RunResult:
        """Dedup, geo-filter and persist one source's articles, then classify it."""
        extraction = outcome.extraction
        result = RunResult(
            source=descriptor.name,
            region=descriptor.region,
            candidate_count=len(extraction.candidates),
            container_count=extraction.container_count,
            valid_count=len(outcome.articles),
            invalid_count=outcome.invalid_count,
            error=extraction.error,
            error_type=extraction.error_type,
            duration_ms=extraction.duration_ms,
        )

        store_error = None
        if outcome.articles:
            is_relevant = self.geo_filter.for_source(descriptor) if self.geo_filter else None
            dedup = None
            try:
                dedup = context.deduplicator.deduplicate_articles(descriptor.region, outcome.articles, is_relevant)
                if dedup.unique:
                    result.inserted_count = self.store.insert_many(dedup.unique)
            except StoreUnavailable as e:
                store_error = str(e)
                if dedup is not None:
                    # Let a later source in this run retry these
                    context.deduplicator.forget(descriptor.region, dedup.unique)

            if dedup is not None:
                result.duplicate_count = dedup.duplicate_count
                result.existing_count = dedup.existing_count
                result.geo_filtered_count = dedup.geo_filtered_count
                result.unique_count = len(dedup.unique)
                logger.debug("Dedup for %s: %s", descriptor.key, dedup.stats(),
                             extra={'region': descriptor.region, 'source': descriptor.name})

        result.status = classify(result.valid_count, outcome.examined_count, descriptor.min_articles)

        if store_error:
            result.error = store_error
            result.error_type = 'store'
            if result.status == PASS:
                result.status = WARNING
        elif result.status == WARNING and not result.error:
            if result.valid_count < descriptor.min_articles:
                result.error = f"only {result.valid_count} valid articles (expected {descriptor.min_articles}+)"
            else:
                result.error = f"{result.invalid_count} of {outcome.examined_count} containers had no usable article"

        logger.info("%s: %s (%d candidates, %d valid, %d inserted)",
                    descriptor.key, result.status, result.candidate_count,
                    result.valid_count, result.inserted_count,
                    extra={'region': descriptor.region, 'source': descriptor.name,
                           'article_count': result.inserted_count,
                           'duration_ms': round(result.duration_ms, 1)})
        return result

    def run(self, descriptors: List[SourceDescriptor],
            max_concurrency: int = settings.MAX_CONCURRENCY) -> BatchReport:
        """Scrape every descriptor in sequential batches of at most max_concurrency."""
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        descriptors = list(descriptors)
        context = RunContext(
            deduplicator=ArticleDeduplicator(self.store.existing_fingerprints),
            slots=threading.BoundedSemaphore(max_concurrency),
        )
        report = BatchReport(started_at=datetime.now(timezone.utc), max_concurrency=max_concurrency)

        batches = list(batched(descriptors, max_concurrency))
        logger.info("Starting run of %d sources in %d batches", len(descriptors), len(batches))

        for index, batch in enumerate(batches):
            outcomes = self._run_batch(batch, context.slots)
            for descriptor, outcome in zip(batch, outcomes):
                context.collector.add(self._settle(descriptor, outcome, context))

            # Polite pause between batches
            if index < len(batches) - 1 and self.pause_seconds > 0:
                self._sleep(self.pause_seconds)

        report.results = context.collector.snapshot()
        report.finished_at = datetime.now(timezone.utc)

        totals = report.totals()
        logger.info("Run finished: %d passed, %d warned, %d failed, %d unique, %d inserted",
                    totals['sourcesPassed'], totals['sourcesWarned'], totals['sourcesFailed'],
                    context.deduplicator.unique_count(), totals['inserted'])
        return report

    def run_regions(self, registry: SourceRegistry, regions: List[str] = None,
                    max_concurrency: int = settings.MAX_CONCURRENCY) -> BatchReport:
        """Run every source of the named regions (all regions when None)."""
        names = [registry.resolve_region(r).name for r in regions] if regions else registry.regions()
        descriptors = [d for name in names for d in registry.sources_for_region(name)]
        return self.run(descriptors, max_concurrency)

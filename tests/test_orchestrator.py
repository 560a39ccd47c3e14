"""
Tests for the batch orchestrator.
Run with: pytest tests/test_orchestrator.py -v
"""
import pytest
import threading
import time
from unittest.mock import Mock
from datetime import datetime, timezone
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import StoreUnavailable
from extraction import ExtractionResult, Extractor, RawCandidate
from geo_filter import GeoRelevanceFilter
from orchestrator import (
    FAIL,
    PASS,
    WARNING,
    BatchOrchestrator,
    ResultCollector,
    RunResult,
    batched,
    classify,
)
from registry import SourceRegistry, parse_descriptor
from store import MemoryArticleStore

NOW = datetime(2026, 1, 15, tzinfo=timezone.utc)


def descriptor(name, region="Assam", **overrides):
    entry = {
        'name': name,
        'url': f'https://{name.lower().replace(" ", "-")}.example.com/',
        'selectors': {'container': 'article', 'title': 'h2', 'link': 'a'},
    }
    entry.update(overrides)
    return parse_descriptor(entry, region)


def candidates(d, titles, bad=0):
    items = [RawCandidate(title=t, link=f"https://news.example.com/{t.lower().replace(' ', '-')}",
                          source=d.name, region=d.region, fetched_at=NOW)
             for t in titles]
    items += [RawCandidate(title="", link="/relative", source=d.name, region=d.region, fetched_at=NOW)
              for _ in range(bad)]
    return items


class FakeExtractor:
    """Serves canned results per source key and tracks how many calls overlap."""

    def __init__(self, results=None, delay=0.0, default_titles=("Story one", "Story two")):
        self.results = results or {}
        self.delay = delay
        self.default_titles = default_titles
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []
        self._lock = threading.Lock()

    def extract(self, d):
        with self._lock:
            self.calls.append(d.key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            outcome = self.results.get(d.key)
            if callable(outcome):
                return outcome(d)
            if isinstance(outcome, ExtractionResult):
                return outcome
            titles = outcome if outcome is not None else [f"{d.name} {t}" for t in self.default_titles]
            return ExtractionResult(source=d.name, region=d.region, candidates=candidates(d, titles),
                                    container_count=len(titles))
        finally:
            with self._lock:
                self.in_flight -= 1


def make_orchestrator(extractor, store=None, **kwargs):
    kwargs.setdefault('sleep', lambda s: None)
    return BatchOrchestrator(store or MemoryArticleStore(), extractor=extractor, **kwargs)


class TestClassify:

    def test_boundaries(self):
        assert classify(0, 0, 2) == FAIL
        assert classify(0, 5, 2) == FAIL
        assert classify(1, 1, 2) == WARNING
        assert classify(2, 2, 2) == PASS

    def test_invalid_ratio(self):
        # Exactly 20% invalid still passes
        assert classify(4, 5, 2) == PASS
        assert classify(3, 5, 2) == WARNING

    def test_zero_minimum(self):
        assert classify(1, 1, 0) == PASS


class TestHelpers:

    def test_batched(self):
        assert list(batched(list(range(7)), 3)) == [[0, 1, 2], [3, 4, 5], [6]]
        assert list(batched([], 3)) == []

    def test_collector_rejects_duplicates(self):
        collector = ResultCollector()
        collector.add(RunResult(source="A", region="Assam"))
        collector.add(RunResult(source="A", region="Tripura"))
        with pytest.raises(ValueError):
            collector.add(RunResult(source="A", region="Assam"))
        assert len(collector.snapshot()) == 2


class TestBatchOrchestrator:

    def test_one_result_per_descriptor_in_order(self):
        sources = [descriptor(f"Paper {i}") for i in range(5)]
        report = make_orchestrator(FakeExtractor()).run(sources, max_concurrency=2)

        assert [r.source for r in report.results] == [d.name for d in sources]
        assert all(r.status == PASS for r in report.results)
        assert report.totals()['inserted'] == 10

    def test_rejects_bad_concurrency(self):
        with pytest.raises(ValueError):
            make_orchestrator(FakeExtractor()).run([descriptor("Paper")], max_concurrency=0)

    def test_second_run_inserts_nothing(self):
        store = MemoryArticleStore()
        sources = [descriptor("Paper A"), descriptor("Paper B")]

        first = make_orchestrator(FakeExtractor(), store).run(sources)
        second = make_orchestrator(FakeExtractor(), store).run(sources)

        assert first.totals()['inserted'] == 4
        assert second.totals()['inserted'] == 0
        assert second.totals()['alreadyStored'] == 4
        assert len(store.articles("Assam")) == 4

    def test_cross_source_duplicates_removed(self):
        a, b = descriptor("Paper A"), descriptor("Paper B")
        extractor = FakeExtractor(results={
            a.key: ["Shared story", "Only in A"],
            b.key: ["Shared story", "Only in B"],
        })
        store = MemoryArticleStore()
        report = make_orchestrator(extractor, store).run([a, b])

        assert report.results[1].duplicate_count == 1
        fingerprints = [x.fingerprint for x in store.articles("Assam")]
        assert len(fingerprints) == len(set(fingerprints)) == 3

    def test_never_more_than_limit_in_flight(self):
        extractor = FakeExtractor(delay=0.05)
        sources = [descriptor(f"Paper {i}") for i in range(10)]
        sleeps = []

        report = make_orchestrator(extractor, sleep=sleeps.append, pause_seconds=2.0).run(sources, max_concurrency=3)

        assert extractor.max_in_flight <= 3
        assert len(report.results) == 10
        # Four batches, pauses only between them
        assert sleeps == [2.0, 2.0, 2.0]

    def test_no_pause_for_single_batch(self):
        sleeps = []
        make_orchestrator(FakeExtractor(), sleep=sleeps.append).run([descriptor("Paper")])
        assert sleeps == []

    def test_timeout_fails_within_deadline(self):
        release = threading.Event()
        slow = descriptor("Slow Paper", timeout=0.2)
        fast = descriptor("Fast Paper")
        extractor = FakeExtractor(results={slow.key: lambda d: release.wait(5) and None})

        try:
            started = time.monotonic()
            report = make_orchestrator(extractor, timeout_grace=0.05).run([slow, fast])
            elapsed = time.monotonic() - started
        finally:
            release.set()

        slow_result, fast_result = report.results
        assert slow_result.status == FAIL
        assert slow_result.error_type == 'timeout'
        assert fast_result.status == PASS
        assert elapsed < 0.2 + 0.05 + 1.0

    def test_worker_exception_is_contained(self):
        def explode(d):
            raise RuntimeError("boom")

        broken = descriptor("Broken Paper")
        report = make_orchestrator(FakeExtractor(results={broken.key: explode})).run([broken])

        assert report.results[0].status == FAIL
        assert report.results[0].error_type == 'pipeline_error'

    def test_all_fail_report(self):
        sources = [descriptor(f"Paper {i}") for i in range(4)]
        extractor = FakeExtractor(results={
            d.key: ExtractionResult(source=d.name, region=d.region, error="HTTP 500", error_type='http_error')
            for d in sources
        })
        report = make_orchestrator(extractor).run(sources)

        assert len(report.failed_sources()) == 4
        assert report.totals()['sourcesFailed'] == 4
        assert report.regions()['Assam']['successRate'] == 0.0
        assert report.to_dict()['results'][0]['errorType'] == 'http_error'

    def test_warning_messages(self):
        few = descriptor("Few Paper", min_articles=3)
        messy = descriptor("Messy Paper")
        extractor = FakeExtractor(results={
            few.key: ["Only story"],
            messy.key: lambda d: ExtractionResult(
                source=d.name, region=d.region,
                candidates=candidates(d, ["Good one", "Good two"], bad=2)),
        })
        few_result, messy_result = make_orchestrator(extractor).run([few, messy]).results

        assert few_result.status == WARNING
        assert "only 1 valid" in few_result.error
        assert messy_result.status == WARNING
        assert messy_result.invalid_count == 2
        assert "2 of 4" in messy_result.error

    def test_store_failure_downgrades_to_warning(self):
        class BrokenStore(MemoryArticleStore):
            def insert_many(self, articles):
                raise StoreUnavailable("breaker open")

        report = make_orchestrator(FakeExtractor(), BrokenStore()).run([descriptor("Paper")])
        result = report.results[0]

        assert result.status == WARNING
        assert result.error_type == 'store'
        assert result.inserted_count == 0

    def test_aggregator_geo_filtering(self):
        registry = SourceRegistry.from_dict({'regions': {
            'Mizoram': {'aliases': ['Aizawl'], 'sources': []},
            'Sikkim': {'aliases': ['Gangtok'], 'sources': []},
        }})
        agg = descriptor("Regional Roundup", region="Mizoram", aggregator=True)
        local = descriptor("Local Paper", region="Mizoram")
        titles = ["Aizawl market reopens", "Gangtok sees snowfall", "Northeast trains delayed"]
        extractor = FakeExtractor(results={agg.key: titles, local.key: titles})

        orchestrator = make_orchestrator(extractor, geo_filter=GeoRelevanceFilter.from_registry(registry))
        agg_result, local_result = orchestrator.run([agg, local]).results

        assert agg_result.geo_filtered_count == 1
        assert agg_result.inserted_count == 2
        assert local_result.geo_filtered_count == 0

    def test_run_regions(self):
        entry = {'url': 'https://x.example.com/', 'selectors': {'container': 'article', 'title': 'h2', 'link': 'a'}}
        registry = SourceRegistry.from_dict({'regions': {
            'Assam': {'sources': [dict(entry, name="A1"), dict(entry, name="A2")]},
            'Tripura': {'sources': [dict(entry, name="T1")]},
        }})
        extractor = FakeExtractor()
        report = make_orchestrator(extractor).run_regions(registry, ['tripura'])

        assert extractor.calls == ['Tripura/T1']
        assert [r.region for r in report.results] == ['Tripura']
        assert len(make_orchestrator(FakeExtractor()).run_regions(registry).results) == 3

    def test_timed_out_workers_still_count_against_limit(self):
        extractor = FakeExtractor(delay=0.5)
        sources = [descriptor(f"Slow Paper {i}", timeout=0.05) for i in range(9)]

        report = make_orchestrator(extractor, timeout_grace=0.01).run(sources, max_concurrency=3)

        assert extractor.max_in_flight <= 3
        assert [r.error_type for r in report.results] == ['timeout'] * 9


class TestRealExtraction:
    """Classification with the real extractor behind a mocked session."""

    def run_listing(self, html):
        response = Mock()
        response.status_code = 200
        response.iter_content.side_effect = lambda chunk_size=None: iter([html.encode('utf-8')])
        session = Mock()
        session.get.return_value = response

        orchestrator = make_orchestrator(Extractor(session=session))
        return orchestrator.run([descriptor("Listing Paper")]).results[0]

    def test_containers_without_links_count_as_invalid(self):
        linked = ''.join(f'<article><h2><a href="/story/{i}">Story number {i}</a></h2></article>' for i in range(2))
        unlinked = ''.join(f'<article><h2>Headline {i}</h2></article>' for i in range(8))
        result = self.run_listing(f"<html><body>{linked}{unlinked}</body></html>")

        assert result.container_count == 10
        assert result.candidate_count == 2
        assert result.valid_count == 2
        assert result.invalid_count == 8
        assert result.status == WARNING
        assert "8 of 10" in result.error

    def test_clean_listing_passes(self):
        html = ''.join(f'<article><h2><a href="/story/{i}">Story number {i}</a></h2></article>' for i in range(5))
        result = self.run_listing(f"<html><body>{html}</body></html>")

        assert result.invalid_count == 0
        assert result.status == PASS

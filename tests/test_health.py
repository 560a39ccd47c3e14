"""
Tests for the health reporter.
Run with: pytest tests/test_health.py -v
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from health import report, update_streaks
from orchestrator import FAIL, PASS, WARNING, BatchReport, RunResult


def result(source, region="Assam", status=PASS, candidates=5, valid=None, error=None, error_type=None):
    if valid is None:
        valid = candidates if status != FAIL else 0
    return RunResult(source=source, region=region, status=status, candidate_count=candidates,
                     valid_count=valid, error=error, error_type=error_type)


def types(health):
    return [r.type for r in health.recommendations]


class TestReport:

    def test_all_healthy(self):
        batch = BatchReport(results=[result("A"), result("B"), result("C", region="Tripura")])
        health = report(batch)

        assert health.overall_health == 100.0
        assert health.region_health == {'Assam': 100.0, 'Tripura': 100.0}
        assert health.recommendations == []
        assert health.healthy

    def test_failing_region_and_priority_fix(self):
        batch = BatchReport(results=[
            result("A"),
            result("B", status=FAIL, candidates=0, error="no article containers matched", error_type='structural'),
            result("C", region="Tripura"),
            result("D", region="Tripura"),
            result("E", region="Tripura"),
        ])
        health = report(batch)

        assert health.overall_health == 80.0
        assert health.region_health['Assam'] == 50.0
        assert 'selector_review' in types(health)
        fix = next(r for r in health.recommendations if r.type == 'priority_fix')
        assert fix.source == "B" and fix.priority == 'high'
        # 80% overall is not below the threshold
        assert 'add_sources' not in types(health)

    def test_warning_sources_flagged_for_review(self):
        batch = BatchReport(results=[
            result("A", status=WARNING, candidates=1, error="only 1 valid articles (expected 2+)"),
        ])
        health = report(batch)

        review = next(r for r in health.recommendations if r.type == 'review')
        assert "only 1 valid" in review.message
        assert 'add_sources' in types(health)

    def test_network_failures_point_at_availability(self):
        batch = BatchReport(results=[
            result("A", status=FAIL, candidates=0, error="timeout after 10s", error_type='timeout'),
            result("B", status=FAIL, candidates=0, error="HTTP 503 from https://x.example.com/", error_type='http_error'),
            result("C", status=FAIL, candidates=0, error="no article containers matched", error_type='structural'),
        ])
        health = report(batch)

        by_source = {r.source: r for r in health.recommendations if r.source}
        assert by_source["A"].type == 'source_unavailable'
        assert "reachable" in by_source["A"].message
        assert "structure" not in by_source["B"].message
        assert by_source["C"].type == 'priority_fix'
        assert "structure" in by_source["C"].message

    def test_failed_with_candidates_is_not_priority_fix(self):
        batch = BatchReport(results=[result("A", status=FAIL, candidates=4, valid=0)])
        assert 'priority_fix' not in types(report(batch))

    def test_zero_result_streaks(self):
        batch = BatchReport(results=[result("A")])
        health = report(batch, {'Assam/B': 3, 'Assam/C': 2})

        assert health.zero_streaks == {'Assam/B': 3}
        streak = next(r for r in health.recommendations if r.type == 'zero_result_streak')
        assert streak.region == 'Assam' and streak.source == 'B'

    def test_empty_report(self):
        health = report(BatchReport())
        assert health.overall_health == 0.0
        assert health.recommendations == []

    def test_to_dict(self):
        batch = BatchReport(results=[result("A", status=FAIL, candidates=0)])
        data = report(batch, {'Assam/A': 4}).to_dict()

        assert data['overallHealth'] == 0.0
        assert data['healthy'] is False
        assert data['zeroResultStreaks'] == {'Assam/A': 4}
        assert {r['type'] for r in data['recommendations']} == {
            'selector_review', 'priority_fix', 'zero_result_streak', 'add_sources'}


class TestUpdateStreaks:

    def test_advances_and_resets(self):
        batch = BatchReport(results=[
            result("A", status=FAIL, candidates=0),
            result("B"),
        ])
        streaks = update_streaks({'Assam/A': 2, 'Assam/B': 5, 'Tripura/C': 1}, batch)

        assert streaks == {'Assam/A': 3, 'Tripura/C': 1}

    def test_does_not_mutate_previous(self):
        previous = {'Assam/A': 1}
        update_streaks(previous, BatchReport(results=[result("A", status=FAIL, candidates=0)]))
        assert previous == {'Assam/A': 1}

    def test_from_nothing(self):
        batch = BatchReport(results=[result("A", status=FAIL, candidates=0)])
        assert update_streaks(None, batch) == {'Assam/A': 1}

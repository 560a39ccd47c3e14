"""
Health Reporter

Turns a BatchReport into an overall health percentage, per-region health and
a list of recommendations. Everything here is pure: no I/O, no clock.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import settings
from orchestrator import FAIL, WARNING, BatchReport

HIGH = 'high'
MEDIUM = 'medium'
LOW = 'low'


# Failures that point at the page markup rather than the host
STRUCTURAL_ERRORS = ('structural', 'parse_error')


def _key(region: str, source: str) -> str:
    return f"{region}/{source}"


@dataclass
class Recommendation:
    type: str
    priority: str
    message: str
    region: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'priority': self.priority,
            'region': self.region,
            'source': self.source,
            'message': self.message,
        }


@dataclass
class HealthReport:
    overall_health: float = 0.0
    region_health: Dict[str, float] = field(default_factory=dict)
    zero_streaks: Dict[str, int] = field(default_factory=dict)
    recommendations: List[Recommendation] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.overall_health >= settings.REGION_SUCCESS_THRESHOLD * 100

    def to_dict(self) -> Dict:
        return {
            'overallHealth': self.overall_health,
            'healthy': self.healthy,
            'regionHealth': dict(self.region_health),
            'zeroResultStreaks': dict(self.zero_streaks),
            'recommendations': [r.to_dict() for r in self.recommendations],
        }


def _zero_candidate_recommendation(result) -> Recommendation:
    if result.error_type in STRUCTURAL_ERRORS or result.error_type is None:
        return Recommendation(
            type='priority_fix',
            priority=HIGH,
            region=result.region,
            source=result.source,
            message=f"{result.source} returned no candidates ({result.error_type or 'unknown'}) - "
                    f"page structure may have changed, redesign its selectors",
        )
    return Recommendation(
        type='source_unavailable',
        priority=MEDIUM,
        region=result.region,
        source=result.source,
        message=f"{result.source} could not be fetched ({result.error_type}: {result.error}) - "
                f"check the site is reachable or raise its timeout",
    )


def update_streaks(previous: Optional[Dict[str, int]], batch_report: BatchReport) -> Dict[str, int]:
    """
    Advance zero-result streaks by one run.

    A source with no valid articles extends its streak; any other outcome
    resets it. Sources absent from this run keep their previous count.
    """
    streaks = dict(previous or {})
    for result in batch_report.results:
        key = _key(result.region, result.source)
        if result.valid_count == 0:
            streaks[key] = streaks.get(key, 0) + 1
        else:
            streaks.pop(key, None)
    return streaks


def report(batch_report: BatchReport, streaks: Optional[Dict[str, int]] = None) -> HealthReport:
    threshold = settings.REGION_SUCCESS_THRESHOLD * 100
    health = HealthReport()

    totals = batch_report.totals()
    attempted = totals['sourcesAttempted']
    if attempted:
        health.overall_health = round(totals['sourcesPassed'] / attempted * 100, 1)

    recommendations = health.recommendations

    for region, stats in sorted(batch_report.regions().items()):
        rate = stats['successRate']
        health.region_health[region] = rate
        if rate < threshold:
            recommendations.append(Recommendation(
                type='selector_review',
                priority=HIGH if rate == 0 else MEDIUM,
                region=region,
                message=f"{region} at {rate:g}% success - review selectors for its failing sources",
            ))

    for result in batch_report.results:
        if result.status == FAIL and result.candidate_count == 0:
            recommendations.append(_zero_candidate_recommendation(result))
        elif result.status == WARNING:
            recommendations.append(Recommendation(
                type='review',
                priority=LOW,
                region=result.region,
                source=result.source,
                message=f"{result.source}: {result.error or 'degraded result'}",
            ))

    for key, streak in sorted((streaks or {}).items()):
        if streak >= settings.ZERO_STREAK_THRESHOLD:
            health.zero_streaks[key] = streak
            region, _, source = key.partition('/')
            recommendations.append(Recommendation(
                type='zero_result_streak',
                priority=HIGH,
                region=region,
                source=source,
                message=f"{key} has returned nothing for {streak} consecutive runs",
            ))

    if attempted and health.overall_health < threshold:
        recommendations.append(Recommendation(
            type='add_sources',
            priority=MEDIUM,
            message=f"Overall health {health.overall_health:g}% is below {threshold:g}% - "
                    f"consider adding more reliable sources",
        ))

    return health

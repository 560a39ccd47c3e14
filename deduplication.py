"""
Article Deduplication

Removes duplicates within a run and against fingerprints already persisted,
then applies the geo-relevance check to whatever survives.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from normalization import CanonicalArticle


@dataclass
class DedupResult:
    unique: List[CanonicalArticle] = field(default_factory=list)
    duplicate_count: int = 0
    existing_count: int = 0
    geo_filtered_count: int = 0

    def stats(self) -> Dict[str, int]:
        return {
            'unique': len(self.unique),
            'duplicates': self.duplicate_count,
            'existing': self.existing_count,
            'geoFiltered': self.geo_filtered_count,
        }


def dedupe(articles: Iterable[CanonicalArticle],
           existing_fingerprints: Set[str],
           seen: Optional[Set[str]] = None,
           is_relevant: Optional[Callable[[CanonicalArticle], bool]] = None) -> DedupResult:
    """
    Drop within-run and cross-run duplicates, then geo-irrelevant articles.

    `seen` holds fingerprints already accepted earlier in the run and is
    updated in place with every article this call accepts. Articles rejected
    by `is_relevant` do not enter `seen`.
    """
    seen = set() if seen is None else seen
    result = DedupResult()

    for article in articles:
        fp = article.fingerprint
        if fp in seen:
            result.duplicate_count += 1
            continue
        if fp in existing_fingerprints:
            result.existing_count += 1
            continue
        if is_relevant is not None and not is_relevant(article):
            result.geo_filtered_count += 1
            continue

        seen.add(fp)
        result.unique.append(article)

    return result


class ArticleDeduplicator:
    """
    Per-run dedup state.

    Tracks accepted fingerprints per region and caches the store's existing
    fingerprints so each region is looked up once per run.
    """

    def __init__(self, existing_lookup: Callable[[str], Set[str]]):
        self._existing_lookup = existing_lookup
        self._existing: Dict[str, Set[str]] = {}
        self.seen: Dict[str, Set[str]] = {}

    def existing_for(self, region: str) -> Set[str]:
        if region not in self._existing:
            self._existing[region] = set(self._existing_lookup(region))
        return self._existing[region]

    def deduplicate_articles(self, region: str, articles: List[CanonicalArticle],
                             is_relevant: Optional[Callable[[CanonicalArticle], bool]] = None) -> DedupResult:
        existing = self.existing_for(region)
        return dedupe(articles, existing, self.seen.setdefault(region, set()), is_relevant)

    def forget(self, region: str, articles: Iterable[CanonicalArticle]) -> None:
        """Release fingerprints whose insert never happened."""
        seen = self.seen.get(region, set())
        for article in articles:
            seen.discard(article.fingerprint)

    def unique_count(self) -> int:
        return sum(len(fps) for fps in self.seen.values())

"""
Geo-Relevance Filter

Keyword matching of region names and aliases for multi-region aggregator
sources. Single-region sources are never filtered. Unmatched or ambiguous
articles are kept.
"""
import re
from typing import Dict, Iterable, List, Pattern

from normalization import CanonicalArticle
from registry import SourceDescriptor, SourceRegistry


def _compile_terms(terms: Iterable[str]) -> List[Pattern]:
    return [re.compile(r'\b' + re.escape(term) + r'\b', re.IGNORECASE) for term in terms if term]


class GeoRelevanceFilter:

    def __init__(self, region_terms: Dict[str, Iterable[str]]):
        self._patterns = {region: _compile_terms(terms) for region, terms in region_terms.items()}

    @classmethod
    def from_registry(cls, registry: SourceRegistry) -> 'GeoRelevanceFilter':
        return cls(registry.aliases())

    def matched_regions(self, text: str) -> List[str]:
        return [region for region, patterns in self._patterns.items()
                if any(p.search(text) for p in patterns)]

    def is_relevant(self, article: CanonicalArticle, target_region: str) -> bool:
        """
        True unless the article names some other known region and never the
        target region.
        """
        text = ' '.join(filter(None, [article.title, article.summary]))
        matched = self.matched_regions(text)
        if not matched or target_region in matched:
            return True
        return False

    def for_source(self, descriptor: SourceDescriptor):
        """Predicate for one descriptor, or None when no filtering applies."""
        if not descriptor.aggregator:
            return None
        return lambda article: self.is_relevant(article, descriptor.region)

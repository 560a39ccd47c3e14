"""
Source Registry

Declarative, immutable mapping from region to an ordered list of source
descriptors. Every descriptor is validated once, at load time; an authoring
mistake raises ConfigError naming the offending source instead of surfacing
later as a scrape failure.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import soupsieve

import settings
from errors import ConfigError

logger = settings.get_logger('registry')

FIELD_NAMES = ('container', 'title', 'link', 'image', 'summary')
REQUIRED_FIELDS = ('container', 'title', 'link')


@dataclass(frozen=True)
class SelectorSet:
    """Ordered fallback selector chains, one per extracted field."""
    container: Tuple[str, ...]
    title: Tuple[str, ...]
    link: Tuple[str, ...]
    image: Tuple[str, ...] = ()
    summary: Tuple[str, ...] = ()

    def chain(self, field_name: str) -> Tuple[str, ...]:
        return getattr(self, field_name)


@dataclass(frozen=True)
class SourceDescriptor:
    name: str
    region: str
    url: str
    selectors: SelectorSet
    timeout: float = settings.DEFAULT_TIMEOUT_SECONDS
    min_articles: int = settings.DEFAULT_MIN_ARTICLES
    max_articles: int = settings.DEFAULT_MAX_ARTICLES
    aggregator: bool = False

    @property
    def key(self) -> str:
        return f"{self.region}/{self.name}"


@dataclass(frozen=True)
class Region:
    name: str
    aliases: Tuple[str, ...] = ()
    sources: Tuple[SourceDescriptor, ...] = field(default=())

    @property
    def terms(self) -> Tuple[str, ...]:
        """Canonical name followed by aliases, lower-cased."""
        seen = []
        for term in (self.name,) + self.aliases:
            term = ' '.join(term.lower().split())
            if term and term not in seen:
                seen.append(term)
        return tuple(seen)

# =============================================================================
# VALIDATION
# =============================================================================

def _selector_chain(raw: Any, field_name: str, source: str, region: str) -> Tuple[str, ...]:
    """Accept a single selector or a list; drop blanks; compile every entry."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ConfigError(f"selector chain '{field_name}' must be a string or list", source, region)

    chain = []
    for selector in raw:
        if not isinstance(selector, str):
            raise ConfigError(f"selector in '{field_name}' must be a string", source, region)
        selector = selector.strip()
        if not selector:
            continue
        try:
            soupsieve.compile(selector)
        except Exception as e:
            raise ConfigError(f"invalid CSS selector {selector!r} in '{field_name}': {e}", source, region)
        chain.append(selector)
    return tuple(chain)


def _listing_url(entry: Dict, source: str, region: str) -> str:
    url = entry.get('url')
    if not url and entry.get('base_url'):
        url = urljoin(entry['base_url'], entry.get('path', ''))
    if not url or not isinstance(url, str):
        raise ConfigError("missing url (or base_url)", source, region)

    parsed = urlparse(url.strip())
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigError(f"url must be absolute http(s): {url!r}", source, region)
    return url.strip()


def _positive_number(entry: Dict, key: str, default, cast, source: str, region: str, allow_zero: bool = False):
    value = entry.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number", source, region)
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"'{key}' must be positive", source, region)
    return value


def parse_descriptor(entry: Any, region: str) -> SourceDescriptor:
    """Build one descriptor from its JSON form or raise ConfigError."""
    if not isinstance(entry, dict):
        raise ConfigError("source entry must be an object", region=region)

    name = entry.get('name')
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"source without a name in region {region!r}", source='<unnamed>', region=region)
    name = name.strip()

    url = _listing_url(entry, name, region)

    raw_selectors = entry.get('selectors')
    if not isinstance(raw_selectors, dict):
        raise ConfigError("missing selectors", name, region)

    unknown = set(raw_selectors) - set(FIELD_NAMES)
    if unknown:
        raise ConfigError(f"unknown selector fields: {', '.join(sorted(unknown))}", name, region)

    chains = {f: _selector_chain(raw_selectors.get(f), f, name, region) for f in FIELD_NAMES}
    for required in REQUIRED_FIELDS:
        if not chains[required]:
            raise ConfigError(f"selector chain '{required}' is empty", name, region)

    return SourceDescriptor(
        name=name,
        region=region,
        url=url,
        selectors=SelectorSet(**chains),
        timeout=_positive_number(entry, 'timeout', settings.DEFAULT_TIMEOUT_SECONDS, float, name, region),
        min_articles=_positive_number(entry, 'min_articles', settings.DEFAULT_MIN_ARTICLES, int, name, region, allow_zero=True),
        max_articles=_positive_number(entry, 'max_articles', settings.DEFAULT_MAX_ARTICLES, int, name, region),
        aggregator=bool(entry.get('aggregator', False)),
    )

# =============================================================================
# REGISTRY
# =============================================================================

class SourceRegistry:
    """Read-only view over validated regions and their sources."""

    def __init__(self, regions: Iterable[Region]):
        self._regions: Dict[str, Region] = {}
        for region in regions:
            if region.name in self._regions:
                raise ConfigError(f"duplicate region {region.name!r}")
            self._regions[region.name] = region

    @classmethod
    def from_dict(cls, data: Any) -> 'SourceRegistry':
        if not isinstance(data, dict) or not isinstance(data.get('regions'), dict):
            raise ConfigError("registry must be an object with a 'regions' mapping")

        regions = []
        for region_name, body in data['regions'].items():
            if not isinstance(body, dict):
                raise ConfigError(f"region {region_name!r} must be an object")

            aliases = body.get('aliases', [])
            if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
                raise ConfigError(f"aliases for region {region_name!r} must be a list of strings")

            sources = body.get('sources', [])
            if not isinstance(sources, list):
                raise ConfigError(f"sources for region {region_name!r} must be a list")

            descriptors = []
            names = set()
            for entry in sources:
                descriptor = parse_descriptor(entry, region_name)
                if descriptor.name in names:
                    raise ConfigError("duplicate source name", descriptor.name, region_name)
                names.add(descriptor.name)
                descriptors.append(descriptor)

            regions.append(Region(
                name=region_name,
                aliases=tuple(a.strip() for a in aliases if a.strip()),
                sources=tuple(descriptors),
            ))

        return cls(regions)

    def regions(self) -> List[str]:
        return list(self._regions)

    def region(self, name: str) -> Region:
        try:
            return self._regions[name]
        except KeyError:
            raise ConfigError(f"unknown region {name!r}")

    def resolve_region(self, name: str) -> Region:
        """Case-insensitive lookup, for CLI and HTTP input."""
        wanted = re.sub(r'[\s_-]+', ' ', name).strip().lower()
        for region in self._regions.values():
            if region.name.lower() == wanted:
                return region
        raise ConfigError(f"unknown region {name!r}")

    def sources_for_region(self, name: str) -> List[SourceDescriptor]:
        return list(self.region(name).sources)

    def all_sources(self) -> List[SourceDescriptor]:
        return [d for region in self._regions.values() for d in region.sources]

    def find_source(self, region: str, source: str) -> Optional[SourceDescriptor]:
        for descriptor in self.resolve_region(region).sources:
            if descriptor.name.lower() == source.strip().lower():
                return descriptor
        return None

    def aliases(self, region: str = None):
        """Match terms for one region, or a region -> terms mapping for all."""
        if region is not None:
            return self.resolve_region(region).terms
        return {name: r.terms for name, r in self._regions.items()}

    def __len__(self) -> int:
        return sum(len(region.sources) for region in self._regions.values())


def load_registry(path: str = None) -> SourceRegistry:
    """Load and validate the registry file. Any problem is a ConfigError."""
    path = path or settings.SOURCES_PATH
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"registry file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in registry {path}: {e}")

    registry = SourceRegistry.from_dict(data)
    logger.info("Loaded %d sources across %d regions from %s",
                len(registry), len(registry.regions()), path)
    return registry

"""
Extraction Engine

Fetches one source's listing page and extracts raw candidate records using the
source's selector chains. Every per-source failure is contained here and
reported as data; extract() never raises.
"""
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from requests.exceptions import Timeout, RequestException, SSLError, ConnectionError as ReqConnectionError
from bs4 import BeautifulSoup

import settings
from errors import HarvestError, NetworkError, StructuralMismatch
from registry import SourceDescriptor

logger = settings.get_logger('extraction')


@dataclass(frozen=True)
class RawCandidate:
    title: str
    link: str
    source: str
    region: str
    fetched_at: datetime
    image: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class ExtractionResult:
    source: str
    region: str
    candidates: List[RawCandidate] = field(default_factory=list)
    container_count: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

# =============================================================================
# INPUT VALIDATION
# =============================================================================

# Listing URLs matching these are never fetched
BLOCKED_URL_PATTERNS = [
    r'file://',
    r'javascript:',
    r'data:',
    r'vbscript:',
    r'localhost',
    r'127\.0\.0\.',
    r'0\.0\.0\.0',
    r'::1',
    r'169\.254\.',  # Link-local
    r'//10\.\d+\.\d+\.\d+',  # Private
    r'//172\.(1[6-9]|2\d|3[01])\.',  # Private
    r'//192\.168\.',  # Private
]

# Lazy-loading placeholders that are not real images
PLACEHOLDER_IMAGE_MARKERS = (
    'data:image/svg+xml',
    'data:image/gif;base64',
    'placeholder',
    'R0lGODlhAQABAAD',  # 1x1 transparent GIF
)

IMAGE_ATTRIBUTES = ('data-src', 'data-lazy-src', 'src', 'srcset', 'data-srcset')

BODY_CHUNK_SIZE = 64 * 1024

_BACKGROUND_URL = re.compile(r'url\(\s*[\'"]?([^\'")]+)[\'"]?\s*\)')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]')


def validate_url(url: str) -> Tuple[bool, str]:
    """Validate a listing URL for security issues."""
    if not url:
        return False, "URL is required"

    for pattern in BLOCKED_URL_PATTERNS:
        if re.search(pattern, url, re.IGNORECASE):
            return False, "URL contains blocked pattern"

    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        return False, "Only HTTP(S) URLs allowed"
    if not parsed.netloc:
        return False, "Invalid URL structure"

    return True, ""


def sanitize_text(s, max_length: int = settings.MAX_TITLE_LENGTH) -> str:
    """Strip control characters, collapse whitespace, bound the length."""
    if s is None:
        return ''
    if not isinstance(s, str):
        s = str(s)

    s = _CONTROL_CHARS.sub('', s)
    s = ' '.join(s.split())

    return s[:max_length].strip()


def resolve_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Resolve a possibly relative href against the listing URL."""
    if not url:
        return None

    url = url.strip()
    if not url or url.startswith(('#', 'javascript:', 'mailto:', 'tel:', 'data:')):
        return None

    absolute = urljoin(base_url, url)
    parsed = urlparse(absolute)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return absolute


def is_placeholder_image(url: str) -> bool:
    if len(url.strip()) < 10:
        return True
    lowered = url.lower()
    return any(marker.lower() in lowered for marker in PLACEHOLDER_IMAGE_MARKERS)

# =============================================================================
# SELECTOR CHAINS
# =============================================================================

def _text_of(node) -> Optional[str]:
    return node.get_text(' ', strip=True) or None


def _href_of(node) -> Optional[str]:
    href = node.get('href')
    if not href:
        inner = node.select_one('a[href]')
        href = inner.get('href') if inner is not None else None
    return href or None


def _image_of(node) -> Optional[str]:
    candidates = [node]
    if node.name != 'img':
        inner = node.select_one('img')
        if inner is not None:
            candidates.append(inner)

    for candidate in candidates:
        for attr in IMAGE_ATTRIBUTES:
            value = candidate.get(attr)
            if not value:
                continue
            if attr.endswith('srcset'):
                value = value.split(',')[0].strip().split(' ')[0]
            if value and not is_placeholder_image(value):
                return value

        # Themes that paint thumbnails as CSS backgrounds
        match = _BACKGROUND_URL.search(candidate.get('style') or '')
        if match and not is_placeholder_image(match.group(1)):
            return match.group(1)
    return None


def first_match(root, chain, getter: Callable) -> Tuple[Optional[str], Optional[str]]:
    """
    Evaluate an ordered selector chain under root.

    Returns (value, selector) for the first selector with a node yielding a
    non-empty value, or (None, None).
    """
    for selector in chain:
        for node in root.select(selector):
            value = getter(node)
            if value:
                return value, selector
    return None, None


def select_containers(soup, chain, limit: int) -> Tuple[list, Optional[str]]:
    """First container selector that matches anything wins."""
    for selector in chain:
        nodes = soup.select(selector)
        if nodes:
            return nodes[:limit], selector
    return [], None


def parse_document(content) -> BeautifulSoup:
    try:
        soup = BeautifulSoup(content, 'lxml')
    except Exception:
        soup = BeautifulSoup(content, 'html.parser')

    for elem in soup.find_all(['script', 'style', 'noscript', 'template']):
        elem.decompose()
    return soup


def extract_fields(container, descriptor: SourceDescriptor) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
    """Run every field chain against one container. Values are (value, selector)."""
    selectors = descriptor.selectors

    title, title_sel = first_match(container, selectors.title, _text_of)
    href, link_sel = first_match(
        container, selectors.link,
        lambda node: resolve_url(_href_of(node), descriptor.url)
    )
    image, image_sel = first_match(
        container, selectors.image,
        lambda node: resolve_url(_image_of(node), descriptor.url)
    )
    summary, summary_sel = first_match(container, selectors.summary, _text_of)

    return {
        'title': (sanitize_text(title, settings.MAX_TITLE_LENGTH) or None, title_sel),
        'link': (href, link_sel),
        'image': (image, image_sel),
        'summary': (sanitize_text(summary, settings.MAX_SUMMARY_LENGTH) or None, summary_sel),
    }

# =============================================================================
# HTTP FETCHING
# =============================================================================

def create_session() -> requests.Session:
    """Create a requests session with connection pooling."""
    session = requests.Session()
    session.headers.update({
        'User-Agent': settings.USER_AGENT,
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.9',
        'Accept-Encoding': 'gzip, deflate',
    })
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=10,
        pool_maxsize=20,
        max_retries=0  # One GET per source per run
    )
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    return session


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Extractor:
    """Fetch + parse one listing page per call. Safe to share across threads."""

    def __init__(self, session: requests.Session = None, metrics: settings.Metrics = None,
                 clock: Callable[[], datetime] = None):
        self.session = session or create_session()
        self.metrics = metrics or settings.Metrics()
        self._clock = clock or _utcnow

    def _read_body(self, response, deadline: float) -> bytes:
        """Read a streamed body, giving up once the source's total deadline passes."""
        chunks = []
        for chunk in response.iter_content(chunk_size=BODY_CHUNK_SIZE):
            if chunk:
                chunks.append(chunk)
            if time.monotonic() > deadline:
                raise Timeout("body not complete before the deadline")
        return b''.join(chunks)

    def fetch(self, descriptor: SourceDescriptor) -> Tuple[int, bytes]:
        """
        Issue the single GET for a source and return (status code, body).

        descriptor.timeout bounds the whole request, body included; the
        per-socket timeout given to requests only bounds each connect or read.
        Raises NetworkError.
        """
        url = descriptor.url
        valid, error = validate_url(url)
        if not valid:
            self.metrics.increment('fetch_rejected')
            raise NetworkError(f"refused {url}: {error}", reason='blocked_url')

        deadline = time.monotonic() + descriptor.timeout
        try:
            response = self.session.get(url, timeout=descriptor.timeout, allow_redirects=True, stream=True)
            try:
                status = response.status_code
                if not 200 <= status < 300:
                    self.metrics.increment('fetch_http_error')
                    raise NetworkError(f"HTTP {status} from {url}", status_code=status, reason='http_error')
                content = self._read_body(response, deadline)
            finally:
                response.close()
        except Timeout:
            self.metrics.increment('fetch_timeout')
            raise NetworkError(f"timeout after {descriptor.timeout:g}s", reason='timeout')
        except SSLError as e:
            self.metrics.increment('fetch_ssl_error')
            raise NetworkError(f"SSL error: {e}", reason='ssl_error')
        except ReqConnectionError as e:
            self.metrics.increment('fetch_connection_error')
            raise NetworkError(f"connection error: {e}", reason='connection_error')
        except RequestException as e:
            self.metrics.increment('fetch_error')
            raise NetworkError(f"request error: {e}", reason='request_error')

        self.metrics.increment('fetch_success')
        return status, content

    def parse(self, content, descriptor: SourceDescriptor, fetched_at: datetime) -> Tuple[List[RawCandidate], int]:
        """Extract candidates from a listing body. Returns (candidates, container count)."""
        soup = parse_document(content)
        containers, _ = select_containers(soup, descriptor.selectors.container, descriptor.max_articles)

        candidates = []
        for container in containers:
            fields = extract_fields(container, descriptor)
            title = fields['title'][0]
            link = fields['link'][0]
            if not title or not link:
                continue

            candidates.append(RawCandidate(
                title=title,
                link=link,
                image=fields['image'][0],
                summary=fields['summary'][0],
                source=descriptor.name,
                region=descriptor.region,
                fetched_at=fetched_at,
            ))

        return candidates, len(containers)

    def extract(self, descriptor: SourceDescriptor) -> ExtractionResult:
        """Fetch and parse one source. Never raises."""
        start_time = time.monotonic()
        result = ExtractionResult(source=descriptor.name, region=descriptor.region)
        log_extra = {'region': descriptor.region, 'source': descriptor.name}

        try:
            result.status_code, content = self.fetch(descriptor)
            candidates, containers = self.parse(content, descriptor, self._clock())
            result.container_count = containers

            if containers == 0:
                raise StructuralMismatch("no article containers matched")
            if not candidates:
                raise StructuralMismatch(f"{containers} containers matched but none had a title and link")

            result.candidates = candidates

        except HarvestError as e:
            result.error = str(e)
            result.error_type = getattr(e, 'reason', None) if isinstance(e, NetworkError) else e.error_type
            logger.warning("Extraction failed for %s: %s", descriptor.key, e,
                           extra=dict(log_extra, error_type=result.error_type))

        except Exception as e:
            # Hostile markup must never escape the extraction boundary
            result.error = f"parse error: {e}"
            result.error_type = 'parse_error'
            self.metrics.increment('parse_error')
            logger.exception("Unexpected parse failure for %s", descriptor.key,
                             extra=dict(log_extra, error_type='parse_error'))

        result.duration_ms = (time.monotonic() - start_time) * 1000
        self.metrics.record_duration('extract_duration_ms', result.duration_ms)

        if result.ok:
            logger.info("Extracted %d candidates from %s", len(result.candidates), descriptor.key,
                        extra=dict(log_extra, article_count=len(result.candidates),
                                   duration_ms=round(result.duration_ms, 1)))
        return result

    def preview(self, descriptor: SourceDescriptor, limit: int = 3) -> Dict:
        """Selector diagnostics for the first containers of a source."""
        report = {
            'source': descriptor.name,
            'region': descriptor.region,
            'url': descriptor.url,
            'containerSelector': None,
            'containerCount': 0,
            'items': [],
            'error': None,
        }

        try:
            _, content = self.fetch(descriptor)
            soup = parse_document(content)
        except NetworkError as e:
            report['error'] = str(e)
            return report

        containers, selector = select_containers(soup, descriptor.selectors.container, descriptor.max_articles)
        report['containerSelector'] = selector
        report['containerCount'] = len(containers)
        if not containers:
            report['error'] = "no article containers matched"

        for container in containers[:limit]:
            fields = extract_fields(container, descriptor)
            report['items'].append({
                name: {'value': value, 'selector': sel}
                for name, (value, sel) in fields.items()
            })
        return report

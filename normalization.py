"""
Normalizer

Turns raw candidates into canonical articles and computes the content
fingerprint used for deduplication.
"""
import hashlib
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import settings
from errors import ValidationError
from extraction import RawCandidate, sanitize_text

logger = settings.get_logger('normalization')


@dataclass(frozen=True)
class CanonicalArticle:
    title: str
    link: str
    region: str
    source: str
    fingerprint: str
    captured_at: datetime
    created_at: datetime
    summary: Optional[str] = None
    image: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['captured_at'] = self.captured_at.isoformat()
        data['created_at'] = self.created_at.isoformat()
        return data


def fingerprint(title: str, link: str) -> str:
    """
    Stable content fingerprint over title and link.

    Case and whitespace differences do not change the result.
    """
    content = f"{title or ''}|{link or ''}"
    content = ' '.join(content.lower().split())
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def is_absolute_http_url(url: str) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def validate_candidate(raw: RawCandidate) -> str:
    """Return the cleaned title or raise ValidationError."""
    title = sanitize_text(raw.title, settings.MAX_TITLE_LENGTH)
    if not title:
        raise ValidationError("empty title")
    if not is_absolute_http_url(raw.link):
        raise ValidationError(f"link is not an absolute http(s) URL: {raw.link!r}")
    return title


def normalize(raw: RawCandidate, now: Callable[[], datetime] = None) -> Optional[CanonicalArticle]:
    """Canonicalize one candidate, or None when it fails validation."""
    try:
        title = validate_candidate(raw)
    except ValidationError as e:
        logger.debug("Dropping candidate from %s: %s", raw.source, e,
                     extra={'region': raw.region, 'source': raw.source, 'error_type': e.error_type})
        return None

    link = raw.link.strip()
    summary = sanitize_text(raw.summary, settings.MAX_SUMMARY_LENGTH) or None
    image = raw.image.strip() if raw.image and is_absolute_http_url(raw.image) else None

    return CanonicalArticle(
        title=title,
        link=link,
        region=raw.region,
        source=raw.source,
        fingerprint=fingerprint(title, link),
        captured_at=raw.fetched_at,
        created_at=(now or (lambda: datetime.now(timezone.utc)))(),
        summary=summary,
        image=image,
    )

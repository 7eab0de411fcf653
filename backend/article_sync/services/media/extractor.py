"""
Resource Extractor - find remote media references in an article body

Scans img/video/source/audio tags (src, poster and the lazy-load variants)
plus url(...) declarations in inline styles. Only URLs on a configured
remote host survive; anything under our own media prefix is local, which
keeps a second pass over an already-rewritten body empty.

Two forms of every URL are tracked:
    original_url - the text exactly as it appears in the document, used for
                   string replacement
    fetch_url    - HTML-unescaped, scheme-qualified, used for downloading
"""
import fnmatch
import html
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from ...utils.logger import get_logger

logger = get_logger('extractor')

MEDIA_TAG_RE = re.compile(r'<(?:img|video|source|audio)\b[^>]*>', re.IGNORECASE)

# (?<![\w-]) keeps "src" from matching inside "data-src"
MEDIA_ATTR_RE = re.compile(
    r'(?<![\w-])(?:src|data-src|data-original|data-lazy-src|data-backsrc|poster)'
    r'\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^\s>"\']+))',
    re.IGNORECASE
)

STYLE_ATTR_RE = re.compile(r'(?<![\w-])style\s*=\s*(?:"([^"]*)"|\'([^\']*)\')', re.IGNORECASE)

CSS_URL_RE = re.compile(
    r'url\(\s*(?:&quot;(.+?)&quot;|"([^"]+)"|\'([^\']+)\'|([^)\'"\s]+))\s*\)',
    re.IGNORECASE
)


class MediaReference:
    """One distinct remote media URL found in a document"""

    ROLE_INLINE = 'inline'
    ROLE_THUMBNAIL = 'thumbnail'

    def __init__(self, original_url: str, role: str = ROLE_INLINE, fetch_url: Optional[str] = None):
        self.original_url = original_url
        self.role = role
        self.fetch_url = fetch_url or normalize_url(original_url)
        self.resolved_url: Optional[str] = None
        self.mime_type: Optional[str] = None
        self.byte_size: Optional[int] = None
        self.error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'original_url': self.original_url,
            'role': self.role,
            'resolved_url': self.resolved_url,
            'mime_type': self.mime_type,
            'byte_size': self.byte_size,
            'error': self.error,
        }

    def __eq__(self, other):
        if not isinstance(other, MediaReference):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f'<MediaReference {self.role} {self.original_url}>'


def normalize_url(url: str) -> str:
    """Textual URL -> URL that can be requested"""
    url = html.unescape(url.strip())
    if url.startswith('//'):
        url = 'https:' + url
    return url


def host_matches(host: str, pattern: str) -> bool:
    """Exact host, subdomain of the pattern, or shell-style wildcard"""
    host = host.lower()
    pattern = pattern.strip().lower()
    if not pattern:
        return False
    if any(ch in pattern for ch in '*?['):
        return fnmatch.fnmatchcase(host, pattern)
    return host == pattern or host.endswith('.' + pattern)


class ResourceExtractor:
    """Stateless scanner for remote media references.

    Example:
        >>> extractor = ResourceExtractor(['mmbiz.qpic.cn'], local_base_url='/api/media')
        >>> refs = extractor.extract(body, thumbnail_url=thumb)
        >>> [r.original_url for r in refs]
    """

    def __init__(self, remote_hosts: Iterable[str], local_base_url: str = '/api/media'):
        self.remote_hosts = [h for h in remote_hosts if h and h.strip()]
        self.local_base_url = (local_base_url or '').rstrip('/')

    def is_remote(self, url: str) -> bool:
        """True if ``url`` points at a configured remote host and not at our own media"""
        if not url:
            return False
        fetch_url = normalize_url(url)
        if self.local_base_url and fetch_url.startswith(self.local_base_url + '/'):
            return False

        parsed = urlparse(fetch_url)
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            return False
        return any(host_matches(parsed.hostname, pattern) for pattern in self.remote_hosts)

    def extract(self, document: Optional[str], thumbnail_url: Optional[str] = None) -> List[MediaReference]:
        """Return the distinct remote references, in document order.

        The thumbnail is appended with role ``thumbnail`` unless the same URL
        already appears in the body.
        """
        references: List[MediaReference] = []
        seen = set()

        for _, url in self._scan(document or ''):
            if url in seen or not self.is_remote(url):
                continue
            seen.add(url)
            references.append(MediaReference(url, MediaReference.ROLE_INLINE))

        if thumbnail_url:
            thumbnail_url = thumbnail_url.strip()
            if thumbnail_url not in seen and self.is_remote(thumbnail_url):
                references.append(MediaReference(thumbnail_url, MediaReference.ROLE_THUMBNAIL))

        if references:
            logger.debug(f"[ResourceExtractor] Found {len(references)} remote references")
        return references

    def _scan(self, document: str) -> List[Tuple[int, str]]:
        """All candidate URLs with their offsets, sorted by offset"""
        found: List[Tuple[int, str]] = []

        for tag in MEDIA_TAG_RE.finditer(document):
            for attr in MEDIA_ATTR_RE.finditer(tag.group(0)):
                value, offset = _first_group(attr)
                if value:
                    found.append((tag.start() + offset, value.strip()))

        for style in STYLE_ATTR_RE.finditer(document):
            declaration, offset = _first_group(style)
            if not declaration:
                continue
            base = style.start() + offset
            for css_url in CSS_URL_RE.finditer(declaration):
                value, url_offset = _first_group(css_url)
                if value:
                    found.append((base + url_offset, value.strip()))

        found.sort(key=lambda item: item[0])
        return found

    @staticmethod
    def stats(references: List[MediaReference]) -> Dict:
        """Counts per role and per host"""
        return {
            'total': len(references),
            'by_role': dict(Counter(r.role for r in references)),
            'by_host': dict(Counter(urlparse(r.fetch_url).hostname for r in references)),
        }


def _first_group(match) -> Tuple[Optional[str], int]:
    """Value and offset of whichever alternative group matched"""
    for index in range(1, (match.re.groups or 0) + 1):
        if match.group(index) is not None:
            return match.group(index), match.start(index) - match.start(0)
    return None, 0

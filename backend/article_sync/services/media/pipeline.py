"""
Media Resource Pipeline - extract, download, rewrite

1. extract the distinct remote references of a body + thumbnail
2. download them concurrently (one request per distinct URL)
3. replace every textual occurrence of each resolved URL in the body
4. hand the thumbnail back separately

Failed references keep their remote URL and add one entry to ``errors``.
Partial failure is still a successful result.
"""
import re
from typing import Dict, List, Optional

from ...utils.logger import get_logger
from .downloader import ResourceDownloader
from .extractor import MediaReference, ResourceExtractor

logger = get_logger('media_pipeline')


class PipelineResult:
    """Rewritten document plus the per-reference outcome"""

    def __init__(self, document: Optional[str], thumbnail_url: Optional[str],
                 resolved: List[MediaReference], errors: List[str]):
        self.document = document
        self.thumbnail_url = thumbnail_url
        self.resolved = resolved
        self.errors = errors

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict:
        return {
            'thumbnail_url': self.thumbnail_url,
            'resolved': [ref.to_dict() for ref in self.resolved],
            'errors': list(self.errors),
        }


def rewrite_urls(document: str, replacements: Dict[str, str], keep: List[str] = ()) -> str:
    """Exact-string substitution of every key in ``replacements``.

    Done in one regex pass with the longest URLs first, so a URL that is a
    prefix of another (or of a URL listed in ``keep``) never corrupts the
    longer one and replaced text is never replaced again.
    """
    if not document or not replacements:
        return document

    candidates = sorted(set(replacements) | set(keep), key=len, reverse=True)
    pattern = re.compile('|'.join(re.escape(url) for url in candidates))
    return pattern.sub(lambda m: replacements.get(m.group(0), m.group(0)), document)


class MediaResourcePipeline:
    """Rehost the media of one article.

    Example:
        >>> pipeline = MediaResourcePipeline(extractor, downloader)
        >>> result = pipeline.process(article.body, article.thumbnail_url)
        >>> result.document, result.thumbnail_url, result.errors
    """

    def __init__(self, extractor: ResourceExtractor, downloader: ResourceDownloader):
        self.extractor = extractor
        self.downloader = downloader

    def process(self, document: Optional[str], thumbnail_url: Optional[str] = None) -> PipelineResult:
        references = self.extractor.extract(document, thumbnail_url)
        if not references:
            return PipelineResult(document, thumbnail_url, [], [])

        results = self.downloader.download_many([ref.fetch_url for ref in references])

        resolved: List[MediaReference] = []
        failed: List[MediaReference] = []
        errors: List[str] = []
        for ref in references:
            result = results.get(ref.fetch_url)
            if result is not None and result.ok:
                ref.resolved_url = result.resolved_url
                ref.mime_type = result.mime_type
                ref.byte_size = result.byte_size
                resolved.append(ref)
            else:
                ref.error = result.error if result is not None else f'Download not attempted ({ref.fetch_url})'
                failed.append(ref)
                errors.append(ref.error)

        replacements = {ref.original_url: ref.resolved_url for ref in resolved}
        new_document = rewrite_urls(document, replacements, keep=[ref.original_url for ref in failed])

        new_thumbnail = thumbnail_url
        if thumbnail_url and thumbnail_url.strip() in replacements:
            new_thumbnail = replacements[thumbnail_url.strip()]

        logger.info(
            f"[MediaResourcePipeline] {len(resolved)} rehosted, {len(failed)} failed "
            f"of {len(references)} references"
        )
        return PipelineResult(new_document, new_thumbnail, resolved, errors)

"""
Blob storage for rehosted media
"""
import hashlib
import mimetypes
import os
import tempfile
from typing import Optional

from ...utils.logger import get_logger

logger = get_logger('storage')

# mimetypes returns odd picks for a few common types (.jpe, .jfif ...)
PREFERRED_EXTENSIONS = {
    'image/jpeg': '.jpg',
    'image/jpg': '.jpg',
    'image/png': '.png',
    'image/gif': '.gif',
    'image/webp': '.webp',
    'image/svg+xml': '.svg',
    'image/bmp': '.bmp',
    'video/mp4': '.mp4',
    'video/mpeg': '.mpeg',
    'video/quicktime': '.mov',
    'audio/mpeg': '.mp3',
    'audio/mp4': '.m4a',
    'audio/amr': '.amr',
}


def extension_for(mime_type: Optional[str]) -> str:
    if not mime_type:
        return '.bin'
    mime_type = mime_type.split(';')[0].strip().lower()
    return PREFERRED_EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or '.bin'


class BlobStorage:
    """Save/retrieve contract used by the downloader"""

    def save(self, data: bytes, mime_type: str) -> str:
        """Store ``data`` and return its public URL"""
        raise NotImplementedError

    def open(self, name: str) -> bytes:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    """Content-addressed files under a local directory.

    The file name is the sha256 of the content plus an extension derived
    from the MIME type, so saving the same bytes twice is a no-op and
    yields the same URL.
    """

    def __init__(self, root: str, base_url: str = '/api/media'):
        self.root = root
        self.base_url = base_url.rstrip('/')
        os.makedirs(self.root, exist_ok=True)

    def save(self, data: bytes, mime_type: str) -> str:
        name = hashlib.sha256(data).hexdigest() + extension_for(mime_type)
        path = os.path.join(self.root, name)

        if not os.path.exists(path):
            # Write-then-rename so readers never see a partial file. The temp
            # name is unique per call: concurrent saves of the same bytes
            # each rename their own file onto the same target.
            fd, tmp_path = tempfile.mkstemp(prefix=f'.{name}.', suffix='.tmp', dir=self.root)
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp_path, path)
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
            logger.debug(f"[LocalBlobStorage] Stored {name} ({len(data)} bytes)")

        return f'{self.base_url}/{name}'

    def path_for(self, name: str) -> str:
        """Absolute path of a stored blob; rejects anything outside root"""
        name = os.path.basename(name)
        if not name or name.startswith('.'):
            raise FileNotFoundError(name)
        return os.path.join(self.root, name)

    def exists(self, name: str) -> bool:
        try:
            return os.path.isfile(self.path_for(name))
        except FileNotFoundError:
            return False

    def open(self, name: str) -> bytes:
        with open(self.path_for(name), 'rb') as f:
            return f.read()

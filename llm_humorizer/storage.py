import io
import logging
import time
from typing import Iterable, List, Optional
from urllib.parse import unquote, urlparse

from webdav4.client import Client

from .constants import INITIAL_WEBDAV_BACKOFF, MAX_WEBDAV_RETRY_ATTEMPTS

logger = logging.getLogger(__name__)


def _remote(path: str) -> str:
    return path if str(path).startswith('/') else '/' + str(path).lstrip('/')


def _is_not_found(exc: Exception) -> bool:
    error_str = str(exc).lower()
    if any(x in error_str for x in ['404', 'not found', 'does not exist', 'resource not found']):
        return True
    return 'notfound' in exc.__class__.__name__.lower()


class WebDavStorage:
    """Photo object store on a WebDAV share.

    Objects live at `<gallery_id>/<file>` below `base_url`; `public_base_url`
    is where the same paths are served to browsers.
    """

    def __init__(self, base_url: str, auth: Optional[tuple] = None, public_base_url: Optional[str] = None):
        self.client = Client(base_url, auth=auth)
        self.public_base_url = (public_base_url or base_url).rstrip('/')

    def public_url(self, path: str) -> str:
        return self.public_base_url + '/' + str(path).lstrip('/')

    def path_from_public_url(self, url: str) -> Optional[str]:
        """Inverse of `public_url`; None when `url` is not under the public base."""
        if not url:
            return None
        prefix = self.public_base_url + '/'
        if url.startswith(prefix):
            return unquote(url[len(prefix):].split('?', 1)[0]) or None
        try:
            base_path = urlparse(self.public_base_url).path.rstrip('/') + '/'
            url_path = urlparse(url).path
        except ValueError:
            return None
        if base_path != '/' and url_path.startswith(base_path):
            return unquote(url_path[len(base_path):]) or None
        return None

    def _ensure_parent(self, remote: str) -> None:
        parent = remote.rsplit('/', 1)[0]
        if not parent:
            return
        try:
            if not self.client.exists(parent):
                self.client.mkdir(parent)
        except Exception as exc:
            # a concurrent upload may have created it; the upload itself reports real failures
            logger.debug("Could not ensure directory %s: %s", parent, exc)

    def upload_fileobj(self, path: str, data: bytes, overwrite: bool = False) -> str:
        """Upload bytes to `path`, retrying while the share reports a lock (423)."""
        remote = _remote(path)
        self._ensure_parent(remote)

        last_exc = None
        for attempt in range(MAX_WEBDAV_RETRY_ATTEMPTS):
            try:
                self.client.upload_fileobj(io.BytesIO(data), remote, overwrite=overwrite)
                logger.debug("Uploaded %d bytes to %s", len(data), remote)
                return remote
            except FileNotFoundError:
                raise
            except Exception as exc:
                last_exc = exc
                exc_str = str(exc).lower()
                if ('423' in str(exc) or 'locked' in exc_str) and attempt < MAX_WEBDAV_RETRY_ATTEMPTS - 1:
                    backoff = INITIAL_WEBDAV_BACKOFF * (2 ** attempt)
                    logger.debug("WebDAV locked on attempt %d; retrying after %.2fs", attempt + 1, backoff)
                    time.sleep(backoff)
                    continue
                raise IOError(f"Failed to upload {remote}: {exc}") from exc

        raise IOError(f"Failed to upload {remote} after {MAX_WEBDAV_RETRY_ATTEMPTS} attempts: {last_exc}") from last_exc

    def download_file(self, path: str) -> bytes:
        remote = _remote(path)
        try:
            with self.client.open(remote, mode='rb') as f:
                data = f.read()
        except FileNotFoundError:
            raise
        except Exception as exc:
            if _is_not_found(exc):
                raise FileNotFoundError(f"File not found: {remote}") from exc
            raise IOError(f"Failed to download {remote}: {exc}") from exc
        if isinstance(data, str):
            return data.encode('utf-8')
        return data

    def delete_file(self, path: str) -> None:
        """Delete a file from WebDAV storage."""
        remote = _remote(path)
        try:
            self.client.remove(remote)
        except FileNotFoundError:
            raise
        except Exception as exc:
            if _is_not_found(exc):
                raise FileNotFoundError(f"File not found: {remote}") from exc
            raise IOError(f"Failed to delete {remote}: {exc}") from exc

    def remove(self, paths: Iterable[str]) -> List[str]:
        """Best-effort removal. Returns the paths that could not be removed.

        Already-missing objects count as removed.
        """
        failed: List[str] = []
        for path in paths:
            try:
                self.delete_file(path)
            except FileNotFoundError:
                logger.debug("Object already gone: %s", path)
            except IOError as exc:
                logger.warning("Could not delete %s from storage: %s", path, exc)
                failed.append(path)
        return failed

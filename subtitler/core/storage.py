"""
Storage collaborator for VideoSubtitler.

The pipeline only ever talks to the ``Storage`` interface; ``LocalStorage``
keeps objects under a root directory. ``download_to_local`` copies an object
into a scratch directory with retries and size verification.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import BinaryIO

import requests

from subtitler.core.config import DownloadSettings
from subtitler.core.constants import ErrorCode
from subtitler.core.error_codes import JobError
from subtitler.core.security_utils import safe_join

logger = logging.getLogger(__name__)

_MIN_COPY_BYTES = 1024 * 1024


class Storage:
    """Object storage interface used by the pipeline stages."""

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def get(self, path: str) -> bytes:
        raise NotImplementedError

    def put(self, path: str, data: bytes | str):
        raise NotImplementedError

    def read_stream(self, path: str) -> BinaryIO:
        raise NotImplementedError

    def write_stream(self, path: str, stream: BinaryIO):
        raise NotImplementedError

    def size(self, path: str) -> int:
        raise NotImplementedError

    def temporary_url(self, path: str, expires_minutes: int = 60) -> str | None:
        """A direct download URL, or None when the backend cannot sign one."""
        return None

    def delete(self, path: str):
        raise NotImplementedError

    def delete_prefix(self, prefix: str):
        raise NotImplementedError


class LocalStorage(Storage):
    """Storage backed by a directory on the local disk."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, path: str) -> Path:
        return safe_join(self.root, path)

    def exists(self, path: str) -> bool:
        return self._path(path).is_file()

    def get(self, path: str) -> bytes:
        try:
            return self._path(path).read_bytes()
        except OSError as e:
            raise JobError(ErrorCode.STORAGE, f"Unable to read {path}: {e}") from e

    def put(self, path: str, data: bytes | str):
        target = self._path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode('utf-8')
        tmp = target.with_name(target.name + '.part')
        try:
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as e:
            raise JobError(ErrorCode.STORAGE, f"Unable to write {path}: {e}") from e

    def read_stream(self, path: str) -> BinaryIO:
        try:
            return open(self._path(path), 'rb')
        except OSError as e:
            raise JobError(ErrorCode.STORAGE, f"Unable to read file from storage: {path}") from e

    def write_stream(self, path: str, stream: BinaryIO):
        target = self._path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + '.part')
        try:
            with open(tmp, 'wb') as out:
                shutil.copyfileobj(stream, out)
            tmp.replace(target)
        except OSError as e:
            raise JobError(ErrorCode.STORAGE, f"Unable to write {path}: {e}") from e

    def size(self, path: str) -> int:
        try:
            return self._path(path).stat().st_size
        except OSError as e:
            raise JobError(ErrorCode.STORAGE, f"Unable to stat {path}: {e}") from e

    def delete(self, path: str):
        target = self._path(path)
        if target.is_file():
            target.unlink()

    def delete_prefix(self, prefix: str):
        target = self._path(prefix)
        if target == self.root.resolve():
            raise ValueError("Refusing to delete the storage root")
        if target.is_dir():
            shutil.rmtree(target)


# ── Transfers between storage and scratch space ───────────────────────

def store_from_local(storage: Storage, local_path: Path, storage_path: str):
    with open(local_path, 'rb') as stream:
        storage.write_stream(storage_path, stream)


def stream_to_local(storage: Storage, storage_path: str, local_path: Path,
                    chunk_bytes: int = 8 * 1024 * 1024,
                    progress_bytes: int | None = None,
                    expected_size: int | None = None) -> int:
    """Copy a storage object to ``local_path`` in bounded chunks. Returns bytes written."""
    chunk_bytes = max(_MIN_COPY_BYTES, chunk_bytes)
    next_log_at = max(_MIN_COPY_BYTES, progress_bytes) if progress_bytes else None
    written = 0
    local_path.parent.mkdir(parents=True, exist_ok=True)
    stream = storage.read_stream(storage_path)
    try:
        with open(local_path, 'wb') as out:
            while True:
                buffer = stream.read(chunk_bytes)
                if not buffer:
                    break
                out.write(buffer)
                written += len(buffer)
                if next_log_at is not None and written >= next_log_at:
                    logger.info("Download progress %s: %d/%s bytes",
                                storage_path, written, expected_size or '?')
                    next_log_at += max(_MIN_COPY_BYTES, progress_bytes)
    finally:
        stream.close()
    return written


def _download_via_get(storage: Storage, storage_path: str, local_path: Path):
    contents = storage.get(storage_path)
    if not contents:
        raise JobError(ErrorCode.DOWNLOAD_FAILED,
                       f"Unable to download file contents: {storage_path}")
    local_path.write_bytes(contents)


def _download_via_url(url: str, local_path: Path, settings: DownloadSettings):
    with requests.get(
        url,
        stream=True,
        timeout=(settings.http_connect_timeout_seconds, settings.http_timeout_seconds),
    ) as resp:
        resp.raise_for_status()
        with open(local_path, 'wb') as out:
            for block in resp.iter_content(chunk_size=max(_MIN_COPY_BYTES, settings.chunk_bytes)):
                if block:
                    out.write(block)


def download_to_local(storage: Storage, storage_path: str, local_path: Path,
                      settings: DownloadSettings, sleep=time.sleep) -> int:
    """
    Download ``storage_path`` to ``local_path``.

    Large objects are streamed; otherwise a signed URL is used when the
    backend offers one, else the object is read in one go. Each attempt is
    verified (non-empty, size matches storage) and retried with linear
    backoff. Returns the local size in bytes.
    """
    max_attempts = max(1, settings.max_attempts)
    max_in_memory = max(1, settings.max_in_memory_mb) * 1024 * 1024

    expected_size = None
    try:
        expected_size = storage.size(storage_path)
    except JobError as e:
        logger.warning("Unable to resolve storage size for %s: %s", storage_path, e.message)

    for attempt in range(1, max_attempts + 1):
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            local_path.unlink(missing_ok=True)

            url = storage.temporary_url(storage_path) if settings.use_temporary_url else None
            if expected_size is not None and expected_size > max_in_memory:
                stream_to_local(storage, storage_path, local_path, settings.chunk_bytes,
                                settings.progress_bytes, expected_size)
            elif url:
                _download_via_url(url, local_path, settings)
            elif expected_size is not None:
                _download_via_get(storage, storage_path, local_path)
            else:
                stream_to_local(storage, storage_path, local_path, settings.chunk_bytes,
                                settings.progress_bytes, expected_size)

            local_size = local_path.stat().st_size if local_path.exists() else 0
            if local_size == 0:
                raise JobError(ErrorCode.DOWNLOAD_FAILED, "Downloaded file is empty.")
            if expected_size is not None and local_size != expected_size:
                raise JobError(ErrorCode.DOWNLOAD_FAILED,
                               f"Downloaded size mismatch. Expected {expected_size}, got {local_size}.")

            logger.info("Download complete: %s -> %s (%d bytes, attempt %d)",
                        storage_path, local_path, local_size, attempt)
            return local_size

        except (JobError, OSError, requests.RequestException) as e:
            logger.warning("Download of %s failed (attempt %d/%d): %s",
                           storage_path, attempt, max_attempts, e)
            if attempt >= max_attempts:
                if isinstance(e, JobError):
                    raise
                raise JobError(ErrorCode.DOWNLOAD_FAILED,
                               f"Download failed for {storage_path}: {e}") from e
            sleep(settings.backoff_seconds * attempt)

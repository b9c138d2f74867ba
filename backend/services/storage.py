"""Media storage backends.

Each backend opens a byte stream for an opaque storage reference, optionally
restricted to a client-supplied ``Range`` header, and hands back a
``StorageStream`` that yields one chunk at a time. Nothing is buffered
beyond a single chunk, so a slow client slows the upstream read down.
"""

import asyncio
import logging
import mimetypes
import re
import sys
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class StorageError(Exception):
    """Backend could not deliver the object."""


class ObjectNotFound(StorageError):
    pass


class InvalidStorageRef(StorageError):
    pass


class UnsatisfiableRange(StorageError):
    def __init__(self, total_size: Optional[int] = None):
        super().__init__("Requested range not satisfiable")
        self.total_size = total_size


@dataclass
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{total_size}"


def parse_range_header(header: Optional[str], total_size: int) -> Optional[ByteRange]:
    """
    Parse a single-range ``bytes=`` header against an object of ``total_size``.

    Returns None when the header is absent or not understood (the full body
    is served), raises ``UnsatisfiableRange`` when it can't be honoured.
    Multi-range requests are served in full.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header)
    if not match:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        # Suffix range: the last N bytes
        suffix = int(last)
        if suffix == 0 or total_size == 0:
            raise UnsatisfiableRange(total_size)
        return ByteRange(max(0, total_size - suffix), total_size - 1)

    start = int(first)
    end = int(last) if last else total_size - 1
    if start >= total_size or end < start:
        raise UnsatisfiableRange(total_size)
    return ByteRange(start, min(end, total_size - 1))


class StorageStream:
    """
    An open upstream object.

    ``chunks`` is consumed at most once. ``aclose`` releases the upstream
    (file handle, HTTP connection, S3 body) and may be called any number of
    times.
    """

    def __init__(
        self,
        status_code: int,
        chunks: AsyncIterator[bytes],
        close: Optional[Callable[[], Awaitable[None]]] = None,
        content_type: Optional[str] = None,
        content_length: Optional[int] = None,
        content_range: Optional[str] = None,
    ):
        self.status_code = status_code
        self.chunks = chunks
        self.content_type = content_type
        self.content_length = content_length
        self.content_range = content_range
        self._close = close
        self.closed = False

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._close is not None:
            try:
                await self._close()
            except Exception as e:
                logger.warning(f"Error while closing storage stream: {e}")


class StorageBackend(Protocol):
    """Protocol for storage backends."""

    async def open_stream(
        self, ref: str, range_header: Optional[str] = None
    ) -> StorageStream:
        """Open ``ref`` for streaming, honouring ``range_header`` if possible."""
        ...


async def _run_blocking(fn, *args, **kwargs):
    """
    Run a blocking call (file or SDK I/O).

    In pytest we avoid creating executor threads to prevent intermittent
    loop teardown hangs.
    """
    if "pytest" in sys.modules:
        return fn(*args, **kwargs)
    return await asyncio.to_thread(fn, *args, **kwargs)


class LocalStorage:
    """Files under a local media directory (development)."""

    _instance: Optional["LocalStorage"] = None

    def __init__(self, base_dir, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size

    @classmethod
    def get_instance(cls) -> "LocalStorage":
        if cls._instance is None:
            settings = get_settings()
            base_dir = Path(settings.MEDIA_ROOT)
            if not base_dir.is_absolute():
                base_dir = Path(__file__).parent.parent / base_dir
            cls._instance = cls(base_dir, chunk_size=settings.STREAM_CHUNK_SIZE)
            logger.info("Local storage initialized at %s", cls._instance.base_dir)
        return cls._instance

    def _resolve(self, ref: str) -> Path:
        file_path = (self.base_dir / ref.lstrip("/")).resolve()
        # SECURITY: refuse anything outside the media directory
        try:
            file_path.relative_to(self.base_dir.resolve())
        except ValueError:
            raise InvalidStorageRef("Invalid path: path traversal attempt detected")
        return file_path

    async def open_stream(
        self, ref: str, range_header: Optional[str] = None
    ) -> StorageStream:
        file_path = self._resolve(ref)
        if not file_path.is_file():
            raise ObjectNotFound(f"File not found: {ref}")

        total_size = file_path.stat().st_size
        byte_range = parse_range_header(range_header, total_size)
        start, length = (byte_range.start, byte_range.length) if byte_range else (0, total_size)

        handle = await _run_blocking(open, file_path, "rb")
        if start:
            await _run_blocking(handle.seek, start)

        async def chunks() -> AsyncIterator[bytes]:
            remaining = length
            while remaining > 0:
                data = await _run_blocking(handle.read, min(self.chunk_size, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data

        async def close() -> None:
            await _run_blocking(handle.close)

        content_type, _ = mimetypes.guess_type(file_path.name)
        return StorageStream(
            status_code=206 if byte_range else 200,
            chunks=chunks(),
            close=close,
            content_type=content_type,
            content_length=length,
            content_range=byte_range.content_range(total_size) if byte_range else None,
        )


class HttpStorage:
    """
    Objects served by an upstream HTTP origin (CDN, object-store gateway).

    References are paths relative to ``base_url`` or absolute URLs under it.
    Anything else is refused so a stored reference can't point the proxy at
    arbitrary hosts.
    """

    _instance: Optional["HttpStorage"] = None

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if not base_url:
            raise RuntimeError("MEDIA_BASE_URL is required for the http storage backend")
        self.base_url = base_url.rstrip("/") + "/"
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=False)
        self.chunk_size = chunk_size

    @classmethod
    def get_instance(cls) -> "HttpStorage":
        if cls._instance is None:
            settings = get_settings()
            cls._instance = cls(
                settings.MEDIA_BASE_URL,
                timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
                chunk_size=settings.STREAM_CHUNK_SIZE,
            )
        return cls._instance

    @classmethod
    async def shutdown(cls) -> None:
        if cls._instance is not None:
            await cls._instance.client.aclose()
            cls._instance = None

    def resolve_url(self, ref: str) -> str:
        if ref.startswith(("http://", "https://")):
            url = ref
        else:
            url = urllib.parse.urljoin(self.base_url, ref.lstrip("/"))
        if not url.startswith(self.base_url) or "/../" in urllib.parse.urlparse(url).path:
            raise InvalidStorageRef("Storage reference outside configured media origin")
        return url

    async def open_stream(
        self, ref: str, range_header: Optional[str] = None
    ) -> StorageStream:
        url = self.resolve_url(ref)
        headers = {"Accept-Encoding": "identity"}
        if range_header:
            headers["Range"] = range_header

        request = self.client.build_request("GET", url, headers=headers)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise StorageError(f"Upstream request failed: {e.__class__.__name__}") from e

        if response.status_code not in (200, 206):
            await response.aclose()
            if response.status_code == 404:
                raise ObjectNotFound(f"Upstream returned 404 for {ref}")
            raise StorageError(f"Upstream returned status {response.status_code}")

        content_length = response.headers.get("Content-Length")
        return StorageStream(
            status_code=response.status_code,
            chunks=response.aiter_raw(self.chunk_size),
            close=response.aclose,
            content_type=response.headers.get("Content-Type"),
            content_length=int(content_length) if content_length and content_length.isdigit() else None,
            content_range=response.headers.get("Content-Range"),
        )


class S3Storage:
    """S3-compatible object storage (AWS S3, Cloudflare R2, MinIO, ...)."""

    _instance: Optional["S3Storage"] = None

    def __init__(self, client=None, bucket: Optional[str] = None, prefix: str = "",
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        if client is None:
            client, bucket, prefix = self._client_from_settings()
        if not bucket:
            raise RuntimeError("S3_BUCKET is required")
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip("/") if prefix else ""
        self.chunk_size = chunk_size

    @classmethod
    def get_instance(cls) -> "S3Storage":
        if cls._instance is None:
            cls._instance = cls(chunk_size=get_settings().STREAM_CHUNK_SIZE)
        return cls._instance

    @staticmethod
    def _client_from_settings():
        settings = get_settings()
        client_kwargs = {
            "aws_access_key_id": settings.S3_ACCESS_KEY_ID or None,
            "aws_secret_access_key": settings.S3_SECRET_ACCESS_KEY or None,
            "region_name": settings.S3_REGION or "us-east-1",
            "config": Config(signature_version="s3v4"),
        }
        if settings.S3_ENDPOINT_URL:
            client_kwargs["endpoint_url"] = settings.S3_ENDPOINT_URL
        logger.info(
            "S3 storage initialized (bucket=%s, prefix=%s, endpoint=%s)",
            settings.S3_BUCKET,
            settings.S3_PREFIX or "<none>",
            settings.S3_ENDPOINT_URL or "AWS S3",
        )
        return boto3.client("s3", **client_kwargs), settings.S3_BUCKET, settings.S3_PREFIX

    def _build_key(self, ref: str) -> str:
        key = ref.lstrip("/")
        if ".." in key.split("/"):
            raise InvalidStorageRef("Invalid object key")
        if self.prefix and not key.startswith(f"{self.prefix}/"):
            return f"{self.prefix}/{key}"
        return key

    async def open_stream(
        self, ref: str, range_header: Optional[str] = None
    ) -> StorageStream:
        s3_key = self._build_key(ref)
        params = {"Bucket": self.bucket, "Key": s3_key}
        if range_header:
            params["Range"] = range_header

        try:
            response = await _run_blocking(self.client.get_object, **params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404"):
                raise ObjectNotFound(f"S3 object not found: {s3_key}") from e
            if code == "InvalidRange":
                raise UnsatisfiableRange() from e
            logger.error("S3 get_object failed: bucket=%s, key=%s, code=%s", self.bucket, s3_key, code)
            raise StorageError(f"S3 error {code}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 request failed: {e.__class__.__name__}") from e

        body = response["Body"]

        async def chunks() -> AsyncIterator[bytes]:
            while True:
                data = await _run_blocking(body.read, self.chunk_size)
                if not data:
                    break
                yield data

        async def close() -> None:
            await _run_blocking(body.close)

        content_range = response.get("ContentRange")
        return StorageStream(
            status_code=206 if content_range else 200,
            chunks=chunks(),
            close=close,
            content_type=response.get("ContentType"),
            content_length=response.get("ContentLength"),
            content_range=content_range,
        )


def get_storage() -> StorageBackend:
    """Get the storage backend selected by STORAGE_BACKEND."""
    settings = get_settings()
    if settings.STORAGE_BACKEND == "http":
        return HttpStorage.get_instance()
    if settings.STORAGE_BACKEND == "s3":
        return S3Storage.get_instance()
    return LocalStorage.get_instance()

"""Relay protected media from storage to the client."""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from services.errors import RangeNotSatisfiable, UpstreamFetchFailed
from services.storage import (
    InvalidStorageRef,
    ObjectNotFound,
    StorageBackend,
    StorageError,
    StorageStream,
    UnsatisfiableRange,
)

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "audio/mpeg"

# Protected media must not be cached by browsers or shared proxies
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
    "Content-Disposition": "inline",
    "X-Content-Type-Options": "nosniff",
    "Accept-Ranges": "bytes",
}


async def _relay(stream: StorageStream) -> AsyncIterator[bytes]:
    # One chunk in flight: the next upstream read only happens after the
    # previous chunk was handed to the client.
    try:
        async for chunk in stream.chunks:
            yield chunk
    finally:
        await stream.aclose()


@dataclass
class ProxiedMedia:
    stream: StorageStream
    status_code: int
    headers: dict
    media_type: str

    def to_response(self) -> StreamingResponse:
        # The background close also runs when the client disconnects and
        # the relay generator is cancelled mid-stream.
        return StreamingResponse(
            _relay(self.stream),
            status_code=self.status_code,
            headers=self.headers,
            media_type=self.media_type,
            background=BackgroundTask(self.stream.aclose),
        )


class MediaProxy:
    """
    Open a media object in storage and describe the response that relays it.

    Authorization happens before this point; the proxy only knows the
    private storage reference and never exposes it.
    """

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    async def open(
        self,
        storage_ref: str,
        range_header: Optional[str] = None,
        media_id=None,
        content_type: Optional[str] = None,
    ) -> ProxiedMedia:
        try:
            stream = await self.storage.open_stream(storage_ref, range_header)
        except UnsatisfiableRange as e:
            raise RangeNotSatisfiable(e.total_size)
        except (ObjectNotFound, InvalidStorageRef) as e:
            logger.error(f"Media {media_id} unavailable in storage: {e}")
            raise UpstreamFetchFailed()
        except StorageError as e:
            logger.error(f"Failed to fetch media {media_id} from storage: {e}")
            raise UpstreamFetchFailed()
        except Exception:
            logger.exception(f"Unexpected storage failure for media {media_id}")
            raise UpstreamFetchFailed()

        # Any upstream Content-Range is mirrored as 206
        partial = bool(stream.content_range)

        headers = dict(NO_STORE_HEADERS)
        if stream.content_length is not None:
            headers["Content-Length"] = str(stream.content_length)
        if partial:
            headers["Content-Range"] = stream.content_range

        return ProxiedMedia(
            stream=stream,
            status_code=206 if partial else 200,
            headers=headers,
            media_type=stream.content_type or content_type or DEFAULT_MEDIA_TYPE,
        )

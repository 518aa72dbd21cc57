"""Image upload pipeline with a bounded reader/sender queue."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import aiofiles  # type: ignore[import-untyped]

from tpi.client.request import ApiRequest, RequestChannel
from tpi.common.constants import CHUNK_QUEUE_CAPACITY, WINDOW_SIZE
from tpi.common.errors import UploadError

logger = logging.getLogger("tpi.client.uploader")

_SENTINEL = None  # marks end of chunk queue

BULK_WARNING = "large files will very likely fail to be uploaded in version 1"


class AsyncSource(Protocol):
    """Anything with an awaitable ``read(size)``, e.g. an ``aiofiles`` file."""

    async def read(self, size: int = -1) -> bytes: ...


class UploadPipeline:
    """Stream an image to the BMC without holding it in memory.

    A reader task reads chunks of at most ``window_size`` bytes into a
    bounded queue; a sender task POSTs them one by one, in order. The reader
    blocks once the queue is full, so at most ``queue_capacity`` chunks are
    buffered. The first failure of either task cancels the other and is
    raised from :meth:`upload`.
    """

    def __init__(
        self,
        channel: RequestChannel,
        window_size: int = WINDOW_SIZE,
        queue_capacity: int = CHUNK_QUEUE_CAPACITY,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        warn: Optional[Callable[[str], None]] = None,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.channel = channel
        self.window_size = window_size
        self.queue_capacity = queue_capacity
        self.progress_callback = progress_callback
        self._warn = warn or logger.warning
        self._sent_bytes = 0
        self._sent_chunks = 0

    @property
    def sent_bytes(self) -> int:
        return self._sent_bytes

    @property
    def sent_chunks(self) -> int:
        return self._sent_chunks

    # ── Streaming variant ────────────────────────────────────

    async def upload(self, source: AsyncSource, total_size: int, destination: ApiRequest) -> int:
        """Stream *total_size* bytes from *source* to *destination*.

        Returns:
            Number of bytes sent.

        Raises:
            UploadError: Reading the source failed or the BMC rejected a chunk.
        """
        self._sent_bytes = 0
        self._sent_chunks = 0
        chunk_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=self.queue_capacity)

        reader = asyncio.create_task(self._read_chunks(source, total_size, chunk_queue))
        sender = asyncio.create_task(self._send_chunks(chunk_queue, destination, total_size))
        try:
            await asyncio.gather(reader, sender)
        except BaseException:
            for task in (reader, sender):
                task.cancel()
            await asyncio.gather(reader, sender, return_exceptions=True)
            raise

        logger.debug("Sent %d bytes in %d chunks", self._sent_bytes, self._sent_chunks)
        return self._sent_bytes

    async def upload_file(self, path: Path, destination: ApiRequest) -> int:
        """Open *path* and stream it with :meth:`upload`."""
        path = Path(path)
        try:
            size = path.stat().st_size
            f = await aiofiles.open(path, "rb")
        except OSError as e:
            raise UploadError(f"cannot open file {path}: {e}") from e
        try:
            return await self.upload(f, size, destination)
        finally:
            await f.close()

    async def _read_chunks(
        self,
        source: AsyncSource,
        total_size: int,
        chunk_queue: "asyncio.Queue[Optional[bytes]]",
    ) -> None:
        name = getattr(source, "name", "<stream>")
        read = 0
        while read < total_size:
            try:
                chunk = await source.read(min(self.window_size, total_size - read))
            except OSError as e:
                raise UploadError(f"cannot read {name}: {e}") from e
            if not chunk:
                break
            read += len(chunk)
            await chunk_queue.put(chunk)
        await chunk_queue.put(_SENTINEL)

    async def _send_chunks(
        self,
        chunk_queue: "asyncio.Queue[Optional[bytes]]",
        destination: ApiRequest,
        total_size: int,
    ) -> None:
        while True:
            chunk = await chunk_queue.get()
            if chunk is _SENTINEL:
                return

            req = destination.clone()
            req.method = "POST"
            req.content = chunk
            req.headers["Content-Type"] = "application/octet-stream"

            resp = await self.channel.send(req)
            if not resp.is_success:
                raise UploadError(
                    f"chunk at offset {self._sent_bytes} failed: HTTP {resp.status_code} {resp.text[:200]}"
                )

            self._sent_bytes += len(chunk)
            self._sent_chunks += 1
            if self.progress_callback:
                self.progress_callback(self._sent_bytes, total_size)

    # ── Bulk variant (API v1) ────────────────────────────────

    async def upload_bulk(self, path: Path, destination: ApiRequest) -> Any:
        """Send the whole file as one multipart body.

        Only suitable for small images: the file is read into memory.
        """
        path = Path(path)
        self._warn(BULK_WARNING)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise UploadError(f"cannot open file {path}: {e}") from e

        req = destination.clone()
        req.method = "POST"
        req.files = {"file": (path.name, data, "application/octet-stream")}

        resp = await self.channel.send(req)
        if not resp.is_success:
            raise UploadError(f"upload of {path.name} failed: HTTP {resp.status_code} {resp.text[:200]}")

        self._sent_bytes = len(data)
        self._sent_chunks = 1
        if self.progress_callback:
            self.progress_callback(self._sent_bytes, self._sent_bytes)
        return resp

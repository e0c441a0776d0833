"""Chunked byte streaming for progressive, segmented and live formats."""

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Iterable, Optional, Tuple

from .decryptor import SegmentDecryptor
from .errors import NetworkError, Rejected
from .manifest import LivePlaylistPoller
from .models import ByteRange, ManifestVariant, Segment
from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024


class SmartDownloader:
    """Streams the bytes of a format as an async iterator of chunks."""

    def __init__(self, transport: Transport, decryptor: Optional[SegmentDecryptor] = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 progress_callback: Optional[Callable[[float, int, int], None]] = None,
                 sleep=asyncio.sleep):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.transport = transport
        self.decryptor = decryptor or SegmentDecryptor(transport, transport.executor)
        self.chunk_size = chunk_size
        self.progress_callback = progress_callback
        self._sleep = sleep

        self._stop_event = threading.Event()
        self._downloaded_bytes = 0
        self._total_bytes = 0
        self._poller: Optional[LivePlaylistPoller] = None
        self._last_init: Optional[Tuple[str, Optional[ByteRange]]] = None

    @property
    def downloaded_bytes(self) -> int:
        return self._downloaded_bytes

    async def stream_progressive(self, url: str, content_length: Optional[int] = None) -> AsyncIterator[bytes]:
        """Ranged requests of `chunk_size` bytes until the whole resource has been read."""
        total = content_length
        if not total:
            try:
                total = await self.transport.content_length(url)
            except Rejected as exc:
                logger.debug(f"HEAD not accepted for {url} ({exc.status}), falling back to a single request")
                total = None

        if not total:
            data = await self.transport.fetch_bytes(url)
            self._total_bytes = len(data)
            self._report_progress(len(data))
            yield data
            return

        self._total_bytes = total
        start = 0
        while start < total:
            if self._stop_event.is_set():
                logger.info(f"Download of {url} stopped at {start}/{total} bytes")
                return
            end = min(start + self.chunk_size, total) - 1
            data = await self.transport.fetch_bytes(url, byte_range=ByteRange(start, end))
            if not data:
                raise NetworkError(f"empty response for bytes {start}-{end} of {url}")
            if len(data) > end - start + 1:
                # range ignored by the server: accept only a complete body from offset zero
                if start != 0 or len(data) != total:
                    raise NetworkError(f"server ignored the range request for {url}")
                self._report_progress(len(data))
                yield data
                return
            start += len(data)
            self._report_progress(len(data))
            yield data

    async def stream_segments(self, segments: Iterable[Segment]) -> AsyncIterator[bytes]:
        """Fetch, decrypt and yield segments in order, each init section once per change."""
        for segment in segments:
            if self._stop_event.is_set():
                return
            if segment.init_uri:
                init = (segment.init_uri, segment.init_range)
                if init != self._last_init:
                    yield await self._fetch_init(segment)
                    self._last_init = init
            data = await self.transport.fetch_bytes(segment.uri, byte_range=segment.byte_range)
            data = await self.decryptor.decrypt_segment(segment, data)
            self._report_progress(len(data))
            yield data

    async def _fetch_init(self, segment: Segment) -> bytes:
        data = await self.transport.fetch_bytes(segment.init_uri, byte_range=segment.init_range)
        # an encrypted init section always declares its IV
        if segment.key is not None and segment.key.is_encrypted and segment.key.iv is not None:
            context = await self.decryptor.context_for(segment.key)
            data = self.decryptor.decrypt(context, data, segment.sequence)
        self._report_progress(len(data))
        return data

    async def stream_variant(self, variant: ManifestVariant) -> AsyncIterator[bytes]:
        """Stream a media variant; live playlists and MPDs are polled until they end or `stop()`."""
        if not variant.is_live:
            async for chunk in self.stream_segments(variant.segments):
                yield chunk
            return

        source = variant.manifest_uri or variant.uri
        representation_id = variant.representation_id if variant.protocol == "dash" else None
        self._poller = LivePlaylistPoller(self.transport, source, variant, sleep=self._sleep,
                                          representation_id=representation_id)
        try:
            async for snapshot in self._poller:
                logger.debug(f"Live {variant.protocol} manifest {source}: {len(snapshot.new_segments)} new segments")
                async for chunk in self.stream_segments(snapshot.new_segments):
                    yield chunk
                if self._stop_event.is_set():
                    return
        finally:
            self._poller = None

    def _report_progress(self, size: int):
        self._downloaded_bytes += size
        if self.progress_callback and self._total_bytes > 0:
            percent = min(100.0, (self._downloaded_bytes / self._total_bytes) * 100)
            self.progress_callback(percent, self._downloaded_bytes, self._total_bytes)

    def stop(self):
        """Stop the download at the next chunk or segment boundary."""
        self._stop_event.set()
        if self._poller is not None:
            self._poller.close()

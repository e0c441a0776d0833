"""Facade tying extraction, cipher decoding, manifests and streaming together."""

import asyncio
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from ..utils.config import Config
from .decryptor import SegmentDecryptor
from .downloader import SmartDownloader
from .errors import FormatNotFound, InvalidVideoId, ManifestError, TransportError
from .extractor import PlayerConfigExtractor, get_video_id, watch_url
from .manifest import parse_dash, parse_hls, parse_manifest, select_variant
from .models import Format, ManifestVariant, PlayerResponse, RawFormatEntry, Resolution
from .resolver import FormatResolver, manifest_entry
from .sandbox import CipherCache
from .transport import Transport

logger = logging.getLogger(__name__)

CONSENT_COOKIE = ("CONSENT", "YES+cb", ".youtube.com")


@dataclass(frozen=True)
class ResolveOptions:
    include_manifests: bool = True


class VideoClient:
    """Resolves videos into formats and streams their bytes.

    Owns a bounded thread pool for blocking HTTP and CPU work unless an executor
    is supplied. The cipher cache may be shared between clients.
    """

    def __init__(self, transport: Optional[Transport] = None, cache: Optional[CipherCache] = None,
                 config: Optional[Config] = None, executor: Optional[Executor] = None):
        self.config = config or Config()

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="vidresolve")

        self._owns_transport = transport is None
        if transport is None:
            headers = {"Accept-Language": f"{self.config.language},en;q=0.8"}
            if self.config.user_agent:
                headers["User-Agent"] = self.config.user_agent
            transport = Transport(
                retries=self.config.retries,
                backoff_factor=self.config.backoff_factor,
                backoff_jitter=self.config.backoff_jitter,
                timeout=self.config.timeout,
                headers=headers,
                executor=self.executor,
            )
            transport.set_cookie(*CONSENT_COOKIE)
        self.transport = transport

        self.cache = cache or CipherCache(self.config.cache_capacity, self.config.failure_ttl)
        self.extractor = PlayerConfigExtractor()
        self.resolver = FormatResolver(self.transport, self.cache, executor=self.executor)
        self.decryptor = SegmentDecryptor(self.transport, self.executor)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        self.decryptor.forget()
        if self._owns_transport:
            self.transport.close()
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    async def player_response(self, video_id: str) -> PlayerResponse:
        """Fetch the watch page and extract its player response."""
        body = await self.transport.fetch_bytes(watch_url(video_id, self.config.language))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.extractor.extract_watch_page, body, video_id)

    async def resolve(self, url_or_id: str, options: Optional[ResolveOptions] = None) -> Resolution:
        """Resolve a video URL or id into its sorted, directly fetchable formats."""
        options = options or ResolveOptions()
        video_id = get_video_id(url_or_id)
        if video_id is None:
            raise InvalidVideoId(f"not a video id or supported URL: {url_or_id!r}")

        response = await self.player_response(video_id)
        extra = await self.manifest_entries(response) if options.include_manifests else []
        resolution = await self.resolver.resolve(response, extra)
        logger.info(f"{video_id}: {len(resolution)} formats, {resolution.unresolved} unresolved")
        return resolution

    async def manifest_entries(self, response: PlayerResponse) -> List[RawFormatEntry]:
        """Raw entries for the variants of the response's HLS and DASH manifests."""
        entries = []
        for url in (response.hls_manifest_url, response.dash_manifest_url):
            if not url:
                continue
            try:
                variants = parse_manifest(await self.transport.fetch_text(url), url)
            except (TransportError, ManifestError) as exc:
                logger.warning(f"Skipping manifest {url}: {exc}")
                continue
            found = [entry for entry in (manifest_entry(v, url) for v in variants) if entry is not None]
            logger.debug(f"Manifest {url}: {len(found)} of {len(variants)} variants carry an itag")
            entries.extend(found)
        return entries

    async def variants(self, fmt: Format) -> List[ManifestVariant]:
        """Manifest variants behind an HLS or DASH format."""
        if fmt.is_dash:
            url = fmt.manifest_url or fmt.url
            variants = parse_dash(await self.transport.fetch_text(url), url)
            matching = [v for v in variants if v.representation_id == str(fmt.itag) or v.itag == fmt.itag]
            if not matching:
                raise FormatNotFound(f"itag {fmt.itag} has no representation in {url}")
            return matching
        if fmt.is_hls:
            return parse_hls(await self.transport.fetch_text(fmt.url), fmt.url)
        raise FormatNotFound(f"itag {fmt.itag} is not an HLS or DASH format")

    def downloader(self, chunk_size: Optional[int] = None,
                   progress_callback: Optional[Callable[[float, int, int], None]] = None) -> SmartDownloader:
        return SmartDownloader(self.transport, self.decryptor,
                               chunk_size=chunk_size or self.config.chunk_size,
                               progress_callback=progress_callback)

    def stream(self, fmt: Format, chunk_size: Optional[int] = None,
               downloader: Optional[SmartDownloader] = None) -> AsyncIterator[bytes]:
        """Async iterator over the bytes of `fmt`."""
        return self._stream(fmt, downloader or self.downloader(chunk_size))

    async def _stream(self, fmt: Format, downloader: SmartDownloader) -> AsyncIterator[bytes]:
        if not fmt.is_adaptive:
            async for chunk in downloader.stream_progressive(fmt.url, fmt.content_length):
                yield chunk
            return

        variants = await self.variants(fmt)
        variant = variants[0]
        if variant.is_master_entry:
            variant = select_variant(variants)
            media = parse_hls(await self.transport.fetch_text(variant.uri), variant.uri)
            variant = media[0]
        logger.debug(f"Streaming itag {fmt.itag} from {variant.protocol} variant {variant.uri}")
        async for chunk in downloader.stream_variant(variant):
            yield chunk

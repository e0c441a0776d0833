"""Turn raw format entries into a unified, de-duplicated and ordered format list."""

import asyncio
import functools
import logging
import re
from concurrent.futures import Executor
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

from yt_dlp.utils import mimetype2ext, parse_codecs

from .errors import AllFormatsUnresolved, CipherError, FormatNotFound, MalformedCipher, StructureChanged
from .models import (Format, ManifestVariant, PlayerResponse, PlayerVersionKey, RawFormatEntry,
                     Resolution, StreamKind)
from .sandbox import CipherCache, CipherProgram, ScriptSandbox
from .synthesizer import CipherSynthesizer
from .transport import Transport

logger = logging.getLogger(__name__)

_LIVE_RE = re.compile(r"\bsource[/=]yt_live_broadcast\b")
_HLS_RE = re.compile(r"/manifest/hls_(?:variant|playlist)/")
_DASH_RE = re.compile(r"/manifest/dash/")
_ITAG_PATH_RE = re.compile(r"/itag/(\d+)(?:/|$)")
_CODECS_RE = re.compile(r'codecs="([^"]*)"')

# Later entries rank higher.
VIDEO_CODEC_RANKS = ("mp4v", "avc1", "vp8", "vp9", "vp09", "av01")
AUDIO_CODEC_RANKS = ("mp4a", "mp3", "vorbis", "aac", "opus", "flac")


def set_query_param(url: str, name: str, value: str) -> str:
    """Replace the first `name` parameter of `url` (or append it), keeping the rest in order."""
    parts = urlsplit(url)
    query = []
    replaced = False
    for key, current in parse_qsl(parts.query, keep_blank_values=True):
        if key == name:
            if replaced:
                continue
            current = value
            replaced = True
        query.append((key, current))
    if not replaced:
        query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


def parse_signature_cipher(cipher: str) -> Tuple[str, str, str]:
    """Split a signatureCipher query string into (url, param name, ciphertext)."""
    args = parse_qs(cipher)
    url = args.get("url", [""])[0]
    ciphertext = args.get("s", [""])[0]
    param = args.get("sp", ["signature"])[0] or "signature"
    if not ciphertext:
        raise MalformedCipher("signature cipher has no 's' component")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise MalformedCipher(f"signature cipher has no usable url ({url[:60]!r})")
    return url, param, ciphertext


def _codec_name(value: Optional[str]) -> Optional[str]:
    return None if not value or value == "none" else value


def _codec_rank(codec: Optional[str], ranks: Sequence[str]) -> int:
    if not codec:
        return -1
    codec = codec.lower()
    for index in range(len(ranks) - 1, -1, -1):
        if codec.startswith(ranks[index]):
            return index
    return -1


def build_format(entry: RawFormatEntry, url: str) -> Format:
    """Derive the Format metadata for an entry whose URL is fully resolved."""
    base_mime, _, params = entry.mime_type.partition(";")
    base_mime = base_mime.strip().lower()
    match = _CODECS_RE.search(params)
    codecs = parse_codecs(match.group(1)) if match else {}
    video_codec = _codec_name(codecs.get("vcodec"))
    audio_codec = _codec_name(codecs.get("acodec"))

    has_video = bool(video_codec) or entry.quality_label is not None or entry.height is not None
    has_audio = bool(audio_codec) or entry.audio_quality is not None or entry.audio_sample_rate is not None
    if not has_video and not has_audio:
        has_video = base_mime.startswith("video/")
        has_audio = base_mime.startswith("audio/")

    if has_video and has_audio:
        kind = StreamKind.COMBINED
    elif has_audio:
        kind = StreamKind.AUDIO_ONLY
    else:
        kind = StreamKind.VIDEO_ONLY

    container = (mimetype2ext(base_mime) if base_mime else None) or base_mime.rpartition("/")[2]
    return Format(
        itag=entry.itag,
        url=url,
        mime_type=entry.mime_type,
        container=container,
        video_codec=video_codec,
        audio_codec=audio_codec,
        bitrate=entry.bitrate,
        quality_label=entry.quality_label,
        width=entry.width,
        height=entry.height,
        fps=entry.fps,
        audio_sample_rate=entry.audio_sample_rate,
        audio_channels=entry.audio_channels,
        content_length=entry.content_length,
        kind=kind,
        is_live=bool(_LIVE_RE.search(url)),
        is_hls=entry.source == "hls" or bool(_HLS_RE.search(url)),
        is_dash=entry.source == "dash" or bool(_DASH_RE.search(url)),
        init_range=entry.init_range,
        index_range=entry.index_range,
        approx_duration_ms=entry.approx_duration_ms,
        manifest_url=entry.manifest_url,
    )


def manifest_entry(variant: ManifestVariant, manifest_url: str) -> Optional[RawFormatEntry]:
    """Describe a manifest variant as a raw entry, or None when it carries no itag."""
    itag = variant.itag
    if itag is None:
        match = _ITAG_PATH_RE.search(variant.uri)
        if match:
            itag = int(match.group(1))
    if itag is None and variant.representation_id and variant.representation_id.isdigit():
        itag = int(variant.representation_id)
    if itag is None:
        return None

    width, height = variant.resolution or (None, None)
    is_audio = height is None and variant.codecs and all(
        c.strip().startswith(("mp4a", "opus", "vorbis", "ac-3", "ec-3", "flac")) for c in variant.codecs.split(","))
    if variant.protocol == "hls":
        mime = "application/x-mpegURL"
        url = variant.uri
    else:
        mime = "audio/mp4" if is_audio else "video/mp4"
        url = manifest_url
    if variant.codecs:
        mime = f'{mime}; codecs="{variant.codecs}"'
    return RawFormatEntry(
        itag=itag,
        mime_type=mime,
        bitrate=variant.bandwidth,
        quality_label=f"{height}p" if height else None,
        url=url,
        width=width,
        height=height,
        fps=int(variant.frame_rate) if variant.frame_rate else None,
        audio_quality="AUDIO_QUALITY_MEDIUM" if is_audio else None,
        manifest_url=manifest_url,
        source=variant.protocol,
    )


def _completeness(fmt: Format) -> int:
    values = (fmt.content_length, fmt.quality_label, fmt.width, fmt.height, fmt.fps, fmt.init_range,
              fmt.index_range, fmt.audio_sample_rate, fmt.audio_channels, fmt.approx_duration_ms,
              fmt.video_codec, fmt.audio_codec)
    return sum(1 for v in values if v is not None) + (1 if fmt.bitrate else 0)


def dedupe_formats(formats: Iterable[Format]) -> List[Format]:
    """One format per itag: the most completely described one, first seen on ties."""
    chosen: Dict[int, Format] = {}
    for fmt in formats:
        current = chosen.get(fmt.itag)
        if current is None or _completeness(fmt) > _completeness(current):
            chosen[fmt.itag] = fmt
    return list(chosen.values())


def sort_formats(formats: Iterable[Format]) -> List[Format]:
    """Combined first, then bitrate descending, then itag ascending."""
    return sorted(formats, key=lambda f: (not f.is_combined, -f.bitrate, f.itag))


class _Unresolved:
    def __init__(self, itag: int, reason: str):
        self.itag = itag
        self.reason = reason


class FormatResolver:
    """Decodes every raw entry of a player response through the cached cipher program."""

    def __init__(self, transport: Transport, cache: CipherCache,
                 synthesizer: Optional[CipherSynthesizer] = None,
                 sandbox: Optional[ScriptSandbox] = None,
                 executor: Optional[Executor] = None):
        self.transport = transport
        self.cache = cache
        self.synthesizer = synthesizer or CipherSynthesizer()
        self.sandbox = sandbox or ScriptSandbox()
        self.executor = executor

    async def program_for(self, player_url: str) -> CipherProgram:
        key = PlayerVersionKey.from_player_url(player_url)
        return await self.cache.get(key, functools.partial(self._build_program, key, player_url))

    async def _build_program(self, key: PlayerVersionKey, player_url: str) -> CipherProgram:
        script = await self.transport.fetch_text(player_url)
        loop = asyncio.get_running_loop()
        fragments = await loop.run_in_executor(self.executor, self.synthesizer.synthesize, script)
        return await loop.run_in_executor(self.executor, self.sandbox.compile_program, key, fragments)

    async def _run(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(self.executor, func, *args)

    async def resolve(self, response: PlayerResponse,
                      extra_entries: Iterable[RawFormatEntry] = ()) -> Resolution:
        entries = list(response.raw_formats) + list(extra_entries)
        if not entries:
            raise StructureChanged(f"no format entries for {response.video_id or 'video'}")

        program = None
        if any(entry.needs_signature or entry.needs_n for entry in entries):
            if not response.player_url:
                raise StructureChanged("formats need decoding but the page has no player script reference")
            program = await self.program_for(response.player_url)

        urls = await asyncio.gather(*(self._signed_url(entry, program) for entry in entries))
        urls = await self._decode_n_values(entries, urls, program)

        formats: List[Format] = []
        resolution = Resolution()
        for entry, url in zip(entries, urls):
            if isinstance(url, _Unresolved):
                resolution.unresolved += 1
                resolution.failures[url.itag] = url.reason
                logger.warning(f"Dropping itag {url.itag}: {url.reason}")
                continue
            formats.append(build_format(entry, url))

        if not formats:
            raise AllFormatsUnresolved(resolution.unresolved, resolution.failures)
        resolution.formats = sort_formats(dedupe_formats(formats))
        logger.debug(f"Resolved {len(resolution.formats)} formats for {response.video_id}, "
                     f"{resolution.unresolved} unresolved")
        return resolution

    async def _signed_url(self, entry: RawFormatEntry, program: Optional[CipherProgram]):
        if entry.url:
            return entry.url
        if not entry.signature_cipher:
            return _Unresolved(entry.itag, "entry has neither a url nor a signature cipher")
        try:
            url, param, ciphertext = parse_signature_cipher(entry.signature_cipher)
            signature = await self._run(program.decode_signature, ciphertext)
        except CipherError as exc:
            return _Unresolved(entry.itag, str(exc))
        return set_query_param(url, param, signature)

    async def _decode_n_values(self, entries: List[RawFormatEntry], urls: List,
                               program: Optional[CipherProgram]) -> List:
        values = set()
        for url in urls:
            if isinstance(url, str):
                n = parse_qs(urlsplit(url).query).get("n")
                if n:
                    values.add(n[0])
        if not values:
            return urls

        ordered = sorted(values)
        results = await asyncio.gather(*(self._decode_n(program, value) for value in ordered))
        decoded = dict(zip(ordered, results))

        out = []
        for entry, url in zip(entries, urls):
            n = parse_qs(urlsplit(url).query).get("n") if isinstance(url, str) else None
            if n:
                result = decoded[n[0]]
                if isinstance(result, CipherError):
                    url = _Unresolved(entry.itag, f"n transform failed: {result}")
                else:
                    url = set_query_param(url, "n", result)
            out.append(url)
        return out

    async def _decode_n(self, program: CipherProgram, value: str):
        try:
            return await self._run(program.decode_n, value)
        except CipherError as exc:
            return exc


class Quality(Enum):
    HIGHEST = "highest"
    LOWEST = "lowest"
    HIGHEST_AUDIO = "highest-audio"
    LOWEST_AUDIO = "lowest-audio"
    HIGHEST_VIDEO = "highest-video"
    LOWEST_VIDEO = "lowest-video"


class StreamFilter(Enum):
    ANY = "any"
    AUDIO = "audio"
    VIDEO = "video"
    VIDEO_AUDIO = "video-audio"


def filter_formats(formats: Iterable[Format], stream_filter: StreamFilter = StreamFilter.ANY) -> List[Format]:
    if stream_filter is StreamFilter.AUDIO:
        return [f for f in formats if f.kind is StreamKind.AUDIO_ONLY or f.is_live]
    if stream_filter is StreamFilter.VIDEO:
        return [f for f in formats if f.kind is StreamKind.VIDEO_ONLY or f.is_live]
    if stream_filter is StreamFilter.VIDEO_AUDIO:
        return [f for f in formats if f.is_combined or f.is_live]
    return list(formats)


def choose_format(formats: Iterable[Format], quality: Quality = Quality.HIGHEST,
                  stream_filter: StreamFilter = StreamFilter.ANY) -> Format:
    """Pick one format; `formats` is expected in resolution order."""
    candidates = filter_formats(formats, stream_filter)
    # live videos: HLS renditions are the ones that keep playing
    if any(f.is_hls and f.is_live for f in candidates):
        candidates = [f for f in candidates if f.is_hls or not f.is_live]

    if quality in (Quality.HIGHEST_AUDIO, Quality.LOWEST_AUDIO):
        candidates = [f for f in candidates if f.kind is StreamKind.AUDIO_ONLY]
        candidates.sort(key=lambda f: (f.bitrate, f.audio_sample_rate or 0,
                                       _codec_rank(f.audio_codec, AUDIO_CODEC_RANKS)), reverse=True)
    elif quality in (Quality.HIGHEST_VIDEO, Quality.LOWEST_VIDEO):
        candidates = [f for f in candidates if f.kind is StreamKind.VIDEO_ONLY]
        candidates.sort(key=lambda f: (f.height or 0, f.bitrate,
                                       _codec_rank(f.video_codec, VIDEO_CODEC_RANKS)), reverse=True)

    if not candidates:
        raise FormatNotFound(f"no format matches {quality.value} / {stream_filter.value}")
    if quality in (Quality.LOWEST, Quality.LOWEST_AUDIO, Quality.LOWEST_VIDEO):
        return candidates[-1]
    return candidates[0]

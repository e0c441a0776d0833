"""HLS and DASH manifest parsing, variant selection and live playlist polling."""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import isodate
import m3u8
from lxml import etree

from .errors import NoVariants, ParseFailed
from .models import ByteRange, KeyReference, ManifestVariant, Segment
from .transport import Transport

logger = logging.getLogger(__name__)

_ITAG_PATH_RE = re.compile(r"/itag/(\d+)(?:/|$)")
_TEMPLATE_RE = re.compile(r"\$(RepresentationID|Number|Time|Bandwidth|)(?:%0(\d+)d)?\$")

# Upper bound for segments expanded from a duration-only SegmentTemplate.
MAX_TEMPLATE_SEGMENTS = 100_000
MIN_POLL_INTERVAL = 0.5


# HLS

def _parse_iv(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    digits = value[2:] if value.lower().startswith("0x") else value
    try:
        iv = bytes.fromhex(digits.zfill(32))
    except ValueError as exc:
        raise ParseFailed(f"invalid key IV {value!r}") from exc
    if len(iv) != 16:
        raise ParseFailed(f"key IV {value!r} is not 128 bits")
    return iv


def _hls_byte_range(value: Optional[str], offsets: Dict[str, int], uri: str) -> Optional[ByteRange]:
    """Resolve `length[@offset]`; an omitted offset continues after the previous range of the same uri."""
    if not value:
        return None
    length, _, offset = value.partition("@")
    try:
        length = int(length)
        start = int(offset) if offset else offsets.get(uri, 0)
    except ValueError as exc:
        raise ParseFailed(f"invalid byte range {value!r}") from exc
    if length <= 0:
        raise ParseFailed(f"empty byte range {value!r}")
    offsets[uri] = start + length
    return ByteRange(start, start + length - 1)


def _hls_key(key, base_uri: str) -> Optional[KeyReference]:
    if key is None or not key.method:
        return None
    return KeyReference(
        method=key.method.upper(),
        uri=urljoin(base_uri, key.uri) if key.uri else None,
        iv=_parse_iv(key.iv),
    )


def _itag_from_uri(uri: str) -> Optional[int]:
    match = _ITAG_PATH_RE.search(uri)
    return int(match.group(1)) if match else None


def parse_hls(text: str, uri: str) -> List[ManifestVariant]:
    """Parse a master playlist into its variants, or a media playlist into a single variant."""
    if not text.lstrip("\ufeff").lstrip().startswith("#EXTM3U"):
        raise ParseFailed(f"{uri} is not an extended M3U playlist")
    try:
        playlist = m3u8.loads(text, uri=uri)
    except (ValueError, AttributeError, IndexError, TypeError) as exc:
        raise ParseFailed(f"unparsable playlist {uri}: {exc}") from exc

    if playlist.is_variant or ("#EXT-X-TARGETDURATION" not in text and not playlist.segments):
        variants = []
        for entry in playlist.playlists:
            info = entry.stream_info
            variant_uri = urljoin(uri, entry.uri)
            variants.append(ManifestVariant(
                uri=variant_uri,
                protocol="hls",
                bandwidth=info.bandwidth or info.average_bandwidth or 0,
                codecs=info.codecs or "",
                resolution=tuple(info.resolution) if info.resolution else None,
                frame_rate=float(info.frame_rate) if info.frame_rate else None,
                itag=_itag_from_uri(variant_uri),
            ))
        if not variants:
            raise NoVariants(f"master playlist {uri} lists no variants")
        logger.debug(f"Master playlist {uri}: {len(variants)} variants")
        return variants

    segments = []
    offsets: Dict[str, int] = {}
    sequence = playlist.media_sequence or 0
    for segment in playlist.segments:
        segment_uri = urljoin(uri, segment.uri)
        init_uri = init_range = None
        if segment.init_section is not None:
            init_uri = urljoin(uri, segment.init_section.uri)
            init_range = _hls_byte_range(segment.init_section.byterange, {}, init_uri)
        segments.append(Segment(
            sequence=sequence,
            uri=segment_uri,
            duration=float(segment.duration or 0.0),
            byte_range=_hls_byte_range(segment.byterange, offsets, segment_uri),
            key=_hls_key(segment.key, uri),
            init_uri=init_uri,
            init_range=init_range,
        ))
        sequence += 1

    return [ManifestVariant(
        uri=uri,
        protocol="hls",
        segments=tuple(segments),
        target_duration=float(playlist.target_duration) if playlist.target_duration else None,
        media_sequence=playlist.media_sequence or 0,
        is_live=not playlist.is_endlist,
        itag=_itag_from_uri(uri),
        manifest_uri=uri,
    )]


# DASH

def _local(element) -> str:
    return etree.QName(element).localname


def _child(element, name: str):
    return element.find(f"{{*}}{name}")


def _children(element, name: str):
    return element.findall(f"{{*}}{name}")


def _duration(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return isodate.parse_duration(value).total_seconds()
    except (isodate.ISO8601Error, ValueError) as exc:
        raise ParseFailed(f"invalid duration {value!r}") from exc


def _int_attr(element, name: str, default: Optional[int] = None) -> Optional[int]:
    value = element.get(name) if element is not None else None
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ParseFailed(f"attribute {name}={value!r} is not an integer") from exc


def _range_attr(value: Optional[str]) -> Optional[ByteRange]:
    if not value:
        return None
    start, sep, end = value.partition("-")
    if not sep or not start.isdigit() or not end.isdigit():
        raise ParseFailed(f"invalid byte range {value!r}")
    return ByteRange(int(start), int(end))


def _frame_rate(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(Fraction(value))
    except (ValueError, ZeroDivisionError) as exc:
        raise ParseFailed(f"invalid frame rate {value!r}") from exc


def _base_url(element, current: str) -> str:
    base = _child(element, "BaseURL")
    if base is not None and base.text and base.text.strip():
        return urljoin(current, base.text.strip())
    return current


def expand_template(template: str, representation_id: str, bandwidth: int,
                    number: Optional[int] = None, time: Optional[int] = None) -> str:
    """Substitute `$RepresentationID$`, `$Number$`, `$Time$` and `$Bandwidth$` (with `%0Nd` widths)."""
    def substitute(match):
        name, width = match.group(1), match.group(2)
        if name == "":
            return "$"
        if name == "RepresentationID":
            return representation_id
        value = {"Number": number, "Time": time, "Bandwidth": bandwidth}[name]
        if value is None:
            raise ParseFailed(f"template {template!r} needs ${name}$ but none is available")
        return str(value).zfill(int(width)) if width else str(value)
    return _TEMPLATE_RE.sub(substitute, template)


def _merged_template(adaptation, representation) -> Optional[Dict[str, object]]:
    """SegmentTemplate attributes with Representation-level values overriding AdaptationSet ones."""
    merged: Dict[str, object] = {}
    timeline = None
    for owner in (adaptation, representation):
        template = _child(owner, "SegmentTemplate")
        if template is None:
            continue
        merged.update(template.attrib)
        found = _child(template, "SegmentTimeline")
        if found is not None:
            timeline = found
    if not merged and timeline is None:
        return None
    merged["timeline"] = timeline
    return merged


def _timeline(timeline, start_number: int, period_end: Optional[int]) -> List[Tuple[int, int, int]]:
    """Expand `<S t d r>` entries into (number, time, duration) triples."""
    entries = []
    number, time = start_number, 0
    items = _children(timeline, "S")
    for index, item in enumerate(items):
        duration = _int_attr(item, "d")
        if duration is None or duration <= 0:
            raise ParseFailed("SegmentTimeline entry without a positive duration")
        time = _int_attr(item, "t", time)
        repeat = _int_attr(item, "r", 0)
        if repeat < 0:
            following = _int_attr(items[index + 1], "t") if index + 1 < len(items) else None
            end = following if following is not None else period_end
            repeat = max(0, math.ceil((end - time) / duration) - 1) if end is not None else 0
        for _ in range(repeat + 1):
            entries.append((number, time, duration))
            number += 1
            time += duration
    return entries


def _template_segments(template: Dict[str, object], base: str, rep_id: str, bandwidth: int,
                       period_duration: Optional[float]) -> Tuple[List[Segment], Optional[str]]:
    media = template.get("media")
    if not media:
        raise ParseFailed(f"SegmentTemplate for representation {rep_id} has no media attribute")
    start_number = int(template.get("startNumber", 1))
    timescale = int(template.get("timescale", 1)) or 1
    init = template.get("initialization")
    init_uri = urljoin(base, expand_template(init, rep_id, bandwidth)) if init else None

    segments = []
    timeline = template.get("timeline")
    if timeline is not None:
        period_end = int(period_duration * timescale) if period_duration else None
        for number, time, duration in _timeline(timeline, start_number, period_end):
            uri = urljoin(base, expand_template(media, rep_id, bandwidth, number=number, time=time))
            segments.append(Segment(sequence=number, uri=uri, duration=duration / timescale, init_uri=init_uri))
        return segments, init_uri

    duration = template.get("duration")
    if duration is None:
        raise ParseFailed(f"SegmentTemplate for representation {rep_id} has neither duration nor timeline")
    segment_duration = int(duration) / timescale
    if not period_duration or segment_duration <= 0:
        raise ParseFailed(f"cannot determine the segment count of representation {rep_id}")
    count = min(math.ceil(period_duration / segment_duration), MAX_TEMPLATE_SEGMENTS)
    for offset in range(count):
        number = start_number + offset
        time = int(offset * int(duration))
        uri = urljoin(base, expand_template(media, rep_id, bandwidth, number=number, time=time))
        segments.append(Segment(sequence=number, uri=uri, duration=segment_duration, init_uri=init_uri))
    return segments, init_uri


def _list_segments(segment_list, base: str) -> List[Segment]:
    start_number = _int_attr(segment_list, "startNumber", 1)
    timescale = _int_attr(segment_list, "timescale", 1) or 1
    duration = _int_attr(segment_list, "duration", 0) / timescale
    init = _child(segment_list, "Initialization")
    init_uri = init_range = None
    if init is not None:
        init_uri = urljoin(base, init.get("sourceURL") or "")
        init_range = _range_attr(init.get("range"))

    segments = []
    for offset, item in enumerate(_children(segment_list, "SegmentURL")):
        segments.append(Segment(
            sequence=start_number + offset,
            uri=urljoin(base, item.get("media") or ""),
            duration=duration,
            byte_range=_range_attr(item.get("mediaRange")),
            init_uri=init_uri,
            init_range=init_range,
        ))
    return segments


def _base_segments(base: str, period_duration: Optional[float]) -> List[Segment]:
    # a SegmentBase resource is fetched whole; its init and index ranges are part of it
    return [Segment(sequence=1, uri=base, duration=period_duration or 0.0)]


def parse_dash(text, uri: str) -> List[ManifestVariant]:
    """One variant per Representation of the first Period."""
    data = text.encode("utf-8") if isinstance(text, str) else text
    try:
        root = etree.fromstring(data, parser=etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError as exc:
        raise ParseFailed(f"invalid MPD {uri}: {exc}") from exc
    if _local(root) != "MPD":
        raise ParseFailed(f"{uri} root element is {_local(root)}, expected MPD")

    is_live = root.get("type", "static") == "dynamic"
    total = _duration(root.get("mediaPresentationDuration"))
    periods = _children(root, "Period")
    if not periods:
        raise NoVariants(f"MPD {uri} has no Period")
    if len(periods) > 1:
        logger.debug(f"MPD {uri} has {len(periods)} periods, using the first")
    period = periods[0]
    period_duration = _duration(period.get("duration")) or total

    mpd_base = _base_url(root, uri)
    period_base = _base_url(period, mpd_base)
    variants = []
    for adaptation in _children(period, "AdaptationSet"):
        adaptation_base = _base_url(adaptation, period_base)
        for representation in _children(adaptation, "Representation"):
            rep_id = representation.get("id") or ""
            bandwidth = _int_attr(representation, "bandwidth", 0)
            base = _base_url(representation, adaptation_base)

            template = _merged_template(adaptation, representation)
            segment_list = _child(representation, "SegmentList")
            if segment_list is None:
                segment_list = _child(adaptation, "SegmentList")
            if template is not None:
                segments, _ = _template_segments(template, base, rep_id, bandwidth, period_duration)
            elif segment_list is not None:
                segments = _list_segments(segment_list, base)
            else:
                segments = _base_segments(base, period_duration)

            width = _int_attr(representation, "width", _int_attr(adaptation, "width"))
            height = _int_attr(representation, "height", _int_attr(adaptation, "height"))
            codecs = representation.get("codecs") or adaptation.get("codecs") or ""
            variants.append(ManifestVariant(
                uri=base,
                protocol="dash",
                bandwidth=bandwidth,
                codecs=codecs,
                resolution=(width, height) if width and height else None,
                frame_rate=_frame_rate(representation.get("frameRate") or adaptation.get("frameRate")),
                segments=tuple(segments),
                target_duration=max((s.duration for s in segments), default=None),
                media_sequence=segments[0].sequence if segments else 0,
                is_live=is_live,
                itag=int(rep_id) if rep_id.isdigit() else None,
                representation_id=rep_id,
                manifest_uri=uri,
            ))

    if not variants:
        raise NoVariants(f"MPD {uri} has no representations")
    logger.debug(f"MPD {uri}: {len(variants)} representations")
    return variants


def parse_manifest(text, uri: str) -> List[ManifestVariant]:
    """Dispatch on content: `#EXTM3U` is HLS, an XML document is DASH."""
    head = text[:512].decode("utf-8", errors="replace") if isinstance(text, bytes) else text[:512]
    head = head.lstrip("\ufeff").lstrip()
    if head.startswith("#EXTM3U"):
        return parse_hls(text.decode("utf-8") if isinstance(text, bytes) else text, uri)
    if head.startswith("<"):
        return parse_dash(text, uri)
    raise ParseFailed(f"{uri} is neither an HLS playlist nor a DASH manifest")


def select_variant(variants: List[ManifestVariant], max_bandwidth: Optional[int] = None,
                   codec: Optional[str] = None) -> ManifestVariant:
    """Highest bandwidth variant within the cap whose codecs mention `codec`."""
    candidates = [
        v for v in variants
        if (max_bandwidth is None or v.bandwidth <= max_bandwidth)
        and (codec is None or codec.lower() in v.codecs.lower())
    ]
    if not candidates:
        raise NoVariants(f"no variant within bandwidth {max_bandwidth} and codec {codec}")
    return max(candidates, key=lambda v: v.bandwidth)


# Live polling

@dataclass(frozen=True)
class ManifestSnapshot:
    """Merged playlist state after a poll plus the segments it added."""
    variant: ManifestVariant
    new_segments: Tuple[Segment, ...]


class LivePlaylistPoller:
    """Async iterator over a live HLS media playlist or DASH representation.

    Each refresh is merged into the accumulated variant by sequence number and a
    snapshot is yielded whenever it brings segments not yielded before. Segments
    already yielded and no longer listed by the server are dropped, so the state
    stays the size of the server's window. Iteration ends once the playlist
    carries `#EXT-X-ENDLIST` or the MPD turns static. `close()` stops the current
    iteration; iterating again resumes from the merged state.

    With `representation_id` set, `uri` is an MPD and the representation with
    that id is followed.
    """

    def __init__(self, transport: Transport, uri: str, variant: Optional[ManifestVariant] = None,
                 sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
                 representation_id: Optional[str] = None):
        self.transport = transport
        self.uri = uri
        self.variant = variant
        self.representation_id = representation_id
        self.polls = 0
        self._sleep = sleep
        self._emitted: Optional[int] = None
        self._closed = False
        self._waiter: Optional[asyncio.Future] = None

    def __aiter__(self) -> AsyncIterator[ManifestSnapshot]:
        self._closed = False
        return self._iterate()

    def close(self):
        self._closed = True
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()

    @property
    def interval(self) -> float:
        target = self.variant.target_duration if self.variant else None
        return max(MIN_POLL_INTERVAL, (target or 2 * MIN_POLL_INTERVAL) / 2)

    def _parse(self, text: str) -> ManifestVariant:
        if self.representation_id is not None:
            for variant in parse_dash(text, self.uri):
                if variant.representation_id == self.representation_id:
                    return variant
            raise NoVariants(f"{self.uri} no longer lists representation {self.representation_id}")
        variants = parse_hls(text, self.uri)
        if len(variants) != 1 or variants[0].is_master_entry:
            raise ParseFailed(f"{self.uri} is not a media playlist")
        return variants[0]

    async def refresh(self) -> ManifestVariant:
        text = await self.transport.fetch_text(self.uri)
        self.polls += 1
        fresh = self._parse(text)
        if self.variant is None:
            self.variant = fresh
            return fresh

        first = fresh.segments[0].sequence if fresh.segments else None
        if self._emitted is not None and first is not None and first > self._emitted + 1:
            logger.warning(f"Live playlist {self.uri} skipped sequences {self._emitted + 1}..{first - 1}")
        merged = self.variant.merge(fresh)
        if self._emitted is not None:
            floor = self._emitted + 1 if first is None else min(self._emitted + 1, first)
            merged = merged.trimmed(floor)
        self.variant = merged
        return merged

    def _take_new(self) -> Optional[ManifestSnapshot]:
        new = tuple(self.variant.segments_after(self._emitted))
        if not new:
            return None
        self._emitted = new[-1].sequence
        return ManifestSnapshot(self.variant, new)

    async def _iterate(self) -> AsyncIterator[ManifestSnapshot]:
        if self.variant is None:
            await self.refresh()
        while not self._closed:
            snapshot = self._take_new()
            if snapshot is not None:
                yield snapshot
            if self._closed or not self.variant.is_live:
                return
            self._waiter = asyncio.ensure_future(self._sleep(self.interval))
            try:
                await self._waiter
            except asyncio.CancelledError:
                if self._closed:
                    return
                raise
            finally:
                self._waiter = None
            await self.refresh()

"""Data models for player responses, formats and manifests."""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit, urlunsplit

from .errors import ParseFailed


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range, as used by Range headers and sidx/init ranges."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header(self) -> str:
        return f"bytes={self.start}-{self.end}"


@dataclass(frozen=True)
class Storyboard:
    """One level of seek-preview thumbnails, tiled `columns` x `rows` per image."""
    template_url: str
    thumbnail_width: int
    thumbnail_height: int
    thumbnail_count: int
    interval: int
    columns: int
    rows: int
    storyboard_count: int

    def urls(self) -> List[str]:
        return [self.template_url.replace("$M", str(index)) for index in range(self.storyboard_count)]


@dataclass(frozen=True)
class Chapter:
    title: str
    start_time: float


@dataclass(frozen=True)
class Embed:
    iframe_url: Optional[str] = None
    flash_url: Optional[str] = None
    flash_secure_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class VideoDetails:
    """Descriptive metadata for one video."""
    video_id: str
    title: str = ""
    author: str = ""
    channel_id: str = ""
    length_seconds: int = 0
    view_count: int = 0
    keywords: Tuple[str, ...] = ()
    short_description: str = ""
    thumbnails: Tuple[str, ...] = ()
    is_live: bool = False
    is_private: bool = False
    is_unlisted: bool = False
    is_family_safe: bool = True
    age_restricted: bool = False
    category: Optional[str] = None
    publish_date: Optional[str] = None
    upload_date: Optional[str] = None
    likes: Optional[int] = None
    storyboards: Tuple[Storyboard, ...] = ()
    chapters: Tuple[Chapter, ...] = ()
    embed: Optional[Embed] = None


@dataclass(frozen=True)
class RawFormatEntry:
    """A format exactly as the player response describes it, before any decoding."""
    itag: int
    mime_type: str = ""
    bitrate: int = 0
    quality_label: Optional[str] = None
    url: Optional[str] = None
    signature_cipher: Optional[str] = None
    init_range: Optional[ByteRange] = None
    index_range: Optional[ByteRange] = None
    content_length: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None
    audio_quality: Optional[str] = None
    audio_sample_rate: Optional[int] = None
    audio_channels: Optional[int] = None
    approx_duration_ms: Optional[int] = None
    manifest_url: Optional[str] = None
    source: str = "progressive"

    @property
    def needs_signature(self) -> bool:
        return self.url is None and bool(self.signature_cipher)

    @property
    def needs_n(self) -> bool:
        url = self.url
        if url is None and self.signature_cipher:
            url = parse_qs(self.signature_cipher).get("url", [""])[0]
        return bool(url) and "n" in parse_qs(urlsplit(url).query)


@dataclass(frozen=True)
class PlayerResponse:
    """Structured player response for one video; consumed by the resolver."""
    details: VideoDetails
    raw_formats: Tuple[RawFormatEntry, ...] = ()
    player_url: Optional[str] = None
    hls_manifest_url: Optional[str] = None
    dash_manifest_url: Optional[str] = None
    expires_in_seconds: Optional[int] = None

    @property
    def video_id(self) -> str:
        return self.details.video_id

    @property
    def title(self) -> str:
        return self.details.title


_PLAYER_PATH_RE = re.compile(r"/s/player/(?P<id>[a-zA-Z0-9_-]+)/(?P<variant>.+?)/base\.js")


@dataclass(frozen=True)
class PlayerVersionKey:
    """Identity of one player script deployment."""
    value: str

    @classmethod
    def from_player_url(cls, player_url: str) -> "PlayerVersionKey":
        match = _PLAYER_PATH_RE.search(player_url)
        if match:
            return cls(f"{match.group('id')}/{match.group('variant')}")
        parts = urlsplit(player_url)
        return cls(urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")))

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class ScriptFragment:
    """Self-contained JS source defining a one-argument function named `entry`."""
    entry: str
    source: str


@dataclass(frozen=True)
class CipherFragments:
    signature: ScriptFragment
    n_transform: ScriptFragment


class StreamKind(Enum):
    COMBINED = "combined"
    VIDEO_ONLY = "video-only"
    AUDIO_ONLY = "audio-only"


@dataclass(frozen=True)
class Format:
    """A resolved, directly fetchable format."""
    itag: int
    url: str
    mime_type: str = ""
    container: str = ""
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    bitrate: int = 0
    quality_label: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None
    audio_sample_rate: Optional[int] = None
    audio_channels: Optional[int] = None
    content_length: Optional[int] = None
    kind: StreamKind = StreamKind.COMBINED
    is_live: bool = False
    is_hls: bool = False
    is_dash: bool = False
    init_range: Optional[ByteRange] = None
    index_range: Optional[ByteRange] = None
    approx_duration_ms: Optional[int] = None
    manifest_url: Optional[str] = None

    @property
    def has_video(self) -> bool:
        return self.kind in (StreamKind.COMBINED, StreamKind.VIDEO_ONLY)

    @property
    def has_audio(self) -> bool:
        return self.kind in (StreamKind.COMBINED, StreamKind.AUDIO_ONLY)

    @property
    def is_combined(self) -> bool:
        return self.kind is StreamKind.COMBINED

    @property
    def is_adaptive(self) -> bool:
        return self.is_hls or self.is_dash


@dataclass(frozen=True)
class KeyReference:
    """An `#EXT-X-KEY` declaration in effect for a run of segments."""
    method: str
    uri: Optional[str] = None
    iv: Optional[bytes] = None

    @property
    def is_encrypted(self) -> bool:
        return self.method.upper() != "NONE"


@dataclass(frozen=True)
class Segment:
    sequence: int
    uri: str
    duration: float = 0.0
    byte_range: Optional[ByteRange] = None
    key: Optional[KeyReference] = None
    init_uri: Optional[str] = None
    init_range: Optional[ByteRange] = None


@dataclass(frozen=True)
class ManifestVariant:
    """One rendition of an adaptive stream and the segments known for it so far."""
    uri: str
    protocol: str = "hls"
    bandwidth: int = 0
    codecs: str = ""
    resolution: Optional[Tuple[int, int]] = None
    frame_rate: Optional[float] = None
    segments: Tuple[Segment, ...] = ()
    target_duration: Optional[float] = None
    media_sequence: int = 0
    is_live: bool = False
    itag: Optional[int] = None
    representation_id: Optional[str] = None
    manifest_uri: Optional[str] = None

    def __post_init__(self):
        previous = None
        for segment in self.segments:
            if previous is not None and segment.sequence <= previous:
                raise ParseFailed(
                    f"segment sequence numbers must increase ({previous} then {segment.sequence}) in {self.uri}")
            previous = segment.sequence

    @property
    def is_master_entry(self) -> bool:
        """True for a master playlist entry whose media playlist was not fetched yet."""
        return self.protocol == "hls" and not self.segments and self.target_duration is None

    @property
    def last_sequence(self) -> Optional[int]:
        return self.segments[-1].sequence if self.segments else None

    def merge(self, newer: "ManifestVariant") -> "ManifestVariant":
        """Reconcile a re-fetched snapshot of the same playlist by sequence number."""
        by_sequence: Dict[int, Segment] = {s.sequence: s for s in self.segments}
        for segment in newer.segments:
            by_sequence.setdefault(segment.sequence, segment)
        segments = tuple(by_sequence[seq] for seq in sorted(by_sequence))
        return replace(
            newer,
            segments=segments,
            media_sequence=segments[0].sequence if segments else newer.media_sequence,
        )

    def trimmed(self, before: int) -> "ManifestVariant":
        """Drop segments numbered below `before`."""
        kept = tuple(s for s in self.segments if s.sequence >= before)
        if len(kept) == len(self.segments):
            return self
        return replace(self, segments=kept, media_sequence=kept[0].sequence if kept else before)

    def segments_after(self, sequence: Optional[int]) -> List[Segment]:
        if sequence is None:
            return list(self.segments)
        return [s for s in self.segments if s.sequence > sequence]


@dataclass(frozen=True)
class EncryptionContext:
    """Key material for a run of segments sharing one key declaration."""
    key: bytes
    iv: Optional[bytes] = None

    def iv_for(self, sequence: int) -> bytes:
        if self.iv is not None:
            return self.iv
        return sequence.to_bytes(16, byteorder="big")


@dataclass
class Resolution:
    """Result of a format resolution: sorted formats plus what could not be resolved."""
    formats: List[Format] = field(default_factory=list)
    unresolved: int = 0
    failures: Dict[int, str] = field(default_factory=dict)

    def __iter__(self):
        return iter(self.formats)

    def __len__(self):
        return len(self.formats)

    def __getitem__(self, index):
        return self.formats[index]

    def best(self) -> Optional[Format]:
        return self.formats[0] if self.formats else None

    def by_itag(self, itag: int) -> Optional[Format]:
        for fmt in self.formats:
            if fmt.itag == itag:
                return fmt
        return None

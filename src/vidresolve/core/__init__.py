"""Core functionality for vidresolve."""

from .client import ResolveOptions, VideoClient
from .decryptor import SegmentDecryptor
from .downloader import SmartDownloader
from .errors import (
    AllFormatsUnresolved,
    CipherError,
    CoreError,
    CryptoError,
    ExtractionError,
    FormatNotFound,
    ManifestError,
    TransportError,
)
from .extractor import PlayerConfigExtractor, get_video_id
from .manifest import LivePlaylistPoller, ManifestSnapshot, parse_dash, parse_hls, parse_manifest, select_variant
from .models import (
    Format,
    ManifestVariant,
    PlayerResponse,
    PlayerVersionKey,
    RawFormatEntry,
    Resolution,
    Segment,
    StreamKind,
)
from .resolver import FormatResolver, Quality, StreamFilter, choose_format
from .sandbox import CipherCache, CipherProgram, ScriptSandbox
from .synthesizer import CipherSynthesizer
from .transport import Transport

__all__ = [
    "AllFormatsUnresolved",
    "CipherCache",
    "CipherError",
    "CipherProgram",
    "CipherSynthesizer",
    "CoreError",
    "CryptoError",
    "ExtractionError",
    "Format",
    "FormatNotFound",
    "FormatResolver",
    "LivePlaylistPoller",
    "ManifestError",
    "ManifestSnapshot",
    "ManifestVariant",
    "PlayerConfigExtractor",
    "PlayerResponse",
    "PlayerVersionKey",
    "Quality",
    "RawFormatEntry",
    "Resolution",
    "ResolveOptions",
    "ScriptSandbox",
    "Segment",
    "SegmentDecryptor",
    "SmartDownloader",
    "StreamFilter",
    "StreamKind",
    "Transport",
    "TransportError",
    "VideoClient",
    "choose_format",
    "get_video_id",
    "parse_dash",
    "parse_hls",
    "parse_manifest",
    "select_variant",
]

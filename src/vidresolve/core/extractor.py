"""Player config extraction from watch pages and player API responses."""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qs, urljoin, urlsplit

from yt_dlp.utils import float_or_none, int_or_none, str_or_none, str_to_int, traverse_obj, update_url_query

from .errors import Malformed, StructureChanged, Unplayable
from .jsscan import cut_after_js
from .models import ByteRange, Chapter, Embed, PlayerResponse, RawFormatEntry, Storyboard, VideoDetails

logger = logging.getLogger(__name__)

BASE_URL = "https://www.youtube.com"

VALID_QUERY_DOMAINS = (
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "gaming.youtube.com",
)

_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{11}$")
_PATH_ID_RE = re.compile(
    r"(?:^|\W)(?:youtube(?:-nocookie)?\.com/(?:.*[?&]v=|v/|shorts/|live/|e(?:mbed)?/|[^/]+/.+/)|youtu\.be/)([\w-]+)")

_PLAYER_RESPONSE_RE = re.compile(r"ytInitialPlayerResponse\s*=\s*(?=\{)")
_INITIAL_DATA_RE = re.compile(r"""(?:window\s*\[\s*["']ytInitialData["']\s*\]|\bytInitialData)\s*=\s*(?=\{)""")
_LIKES_RE = re.compile(r"([\d.,]+)")
_PLAYER_URL_RES = (
    re.compile(r'"(?:PLAYER_JS_URL|jsUrl)"\s*:\s*"(?P<url>[^"]+)"'),
    re.compile(r'<script\s+src="(?P<url>[^"]+)"(?:\s+type="text/javascript")?\s+name="player_ias/base"'),
)

# playabilityStatus.status values that mean there is nothing to play
UNPLAYABLE_STATUSES = ("LOGIN_REQUIRED", "UNPLAYABLE", "ERROR", "LIVE_STREAM_OFFLINE", "AGE_CHECK_REQUIRED")

# links shown in the metadata rows of age-gated videos
AGE_RESTRICTED_URLS = (
    "support.google.com/youtube/?p=age_restrictions",
    "youtube.com/t/community_guidelines",
)

_WATCH_CONTENTS = ("contents", "twoColumnWatchNextResults", "results", "results", "contents", ...)
_CHAPTERS_PATH = (
    "playerOverlays", "playerOverlayRenderer", "decoratedPlayerBarRenderer", "decoratedPlayerBarRenderer",
    "playerBar", "multiMarkersPlayerBarRenderer", "markersMap", ..., "value", "chapters", ..., "chapterRenderer",
)


def validate_id(video_id: str) -> bool:
    return bool(_ID_RE.match(video_id.strip()))


def get_video_id(url_or_id: str) -> Optional[str]:
    """Extract the 11 character video id from an id or a supported URL."""
    value = url_or_id.strip()
    if validate_id(value):
        return value
    if not re.match(r"^https?://", value):
        return None

    parts = urlsplit(value)
    video_id = parse_qs(parts.query).get("v", [None])[0]
    if video_id is None:
        match = _PATH_ID_RE.search(value)
        if match:
            video_id = match.group(1)
    elif parts.hostname not in VALID_QUERY_DOMAINS:
        return None

    if video_id is None:
        return None
    video_id = video_id[:11]
    return video_id if validate_id(video_id) else None


def watch_url(video_id: str, language: str = "en") -> str:
    return f"{BASE_URL}/watch?v={video_id}&hl={language}&bpctr=9999999999&has_verified=1"


def _byte_range(value: Any) -> Optional[ByteRange]:
    if not isinstance(value, dict):
        return None
    start, end = int_or_none(value.get("start")), int_or_none(value.get("end"))
    if start is None or end is None:
        return None
    return ByteRange(start, end)


class PlayerConfigExtractor:
    """Turns raw page or API bytes into a PlayerResponse. Performs no I/O."""

    def extract_watch_page(self, body: Union[bytes, str], video_id: Optional[str] = None) -> PlayerResponse:
        """Parse the inline player response and player script reference out of a watch page."""
        page = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body

        match = _PLAYER_RESPONSE_RE.search(page)
        if not match:
            raise StructureChanged("ytInitialPlayerResponse not found in watch page")
        raw_json = cut_after_js(page[match.end():])
        if raw_json is None:
            raise StructureChanged("ytInitialPlayerResponse is not terminated")
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError as exc:
            raise Malformed(f"player response is not valid JSON: {exc}") from exc

        response = self.parse_player_response(data, self.find_player_url(page), self.find_initial_data(page))
        if video_id and response.video_id and response.video_id != video_id:
            logger.warning(f"Watch page for {video_id} describes {response.video_id}")
        return response

    def extract_api_response(self, body: Union[bytes, str], player_url: Optional[str] = None) -> PlayerResponse:
        """Parse a response of the internal player API."""
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise Malformed(f"player API response is not valid JSON: {exc}") from exc
        return self.parse_player_response(data, player_url)

    @staticmethod
    def find_player_url(page: str) -> Optional[str]:
        for pattern in _PLAYER_URL_RES:
            match = pattern.search(page)
            if match:
                return urljoin(BASE_URL, match.group("url").replace("\\/", "/"))
        logger.debug("No player script reference in page")
        return None

    @staticmethod
    def find_initial_data(page: str) -> Dict[str, Any]:
        """The page's `ytInitialData`, or an empty dict when it is absent or unreadable."""
        match = _INITIAL_DATA_RE.search(page)
        raw_json = cut_after_js(page[match.end():]) if match else None
        if raw_json is None:
            logger.debug("No ytInitialData in page")
            return {}
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError as exc:
            logger.debug(f"Ignoring unreadable ytInitialData: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def parse_player_response(self, data: Any, player_url: Optional[str] = None,
                              initial_data: Optional[Dict[str, Any]] = None) -> PlayerResponse:
        if not isinstance(data, dict):
            raise Malformed(f"player response must be an object, got {type(data).__name__}")

        streaming = data.get("streamingData")
        if streaming is not None and not isinstance(streaming, dict):
            raise Malformed("streamingData must be an object")
        streaming = streaming or {}

        entries = self._entries(streaming.get("formats"), "progressive")
        entries += self._entries(streaming.get("adaptiveFormats"), "adaptive")
        hls_url = str_or_none(streaming.get("hlsManifestUrl"))
        dash_url = str_or_none(streaming.get("dashManifestUrl"))
        usable = bool(entries or hls_url or dash_url)

        status = traverse_obj(data, ("playabilityStatus", "status"), expected_type=str) or "OK"
        if status != "OK" and not usable:
            raise Unplayable(status, self._playability_reason(data))
        if not usable:
            raise StructureChanged("player response has no streaming data")

        return PlayerResponse(
            details=self._details(data, initial_data or {}),
            raw_formats=tuple(entries),
            player_url=player_url,
            hls_manifest_url=hls_url,
            dash_manifest_url=dash_url,
            expires_in_seconds=int_or_none(streaming.get("expiresInSeconds")),
        )

    @staticmethod
    def _playability_reason(data: Dict[str, Any]) -> str:
        playability = data.get("playabilityStatus") or {}
        if traverse_obj(playability, ("errorScreen", "playerLegacyDesktopYpcOfferRenderer")):
            return "rental video"
        reason = traverse_obj(
            playability,
            "reason",
            ("errorScreen", "playerErrorMessageRenderer", "reason", "simpleText"),
            ("messages", 0),
            expected_type=str,
        )
        return reason or ""

    def _entries(self, raw: Any, source: str) -> List[RawFormatEntry]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise Malformed(f"{source} formats must be a list")
        return [self._entry(item, source) for item in raw]

    @staticmethod
    def _entry(item: Any, source: str) -> RawFormatEntry:
        if not isinstance(item, dict):
            raise Malformed(f"{source} format entry must be an object")
        itag = int_or_none(item.get("itag"))
        if itag is None:
            raise Malformed(f"{source} format entry without a numeric itag")
        return RawFormatEntry(
            itag=itag,
            mime_type=str_or_none(item.get("mimeType"), default=""),
            bitrate=int_or_none(item.get("bitrate"), default=0),
            quality_label=str_or_none(item.get("qualityLabel")),
            url=str_or_none(item.get("url")),
            signature_cipher=str_or_none(item.get("signatureCipher") or item.get("cipher")),
            init_range=_byte_range(item.get("initRange")),
            index_range=_byte_range(item.get("indexRange")),
            content_length=int_or_none(item.get("contentLength")),
            width=int_or_none(item.get("width")),
            height=int_or_none(item.get("height")),
            fps=int_or_none(item.get("fps")),
            audio_quality=str_or_none(item.get("audioQuality")),
            audio_sample_rate=int_or_none(item.get("audioSampleRate")),
            audio_channels=int_or_none(item.get("audioChannels")),
            approx_duration_ms=int_or_none(item.get("approxDurationMs")),
            source=source,
        )

    @staticmethod
    def _details(data: Dict[str, Any], initial_data: Dict[str, Any]) -> VideoDetails:
        details = data.get("videoDetails") or {}
        if not isinstance(details, dict):
            raise Malformed("videoDetails must be an object")
        microformat = traverse_obj(data, ("microformat", "playerMicroformatRenderer"), expected_type=dict) or {}
        merged = {**microformat, **details}

        thumbnails = traverse_obj(merged, ("thumbnail", "thumbnails", ..., "url"), expected_type=str) or []
        family_safe = merged.get("isFamilySafe")
        return VideoDetails(
            video_id=str_or_none(merged.get("videoId"), default=""),
            title=_text(merged.get("title")),
            author=_text(merged.get("author")) or _text(merged.get("ownerChannelName")),
            channel_id=_text(merged.get("channelId")) or _text(merged.get("externalChannelId")),
            length_seconds=int_or_none(merged.get("lengthSeconds"), default=0),
            view_count=int_or_none(merged.get("viewCount"), default=0),
            keywords=tuple(k for k in merged.get("keywords") or () if isinstance(k, str)),
            short_description=_text(merged.get("shortDescription")) or _text(merged.get("description")),
            thumbnails=tuple(thumbnails),
            is_live=bool(merged.get("isLive")),
            is_private=bool(merged.get("isPrivate")),
            is_unlisted=bool(merged.get("isUnlisted")),
            is_family_safe=family_safe is not False,
            age_restricted=family_safe is False or _age_gated(initial_data),
            category=str_or_none(merged.get("category")),
            publish_date=str_or_none(merged.get("publishDate")),
            upload_date=str_or_none(merged.get("uploadDate")),
            likes=_likes(initial_data),
            storyboards=tuple(parse_storyboards(
                traverse_obj(data, ("storyboards", "playerStoryboardSpecRenderer", "spec"), expected_type=str))),
            chapters=tuple(_chapters(initial_data)),
            embed=_embed(merged.get("embed")),
        )


def _text(value: Any) -> str:
    """Plain string of a value that may be a `simpleText` or `runs` text object."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return traverse_obj(value, "simpleText", ("runs", 0, "text"), expected_type=str) or ""
    return ""


def _strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _strings(item)


def _age_gated(initial_data: Dict[str, Any]) -> bool:
    rows = traverse_obj(initial_data, (*_WATCH_CONTENTS, "videoSecondaryInfoRenderer", "metadataRowContainer",
                                       "metadataRowContainerRenderer", "rows"))
    return any(url in text for text in _strings(rows) for url in AGE_RESTRICTED_URLS)


def _likes(initial_data: Dict[str, Any]) -> Optional[int]:
    buttons = (*_WATCH_CONTENTS, "videoPrimaryInfoRenderer", "videoActions", "menuRenderer", "topLevelButtons", ...)
    labels = traverse_obj(initial_data, (
        *buttons,
        (("segmentedLikeDislikeButtonRenderer", "likeButton", "toggleButtonRenderer"), "toggleButtonRenderer"),
        "defaultText", "accessibility", "accessibilityData", "label",
    ), expected_type=str) or []
    for label in labels:
        match = _LIKES_RE.search(label) if "like" in label.lower() else None
        if match:
            return str_to_int(match.group(1))
    return None


def _chapters(initial_data: Dict[str, Any]) -> List[Chapter]:
    chapters = []
    for renderer in traverse_obj(initial_data, _CHAPTERS_PATH, expected_type=dict) or []:
        start = float_or_none(renderer.get("timeRangeStartMillis"), scale=1000)
        if start is not None:
            chapters.append(Chapter(title=_text(renderer.get("title")), start_time=start))
    return chapters


def _embed(value: Any) -> Optional[Embed]:
    if not isinstance(value, dict):
        return None
    return Embed(
        iframe_url=str_or_none(value.get("iframeUrl")),
        flash_url=str_or_none(value.get("flashUrl")),
        flash_secure_url=str_or_none(value.get("flashSecureUrl")),
        width=int_or_none(value.get("width")),
        height=int_or_none(value.get("height")),
    )


def parse_storyboards(spec: Optional[str]) -> List[Storyboard]:
    """Decode a `playerStoryboardSpecRenderer` spec.

    The spec is a URL template followed by one `|`-separated level per quality:
    `width#height#count#columns#rows#interval#name#sigh`. `$L` in the template is
    the level index, `$N` its name and `$M` the tiled image number.
    """
    if not spec:
        return []
    template, *levels = spec.split("|")
    storyboards = []
    for index, level in enumerate(levels):
        fields = level.split("#")
        if len(fields) < 8:
            logger.debug(f"Skipping storyboard level {index}: {level!r}")
            continue
        width, height, count, columns, rows, interval = (int_or_none(v) for v in fields[:6])
        if None in (width, height, count, columns, rows, interval) or not columns or not rows:
            logger.debug(f"Skipping storyboard level {index}: {level!r}")
            continue
        url = template.replace("$L", str(index)).replace("$N", fields[6])
        storyboards.append(Storyboard(
            template_url=update_url_query(url, {"sigh": fields[7]}),
            thumbnail_width=width,
            thumbnail_height=height,
            thumbnail_count=count,
            interval=interval,
            columns=columns,
            rows=rows,
            storyboard_count=math.ceil(count / (columns * rows)),
        ))
    return storyboards

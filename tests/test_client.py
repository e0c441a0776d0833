"""End-to-end tests of the client facade over a fake transport."""

import asyncio
import json
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest

from conftest import PLAYER_SCRIPT, PLAYER_URL, FakeTransport, expected_signature

from vidresolve.core.client import ResolveOptions, VideoClient
from vidresolve.core.errors import FormatNotFound, InvalidVideoId
from vidresolve.core.extractor import watch_url
from vidresolve.core.models import Format, KeyReference
from vidresolve.core.sandbox import CipherCache
from vidresolve.utils.config import Config

VIDEO_ID = "dQw4w9WgXcQ"
CDN = "https://rr3---sn-abc.googlevideo.com/videoplayback"
CIPHERTEXT = "AOq0QJ8wRQIhAKR3x7Pdq2ZK0tP1w-yY_kB5uL9sVfEgIgXr4mNa"
HLS_MASTER = "https://manifest.googlevideo.com/api/manifest/hls_variant/id/x/master.m3u8"
HLS_MEDIA = "https://manifest.googlevideo.com/api/manifest/hls_playlist/itag/95/index.m3u8"
DASH_URL = "https://manifest.googlevideo.com/api/manifest/dash/id/x"
PROGRESSIVE = bytes(range(40))

MASTER = f"""#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=1280000,CODECS="avc1.4d401f,mp4a.40.2",RESOLUTION=1280x720
{HLS_MEDIA}
#EXT-X-STREAM-INF:BANDWIDTH=300000,CODECS="avc1.4d400d,mp4a.40.2",RESOLUTION=256x144
https://example.com/anonymous.m3u8
"""

MEDIA = """#EXTM3U
#EXT-X-TARGETDURATION:5
#EXTINF:5,
seg0.ts
#EXTINF:5,
seg1.ts
#EXT-X-ENDLIST
"""


def player_response(dash=False) -> dict:
    streaming = {
        "formats": [{
            "itag": 18,
            "url": f"{CDN}?itag=18",
            "mimeType": 'video/mp4; codecs="avc1.42001E, mp4a.40.2"',
            "bitrate": 500000,
            "qualityLabel": "360p",
            "audioQuality": "AUDIO_QUALITY_LOW",
            "contentLength": str(len(PROGRESSIVE)),
        }],
        "adaptiveFormats": [{
            "itag": 137,
            "signatureCipher": urlencode({"s": CIPHERTEXT, "sp": "sig", "url": f"{CDN}?itag=137"}),
            "mimeType": 'video/mp4; codecs="avc1.640028"',
            "bitrate": 4000000,
            "qualityLabel": "1080p",
        }],
        "hlsManifestUrl": HLS_MASTER,
    }
    if dash:
        streaming["dashManifestUrl"] = DASH_URL
    return {
        "playabilityStatus": {"status": "OK"},
        "videoDetails": {"videoId": VIDEO_ID, "title": "Test"},
        "streamingData": streaming,
    }


def watch_page(data) -> str:
    return ('<script>var ytcfg={"PLAYER_JS_URL":"\\/s\\/player\\/1a2b3c4d\\/player_ias.vflset\\/en_US\\/base.js"};'
            f"var ytInitialPlayerResponse = {json.dumps(data)};</script>")


@pytest.fixture
def routes():
    return {
        watch_url(VIDEO_ID): watch_page(player_response()),
        PLAYER_URL: PLAYER_SCRIPT,
        HLS_MASTER: MASTER,
        HLS_MEDIA: MEDIA,
        "https://manifest.googlevideo.com/api/manifest/hls_playlist/itag/95/seg0.ts": b"ts0",
        "https://manifest.googlevideo.com/api/manifest/hls_playlist/itag/95/seg1.ts": b"ts1",
        f"{CDN}?itag=18": PROGRESSIVE,
    }


@pytest.fixture
def config(tmp_path):
    return Config(tmp_path / "settings.json", workers=2)


def run_client(transport, config, scenario):
    async def main():
        async with VideoClient(transport=transport, cache=CipherCache(), config=config) as client:
            return await scenario(client)
    return asyncio.run(main())


def test_resolve_merges_player_and_manifest_formats(routes, config) -> None:
    transport = FakeTransport(routes)
    resolution = run_client(transport, config, lambda client: client.resolve(
        f"https://www.youtube.com/watch?v={VIDEO_ID}"))

    assert [f.itag for f in resolution] == [95, 18, 137]
    hls = resolution.by_itag(95)
    assert hls.is_hls and hls.url == HLS_MEDIA
    assert hls.manifest_url == HLS_MASTER
    query = parse_qs(urlsplit(resolution.by_itag(137).url).query)
    assert query["sig"] == [expected_signature(CIPHERTEXT)]
    assert transport.count(PLAYER_URL) == 1


def test_manifests_can_be_skipped(routes, config) -> None:
    transport = FakeTransport(routes)
    resolution = run_client(transport, config, lambda client: client.resolve(
        VIDEO_ID, ResolveOptions(include_manifests=False)))
    assert [f.itag for f in resolution] == [18, 137]
    assert transport.count(HLS_MASTER) == 0


def test_unreachable_manifest_is_skipped(routes, config) -> None:
    routes[watch_url(VIDEO_ID)] = watch_page(player_response(dash=True))
    transport = FakeTransport(routes)
    resolution = run_client(transport, config, lambda client: client.resolve(VIDEO_ID))
    assert transport.count(DASH_URL) == 1
    assert 95 in [f.itag for f in resolution]


def test_invalid_input_is_rejected_before_any_request(config) -> None:
    transport = FakeTransport()
    with pytest.raises(InvalidVideoId):
        run_client(transport, config, lambda client: client.resolve("https://example.com/nothing"))
    assert transport.calls == []


def test_stream_progressive_format(routes, config) -> None:
    transport = FakeTransport(routes)

    async def scenario(client):
        resolution = await client.resolve(VIDEO_ID, ResolveOptions(include_manifests=False))
        return [chunk async for chunk in client.stream(resolution.by_itag(18), chunk_size=16)]

    chunks = run_client(transport, config, scenario)
    assert [len(c) for c in chunks] == [16, 16, 8]
    assert b"".join(chunks) == PROGRESSIVE


def test_stream_hls_format(routes, config) -> None:
    transport = FakeTransport(routes)

    async def scenario(client):
        resolution = await client.resolve(VIDEO_ID)
        return [chunk async for chunk in client.stream(resolution.by_itag(95))]

    assert run_client(transport, config, scenario) == [b"ts0", b"ts1"]


def test_variants_of_progressive_format_is_an_error(routes, config) -> None:
    transport = FakeTransport(routes)

    async def scenario(client):
        resolution = await client.resolve(VIDEO_ID, ResolveOptions(include_manifests=False))
        return await client.variants(resolution.by_itag(18))

    with pytest.raises(FormatNotFound):
        run_client(transport, config, scenario)


def test_downloader_uses_configured_chunk_size(tmp_path) -> None:
    config = Config(tmp_path / "settings.json", chunk_size=1234)

    async def scenario(client):
        return client.downloader().chunk_size

    assert run_client(FakeTransport(), config, scenario) == 1234


DASH_MPD = """<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static" mediaPresentationDuration="PT4S">
  <Period>
    <AdaptationSet mimeType="video/mp4">
      <Representation id="137" bandwidth="4000000">
        <BaseURL>https://rr.example.com/videoplayback/itag/137</BaseURL>
      </Representation>
    </AdaptationSet>
    <AdaptationSet mimeType="audio/mp4">
      <Representation id="140" bandwidth="130000">
        <BaseURL>https://rr.example.com/videoplayback/itag/140</BaseURL>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""


def test_dash_variants_match_the_format_itag(config) -> None:
    transport = FakeTransport({DASH_URL: DASH_MPD})
    audio = Format(itag=140, url=DASH_URL, is_dash=True, manifest_url=DASH_URL)

    variants = run_client(transport, config, lambda client: client.variants(audio))
    assert [v.representation_id for v in variants] == ["140"]


def test_dash_itag_missing_from_the_manifest_is_not_found(config) -> None:
    transport = FakeTransport({DASH_URL: DASH_MPD, "https://rr.example.com/videoplayback/itag/137": b"video"})
    missing = Format(itag=299, url=DASH_URL, is_dash=True, manifest_url=DASH_URL)

    async def scenario(client):
        return [chunk async for chunk in client.stream(missing)]

    with pytest.raises(FormatNotFound):
        run_client(transport, config, scenario)
    assert transport.count("https://rr.example.com/videoplayback/itag/137") == 0


def test_closing_the_client_forgets_segment_keys(config) -> None:
    key_uri = "https://keys.example.com/k"
    transport = FakeTransport({key_uri: b"k" * 16})
    key = KeyReference("AES-128", key_uri)

    async def main():
        client = VideoClient(transport=transport, cache=CipherCache(), config=config)
        async with client:
            await client.decryptor.context_for(key)
            await client.decryptor.context_for(key)
        assert transport.count(key_uri) == 1
        await client.decryptor.context_for(key)

    asyncio.run(main())
    assert transport.count(key_uri) == 2

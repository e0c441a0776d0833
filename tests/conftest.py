"""Shared fixtures: a synthetic player script, a routed fake transport and a fresh cipher cache."""

import asyncio
from typing import Dict, List, Optional

import pytest

from vidresolve.core.errors import Rejected
from vidresolve.core.models import ByteRange
from vidresolve.core.sandbox import CipherCache

PLAYER_URL = "https://www.youtube.com/s/player/1a2b3c4d/player_ias.vflset/en_US/base.js"

PLAYER_SCRIPT = """
var XY="split join reverse splice length".split(" ");
var Bo={Xu:function(a){a.reverse()},
eS:function(a,b){a.splice(0,b)},
Wk:function(a,b){var c=a[0];a[0]=a[b%a.length];a[b%a.length]=c}};
var Lka=function(a){a=a.split("");Bo.Wk(a,3);Bo.eS(a,1);Bo.Xu(a,45);Bo.Wk(a,12);return a.join("")};
var Qma=function(a){var b=a.split(""),c=XY.length;if(typeof Tq==="undefined")return a;b.reverse();for(var d=0;d<c%3;d++){b.push(b.shift())}return b.join("")};
var Zka=[Qma];
var g={};
g.build=function(a,b,c){c&&(c=Lka(decodeURIComponent(c)),a.set(b,encodeURIComponent(c)));var e;(e=a.get("n"))&&(e=Zka[0](e),a.set("n",e));return a};
"""


def expected_signature(value: str) -> str:
    """The transform `Lka` applies: swap(3), drop one, reverse, swap(12)."""
    chars = list(value)

    def swap(position: int) -> None:
        target = position % len(chars)
        chars[0], chars[target] = chars[target], chars[0]

    swap(3)
    del chars[:1]
    chars.reverse()
    swap(12)
    return "".join(chars)


def expected_n(value: str) -> str:
    """The transform `Qma` applies once its typeof guard is removed: reverse, rotate left by 2."""
    chars = list(reversed(value))
    return "".join(chars[2:] + chars[:2])


class FakeTransport:
    """Serves canned bodies by URL and records every request.

    A route value may be bytes/str, an exception instance to raise, or a list
    of those served in turn (the last one repeats).
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes: Dict[str, object] = dict(routes or {})
        self.calls: List[str] = []
        self.ranges: List[Optional[ByteRange]] = []
        self.executor = None

    def _body(self, url: str, byte_range: Optional[ByteRange] = None) -> bytes:
        self.calls.append(url)
        self.ranges.append(byte_range)
        if url not in self.routes:
            raise Rejected(404, url)
        value = self.routes[url]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, str):
            value = value.encode("utf-8")
        if byte_range is not None:
            value = value[byte_range.start:byte_range.end + 1]
        return value

    def count(self, url: str) -> int:
        return self.calls.count(url)

    async def fetch_bytes(self, url, headers=None, byte_range=None) -> bytes:
        await asyncio.sleep(0)
        return self._body(url, byte_range)

    async def fetch_text(self, url, headers=None) -> str:
        return (await self.fetch_bytes(url, headers=headers)).decode("utf-8")

    async def content_length(self, url) -> Optional[int]:
        await asyncio.sleep(0)
        return len(self._body(url))

    def close(self) -> None:
        pass


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport({PLAYER_URL: PLAYER_SCRIPT})


@pytest.fixture
def cache() -> CipherCache:
    return CipherCache(capacity=4, failure_ttl=30.0)

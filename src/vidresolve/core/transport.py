"""Retrying HTTP transport shared by every network-facing component."""

import asyncio
import functools
import json
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import NetworkError, Rejected, TransportTimeout
from .models import ByteRange

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class Response:
    status: int
    url: str
    content: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)


def build_retry(retries: int = 5, backoff_factor: float = 0.5, backoff_jitter: float = 0.5) -> Retry:
    """Retry policy: network failures and 429/5xx, exponential backoff plus jitter."""
    return Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=backoff_factor,
        backoff_jitter=backoff_jitter,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset({"GET", "HEAD", "POST"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )


class Transport:
    """Wraps a requests session; blocking calls run on an executor so the event loop stays free."""

    def __init__(self, session: Optional[requests.Session] = None, retries: int = 5,
                 backoff_factor: float = 0.5, backoff_jitter: float = 0.5, timeout: float = 30,
                 headers: Optional[Dict[str, str]] = None, executor: Optional[Executor] = None):
        self.timeout = timeout
        self.executor = executor

        if session is None:
            session = requests.Session()
            retry = build_retry(retries, backoff_factor, backoff_jitter)
            session.mount("https://", HTTPAdapter(max_retries=retry))
            session.mount("http://", HTTPAdapter(max_retries=retry))
            session.headers.update({"User-Agent": DEFAULT_USER_AGENT, "Accept-Encoding": "gzip, deflate"})
        if headers:
            session.headers.update(headers)
        self.session = session

    def request(self, url: str, headers: Optional[Dict[str, str]] = None, method: str = "GET",
                data: Optional[bytes] = None, byte_range: Optional[ByteRange] = None) -> Response:
        """Blocking request. Raises Rejected, TransportTimeout or NetworkError."""
        headers = dict(headers or {})
        if byte_range is not None:
            headers["Range"] = byte_range.header()
        try:
            resp = self.session.request(method, url, headers=headers, data=data, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise TransportTimeout(f"{method} {url} timed out after {self.timeout}s") from exc
        except requests.exceptions.RetryError as exc:
            raise NetworkError(f"{method} {url} exhausted retries: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.debug(f"{method} {url} -> {resp.status_code}")
            raise Rejected(resp.status_code, url)
        return Response(
            status=resp.status_code,
            url=resp.url or url,
            content=resp.content,
            headers=resp.headers,
        )

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None, method: str = "GET",
                    data: Optional[bytes] = None, byte_range: Optional[ByteRange] = None) -> Response:
        loop = asyncio.get_running_loop()
        call = functools.partial(self.request, url, headers=headers, method=method,
                                 data=data, byte_range=byte_range)
        return await loop.run_in_executor(self.executor, call)

    async def fetch_text(self, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        return (await self.fetch(url, headers=headers)).text

    async def fetch_bytes(self, url: str, headers: Optional[Dict[str, str]] = None,
                          byte_range: Optional[ByteRange] = None) -> bytes:
        return (await self.fetch(url, headers=headers, byte_range=byte_range)).content

    async def fetch_json(self, url: str, payload: Any = None,
                         headers: Optional[Dict[str, str]] = None) -> Any:
        """GET, or POST `payload` as JSON when one is given."""
        if payload is None:
            resp = await self.fetch(url, headers=headers)
        else:
            headers = dict(headers or {}, **{"Content-Type": "application/json"})
            resp = await self.fetch(url, headers=headers, method="POST",
                                    data=json.dumps(payload).encode("utf-8"))
        return resp.json()

    async def content_length(self, url: str) -> Optional[int]:
        """Size reported by a HEAD request, or None when the server does not say."""
        resp = await self.fetch(url, method="HEAD")
        value = resp.headers.get("Content-Length") or resp.headers.get("content-length")
        return int(value) if value and value.isdigit() else None

    def set_cookie(self, name: str, value: str, domain: str):
        self.session.cookies.set(name, value, domain=domain)

    def close(self):
        self.session.close()

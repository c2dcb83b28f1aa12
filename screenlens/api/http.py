"""Shared HTTP plumbing for the Gemini REST endpoints."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import aiohttp
from multidict import CIMultiDict

from screenlens.utils.config import section

logger = logging.getLogger("screenlens.http")

BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
UPLOAD_URL = "https://generativelanguage.googleapis.com/upload/v1beta/files"


@dataclass
class HttpSettings:
    base_url: str = BASE_URL
    upload_url: str = UPLOAD_URL
    connect_timeout: float = 60
    read_timeout: float = 180
    # aiohttp has no write-phase budget; uploads are bounded by call_timeout
    call_timeout: float = 300
    connection_retries: int = 2

    @classmethod
    def from_config(cls, cfg: dict) -> "HttpSettings":
        g = section(cfg, "gemini")
        return cls(
            base_url=g.get("base_url", BASE_URL).rstrip("/"),
            upload_url=g.get("upload_url", UPLOAD_URL),
            connect_timeout=g.get("connect_timeout_sec", 60),
            read_timeout=g.get("read_timeout_sec", 180),
            call_timeout=g.get("call_timeout_sec", 300),
            connection_retries=g.get("connection_retries", 2),
        )

    def timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.call_timeout,
            sock_connect=self.connect_timeout,
            sock_read=self.read_timeout,
        )


@dataclass
class HttpReply:
    status: int
    reason: str
    headers: CIMultiDict
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


Body = Union[bytes, str, None, Callable[[], Any]]


class GeminiHttp:
    """Sends one request per call; retries pure connection failures only."""

    def __init__(self, settings: Optional[HttpSettings] = None):
        self.settings = settings or HttpSettings()

    async def send(self, method: str, url: str, *, api_key: Optional[str] = None,
                   headers: Optional[dict] = None, json: Any = None, data: Body = None) -> HttpReply:
        hdrs = dict(headers or {})
        if api_key:
            hdrs["x-goog-api-key"] = api_key

        attempt = 0
        while True:
            # A callable body is rebuilt per attempt (open file handles are single-use)
            body = data() if callable(data) else data
            try:
                async with aiohttp.ClientSession(timeout=self.settings.timeout()) as session:
                    async with session.request(method, url, headers=hdrs, json=json, data=body) as resp:
                        payload = await resp.read()
                        return HttpReply(resp.status, resp.reason or "", CIMultiDict(resp.headers), payload)
            except aiohttp.ClientConnectorError as e:
                if attempt >= self.settings.connection_retries:
                    raise
                attempt += 1
                logger.warning(f"Connection to {url} failed ({e}), retry {attempt}/{self.settings.connection_retries}")
            finally:
                if hasattr(body, "close"):
                    body.close()

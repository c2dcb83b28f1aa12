"""Resumable two-phase upload to the Gemini Files API, plus the readiness poll."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiohttp

from screenlens.api.http import GeminiHttp, HttpSettings
from screenlens.api.results import ErrorKind, Result
from screenlens.db.models import DEFAULT_API_KEY, VIDEO_MIME
from screenlens.utils.config import section

logger = logging.getLogger("screenlens.upload")

STATE_ACTIVE = "ACTIVE"
STATE_FAILED = "FAILED"
STATE_PROCESSING = "PROCESSING"

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mp3": "audio/mp3",
    ".m4a": "audio/m4a",
    ".wav": "audio/wav",
    ".avi": "video/avi",
    ".mov": "video/mov",
    ".webm": "video/webm",
}


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), VIDEO_MIME)


def file_id_from_handle(handle: str) -> str:
    return handle.rstrip("/").rsplit("/", 1)[-1]


def credential_ok(api_key: Optional[str]) -> bool:
    return bool(api_key and api_key.strip()) and api_key != DEFAULT_API_KEY


class RemoteFileUploader:
    def __init__(self, http: Optional[GeminiHttp] = None, poll_interval: float = 10.0,
                 max_attempts: int = 30, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.http = http or GeminiHttp()
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: dict) -> "RemoteFileUploader":
        g = section(cfg, "gemini")
        return cls(
            http=GeminiHttp(HttpSettings.from_config(cfg)),
            poll_interval=g.get("poll_interval_sec", 10.0),
            max_attempts=g.get("poll_max_attempts", 30),
        )

    @property
    def settings(self) -> HttpSettings:
        return self.http.settings

    async def upload(self, local_file: Path, api_key: str) -> Result:
        """Upload ``local_file``; on success the result value is the remote file URI."""
        local_file = Path(local_file)
        if not local_file.is_file():
            logger.error(f"File does not exist: {local_file}")
            return Result.fail(ErrorKind.EMPTY_OR_MISSING_FILE, str(local_file))
        size = local_file.stat().st_size
        if size == 0:
            logger.error(f"File is empty: {local_file}")
            return Result.fail(ErrorKind.EMPTY_OR_MISSING_FILE, str(local_file))
        if not credential_ok(api_key):
            logger.error("Gemini API key is not configured")
            return Result.fail(ErrorKind.UNCONFIGURED)

        mime = mime_type_for(local_file)
        logger.info(f"Uploading {local_file.name} ({size} bytes, {mime})")
        try:
            initiated = await self._initiate(local_file.name, size, mime, api_key)
            if not initiated.ok:
                return initiated
            return await self._transfer(initiated.value, local_file, size, mime)
        except asyncio.TimeoutError:
            logger.error(f"Upload of {local_file.name} timed out")
            return Result.fail(ErrorKind.NETWORK_TIMEOUT, "upload")
        except aiohttp.ClientError as e:
            logger.error(f"Upload of {local_file.name} failed: {e}")
            return Result.fail(ErrorKind.TRANSFER_FAILED, str(e))
        except OSError as e:
            logger.error(f"Could not read {local_file}: {e}")
            return Result.fail(ErrorKind.EMPTY_OR_MISSING_FILE, str(local_file))

    async def _initiate(self, display_name: str, size: int, mime: str, api_key: str) -> Result:
        try:
            reply = await self.http.send(
                "POST", self.settings.upload_url, api_key=api_key,
                headers={
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(size),
                    "X-Goog-Upload-Header-Content-Type": mime,
                },
                json={"file": {"display_name": display_name}},
            )
        except aiohttp.ClientError as e:
            logger.error(f"Error initiating resumable upload: {e}")
            return Result.fail(ErrorKind.INITIATE_FAILED, str(e))

        if not reply.ok:
            logger.error(f"Failed to initiate upload: {reply.status} {reply.reason} {reply.text()}")
            return Result.fail(ErrorKind.INITIATE_FAILED, f"HTTP {reply.status}")
        upload_url = reply.headers.get("X-Goog-Upload-URL")
        if not upload_url:
            logger.error("Upload start response carried no X-Goog-Upload-URL header")
            return Result.fail(ErrorKind.INITIATE_FAILED, "missing upload URL")
        logger.debug(f"Resumable upload initiated: {upload_url}")
        return Result.success(upload_url)

    async def _transfer(self, upload_url: str, local_file: Path, size: int, mime: str) -> Result:
        try:
            reply = await self.http.send(
                "POST", upload_url,
                headers={
                    "Content-Length": str(size),
                    "Content-Type": mime,
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                data=lambda: open(local_file, "rb"),
            )
        except aiohttp.ClientError as e:
            logger.error(f"Error uploading file data: {e}")
            return Result.fail(ErrorKind.TRANSFER_FAILED, str(e))

        if not reply.ok:
            logger.error(f"Failed to upload file data: {reply.status} {reply.reason} {reply.text()}")
            return Result.fail(ErrorKind.TRANSFER_FAILED, f"HTTP {reply.status}")
        try:
            uri = json.loads(reply.body)["file"]["uri"]
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Malformed upload response: {e}: {reply.text()[:200]}")
            return Result.fail(ErrorKind.TRANSFER_FAILED, "malformed response")
        if not isinstance(uri, str) or not uri:
            return Result.fail(ErrorKind.TRANSFER_FAILED, "malformed response")
        logger.info(f"File uploaded successfully: {uri}")
        return Result.success(uri)

    async def wait_until_active(self, handle: str, api_key: str) -> bool:
        """Poll the file status until ACTIVE (True), FAILED or attempts run out (False)."""
        file_id = file_id_from_handle(handle)
        url = f"{self.settings.base_url}/files/{file_id}"

        for attempt in range(1, self.max_attempts + 1):
            try:
                reply = await self.http.send("GET", url, api_key=api_key)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Error checking status of {file_id}: {e}")
                return False
            if not reply.ok:
                logger.error(f"Failed to check file status: {reply.status}")
                return False
            try:
                state = json.loads(reply.body).get("state")
            except (ValueError, AttributeError):
                logger.error(f"Unreadable status response for {file_id}: {reply.text()[:200]}")
                return False

            logger.debug(f"File {file_id} state: {state} (attempt {attempt}/{self.max_attempts})")
            if state == STATE_ACTIVE:
                return True
            if state == STATE_FAILED:
                logger.error(f"File {file_id} failed to process")
                return False
            if attempt < self.max_attempts:
                await self._sleep(self.poll_interval)

        logger.error(f"File {file_id} did not become active within {self.max_attempts} checks")
        return False

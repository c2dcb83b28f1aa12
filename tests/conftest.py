"""Shared fixtures: a fake Gemini REST server and fakes for the capture host."""

import json
from pathlib import Path

import pytest
from aiohttp import web

from screenlens.api.http import GeminiHttp, HttpSettings
from screenlens.api.inference import InferenceClient
from screenlens.api.uploader import RemoteFileUploader
from screenlens.core.capture import CaptureBackend, CaptureSettings
from screenlens.core.events import EventQueue, HostEventPump, PermissionDenied, PermissionGranted
from screenlens.core.orchestrator import SessionOrchestrator
from screenlens.db.database import Database
from screenlens.db.models import AIConfig

API_KEY = "test-api-key"


def reply_with(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


# ── Fake Gemini ───────────────────────────────────────────────────────────────

class FakeGemini:
    def __init__(self):
        self.states = ["ACTIVE"]
        self.status_calls = 0
        self.initiate_calls = []
        self.transfer_calls = []
        self.generate_calls = []
        self.send_upload_url = True
        self.initiate_status = 200
        self.transfer_status = 200
        # raw transfer reply body; None sends the usual file JSON
        self.transfer_body = None
        self.on_initiate = None
        self.generate_status = 200
        self.reply = reply_with("answer")
        self.base_url = ""
        self.upload_url = ""
        self.file_uri = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/upload/v1beta/files", self.initiate)
        app.router.add_post("/upload/session/{sid}", self.transfer)
        app.router.add_get("/v1beta/files/{fid}", self.status)
        app.router.add_post("/v1beta/models/{target}", self.generate)
        return app

    async def initiate(self, request: web.Request):
        self.initiate_calls.append({"headers": request.headers.copy(), "json": await request.json()})
        if self.on_initiate:
            self.on_initiate()
        if self.initiate_status != 200:
            return web.json_response({"error": {"message": "quota"}}, status=self.initiate_status)
        headers = {}
        if self.send_upload_url:
            headers["X-Goog-Upload-URL"] = str(request.url.with_path("/upload/session/s1"))
        return web.json_response({}, headers=headers)

    async def transfer(self, request: web.Request):
        self.transfer_calls.append({"headers": request.headers.copy(), "body": await request.read()})
        if self.transfer_status != 200:
            return web.json_response({"error": {"message": "bad chunk"}}, status=self.transfer_status)
        if self.transfer_body is not None:
            return web.Response(text=self.transfer_body, content_type="application/json")
        return web.json_response({"file": {"uri": self.file_uri, "state": "PROCESSING"}})

    async def status(self, request: web.Request):
        self.status_calls += 1
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return web.json_response({"name": f"files/{request.match_info['fid']}", "state": state})

    async def generate(self, request: web.Request):
        self.generate_calls.append({
            "target": request.match_info["target"],
            "headers": request.headers.copy(),
            "json": await request.json(),
        })
        if self.generate_status != 200:
            return web.json_response({"error": {"message": "boom"}}, status=self.generate_status)
        return web.json_response(self.reply)

    def parts(self, call: int = -1) -> list[dict]:
        return self.generate_calls[call]["json"]["contents"][0]["parts"]


@pytest.fixture
async def gemini(aiohttp_server):
    fake = FakeGemini()
    server = await aiohttp_server(fake.app())
    fake.base_url = str(server.make_url("/v1beta"))
    fake.upload_url = str(server.make_url("/upload/v1beta/files"))
    fake.file_uri = f"{fake.base_url}/files/abc123"
    return fake


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def uploader(gemini, sleeps):
    async def no_wait(seconds):
        sleeps.append(seconds)

    settings = HttpSettings(base_url=gemini.base_url, upload_url=gemini.upload_url, connection_retries=0)
    return RemoteFileUploader(GeminiHttp(settings), sleep=no_wait)


@pytest.fixture
def inference(uploader):
    return InferenceClient(uploader)


@pytest.fixture
def ai_config():
    return AIConfig(api_key=API_KEY)


@pytest.fixture
def video(tmp_path) -> Path:
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"0123456789")
    return path


# ── Capture host fakes ────────────────────────────────────────────────────────

class FakeCapturer:
    def __init__(self, reject_audio=(), fail_start=False, fail_configure=False):
        self.surface = object()
        self.reject_audio = set(reject_audio)
        self.fail_start = fail_start
        self.fail_configure = fail_configure
        self.calls = []
        self.audio_source = None
        self.with_audio = None
        self.output_path = None
        self.recording = False

    def reset(self):
        self.calls.append("reset")
        self.audio_source = None

    def set_audio_source(self, source):
        self.calls.append(f"audio:{source.name}")
        if "*" in self.reject_audio or source.name in self.reject_audio:
            raise RuntimeError(f"{source.name} not supported")
        self.audio_source = source

    def configure(self, profile, output_path, with_audio):
        self.calls.append("configure")
        if self.fail_configure:
            raise RuntimeError("encoder unavailable")
        self.output_path = Path(output_path)
        self.with_audio = with_audio

    def start(self):
        self.calls.append("start")
        if self.fail_start:
            raise RuntimeError("recorder failed to start")
        self.output_path.write_bytes(b"0123456789")
        self.recording = True

    def stop(self):
        self.calls.append("stop")
        self.recording = False

    def release(self):
        self.calls.append("release")

    def is_recording(self):
        return self.recording


class FakeDisplay:
    def __init__(self, fail_release=False):
        self.fail_release = fail_release
        self.released = False

    def release(self):
        self.released = True
        if self.fail_release:
            raise RuntimeError("display already gone")


class FakeGrant:
    def __init__(self, display=None, no_display=False):
        self.display = display or FakeDisplay()
        self.no_display = no_display
        self.revoked_cb = None
        self.stop_calls = 0

    def create_virtual_display(self, name, profile, surface):
        return None if self.no_display else self.display

    def on_revoked(self, callback):
        self.revoked_cb = callback

    def revoke(self):
        self.revoked_cb()

    def stop(self):
        self.stop_calls += 1


class FakeForeground:
    def __init__(self, fail=False):
        self.fail = fail
        self.notifications = []
        self.stopped = 0

    def start_foreground(self, notification):
        if self.fail:
            raise RuntimeError("foreground not allowed")
        self.notifications.append(notification)

    def stop_foreground(self):
        self.stopped += 1


class FakeBroker:
    """Answers every grant request by posting a host event, like the OS consent dialog."""

    def __init__(self, post=None, answer="grant", grant_factory=FakeGrant):
        self.post = post
        self.answer = answer
        self.grant_factory = grant_factory
        self.requests = 0
        self.grants = []

    def request_grant(self):
        self.requests += 1
        if self.post is None:
            return
        if self.answer == "grant":
            grant = self.grant_factory()
            self.grants.append(grant)
            self.post(PermissionGranted(grant))
        elif self.answer == "deny":
            self.post(PermissionDenied("user declined"))


@pytest.fixture
def capturer():
    return FakeCapturer()


@pytest.fixture
def foreground():
    return FakeForeground()


@pytest.fixture
def capture_settings(tmp_path):
    return CaptureSettings(recordings_dir=tmp_path / "recordings", monitor_interval=3600)


# ── Orchestrator ──────────────────────────────────────────────────────────────

@pytest.fixture
def db():
    database = Database(Path(":memory:"))
    database.connect()
    yield database
    database.close()


class Harness:
    def __init__(self, orchestrator, pump, db, broker, capturer, gemini):
        self.orch = orchestrator
        self.pump = pump
        self.db = db
        self.broker = broker
        self.capturer = capturer
        self.gemini = gemini

    async def record(self) -> int:
        """Run one full start/stop cycle and let the upload finish."""
        assert (await self.orch.start_capture()).ok
        await self.pump.process_pending()
        session_id = self.orch.current_session.id
        await self.orch.stop_capture()
        await self.pump.process_pending()
        await self.orch.wait_for_background()
        return session_id


@pytest.fixture
def harness(db, uploader, inference, capturer, foreground, capture_settings, gemini):
    queue = EventQueue()
    broker = FakeBroker(queue.post)
    orch = SessionOrchestrator(
        db=db,
        uploader=uploader,
        inference=inference,
        backend=CaptureBackend(capturer, foreground, broker),
        capture_settings=capture_settings,
        events=queue,
        default_ai_config=AIConfig(api_key=API_KEY),
    )
    return Harness(orch, HostEventPump(queue, orch), db, broker, capturer, gemini)


def insights_json(**overrides) -> str:
    data = {
        "productivity_score": 72,
        "key_findings": ["Mostly coding"],
        "recommendations": ["Batch messages"],
        "action_items": ["Mute chat for an hour"],
        "insights": [{
            "type": "FOCUS_ACHIEVEMENT",
            "title": "Deep work",
            "description": "25 minutes in the editor",
            "confidence": 0.9,
            "is_positive": True,
            "actionable": False,
            "suggestion": None,
        }],
    }
    data.update(overrides)
    return json.dumps(data)

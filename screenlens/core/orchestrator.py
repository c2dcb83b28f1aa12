"""Session orchestrator - owns the current session and drives capture, upload and analysis."""

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional

from screenlens.api.inference import InferenceClient
from screenlens.api.prompts import SUMMARY_VIDEO_PROMPT, extract_screen_content
from screenlens.api.results import ErrorKind, Result
from screenlens.api.uploader import RemoteFileUploader, mime_type_for
from screenlens.core.capture import CaptureBackend, CaptureSession, CaptureSettings, CaptureState
from screenlens.core.events import EventQueue
from screenlens.db.database import Database
from screenlens.db.models import (
    AIConfig, ActivityContext, ActivityEvent, EventType, InsightResponse, Session, SummaryResponse,
    UploadedFile,
)
from screenlens.utils.helpers import human_size, now_millis

logger = logging.getLogger("screenlens.orchestrator")


@dataclass(frozen=True)
class OrchestratorSnapshot:
    """Immutable view handed to UI subscribers."""
    capture_state: CaptureState = CaptureState.IDLE
    current_session: Optional[Session] = None
    ai_config: Optional[AIConfig] = None
    busy: bool = False
    message: Optional[str] = None
    last_question: Optional[str] = None
    last_answer: Optional[str] = None
    current_summary: Optional[str] = None
    insights: Optional[InsightResponse] = None

    @property
    def is_recording(self) -> bool:
        return self.capture_state == CaptureState.CAPTURING


class SessionOrchestrator:
    def __init__(self, db: Database, uploader: RemoteFileUploader, inference: InferenceClient,
                 backend: CaptureBackend, capture_settings: CaptureSettings, events: EventQueue,
                 default_ai_config: Optional[AIConfig] = None, recent_files: int = 5):
        self.db = db
        self.uploader = uploader
        self.inference = inference
        self.backend = backend
        self.capture_settings = capture_settings
        self.events = events
        self.recent_files = recent_files

        self._default_ai_config = default_ai_config or AIConfig()
        self._ai_config: Optional[AIConfig] = None
        self._capture: Optional[CaptureSession] = None
        self._current: Optional[Session] = None
        self._last_session_id = 0
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._subscribers: list[Callable[[OrchestratorSnapshot], None]] = []
        self._snapshot = OrchestratorSnapshot()

    # ── State publication ─────────────────────────────────────────────────────

    def subscribe(self, cb: Callable[[OrchestratorSnapshot], None]):
        self._subscribers.append(cb)
        cb(self._snapshot)

    def snapshot(self) -> OrchestratorSnapshot:
        return self._snapshot

    def _publish(self, **changes):
        changes.setdefault("capture_state", self.capture_state)
        changes.setdefault("current_session", replace(self._current) if self._current else None)
        changes.setdefault("ai_config", replace(self.ai_config))
        self._snapshot = replace(self._snapshot, **changes)
        for cb in list(self._subscribers):
            try:
                cb(self._snapshot)
            except Exception as e:
                logger.exception(f"Snapshot subscriber failed: {e}")

    @property
    def capture_state(self) -> CaptureState:
        return self._capture.state if self._capture else CaptureState.IDLE

    @property
    def current_session(self) -> Optional[Session]:
        return replace(self._current) if self._current else None

    # ── AI config ─────────────────────────────────────────────────────────────

    @property
    def ai_config(self) -> AIConfig:
        if self._ai_config is None:
            stored = self.db.load_ai_config()
            if stored is None:
                stored = replace(self._default_ai_config)
                env_key = os.environ.get("GEMINI_API_KEY")
                if env_key and not stored.is_configured:
                    stored.api_key = env_key
                try:
                    self.db.save_ai_config(stored)
                    logger.info("AI config initialized from defaults")
                except Exception as e:
                    logger.error(f"Could not persist default AI config, using it in memory: {e}")
            self._ai_config = stored
        return self._ai_config

    def save_ai_config(self, config: AIConfig) -> str:
        try:
            self.db.save_ai_config(config)
        except Exception as e:
            logger.error(f"Error saving AI configuration: {e}")
            return f"Error saving AI configuration: {e}"
        self._ai_config = replace(config)
        self._publish(message="AI configuration saved successfully!")
        return "AI configuration saved successfully!"

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def recover(self) -> int:
        """Close sessions left active by a previous process; no capture survives a restart."""
        self._last_session_id = max(self._last_session_id, self.db.get_max_session_id())
        stale = self.db.get_active_sessions()
        for s in stale:
            s.is_active = False
            s.end_time = max(s.start_time, s.end_time or now_millis())
            self.db.update_session(s)
            logger.info(f"Closed stale session {s.id}")
        if stale:
            logger.info(f"Recovered {len(stale)} stale session(s)")
        return len(stale)

    def _next_session_id(self) -> int:
        candidate = max(now_millis(), self._last_session_id + 1, self.db.get_max_session_id() + 1)
        self._last_session_id = candidate
        return candidate

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_background(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Capture ───────────────────────────────────────────────────────────────

    async def start_capture(self) -> Result:
        async with self._lock:
            if self.capture_state in (CaptureState.PERMISSION_REQUESTED, CaptureState.CAPTURING,
                                      CaptureState.STOPPING):
                logger.warning(f"Capture rejected, one is already {self.capture_state.value}")
                return Result.fail(ErrorKind.SESSION_ACTIVE)
            if self.db.get_active_session() is not None:
                logger.warning("Capture rejected, a session is still marked active")
                return Result.fail(ErrorKind.SESSION_ACTIVE)

            self._capture = CaptureSession(self.backend, self.capture_settings, self.events.post)
            if not self._capture.request_start():
                self._publish(message=ErrorKind.PERMISSION_DENIED.user_message())
                return Result.fail(ErrorKind.PERMISSION_DENIED)
            self._publish(message="Waiting for screen capture permission...")
            return Result.success(None)

    async def on_permission_denied(self, reason: str = ""):
        async with self._lock:
            if self._capture is not None:
                self._capture.on_permission_denied()
            logger.info(f"Capture permission denied {reason}".strip())
            self._publish(message="Please grant permissions to enable screen recording.")

    async def on_permission_granted(self, grant) -> Result:
        async with self._lock:
            capture = self._capture
            if capture is None or capture.state != CaptureState.PERMISSION_REQUESTED:
                logger.warning("Capture grant arrived with no pending request, releasing it")
                try:
                    grant.stop()
                except Exception as e:
                    logger.error(f"Error releasing unused grant: {e}")
                return Result.fail(ErrorKind.SESSION_ACTIVE)

            now = now_millis()
            session = Session(id=self._next_session_id(), start_time=now, is_active=True, created_at=now)
            try:
                self.db.insert_session(session)
            except Exception as e:
                logger.error(f"Failed to create session: {e}")
                capture.on_permission_denied()
                try:
                    grant.stop()
                except Exception as release_error:
                    logger.error(f"Error releasing grant: {release_error}")
                self._publish(message=f"Failed to start recording: {e}")
                return Result.fail(ErrorKind.SETUP_FAILURE, str(e))
            self._current = session
            logger.info(f"Session created: {session.id}")

            if not await capture.on_grant(grant, session.id):
                session.is_active = False
                session.end_time = max(session.start_time, now_millis())
                self._save_session(session)
                self._publish(message=f"Failed to start recording: {capture.error}")
                return Result.fail(ErrorKind.SETUP_FAILURE, capture.error or "")

            self._publish(message="Recording started successfully!")
            return Result.success(session.id)

    async def stop_capture(self) -> Result:
        async with self._lock:
            capture = self._capture
            if capture is None or capture.state not in (CaptureState.CAPTURING, CaptureState.PERMISSION_REQUESTED):
                return Result.fail(ErrorKind.NO_SESSION, "no capture in progress")
            path = await capture.stop()
            self._publish(message="Processing recording...")
            return Result.success(path)

    async def on_capture_stopped(self, session_id: int, path: str):
        """Close the session and, when there is a file, upload it in the background."""
        async with self._lock:
            session = self.db.get_session(session_id)
            if session is None:
                logger.warning(f"Recording stopped for unknown session {session_id}")
                return
            session.end_time = max(session.start_time, now_millis())
            session.is_active = False
            session.video_path = path or None
            self._save_session(session)
            if self._current is None or self._current.id == session_id:
                self._current = session
            logger.info(f"Session {session_id} closed after {session.formatted_duration}")
            self._publish(message="Recording stopped")

        if path:
            self._spawn(self._upload_for_session(session_id, Path(path)))

    # ── Upload ────────────────────────────────────────────────────────────────

    async def _upload(self, path: Path) -> Result:
        """Upload one file and add it to the recent-uploads history."""
        try:
            size = path.stat().st_size if path.exists() else 0
            self._publish(busy=True, message=f"Uploading screen recording to Gemini... ({human_size(size)})")
            result = await self.uploader.upload(path, self.ai_config.api_key)
            if result.ok:
                self.db.insert_uploaded_file(UploadedFile(
                    remote_handle=result.value,
                    local_path=str(path),
                    file_size=size,
                    mime_type=mime_type_for(path),
                ))
                logger.info(f"Stored uploaded file: {result.value}")
            return result
        except Exception as e:
            logger.exception(f"Error uploading {path}: {e}")
            return Result.fail(ErrorKind.TRANSFER_FAILED, str(e))

    async def _upload_for_session(self, session_id: int, path: Path) -> Result:
        result = await self._upload(path)
        if not result.ok:
            self._publish(busy=False, message=f"Failed to upload screen recording: {result.message()}")
            return result
        async with self._lock:
            session = self.db.get_session(session_id)
            if session is not None:
                session.remote_handle = result.value
                self._save_session(session)
                if self._current is not None and self._current.id == session_id:
                    self._current = session
        self._publish(busy=False, message="Screen recording uploaded successfully!")
        return result

    async def upload_recording(self, path: Path) -> str:
        result = await self._upload(Path(path))
        text = "Screen recording uploaded successfully!" if result.ok else \
            f"Failed to upload screen recording: {result.message()}"
        self._publish(busy=False, message=text)
        return text

    # ── Questions and analysis ────────────────────────────────────────────────

    def _resolve_session(self, session_id: Optional[int]) -> Optional[Session]:
        if session_id is None and self._current is not None:
            session_id = self._current.id
        if session_id is None:
            recent = self.db.get_recent_sessions(1)
            return recent[0] if recent else None
        return self.db.get_session(session_id)

    def _context_for(self, session: Optional[Session]) -> ActivityContext:
        events = self.db.get_events_for_session(session.id) if session else []
        return ActivityContext(
            session=session,
            events=events,
            screen_content=extract_screen_content(events),
            audio_transcript=session.transcript if session else None,
        )

    async def ask(self, question: str, session_id: Optional[int] = None) -> str:
        try:
            self._publish(busy=True, message="Processing your question...")
            config = self.ai_config
            recent = self.db.get_recent_files(self.recent_files)
            if recent:
                handles = [f.remote_handle for f in recent]
                logger.debug(f"Answering from {len(handles)} uploaded file(s)")
                result = await self.inference.analyze(handles, question, config)
            else:
                logger.debug("No uploaded files available, using context-based analysis")
                session = self._resolve_session(session_id)
                result = await self.inference.ask(question, self._context_for(session), config)
            answer = result.message()
        except Exception as e:
            logger.exception(f"Error in ask: {e}")
            answer = f"I encountered an error processing your question: {e}"
        self._publish(busy=False, message=None, last_question=question, last_answer=answer)
        return answer

    async def analyze_recording(self, handle: str, question: str) -> str:
        try:
            result = await self.inference.analyze([handle], question, self.ai_config)
            answer = result.message()
        except Exception as e:
            logger.exception(f"Error analyzing {handle}: {e}")
            answer = f"Error analyzing screen recording: {e}"
        self._publish(last_question=question, last_answer=answer)
        return answer

    async def summarize(self, session_id: Optional[int] = None) -> str:
        try:
            self._publish(busy=True, message="Generating summary...")
            text = await self._summarize(session_id)
        except Exception as e:
            logger.exception(f"Error generating summary: {e}")
            text = f"Error generating summary: {e}"
        self._publish(busy=False, message=None, current_summary=text)
        return text

    async def _summarize(self, session_id: Optional[int]) -> str:
        session = self._resolve_session(session_id)
        if session is None:
            return "No active session found to summarize."
        config = self.ai_config

        handle = session.remote_handle
        if not handle and session.video_path and Path(session.video_path).exists():
            uploaded = await self._upload_for_session(session.id, Path(session.video_path))
            handle = uploaded.value if uploaded.ok else None
        if handle:
            result = await self.inference.analyze([handle], SUMMARY_VIDEO_PROMPT, config)
            if result.ok:
                self.db.update_session_summary(session.id, result.value)
                return result.value
            logger.warning(f"Video summary failed ({result.message()}), falling back to context")

        result = await self.inference.summarize(self._context_for(session), config)
        if not result.ok:
            return result.message()
        summary: SummaryResponse = result.value
        self.db.update_session_summary(session.id, summary.summary)
        return format_summary(summary)

    async def insights(self, session_id: Optional[int] = None) -> InsightResponse:
        response = InsightResponse()
        try:
            self._publish(busy=True, message="Generating AI insights...")
            session = self._resolve_session(session_id)
            if session is not None:
                result = await self.inference.insights(self._context_for(session), session.id, self.ai_config)
                if result.ok:
                    response = result.value
                    for insight in response.insights:
                        self.db.insert_insight(insight)
                    if response.productivity_score is not None:
                        self.db.update_productivity_score(session.id, response.productivity_score)
                else:
                    logger.error(f"Insights failed: {result.message()}")
        except Exception as e:
            logger.exception(f"Error generating insights: {e}")
            response = InsightResponse()
        self._publish(busy=False, message=None, insights=response)
        return response

    # ── Session data ──────────────────────────────────────────────────────────

    def recent_sessions(self, limit: int = 10) -> list[Session]:
        return self.db.get_recent_sessions(limit)

    def add_event(self, session_id: int, event_type: EventType, app_name: Optional[str] = None,
                  app_package: Optional[str] = None, screen_content: Optional[str] = None,
                  metadata: Optional[dict] = None, timestamp: Optional[int] = None) -> ActivityEvent:
        event = ActivityEvent(
            id=None,
            session_id=session_id,
            timestamp=timestamp if timestamp is not None else now_millis(),
            event_type=event_type,
            app_package=app_package,
            app_name=app_name,
            screen_content=screen_content,
            metadata=metadata or {},
        )
        return self.db.insert_event(event)

    def delete_session(self, session_id: int):
        if self._current is not None and self._current.id == session_id:
            if self._current.is_active:
                logger.warning(f"Refusing to delete active session {session_id}")
                return
            self._current = None
        self.db.delete_session(session_id)
        self._publish()

    def _save_session(self, session: Session):
        try:
            self.db.update_session(session)
        except Exception as e:
            logger.error(f"Failed to update session {session.id}: {e}")


def format_summary(summary: SummaryResponse) -> str:
    lines = [summary.summary]
    if summary.highlights:
        lines.append("")
        lines.append("🎯 Key Highlights:")
        lines.extend(f"• {h}" for h in summary.highlights)
    if summary.recommendations:
        lines.append("")
        lines.append("💡 Recommendations:")
        lines.extend(f"• {r}" for r in summary.recommendations)
    return "\n".join(lines)

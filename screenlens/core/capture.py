"""Screen capture session state machine.

Idle -> PermissionRequested -> Capturing -> Stopping -> Stopped, with
Error reachable from any non-idle state. The host pieces (capturer,
capture grant, virtual display, foreground registration, permission
broker) are injected, so everything here runs against fakes in tests.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

from screenlens.core.events import CaptureRevoked, HostEvent, RecordingStopped, StopRequested
from screenlens.utils.config import resolve_path, section

logger = logging.getLogger("screenlens.capture")


class CaptureState(str, Enum):
    IDLE = "idle"
    PERMISSION_REQUESTED = "permission_requested"
    CAPTURING = "capturing"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class CaptureSetupError(Exception):
    """Raised by capture backends when a setup step cannot complete."""


@dataclass(frozen=True)
class AudioSource:
    name: str
    backend_format: str = ""
    device: str = ""


DEFAULT_AUDIO_SOURCES = (
    AudioSource("REMOTE_SUBMIX"),
    AudioSource("UNPROCESSED"),
    AudioSource("VOICE_COMMUNICATION"),
)


@dataclass(frozen=True)
class VideoProfile:
    width: int = 360
    height: int = 640
    density: int = 320
    frame_rate: int = 15
    video_bitrate: int = 800_000
    audio_sample_rate: int = 22050
    audio_bitrate: int = 64_000
    container: str = "mp4"
    video_encoders: tuple = ("hevc", "h264")


@dataclass(frozen=True)
class Notification:
    title: str
    text: str
    stop_label: str
    on_stop: Optional[Callable[[], None]] = None


class Capturer(Protocol):
    surface: Any

    def reset(self) -> None: ...
    def set_audio_source(self, source: AudioSource) -> None: ...
    def configure(self, profile: VideoProfile, output_path: Path, with_audio: bool) -> None: ...
    def start(self) -> None: ...
    def stop(self) -> None: ...
    def release(self) -> None: ...
    def is_recording(self) -> bool: ...


class VirtualDisplay(Protocol):
    def release(self) -> None: ...


class CaptureGrant(Protocol):
    def create_virtual_display(self, name: str, profile: VideoProfile, surface: Any) -> Optional[VirtualDisplay]: ...
    def on_revoked(self, callback: Callable[[], None]) -> None: ...
    def stop(self) -> None: ...


class ForegroundHost(Protocol):
    def start_foreground(self, notification: Notification) -> None: ...
    def stop_foreground(self) -> None: ...


class PermissionBroker(Protocol):
    def request_grant(self) -> None: ...


@dataclass
class CaptureBackend:
    capturer: Capturer
    foreground: ForegroundHost
    broker: PermissionBroker


@dataclass
class CaptureSettings:
    recordings_dir: Path = Path("recordings")
    profile: VideoProfile = field(default_factory=VideoProfile)
    audio_sources: Sequence[AudioSource] = DEFAULT_AUDIO_SOURCES
    monitor_interval: float = 30.0

    @classmethod
    def from_config(cls, cfg: dict) -> "CaptureSettings":
        c = section(cfg, "capture")
        storage = section(cfg, "storage")
        sources = tuple(
            AudioSource(s.get("name", ""), s.get("format", ""), s.get("device", ""))
            for s in c.get("audio_sources", []) if isinstance(s, dict)
        ) or DEFAULT_AUDIO_SOURCES
        profile = VideoProfile(
            width=c.get("width", 360),
            height=c.get("height", 640),
            density=c.get("density", 320),
            frame_rate=c.get("frame_rate", 15),
            video_bitrate=c.get("video_bitrate", 800_000),
            audio_sample_rate=c.get("audio_sample_rate", 22050),
            audio_bitrate=c.get("audio_bitrate", 64_000),
        )
        return cls(
            recordings_dir=resolve_path(storage.get("recordings_dir", "recordings")),
            profile=profile,
            audio_sources=sources,
            monitor_interval=c.get("monitor_interval_sec", 30.0),
        )


class CaptureSession:
    def __init__(self, backend: CaptureBackend, settings: CaptureSettings,
                 emit: Callable[[HostEvent], None]):
        self.capturer = backend.capturer
        self.foreground = backend.foreground
        self.broker = backend.broker
        self.settings = settings
        self._emit = emit

        self.state = CaptureState.IDLE
        self.session_id: Optional[int] = None
        self.output_path: Optional[Path] = None
        self.audio_source: Optional[AudioSource] = None
        self.error: Optional[str] = None

        self._grant: Optional[CaptureGrant] = None
        self._display: Optional[VirtualDisplay] = None
        self._foreground_started = False
        self._capturer_acquired = False
        self._recording = False
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_reported = False

    @property
    def output_str(self) -> str:
        return str(self.output_path) if self.output_path else ""

    def _set_state(self, state: CaptureState):
        logger.debug(f"Capture {self.session_id}: {self.state.value} -> {state.value}")
        self.state = state

    # ── Start ─────────────────────────────────────────────────────────────────

    def request_start(self) -> bool:
        """Ask the host for a capture grant; the answer arrives as a host event."""
        if self.state != CaptureState.IDLE:
            logger.warning(f"Start ignored, capture is {self.state.value}")
            return False
        self._set_state(CaptureState.PERMISSION_REQUESTED)
        try:
            self.broker.request_grant()
        except Exception as e:
            logger.error(f"Capture permission request failed: {e}")
            self._set_state(CaptureState.IDLE)
            return False
        return True

    def on_permission_denied(self):
        if self.state == CaptureState.PERMISSION_REQUESTED:
            logger.info("Capture permission denied")
            self._set_state(CaptureState.IDLE)

    async def on_grant(self, grant: CaptureGrant, session_id: int) -> bool:
        if self.state != CaptureState.PERMISSION_REQUESTED:
            logger.warning(f"Unexpected capture grant while {self.state.value}, releasing it")
            await _quietly("release unused grant", grant.stop)
            return False

        self.session_id = session_id
        self._grant = grant

        # The foreground registration must exist before any capture resource is touched
        try:
            self.foreground.start_foreground(self._notification())
            self._foreground_started = True
            logger.debug("Foreground operation registered")
        except Exception as e:
            logger.error(f"Error starting foreground operation: {e}")
            self.error = f"foreground: {e}"
            self._set_state(CaptureState.ERROR)
            await self._teardown()
            return False

        try:
            await asyncio.to_thread(self._configure_capturer)
            display = await asyncio.to_thread(
                grant.create_virtual_display, "ScreenRecord", self.settings.profile, self.capturer.surface)
            if display is None:
                raise CaptureSetupError("virtual display was not created")
            self._display = display
            logger.debug("Virtual display created")
            await asyncio.to_thread(self.capturer.start)
            self._recording = True
        except Exception as e:
            logger.error(f"Capture setup failed for session {session_id}: {e}")
            self.error = str(e)
            self._set_state(CaptureState.ERROR)
            await self._teardown()
            return False

        grant.on_revoked(lambda: self._emit(CaptureRevoked()))
        self._set_state(CaptureState.CAPTURING)
        self._monitor_task = asyncio.create_task(self._monitor())
        logger.info(f"Recording session {session_id} to {self.output_path} "
                    f"(audio: {self.audio_source.name if self.audio_source else 'none'})")
        return True

    def _notification(self) -> Notification:
        return Notification(
            title="Screen Recording Active",
            text="Tap to open app or use action to stop recording",
            stop_label="Stop Recording",
            on_stop=lambda: self._emit(StopRequested("notification")),
        )

    def _configure_capturer(self):
        self.capturer.reset()
        self._capturer_acquired = True

        self.audio_source = None
        for source in self.settings.audio_sources:
            try:
                self.capturer.set_audio_source(source)
                self.audio_source = source
                logger.debug(f"Audio source set: {source.name}")
                break
            except Exception as e:
                logger.warning(f"Failed to set audio source {source.name}: {e}")
                self.capturer.reset()

        if self.audio_source is None:
            logger.warning("No system audio source accepted, continuing with video-only recording")

        self.settings.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.output_path = self.settings.recordings_dir / f"screen_recording_{self.session_id}.mp4"
        self.capturer.configure(self.settings.profile, self.output_path,
                                with_audio=self.audio_source is not None)

    async def _monitor(self):
        while self.state == CaptureState.CAPTURING:
            await asyncio.sleep(self.settings.monitor_interval)
            try:
                logger.debug(f"Audio monitoring check - recorder active: {self.capturer.is_recording()}")
            except Exception as e:
                logger.warning(f"Audio monitoring error: {e}")

    # ── Stop ──────────────────────────────────────────────────────────────────

    async def stop(self) -> str:
        """Tear everything down and report the output path (may be empty or partial)."""
        if self.state == CaptureState.PERMISSION_REQUESTED:
            self._set_state(CaptureState.IDLE)
            return ""
        if self.state in (CaptureState.IDLE, CaptureState.ERROR):
            return self.output_str
        if self.state in (CaptureState.STOPPING, CaptureState.STOPPED):
            return self.output_str

        self._set_state(CaptureState.STOPPING)
        try:
            await self._teardown()
        finally:
            self._set_state(CaptureState.STOPPED)
            self._report_stopped()
        return self.output_str

    async def _teardown(self):
        await self._cancel_monitor()

        if self._recording:
            self._recording = False
            await _quietly("stop capturer", self.capturer.stop)
        if self._capturer_acquired:
            self._capturer_acquired = False
            await _quietly("release capturer", self.capturer.release)

        display, self._display = self._display, None
        if display is not None:
            await _quietly("release virtual display", display.release)

        grant, self._grant = self._grant, None
        if grant is not None:
            await _quietly("release capture grant", grant.stop)

        if self._foreground_started:
            self._foreground_started = False
            await _quietly("stop foreground operation", self.foreground.stop_foreground)

    async def _cancel_monitor(self):
        task, self._monitor_task = self._monitor_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _report_stopped(self):
        if self._stop_reported or self.session_id is None:
            return
        self._stop_reported = True
        if self.output_path is not None and self.output_path.exists():
            logger.info(f"Recording saved: {self.output_path} ({self.output_path.stat().st_size} bytes)")
        self._emit(RecordingStopped(self.session_id, self.output_str))


async def _quietly(step: str, fn: Callable[[], Any]):
    """Run one blocking teardown step in a worker thread, logging instead of raising."""
    try:
        await asyncio.to_thread(fn)
        logger.debug(f"Teardown: {step} ok")
    except Exception as e:
        logger.error(f"Teardown: {step} failed: {e}")

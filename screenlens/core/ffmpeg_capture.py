"""
Desktop capture backend built on the ffmpeg command-line tool.

Records the X11 display with x11grab. Audio sources are probed before use
so a missing PulseAudio/ALSA device is rejected at configuration time and
the session falls back to the next source, or to video only.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Optional

from screenlens.core.capture import AudioSource, CaptureSetupError, Notification, VideoProfile
from screenlens.core.events import PermissionDenied, PermissionGranted

logger = logging.getLogger("screenlens.ffmpeg")

DESKTOP_AUDIO_SOURCES = (
    AudioSource("REMOTE_SUBMIX", "pulse", "@DEFAULT_MONITOR@"),
    AudioSource("UNPROCESSED", "alsa", "hw:Loopback,1"),
    AudioSource("VOICE_COMMUNICATION", "pulse", "default"),
)

_ENCODERS = {"hevc": "libx265", "h264": "libx264"}


def has_ffmpeg(binary: str = "ffmpeg") -> bool:
    try:
        subprocess.run([binary, "-version"], capture_output=True, timeout=5)
        return True
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False


class FfmpegSurface:
    """Where the display binding tells the capturer to read frames from."""

    def __init__(self):
        self.source: Optional[str] = None


class FfmpegCapturer:
    def __init__(self, binary: str = "ffmpeg", stop_timeout: float = 10.0):
        self.binary = binary
        self.stop_timeout = stop_timeout
        self.surface = FfmpegSurface()
        self._audio: Optional[AudioSource] = None
        self._profile: Optional[VideoProfile] = None
        self._output: Optional[Path] = None
        self._with_audio = False
        self._encoder: Optional[str] = None
        self._proc: Optional[subprocess.Popen] = None

    def reset(self):
        self._kill()
        self._audio = None
        self._profile = None
        self._output = None
        self._with_audio = False

    def set_audio_source(self, source: AudioSource):
        if not source.backend_format or not source.device:
            raise CaptureSetupError(f"{source.name} has no desktop device")
        cmd = [
            self.binary, "-hide_banner", "-loglevel", "error",
            "-f", source.backend_format, "-i", source.device,
            "-t", "0.1", "-f", "null", "-",
        ]
        try:
            probe = subprocess.run(cmd, capture_output=True, timeout=5)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise CaptureSetupError(f"{source.name} probe failed: {e}") from e
        if probe.returncode != 0:
            err = probe.stderr.decode("utf-8", errors="replace").strip()
            raise CaptureSetupError(f"{source.name} rejected: {err[:200]}")
        self._audio = source

    def configure(self, profile: VideoProfile, output_path: Path, with_audio: bool):
        self._profile = profile
        self._output = Path(output_path)
        self._with_audio = with_audio and self._audio is not None
        self._encoder = self._pick_encoder(profile.video_encoders)
        logger.debug(f"Configured {self._encoder} {profile.width}x{profile.height}@{profile.frame_rate} "
                     f"-> {self._output}")

    def _pick_encoder(self, preferred) -> str:
        try:
            listing = subprocess.run([self.binary, "-hide_banner", "-encoders"],
                                     capture_output=True, timeout=5).stdout.decode("utf-8", errors="replace")
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise CaptureSetupError(f"ffmpeg unavailable: {e}") from e
        for codec in preferred:
            encoder = _ENCODERS.get(codec)
            if encoder and encoder in listing:
                return encoder
        raise CaptureSetupError("no usable video encoder (libx265/libx264)")

    def command(self) -> list[str]:
        p = self._profile
        if p is None or self._output is None:
            raise CaptureSetupError("capturer not configured")
        if not self.surface.source:
            raise CaptureSetupError("no display bound to the capturer")

        cmd = [
            self.binary, "-y", "-hide_banner", "-loglevel", "error",
            "-f", "x11grab", "-framerate", str(p.frame_rate), "-i", self.surface.source,
        ]
        if self._with_audio:
            cmd += ["-f", self._audio.backend_format, "-i", self._audio.device]
        cmd += [
            "-vf", f"scale={p.width}:{p.height}:force_original_aspect_ratio=decrease,"
                   f"pad={p.width}:{p.height}:(ow-iw)/2:(oh-ih)/2",
            "-c:v", self._encoder, "-b:v", str(p.video_bitrate), "-pix_fmt", "yuv420p",
        ]
        if self._encoder == "libx265":
            cmd += ["-tag:v", "hvc1"]
        if self._with_audio:
            cmd += ["-c:a", "aac", "-ar", str(p.audio_sample_rate), "-b:a", str(p.audio_bitrate)]
        cmd += ["-movflags", "+faststart", str(self._output)]
        return cmd

    def start(self):
        cmd = self.command()
        logger.debug(f"Launching: {' '.join(cmd)}")
        try:
            self._proc = subprocess.Popen(cmd, stdin=subprocess.PIPE,
                                          stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise CaptureSetupError(f"ffmpeg failed to start: {e}") from e

    def stop(self):
        proc, self._proc = self._proc, None
        if proc is None or proc.poll() is not None:
            return
        # "q" lets ffmpeg finalize the mp4 moov atom
        try:
            proc.stdin.write(b"q")
            proc.stdin.flush()
            proc.stdin.close()
        except OSError as e:
            logger.warning(f"Could not ask ffmpeg to quit: {e}")
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("ffmpeg did not exit, killing it")
            proc.kill()
            proc.wait()

    def release(self):
        self._kill()
        self.surface.source = None

    def is_recording(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def _kill(self):
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            proc.kill()
            proc.wait()


class DisplayBinding:
    def __init__(self, surface: FfmpegSurface):
        self.surface = surface

    def release(self):
        self.surface.source = None


class DisplayGrant:
    """Single-use grant for the local X display."""

    def __init__(self, display: Optional[str] = None):
        self.display = display or os.environ.get("DISPLAY")
        self._revoked_cb: Optional[Callable[[], None]] = None
        self.stopped = False

    def create_virtual_display(self, name: str, profile: VideoProfile, surface) -> Optional[DisplayBinding]:
        if self.stopped or not self.display:
            return None
        surface.source = self.display
        logger.debug(f"{name} bound to display {self.display}")
        return DisplayBinding(surface)

    def on_revoked(self, callback: Callable[[], None]):
        self._revoked_cb = callback

    def revoke(self):
        if self._revoked_cb is not None and not self.stopped:
            self._revoked_cb()

    def stop(self):
        self.stopped = True


class ConsoleForeground:
    def __init__(self):
        self.notification: Optional[Notification] = None

    def start_foreground(self, notification: Notification):
        self.notification = notification
        logger.info(f"{notification.title}: {notification.text}")

    def stop_foreground(self):
        if self.notification is not None:
            logger.info("Foreground notification cleared")
        self.notification = None


class LocalPermissionBroker:
    """Grants capture of the local display as soon as it is asked, if there is one."""

    def __init__(self, post, display: Optional[str] = None):
        self._post = post
        self.display = display

    def request_grant(self):
        grant = DisplayGrant(self.display)
        if grant.display:
            self._post(PermissionGranted(grant))
        else:
            self._post(PermissionDenied("no X display available"))

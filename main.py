"""
main.py - screenlens entry point.
Wires together: database, Gemini uploader/inference, capture backend, orchestrator.
Run with:  python main.py <command>
"""

import argparse
import asyncio
import signal
import sys
from dataclasses import replace
from pathlib import Path

from screenlens.api.inference import InferenceClient
from screenlens.api.prompts import ContextLimits
from screenlens.api.uploader import RemoteFileUploader
from screenlens.core.capture import CaptureBackend, CaptureSettings, CaptureState
from screenlens.core.events import EventQueue, HostEventPump
from screenlens.core.ffmpeg_capture import ConsoleForeground, FfmpegCapturer, LocalPermissionBroker, has_ffmpeg
from screenlens.core.orchestrator import SessionOrchestrator
from screenlens.db.database import Database
from screenlens.db.models import AIConfig, DEFAULT_MODEL
from screenlens.utils.config import load_config, resolve_path, section
from screenlens.utils.helpers import truncate
from screenlens.utils.logger import setup_logging


# ── Wiring ────────────────────────────────────────────────────────────────────

class ScreenLensApp:
    """Owns every long-lived component for one CLI invocation."""

    def __init__(self, cfg: dict):
        storage = section(cfg, "storage")
        gemini = section(cfg, "gemini")

        self.db = Database(resolve_path(storage.get("db_path", "~/.screenlens/screenlens.db")))
        self.db.connect()

        self.events = EventQueue()
        uploader = RemoteFileUploader.from_config(cfg)
        backend = CaptureBackend(
            capturer=FfmpegCapturer(),
            foreground=ConsoleForeground(),
            broker=LocalPermissionBroker(self.events.post),
        )
        self.orchestrator = SessionOrchestrator(
            db=self.db,
            uploader=uploader,
            inference=InferenceClient(uploader, ContextLimits.from_config(cfg)),
            backend=backend,
            capture_settings=CaptureSettings.from_config(cfg),
            events=self.events,
            default_ai_config=AIConfig(
                model=gemini.get("model", DEFAULT_MODEL),
                max_tokens=gemini.get("max_tokens", 2048),
                temperature=gemini.get("temperature", 0.7),
            ),
            recent_files=gemini.get("recent_files", 5),
        )
        self.pump = HostEventPump(self.events, self.orchestrator)

    async def __aenter__(self):
        self.orchestrator.recover()
        self.pump.start()
        return self

    async def __aexit__(self, *exc):
        await self.events.join()
        await self.orchestrator.wait_for_background()
        await self.pump.stop()
        self.db.close()


# ── Commands ──────────────────────────────────────────────────────────────────

async def cmd_init(app: ScreenLensApp, args) -> int:
    config = app.orchestrator.ai_config
    print(f"Database ready: {app.db.db_path}")
    print(f"Model: {config.model}")
    print(f"API key: {'configured' if config.is_configured else 'NOT configured (run: main.py config --api-key ...)'}")
    print(f"ffmpeg: {'found' if has_ffmpeg() else 'missing (recording unavailable)'}")
    return 0


async def cmd_record(app: ScreenLensApp, args) -> int:
    orch = app.orchestrator
    started = await orch.start_capture()
    if not started.ok:
        print(started.message())
        return 1

    while orch.capture_state == CaptureState.PERMISSION_REQUESTED:
        await asyncio.sleep(0.1)
    if orch.capture_state != CaptureState.CAPTURING:
        print(orch.snapshot().message or "Recording did not start")
        return 1

    print(f"Recording for {args.seconds}s (Ctrl+C to stop early)...")
    stop_now = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_now.set)
    try:
        await asyncio.wait_for(stop_now.wait(), timeout=args.seconds)
    except asyncio.TimeoutError:
        pass
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    stopped = await orch.stop_capture()
    print(f"Saved: {stopped.value or '(no file)'}")
    await app.events.join()
    await orch.wait_for_background()

    session = orch.current_session
    if session is not None:
        print(f"Session {session.id}: {session.formatted_duration}")
        print(f"Remote file: {session.remote_handle or '(not uploaded)'}")
    print(orch.snapshot().message or "")
    return 0


async def cmd_ask(app: ScreenLensApp, args) -> int:
    print(await app.orchestrator.ask(args.question, args.session))
    return 0


async def cmd_summarize(app: ScreenLensApp, args) -> int:
    print(await app.orchestrator.summarize(args.session))
    return 0


async def cmd_insights(app: ScreenLensApp, args) -> int:
    response = await app.orchestrator.insights(args.session)
    if response.is_empty:
        print("No insights available.")
        return 1
    if response.productivity_score is not None:
        print(f"Productivity score: {response.productivity_score:.0f}")
    for title, items in (("Key findings", response.key_findings),
                         ("Recommendations", response.recommendations),
                         ("Action items", response.action_items)):
        if items:
            print(f"\n{title}:")
            for item in items:
                print(f"  • {item}")
    for insight in response.insights:
        print(f"\n[{insight.insight_type.value}] {insight.title}")
        print(f"  {insight.description}")
        if insight.suggestion:
            print(f"  → {insight.suggestion}")
    return 0


async def cmd_upload(app: ScreenLensApp, args) -> int:
    print(await app.orchestrator.upload_recording(Path(args.path)))
    return 0


async def cmd_sessions(app: ScreenLensApp, args) -> int:
    sessions = app.orchestrator.recent_sessions(args.limit)
    if not sessions:
        print("No sessions recorded yet.")
        return 0
    for s in sessions:
        flag = "●" if s.is_active else " "
        summary = truncate(s.summary.replace("\n", " "), 50) if s.summary else ""
        print(f"{flag} {s.id}  {s.formatted_start_time}  {s.formatted_duration:>10}  {summary}")
    return 0


async def cmd_config(app: ScreenLensApp, args) -> int:
    orch = app.orchestrator
    config = orch.ai_config
    changes = {
        "api_key": args.api_key,
        "model": args.model,
        "temperature": args.temperature,
        "max_tokens": args.max_tokens,
        "custom_instructions": args.instructions,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if changes:
        print(orch.save_ai_config(replace(config, **changes)))
        config = orch.ai_config

    key = config.api_key
    masked = f"{key[:4]}…{key[-4:]}" if config.is_configured and len(key) > 8 else "(not set)"
    print(f"api_key      = {masked}")
    print(f"model        = {config.model}")
    print(f"temperature  = {config.temperature}")
    print(f"max_tokens   = {config.max_tokens}")
    print(f"instructions = {config.custom_instructions or ''}")
    return 0


COMMANDS = {
    "init": cmd_init,
    "record": cmd_record,
    "ask": cmd_ask,
    "summarize": cmd_summarize,
    "insights": cmd_insights,
    "upload": cmd_upload,
    "sessions": cmd_sessions,
    "config": cmd_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screenlens", description="Record your screen and ask Gemini about it.")
    parser.add_argument("--config", type=Path, help="path to a TOML config file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="create the database and show configuration status")

    rec = sub.add_parser("record", help="record the screen, then upload the video")
    rec.add_argument("--seconds", type=float, default=60)

    ask = sub.add_parser("ask", help="ask a question about recent recordings")
    ask.add_argument("question")
    ask.add_argument("--session", type=int)

    for name, text in (("summarize", "summarize a session"), ("insights", "productivity insights for a session")):
        p = sub.add_parser(name, help=text)
        p.add_argument("--session", type=int)

    up = sub.add_parser("upload", help="upload an existing media file")
    up.add_argument("path")

    ls = sub.add_parser("sessions", help="list recent sessions")
    ls.add_argument("--limit", type=int, default=10)

    cfg = sub.add_parser("config", help="show or change the AI configuration")
    cfg.add_argument("--api-key")
    cfg.add_argument("--model")
    cfg.add_argument("--temperature", type=float)
    cfg.add_argument("--max-tokens", type=int)
    cfg.add_argument("--instructions")
    return parser


async def run(args, cfg: dict) -> int:
    async with ScreenLensApp(cfg) as app:
        return await COMMANDS[args.command](app, args)


# ── Entry point ───────────────────────────────────────────────────────────────

def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)

    storage = section(cfg, "storage")
    setup_logging(resolve_path(storage.get("log_dir", "~/.screenlens/logs")),
                  section(cfg, "logging").get("level", "INFO"))

    return asyncio.run(run(args, cfg))


if __name__ == "__main__":
    sys.exit(main())

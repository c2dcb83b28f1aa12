import asyncio
import sqlite3

from screenlens.api.results import ErrorKind
from screenlens.core.capture import CaptureState
from screenlens.db.models import AIConfig, EventType, Session
from screenlens.utils.helpers import now_millis

from conftest import FakeGrant, insights_json, reply_with


async def test_concurrent_starts_admit_one(harness):
    results = await asyncio.gather(*(harness.orch.start_capture() for _ in range(5)))

    assert sum(r.ok for r in results) == 1
    assert {r.error for r in results if not r.ok} == {ErrorKind.SESSION_ACTIVE}
    assert harness.broker.requests == 1

    await harness.pump.process_pending()
    assert len(harness.db.get_active_sessions()) == 1
    assert not (await harness.orch.start_capture()).ok

    await harness.orch.stop_capture()
    await harness.pump.process_pending()
    await harness.orch.wait_for_background()
    assert harness.db.get_active_sessions() == []


async def test_denied_permission_creates_no_session(harness):
    harness.broker.answer = "deny"

    assert (await harness.orch.start_capture()).ok
    await harness.pump.process_pending()

    assert harness.orch.capture_state == CaptureState.IDLE
    assert harness.db.get_recent_sessions() == []
    assert (await harness.orch.start_capture()).ok


async def test_stop_uploads_and_records_handle(harness):
    session_id = await harness.record()

    session = harness.db.get_session(session_id)
    assert not session.is_active
    assert session.end_time >= session.start_time
    assert session.video_path.endswith(f"screen_recording_{session_id}.mp4")
    assert session.remote_handle == harness.gemini.file_uri
    assert [f.remote_handle for f in harness.db.get_recent_files()] == [harness.gemini.file_uri]
    assert harness.orch.current_session.remote_handle == harness.gemini.file_uri
    assert harness.orch.snapshot().message == "Screen recording uploaded successfully!"


async def test_upload_failure_keeps_session_closed(harness):
    harness.gemini.send_upload_url = False

    session_id = await harness.record()

    session = harness.db.get_session(session_id)
    assert not session.is_active
    assert session.remote_handle is None
    assert harness.db.get_recent_files() == []
    assert harness.orch.snapshot().message.startswith("Failed to upload screen recording")


async def test_setup_failure_closes_session(harness):
    harness.broker.grant_factory = lambda: FakeGrant(no_display=True)

    await harness.orch.start_capture()
    await harness.pump.process_pending()

    assert harness.orch.capture_state == CaptureState.ERROR
    assert harness.db.get_active_sessions() == []
    assert harness.gemini.initiate_calls == []
    assert (await harness.orch.start_capture()).ok


async def test_revoked_grant_stops_capture(harness):
    await harness.orch.start_capture()
    await harness.pump.process_pending()

    harness.broker.grants[0].revoke()
    await harness.pump.process_pending()
    await harness.orch.wait_for_background()

    assert harness.orch.capture_state == CaptureState.STOPPED
    assert harness.db.get_active_sessions() == []


async def test_ask_without_uploads_uses_context(harness):
    session = Session(id=5, start_time=1_000, end_time=11_000)
    harness.db.insert_session(session)
    harness.orch.add_event(5, EventType.APP_OPENED, app_name="Mail", timestamp=2_000)

    answer = await harness.orch.ask("What did I do?", 5)

    assert answer == "answer"
    parts = harness.gemini.parts()
    assert len(parts) == 1
    assert "• Mail: 1 interactions" in parts[0]["text"]
    snap = harness.orch.snapshot()
    assert snap.last_question == "What did I do?" and snap.last_answer == "answer"
    assert not snap.busy


async def test_ask_prefers_uploaded_files(harness, video):
    await harness.orch.upload_recording(video)

    answer = await harness.orch.ask("What happened?")

    assert answer == "answer"
    assert harness.gemini.parts()[0] == {"fileData": {"mimeType": "video/mp4", "fileUri": harness.gemini.file_uri}}
    assert harness.gemini.parts()[-1] == {"text": "What happened?"}


async def test_failures_become_strings(harness, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    harness.gemini.generate_status = 500
    assert "rejected the request" in await harness.orch.ask("q")

    harness.orch.save_ai_config(AIConfig())
    assert await harness.orch.ask("q") == "Please configure your Gemini API key in settings."


async def test_summarize_without_session(harness):
    assert await harness.orch.summarize() == "No active session found to summarize."


async def test_summarize_recorded_video(harness):
    session_id = await harness.record()
    harness.gemini.reply = reply_with("You mostly wrote code.")

    text = await harness.orch.summarize(session_id)

    assert text == "You mostly wrote code."
    assert harness.db.get_session(session_id).summary == "You mostly wrote code."
    assert "comprehensive summary" in harness.gemini.parts()[-1]["text"]


async def test_summarize_falls_back_to_context(harness):
    harness.db.insert_session(Session(id=9, start_time=1_000, end_time=5_000))
    harness.gemini.reply = reply_with("Summary: Short session.\n- Opened mail\nYou should take breaks.")

    text = await harness.orch.summarize(9)

    assert text.startswith("Short session.")
    assert "Key Highlights" in text and "• Opened mail" in text
    assert "Recommendations" in text
    assert harness.db.get_session(9).summary == "Short session."


async def test_insights_are_persisted(harness):
    harness.db.insert_session(Session(id=3, start_time=1_000, end_time=2_000))
    harness.gemini.reply = reply_with(insights_json())

    response = await harness.orch.insights(3)

    assert response.productivity_score == 72.0
    assert [i.title for i in harness.db.get_insights_for_session(3)] == ["Deep work"]
    assert harness.db.get_session(3).productivity_score == 72.0
    assert harness.orch.snapshot().insights == response


async def test_insights_failure_is_empty(harness):
    harness.db.insert_session(Session(id=3, start_time=1_000, end_time=2_000))
    harness.gemini.reply = reply_with("not json at all")

    response = await harness.orch.insights(3)

    assert response.is_empty
    assert harness.db.get_insights_for_session(3) == []


async def test_recover_closes_stale_sessions(harness):
    harness.db.insert_session(Session(id=1, start_time=1_000, is_active=True))

    assert harness.orch.recover() == 1
    stale = harness.db.get_session(1)
    assert not stale.is_active and stale.end_time >= stale.start_time
    assert (await harness.orch.start_capture()).ok


async def test_ai_config_seeded_from_environment(harness, monkeypatch):
    harness.orch._default_ai_config = AIConfig()
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")

    assert harness.orch.ai_config.api_key == "env-key"
    assert harness.db.load_ai_config().api_key == "env-key"


async def test_subscribers_receive_snapshots(harness):
    seen = []
    harness.orch.subscribe(seen.append)

    await harness.record()

    states = [s.capture_state for s in seen]
    assert CaptureState.CAPTURING in states
    assert any(s.is_recording for s in seen)
    assert seen[-1].current_session.remote_handle == harness.gemini.file_uri


async def test_delete_session_cascades(harness):
    harness.db.insert_session(Session(id=4, start_time=1_000, end_time=2_000))
    harness.orch.add_event(4, EventType.USER_INTERACTION, app_name="Docs")

    harness.orch.delete_session(4)

    assert harness.db.get_session(4) is None
    assert harness.db.get_events_for_session(4) == []


async def test_unsaved_default_config_is_used_in_memory(harness, monkeypatch):
    def locked(config):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(harness.db, "save_ai_config", locked)

    assert await harness.orch.ask("q") == "answer"
    assert await harness.orch.summarize() == "No active session found to summarize."
    assert (await harness.orch.insights()).is_empty
    assert harness.orch.ai_config.api_key == "test-api-key"
    assert harness.db.load_ai_config() is None
    assert not harness.orch.snapshot().busy


async def test_new_session_never_reuses_a_stored_id(harness):
    future = now_millis() + 10**9
    harness.db.insert_session(Session(id=future, start_time=1_000, end_time=2_000, summary="keep me"))
    harness.orch.recover()

    session_id = await harness.record()

    assert session_id > future
    assert harness.db.get_session(future).summary == "keep me"
    assert harness.db.get_session(session_id).remote_handle == harness.gemini.file_uri

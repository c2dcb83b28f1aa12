from screenlens.api.prompts import (
    ContextLimits, app_interaction_counts, build_context_block, build_prompt, extract_screen_content,
)
from screenlens.db.models import ActivityContext, ActivityEvent, AnalysisType, EventType, Session

NOW = 1_700_000_600_000


def event(i, app, content=None):
    return ActivityEvent(id=i, session_id=1, timestamp=1_700_000_000_000 + i * 1000,
                         event_type=EventType.APP_OPENED, app_name=app, screen_content=content)


def section_lines(block, header):
    lines = block.split("\n")
    start = lines.index(header) + 1
    out = []
    for line in lines[start:]:
        if not line:
            break
        out.append(line)
    return out


def test_ties_keep_first_seen_order():
    events = [event(1, "Mail"), event(2, "Chat"), event(3, "Chat"), event(4, "Mail"), event(5, "Docs")]

    assert app_interaction_counts(events) == [("Mail", 2), ("Chat", 2), ("Docs", 1)]


def test_context_block_is_deterministic():
    session = Session(id=1, start_time=1_700_000_000_000, productivity_score=None)
    events = [event(i, ["Mail", "Chat"][i % 2], f"text {i % 3}") for i in range(6)]
    context = ActivityContext(session=session, events=events,
                              screen_content=extract_screen_content(events), audio_transcript="hello")

    first = build_context_block(context, now=NOW)
    second = build_context_block(context, now=NOW)

    assert first == second
    assert "Session Duration: 10m 0s" in first
    assert "Productivity Score: Not calculated" in first
    assert section_lines(first, "=== APP USAGE ===") == ["• Mail: 3 interactions", "• Chat: 3 interactions"]
    assert section_lines(first, "=== SCREEN CONTENT SAMPLE ===") == ["• text 0", "• text 1", "• text 2"]
    assert first.endswith("hello\n")


def test_caps_apply():
    events = [event(i, "Mail", f"sample {i}") for i in range(25)]
    context = ActivityContext(session=None, events=events, screen_content=extract_screen_content(events),
                              audio_transcript="x" * 600)

    block = build_context_block(context, ContextLimits())

    assert len(section_lines(block, "=== ACTIVITY EVENTS ===")) == 20
    assert len(section_lines(block, "=== SCREEN CONTENT SAMPLE ===")) == 5
    assert section_lines(block, "=== AUDIO TRANSCRIPT ===") == ["x" * 500]


def test_custom_limits():
    events = [event(i, "Mail") for i in range(10)]
    block = build_context_block(ActivityContext(session=None, events=events), ContextLimits(max_events=3))

    assert len(section_lines(block, "=== ACTIVITY EVENTS ===")) == 3


def test_prompt_preambles_differ_by_type():
    context = ActivityContext(session=None)
    general = build_prompt("q", context, AnalysisType.GENERAL)
    summary = build_prompt("q", context, AnalysisType.SUMMARY_GENERATION)
    insights = build_prompt("q", context, AnalysisType.PRODUCTIVITY_ANALYSIS)

    assert "intelligent personal assistant" in general.system_prompt
    assert "productivity coach" in summary.system_prompt
    assert "productivity_score" in insights.user_prompt
    assert general.render().startswith(general.system_prompt)

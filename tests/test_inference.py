from screenlens.api.inference import extract_text, parse_insight_response, parse_summary_response
from screenlens.api.results import ErrorKind
from screenlens.db.models import AIConfig, ActivityContext, InsightType, Session

from conftest import API_KEY, insights_json, reply_with


async def test_analyze_builds_one_request(inference, gemini, ai_config):
    result = await inference.analyze([gemini.file_uri, f"{gemini.base_url}/files/def456"], "What happened?", ai_config)

    assert result.ok and result.value == "answer"
    assert gemini.status_calls == 2
    call = gemini.generate_calls[0]
    assert call["target"] == "gemini-2.5-flash:generateContent"
    assert call["headers"]["x-goog-api-key"] == API_KEY
    assert call["json"]["model"] == "gemini-2.5-flash"
    assert gemini.parts() == [
        {"fileData": {"mimeType": "video/mp4", "fileUri": gemini.file_uri}},
        {"fileData": {"mimeType": "video/mp4", "fileUri": f"{gemini.base_url}/files/def456"}},
        {"text": "What happened?"},
    ]
    generation = call["json"]["generationConfig"]
    assert generation["topK"] == 40 and generation["maxOutputTokens"] == 2048


async def test_empty_candidates(inference, gemini, ai_config):
    gemini.reply = {"candidates": []}

    result = await inference.analyze([gemini.file_uri], "q", ai_config)

    assert result.error == ErrorKind.EMPTY_RESPONSE


async def test_file_not_ready(inference, gemini, ai_config):
    gemini.states = ["FAILED"]

    result = await inference.analyze([gemini.file_uri], "q", ai_config)

    assert result.error == ErrorKind.FILE_NOT_READY
    assert gemini.generate_calls == []
    assert result.message().startswith("Video file is not ready for analysis")


async def test_unconfigured_and_no_handles(inference, gemini, ai_config):
    assert (await inference.analyze([gemini.file_uri], "q", AIConfig())).error == ErrorKind.UNCONFIGURED
    assert (await inference.analyze([], "q", ai_config)).error == ErrorKind.EMPTY_OR_MISSING_FILE
    assert gemini.status_calls == 0


async def test_error_status_is_not_retried(inference, gemini, ai_config):
    gemini.generate_status = 500

    result = await inference.ask("hi", ActivityContext(session=None), ai_config)

    assert result.error == ErrorKind.REQUEST_FAILED
    assert len(gemini.generate_calls) == 1


async def test_ask_sends_context_prompt(inference, gemini):
    config = AIConfig(api_key=API_KEY, custom_instructions="Answer in one line.")
    session = Session(id=1, start_time=1_000, end_time=61_000)

    result = await inference.ask("How long was it?", ActivityContext(session=session), config)

    assert result.ok
    text = gemini.parts()[0]["text"]
    assert "User Question: How long was it?" in text
    assert "Session Duration: 1m 0s" in text
    assert "Answer in one line." in text


async def test_insights_request_json(inference, gemini, ai_config):
    gemini.reply = reply_with(insights_json())

    result = await inference.insights(ActivityContext(session=None), 7, ai_config)

    assert result.ok
    assert result.value.productivity_score == 72.0
    assert result.value.insights[0].session_id == 7
    assert gemini.generate_calls[0]["json"]["generationConfig"]["responseMimeType"] == "application/json"


def test_extract_text_tolerates_odd_shapes():
    assert extract_text({"candidates": [{"content": {"parts": [{"text": "hi"}]}}]}) == "hi"
    assert extract_text({"candidates": [{"content": {"parts": []}}]}) is None
    assert extract_text({"candidates": [{}]}) is None
    assert extract_text({"candidates": "nope"}) is None
    assert extract_text([]) is None


def test_parse_summary_response():
    content = "\n".join([
        "Summary: Mostly email and chat.",
        "- Answered 12 emails",
        "• Two long calls",
        "You should batch notifications.",
        "Warning: frequent context switches",
    ])

    summary = parse_summary_response(content)

    assert summary.summary == "Mostly email and chat."
    assert summary.highlights == ["Answered 12 emails", "Two long calls"]
    assert summary.recommendations == ["You should batch notifications."]
    assert summary.concerns == ["Warning: frequent context switches"]


def test_parse_insight_response_handles_fences_and_garbage():
    fenced = "```json\n" + insights_json(insights=[{"type": "nonsense", "confidence": 3}]) + "\n```"

    parsed = parse_insight_response(fenced, 1)

    assert parsed.insights[0].insight_type == InsightType.PRODUCTIVITY_TIP
    assert parsed.insights[0].confidence == 1.0
    assert parse_insight_response("not json", 1).is_empty

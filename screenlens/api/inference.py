"""Content-generation requests against the Gemini REST API."""

import asyncio
import json
import logging
import re
from typing import Any, Optional

import aiohttp

from screenlens.api.prompts import ContextLimits, build_prompt
from screenlens.api.results import ErrorKind, Result
from screenlens.api.uploader import RemoteFileUploader, credential_ok
from screenlens.db.models import (
    AIConfig, AIInsight, ActivityContext, AnalysisType, InsightResponse, InsightType,
    SummaryResponse, VIDEO_MIME,
)

logger = logging.getLogger("screenlens.inference")

_BULLET = re.compile(r"^\s*(?:[•*-]|\d+\.)\s+")
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def extract_text(payload: Any) -> Optional[str]:
    """Text of the first candidate's first part, or None."""
    try:
        candidates = payload.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            return None
        text = parts[0].get("text")
    except (AttributeError, KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) and text else None


def parse_summary_response(content: str) -> SummaryResponse:
    lines = [line.strip() for line in content.splitlines()]

    summary = content[:500]
    for line in lines:
        if "Summary:" in line:
            after = line.split("Summary:", 1)[1].strip()
            if after:
                summary = after
            break

    highlights = [_BULLET.sub("", line).strip() for line in lines if _BULLET.match(line)]
    highlights = [h for h in highlights if h]
    recommendations = [
        line for line in lines
        if any(k in line.lower() for k in ("recommend", "suggest", "should"))
    ]
    concerns = [
        line for line in lines
        if any(k in line.lower() for k in ("concern", "distract", "warning"))
    ]
    return SummaryResponse(
        summary=summary,
        highlights=highlights[:5],
        concerns=concerns[:3],
        recommendations=recommendations[:3],
    )


def parse_insight_response(content: str, session_id: int) -> InsightResponse:
    try:
        data = json.loads(_FENCE.sub("", content.strip()))
    except ValueError:
        logger.warning("Insight response was not valid JSON")
        return InsightResponse()
    if not isinstance(data, dict):
        return InsightResponse()

    insights = []
    for raw in data.get("insights") or []:
        if not isinstance(raw, dict):
            continue
        try:
            kind = InsightType(str(raw.get("type", "")).upper())
        except ValueError:
            kind = InsightType.PRODUCTIVITY_TIP
        try:
            confidence = min(1.0, max(0.0, float(raw.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5
        insights.append(AIInsight(
            id=None,
            session_id=session_id,
            insight_type=kind,
            title=str(raw.get("title", "")),
            description=str(raw.get("description", "")),
            confidence=confidence,
            is_positive=bool(raw.get("is_positive", True)),
            actionable=bool(raw.get("actionable", False)),
            suggestion=raw.get("suggestion") or None,
        ))

    score = data.get("productivity_score")
    try:
        score = float(score) if score is not None else None
    except (TypeError, ValueError):
        score = None

    def strings(key: str) -> list[str]:
        return [str(s) for s in data.get(key) or [] if s]

    return InsightResponse(
        insights=insights,
        recommendations=strings("recommendations"),
        productivity_score=score,
        key_findings=strings("key_findings"),
        action_items=strings("action_items"),
    )


class InferenceClient:
    def __init__(self, uploader: RemoteFileUploader, limits: ContextLimits = ContextLimits()):
        self.uploader = uploader
        self.http = uploader.http
        self.limits = limits

    async def analyze(self, handles: list[str], prompt: str, config: AIConfig) -> Result:
        """Ask ``prompt`` about one or more uploaded files."""
        if not credential_ok(config.api_key):
            return Result.fail(ErrorKind.UNCONFIGURED)
        if not handles:
            return Result.fail(ErrorKind.EMPTY_OR_MISSING_FILE, "no uploaded files")

        for handle in handles:
            if not await self.uploader.wait_until_active(handle, config.api_key):
                logger.error(f"File {handle} is not active or failed to process")
                return Result.fail(ErrorKind.FILE_NOT_READY, handle)
        logger.debug(f"All {len(handles)} file(s) active, requesting analysis")

        parts: list[dict] = [
            {"fileData": {"mimeType": VIDEO_MIME, "fileUri": handle}} for handle in handles
        ]
        parts.append({"text": prompt})
        return await self._generate(parts, config)

    async def ask(self, question: str, context: ActivityContext, config: AIConfig) -> Result:
        prompt = build_prompt(question, context, AnalysisType.GENERAL, self.limits,
                              config.custom_instructions)
        return await self._generate_text(prompt.render(), config)

    async def summarize(self, context: ActivityContext, config: AIConfig) -> Result:
        prompt = build_prompt("Generate a comprehensive summary", context,
                              AnalysisType.SUMMARY_GENERATION, self.limits, config.custom_instructions)
        result = await self._generate_text(prompt.render(), config)
        if not result.ok:
            return result
        return Result.success(parse_summary_response(result.value))

    async def insights(self, context: ActivityContext, session_id: int, config: AIConfig) -> Result:
        prompt = build_prompt("Analyze this session for productivity insights", context,
                              AnalysisType.PRODUCTIVITY_ANALYSIS, self.limits, config.custom_instructions)
        result = await self._generate_text(prompt.render(), config, json_reply=True)
        if not result.ok:
            return result
        return Result.success(parse_insight_response(result.value, session_id))

    async def _generate_text(self, text: str, config: AIConfig, json_reply: bool = False) -> Result:
        if not credential_ok(config.api_key):
            return Result.fail(ErrorKind.UNCONFIGURED)
        return await self._generate([{"text": text}], config, json_reply)

    async def _generate(self, parts: list[dict], config: AIConfig, json_reply: bool = False) -> Result:
        generation = {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_tokens,
            "topK": 40,
            "topP": 0.95,
        }
        if json_reply:
            generation["responseMimeType"] = "application/json"
        body = {
            "contents": [{"parts": parts}],
            "model": config.model,
            "generationConfig": generation,
        }
        url = f"{self.http.settings.base_url}/models/{config.model}:generateContent"

        try:
            reply = await self.http.send("POST", url, api_key=config.api_key, json=body)
        except asyncio.TimeoutError:
            logger.error("Generation request timed out")
            return Result.fail(ErrorKind.NETWORK_TIMEOUT, "generateContent")
        except aiohttp.ClientError as e:
            logger.error(f"Generation request failed: {e}")
            return Result.fail(ErrorKind.REQUEST_FAILED, str(e))

        if not reply.ok:
            logger.error(f"Generation failed: {reply.status} {reply.reason} {reply.text()[:500]}")
            return Result.fail(ErrorKind.REQUEST_FAILED, f"HTTP {reply.status}")
        try:
            payload = json.loads(reply.body)
        except ValueError:
            logger.error(f"Unreadable generation response: {reply.text()[:200]}")
            return Result.fail(ErrorKind.EMPTY_RESPONSE, "malformed response")

        text = extract_text(payload)
        if text is None:
            logger.error("No analysis result found in response")
            return Result.fail(ErrorKind.EMPTY_RESPONSE)
        logger.debug(f"Generation returned {len(text)} chars")
        return Result.success(text)

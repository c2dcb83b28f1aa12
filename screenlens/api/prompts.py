"""Prompt construction and the serialized context block handed to the model.

The context block must be byte-identical for identical inputs, so every
ordering here is explicit: app usage is sorted by interaction count with
ties kept in first-seen order, and every section has a fixed cap.
"""

from dataclasses import dataclass
from typing import Optional

from screenlens.db.models import ActivityContext, ActivityEvent, AnalysisType
from screenlens.utils.config import section
from screenlens.utils.helpers import format_clock, format_start_time, human_duration, now_millis

SUMMARY_VIDEO_PROMPT = (
    "Please provide a comprehensive summary of what happened in this screen recording session. "
    "Include key activities, apps used, and productivity insights."
)

_SYSTEM_PROMPTS = {
    AnalysisType.PRODUCTIVITY_ANALYSIS: (
        "You are an expert productivity analyst and personal assistant. Your role is to analyze "
        "phone usage data and provide actionable insights to help users improve their productivity "
        "and digital well-being.\n"
        "\n"
        "Key areas to focus on:\n"
        "- App usage patterns and time distribution\n"
        "- Focus and distraction analysis\n"
        "- Time management effectiveness\n"
        "- Productivity trends and recommendations\n"
        "- Digital wellness insights\n"
        "\n"
        "Always provide specific, actionable advice based on the data provided.\n"
        "Be encouraging but honest about areas for improvement."
    ),
    AnalysisType.SUMMARY_GENERATION: (
        "You are a professional productivity coach creating comprehensive session summaries.\n"
        "Analyze the provided phone usage data and create detailed, insightful summaries that help "
        "users understand their digital behavior patterns.\n"
        "\n"
        "Include:\n"
        "- Key metrics and statistics\n"
        "- Notable patterns and trends\n"
        "- Productivity highlights and concerns\n"
        "- Specific recommendations for improvement\n"
        "- Overall assessment with actionable next steps\n"
        "\n"
        "Format your response as a structured summary with clear sections and bullet points."
    ),
    AnalysisType.GENERAL: (
        "You are an intelligent personal assistant that analyzes phone usage data to help users "
        "understand and improve their digital habits.\n"
        "\n"
        "Provide helpful, accurate, and actionable responses based on the data provided.\n"
        "Be conversational but informative.\n"
        "Focus on productivity, digital wellness, and time management insights."
    ),
}

INSIGHTS_JSON_INSTRUCTIONS = (
    "Respond with a single JSON object and nothing else, using this shape:\n"
    '{"productivity_score": <number 0-100>, "key_findings": [<string>], '
    '"recommendations": [<string>], "action_items": [<string>], '
    '"insights": [{"type": <one of PRODUCTIVITY_TIP, DISTRACTION_ALERT, FOCUS_ACHIEVEMENT, '
    "TIME_MANAGEMENT, APP_USAGE_PATTERN, BREAK_REMINDER, GOAL_PROGRESS>, "
    '"title": <string>, "description": <string>, "confidence": <number 0-1>, '
    '"is_positive": <bool>, "actionable": <bool>, "suggestion": <string or null>}]}'
)


@dataclass(frozen=True)
class ContextLimits:
    max_events: int = 20
    max_screen_samples: int = 5
    max_transcript_chars: int = 500

    @classmethod
    def from_config(cls, cfg: dict) -> "ContextLimits":
        c = section(cfg, "context")
        return cls(
            max_events=c.get("max_events", 20),
            max_screen_samples=c.get("max_screen_samples", 5),
            max_transcript_chars=c.get("max_transcript_chars", 500),
        )


@dataclass(frozen=True)
class PromptTemplate:
    system_prompt: str
    user_prompt: str
    context_block: str

    def render(self) -> str:
        return f"{self.system_prompt}\n\n{self.user_prompt}"


def extract_screen_content(events: list[ActivityEvent]) -> list[str]:
    """Distinct screen-text samples in first-seen order."""
    seen: dict[str, None] = {}
    for event in events:
        if event.screen_content:
            seen.setdefault(event.screen_content, None)
    return list(seen)


def app_interaction_counts(events: list[ActivityEvent]) -> list[tuple[str, int]]:
    counts: dict[str, int] = {}
    for event in events:
        if event.app_name:
            counts[event.app_name] = counts.get(event.app_name, 0) + 1
    # sorted() is stable, so ties keep first-seen order
    return sorted(counts.items(), key=lambda item: -item[1])


def build_context_block(context: ActivityContext, limits: ContextLimits = ContextLimits(),
                        now: Optional[int] = None) -> str:
    lines = ["=== SESSION DATA ==="]
    session = context.session
    if session is not None:
        end = session.end_time if session.end_time is not None else (now if now is not None else now_millis())
        lines.append(f"Session Duration: {human_duration(max(0, end - session.start_time))}")
        lines.append(f"Start Time: {format_start_time(session.start_time)}")
        score = session.productivity_score
        lines.append(f"Productivity Score: {score if score is not None else 'Not calculated'}")

    lines.append("")
    lines.append("=== APP USAGE ===")
    for app, count in app_interaction_counts(context.events):
        lines.append(f"• {app}: {count} interactions")

    lines.append("")
    lines.append("=== ACTIVITY EVENTS ===")
    for event in context.events[:limits.max_events]:
        lines.append(f"• {format_clock(event.timestamp)}: {event.event_type.value} - {event.app_name or 'Unknown'}")

    if context.screen_content:
        lines.append("")
        lines.append("=== SCREEN CONTENT SAMPLE ===")
        for sample in context.screen_content[:limits.max_screen_samples]:
            lines.append(f"• {sample}")

    transcript = (context.audio_transcript or "").strip()
    if transcript:
        lines.append("")
        lines.append("=== AUDIO TRANSCRIPT ===")
        lines.append(transcript[:limits.max_transcript_chars])

    return "\n".join(lines) + "\n"


def build_system_prompt(analysis_type: AnalysisType, custom_instructions: Optional[str] = None) -> str:
    prompt = _SYSTEM_PROMPTS.get(analysis_type, _SYSTEM_PROMPTS[AnalysisType.GENERAL])
    if custom_instructions and custom_instructions.strip():
        prompt += f"\n\nAdditional instructions from the user:\n{custom_instructions.strip()}"
    return prompt


def build_user_prompt(question: str, context_block: str, analysis_type: AnalysisType) -> str:
    if analysis_type == AnalysisType.SUMMARY_GENERATION:
        return (
            "Please analyze the following phone usage session data and provide a comprehensive summary:\n"
            f"\n{context_block}\n"
            "Generate a detailed summary including key metrics, patterns, insights, and recommendations."
        )
    if analysis_type == AnalysisType.PRODUCTIVITY_ANALYSIS:
        return (
            f"Task: {question}\n"
            f"\nContext Data:\n{context_block}\n"
            f"{INSIGHTS_JSON_INSTRUCTIONS}"
        )
    return (
        f"User Question: {question}\n"
        f"\nContext Data:\n{context_block}\n"
        "Please provide a helpful, specific response based on this data."
    )


def build_prompt(question: str, context: ActivityContext, analysis_type: AnalysisType,
                 limits: ContextLimits = ContextLimits(), custom_instructions: Optional[str] = None,
                 now: Optional[int] = None) -> PromptTemplate:
    block = build_context_block(context, limits, now=now)
    return PromptTemplate(
        system_prompt=build_system_prompt(analysis_type, custom_instructions),
        user_prompt=build_user_prompt(question, block, analysis_type),
        context_block=block,
    )

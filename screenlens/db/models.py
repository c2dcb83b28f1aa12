"""Database models - pure dataclasses."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from screenlens.utils.helpers import format_start_time, human_duration, now_millis

DEFAULT_API_KEY = "your-gemini-api-key-here"
DEFAULT_MODEL = "gemini-2.5-flash"
VIDEO_MIME = "video/mp4"


class EventType(str, Enum):
    APP_OPENED = "APP_OPENED"
    APP_CLOSED = "APP_CLOSED"
    SCREEN_CONTENT_CHANGED = "SCREEN_CONTENT_CHANGED"
    AUDIO_DETECTED = "AUDIO_DETECTED"
    USER_INTERACTION = "USER_INTERACTION"
    NOTIFICATION_RECEIVED = "NOTIFICATION_RECEIVED"
    CALL_RECEIVED = "CALL_RECEIVED"
    CALL_ENDED = "CALL_ENDED"


class InsightType(str, Enum):
    PRODUCTIVITY_TIP = "PRODUCTIVITY_TIP"
    DISTRACTION_ALERT = "DISTRACTION_ALERT"
    FOCUS_ACHIEVEMENT = "FOCUS_ACHIEVEMENT"
    TIME_MANAGEMENT = "TIME_MANAGEMENT"
    APP_USAGE_PATTERN = "APP_USAGE_PATTERN"
    BREAK_REMINDER = "BREAK_REMINDER"
    GOAL_PROGRESS = "GOAL_PROGRESS"


class AnalysisType(str, Enum):
    GENERAL = "general"
    PRODUCTIVITY_ANALYSIS = "productivity_analysis"
    SUMMARY_GENERATION = "summary_generation"


@dataclass
class Session:
    """One recording. Times are epoch milliseconds."""
    id: int
    start_time: int
    end_time: Optional[int] = None
    is_active: bool = False
    summary: Optional[str] = None
    video_path: Optional[str] = None
    audio_path: Optional[str] = None
    transcript: Optional[str] = None
    productivity_score: Optional[float] = None
    remote_handle: Optional[str] = None
    created_at: int = field(default_factory=now_millis)

    @property
    def duration(self) -> int:
        end = self.end_time if self.end_time is not None else now_millis()
        return max(0, end - self.start_time)

    @property
    def formatted_duration(self) -> str:
        return human_duration(self.duration)

    @property
    def formatted_start_time(self) -> str:
        return format_start_time(self.start_time)


@dataclass
class ActivityEvent:
    id: Optional[int]
    session_id: int
    timestamp: int
    event_type: EventType
    app_package: Optional[str] = None
    app_name: Optional[str] = None
    screen_content: Optional[str] = None
    audio_transcript: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class UploadedFile:
    remote_handle: str
    local_path: str
    upload_time: int = field(default_factory=now_millis)
    file_size: int = 0
    mime_type: str = VIDEO_MIME


@dataclass
class AIConfig:
    api_key: str = DEFAULT_API_KEY
    model: str = DEFAULT_MODEL
    max_tokens: int = 2048
    temperature: float = 0.7
    custom_instructions: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key.strip()) and self.api_key != DEFAULT_API_KEY


@dataclass
class AIInsight:
    id: Optional[int]
    session_id: int
    insight_type: InsightType
    title: str
    description: str
    confidence: float
    timestamp: int = field(default_factory=now_millis)
    is_positive: bool = True
    actionable: bool = False
    suggestion: Optional[str] = None


@dataclass
class InsightResponse:
    insights: list[AIInsight] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    productivity_score: Optional[float] = None
    key_findings: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.insights or self.recommendations or self.key_findings
                    or self.action_items or self.productivity_score is not None)


@dataclass
class SummaryResponse:
    summary: str
    highlights: list[str] = field(default_factory=list)
    concerns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class ActivityContext:
    """Everything the context block is built from."""
    session: Optional[Session]
    events: list[ActivityEvent] = field(default_factory=list)
    screen_content: list[str] = field(default_factory=list)
    audio_transcript: Optional[str] = None

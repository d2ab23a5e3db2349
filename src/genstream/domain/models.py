from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


class BudgetScope(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class AlertLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class BudgetWindow(BaseModel):
    scope: BudgetScope
    used: int = Field(ge=0)
    limit: int = Field(gt=0)
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def percent_used(self) -> int:
        # Display only; decisions compare raw counts.
        return round(100 * self.used / self.limit)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentUsed": self.percent_used,
            "resetAt": self.reset_at.isoformat().replace("+00:00", "Z"),
        }


class UsageSnapshot(BaseModel):
    daily: BudgetWindow
    monthly: BudgetWindow

    def snapshot(self) -> Dict[str, Any]:
        return {"daily": self.daily.snapshot(), "monthly": self.monthly.snapshot()}


class SpendCheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    alert_level: AlertLevel = AlertLevel.NORMAL
    usage: Optional[UsageSnapshot] = None


ModelTier = Literal["fast", "balanced", "quality"]


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1, max_length=10000)
    project_name: Optional[str] = None
    template: Optional[str] = None
    vision: Optional[str] = None
    mission: Optional[str] = None
    constraints: Dict[str, Any] = Field(default_factory=dict)
    session_id: str = Field(default="anonymous", min_length=1)
    seed: Optional[int] = None
    model_tier: ModelTier = "balanced"
    stream: bool = False
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class Stage(str, Enum):
    INTENT = "Intent"
    ARCHITECTURE = "Architecture"
    CODE = "Code"
    CONTEXT = "Context"


STAGE_ORDER: List[Stage] = [Stage.INTENT, Stage.ARCHITECTURE, Stage.CODE, Stage.CONTEXT]


class EventKind(str, Enum):
    START = "Start"
    CHUNK = "Chunk"
    COMPLETE = "Complete"


class ProgressEvent(BaseModel):
    stage: Stage
    kind: EventKind
    message: Optional[str] = None


class PageDefinition(BaseModel):
    path: str
    name: str
    description: str = ""
    components: List[str] = Field(default_factory=list)
    layout: Optional[str] = None


class ComponentDefinition(BaseModel):
    name: str
    type: str = "component"
    description: str = ""
    props: Dict[str, str] = Field(default_factory=dict)
    template: str = ""


class RouteDefinition(BaseModel):
    path: str
    type: str = "page"
    method: Optional[str] = None
    description: str = ""


class FileDefinition(BaseModel):
    path: str
    content: str
    overwrite: bool = False


class IntegrationCode(BaseModel):
    integration: str
    files: List[FileDefinition] = Field(default_factory=list)


class ProjectIntent(BaseModel):
    category: str
    confidence: float = 0.0
    reasoning: str = ""
    suggested_template: str = "default"
    features: List[str] = Field(default_factory=list)
    integrations: Dict[str, Optional[str]] = Field(default_factory=dict)
    complexity: str = "moderate"
    key_entities: List[str] = Field(default_factory=list)


class ProjectArchitecture(BaseModel):
    template: str
    pages: List[PageDefinition] = Field(default_factory=list)
    components: List[ComponentDefinition] = Field(default_factory=list)
    routes: List[RouteDefinition] = Field(default_factory=list)
    integrations: Dict[str, Optional[str]] = Field(default_factory=dict)


class GeneratedCode(BaseModel):
    files: List[FileDefinition] = Field(default_factory=list)
    integration_code: List[IntegrationCode] = Field(default_factory=list)


class ProjectContext(BaseModel):
    cursorrules: str
    start_prompt: str


class GenerationResult(BaseModel):
    success: Literal[True] = True
    intent: ProjectIntent
    architecture: ProjectArchitecture
    files: List[FileDefinition] = Field(default_factory=list)
    integration_code: List[IntegrationCode] = Field(default_factory=list)
    cursorrules: str = ""
    start_prompt: str = ""
    generated_at: str
    seed: Optional[int] = None
    cached: bool = False
    usage: Dict[str, Any] = Field(default_factory=dict)


class GenerationError(BaseModel):
    success: Literal[False] = False
    code: str
    message: str
    retryable: bool = False
    rate_limited: bool = False
    reset_at: Optional[str] = None
    details: Optional[str] = None


from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AwareDatetime,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    model_validator,
)

Scope = Literal["global", "workspace", "language", "framework", "task"]
BulletType = Literal["rule", "anti-pattern"]
BulletState = Literal["draft", "active", "retired"]
Maturity = Literal["candidate", "established", "proven", "deprecated"]
BulletKind = Literal["project_convention", "stack_pattern", "workflow_rule", "anti_pattern"]
FeedbackType = Literal["helpful", "harmful"]
HarmfulReason = Literal[
    "caused_bug",
    "wasted_time",
    "contradicted_requirements",
    "wrong_context",
    "outdated",
    "other",
]

MATURITY_RANK: dict[str, int] = {
    "candidate": 0,
    "established": 1,
    "proven": 2,
    "deprecated": 3,
}

SCHEMA_VERSION = 2


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _assume_utc(value: Any) -> Any:
    """Treat naive timestamps (older files, hand edits) as UTC."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


Timestamp = Annotated[AwareDatetime, BeforeValidator(_assume_utc)]


def _normalize_tags(value: Any) -> Any:
    if isinstance(value, list):
        seen: list[str] = []
        for tag in value:
            tag = str(tag).strip().lower()
            if tag and tag not in seen:
                seen.append(tag)
        return seen
    return value


Tags = Annotated[list[str], BeforeValidator(_normalize_tags)]


class FeedbackEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FeedbackType
    timestamp: Timestamp
    reason: HarmfulReason | None = None
    context: str | None = None
    session_path: str | None = None


class Bullet(BaseModel):
    id: str = Field(min_length=1)
    scope: Scope = "global"
    scope_key: str | None = None
    category: str = "general"
    content: str = Field(min_length=1)
    type: BulletType = "rule"
    is_negative: bool = False
    kind: BulletKind = "workflow_rule"
    state: BulletState = "draft"
    maturity: Maturity = "candidate"
    feedback_events: list[FeedbackEvent] = Field(default_factory=list)
    helpful_count: int = 0
    harmful_count: int = 0
    created_at: Timestamp = Field(default_factory=_utcnow)
    updated_at: Timestamp = Field(default_factory=_utcnow)
    embedding: list[float] | None = None
    deprecated: bool = False
    deprecated_at: Timestamp | None = None
    deprecation_reason: str | None = None
    replaced_by: str | None = None
    pinned: bool = False
    pinned_reason: str | None = None
    source_sessions: list[str] = Field(default_factory=list)
    source_agents: list[str] = Field(default_factory=list)
    tags: Tags = Field(default_factory=list)
    confidence_decay_half_life_days: float | None = Field(default=None, gt=0)
    reasoning: str | None = None

    @model_validator(mode="after")
    def _sync_polarity(self) -> "Bullet":
        # Either signal marks an anti-pattern; keep both fields agreeing.
        if self.is_negative or self.type == "anti-pattern" or self.kind == "anti_pattern":
            self.is_negative = True
            self.type = "anti-pattern"
        if self.maturity == "deprecated":
            self.deprecated = True
        self.helpful_count, self.harmful_count = count_feedback(self.feedback_events)
        return self

    def recount(self) -> None:
        """Recompute cached counters from feedback events."""
        self.helpful_count, self.harmful_count = count_feedback(self.feedback_events)

    @property
    def is_live(self) -> bool:
        return not self.deprecated and self.maturity != "deprecated"


def count_feedback(events: list[FeedbackEvent]) -> tuple[int, int]:
    helpful = sum(1 for e in events if e.type == "helpful")
    return helpful, len(events) - helpful


class NewBullet(BaseModel):
    """Payload of an add delta."""

    content: str
    category: str = "general"
    scope: Scope = "global"
    scope_key: str | None = None
    type: BulletType = "rule"
    is_negative: bool = False
    kind: BulletKind = "workflow_rule"
    tags: Tags = Field(default_factory=list)
    reasoning: str | None = None
    id: str | None = None  # Optional: for idempotent replay


class AddDelta(BaseModel):
    type: Literal["add"] = "add"
    bullet: NewBullet
    reason: str = ""
    source_session: str | None = None


class HelpfulDelta(BaseModel):
    type: Literal["helpful"] = "helpful"
    bullet_id: str
    context: str | None = None
    source_session: str | None = None


class HarmfulDelta(BaseModel):
    type: Literal["harmful"] = "harmful"
    bullet_id: str
    reason: HarmfulReason | None = None
    context: str | None = None
    source_session: str | None = None


class ReplaceDelta(BaseModel):
    type: Literal["replace"] = "replace"
    bullet_id: str
    new_content: str
    reason: str | None = None


class DeprecateDelta(BaseModel):
    type: Literal["deprecate"] = "deprecate"
    bullet_id: str
    reason: str
    replaced_by: str | None = None


class MergeDelta(BaseModel):
    type: Literal["merge"] = "merge"
    bullet_ids: list[str]
    merged_content: str
    reason: str | None = None


PlaybookDelta = Annotated[
    AddDelta | HelpfulDelta | HarmfulDelta | ReplaceDelta | DeprecateDelta | MergeDelta,
    Field(discriminator="type"),
]

delta_adapter: TypeAdapter[PlaybookDelta] = TypeAdapter(PlaybookDelta)
delta_list_adapter: TypeAdapter[list[PlaybookDelta]] = TypeAdapter(list[PlaybookDelta])


class DeprecatedPattern(BaseModel):
    pattern: str
    deprecated_at: Timestamp = Field(default_factory=_utcnow)
    reason: str = ""
    replacement: str | None = None


class PlaybookMetadata(BaseModel):
    created_at: Timestamp = Field(default_factory=_utcnow)
    last_reflection: Timestamp | None = None
    total_reflections: int = 0
    total_sessions_processed: int = 0


class Playbook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = SCHEMA_VERSION
    name: str = "playbook"
    description: str = ""
    metadata: PlaybookMetadata = Field(default_factory=PlaybookMetadata)
    deprecated_patterns: list[DeprecatedPattern] = Field(
        default_factory=list, alias="deprecatedPatterns"
    )
    bullets: list[Bullet] = Field(default_factory=list)

    def get(self, bullet_id: str) -> Bullet | None:
        for bullet in self.bullets:
            if bullet.id == bullet_id:
                return bullet
        return None

    def live_bullets(self) -> list[Bullet]:
        return [b for b in self.bullets if b.is_live]

    def ids(self) -> set[str]:
        return {b.id for b in self.bullets}


class ConflictReport(BaseModel):
    kind: Literal["duplicate", "conflict", "directive"]
    new_content: str
    existing_id: str
    existing_content: str
    similarity: float | None = None
    reason: str


class PromotionReport(BaseModel):
    bullet_id: str
    from_maturity: Maturity
    to_maturity: Maturity
    effective_score: float


class InversionReport(BaseModel):
    original_id: str
    new_id: str
    original_content: str
    new_content: str
    reason: str


DecisionAction = Literal["accepted", "rejected", "skipped", "modified"]


class DecisionLogEntry(BaseModel):
    timestamp: Timestamp
    phase: Literal[
        "validate", "add", "feedback", "replace", "deprecate", "merge", "prune", "invert", "forget"
    ]
    action: DecisionAction
    bullet_id: str | None = None
    reason: str
    content: str | None = None
    details: dict[str, Any] | None = None


class CurationResult(BaseModel):
    playbook: Playbook
    applied: int = 0
    skipped: int = 0
    conflicts: list[ConflictReport] = Field(default_factory=list)
    promotions: list[PromotionReport] = Field(default_factory=list)
    inversions: list[InversionReport] = Field(default_factory=list)
    pruned: int = 0
    decision_log: list[DecisionLogEntry] = Field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "applied": self.applied,
            "skipped": self.skipped,
            "conflicts": len(self.conflicts),
            "promotions": len(self.promotions),
            "inversions": len(self.inversions),
            "pruned": self.pruned,
        }


class BlockedEntry(BaseModel):
    """A forgotten bullet, kept so its content is never re-added silently."""

    id: str
    content: str
    reason: str
    forgotten_at: Timestamp = Field(default_factory=_utcnow)

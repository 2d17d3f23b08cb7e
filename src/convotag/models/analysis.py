"""
Analysis payload and transcript types.

``AnalysisPayload`` is the validated form of what an analyzer returns.
Known fields are typed and range-checked; anything else the analyzer sends
is kept in ``extra_fields`` so newer analyzers can round-trip data this
version does not understand.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from convotag.exceptions import ValidationError

SCHEMA_VERSION = "1"

UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]


class AnalysisPayload(BaseModel):
    """Structured analysis result for one conversation."""

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    summary: str
    key_insights: list[str] = Field(default_factory=list)
    main_topics: list[str] = Field(default_factory=list)
    problem_types: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    auto_tags: list[str] = Field(default_factory=list)

    sentiment_score: float = Field(ge=-1.0, le=1.0)
    complexity_score: int = Field(ge=1, le=5)
    engagement_score: UnitFloat
    confidence_scores: dict[str, UnitFloat] = Field(default_factory=dict)

    model_used: str = "unknown"
    processing_time_ms: int = Field(default=0, ge=0)
    analysis_version: str = "v1.0"
    schema_version: str = SCHEMA_VERSION

    @property
    def extra_fields(self) -> dict[str, Any]:
        """Fields sent by the analyzer that this schema version does not define."""
        return dict(self.model_extra or {})

    @classmethod
    def from_raw(cls, raw: Any) -> "AnalysisPayload":
        """
        Validate a raw analyzer response.

        Args:
            raw: Mapping returned by an analyzer

        Returns:
            Validated AnalysisPayload

        Raises:
            ValidationError: If a field is missing, mistyped or out of range
        """
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError(
                f"Analysis payload must be a mapping, got {type(raw).__name__}"
            )
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "error": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationError("Invalid analysis payload", {"errors": errors}) from e


@dataclass
class TranscriptMessage:
    """One message as handed to an analyzer."""

    role: str
    content: str
    message_order: int


@dataclass
class Transcript:
    """Read-only view of a conversation handed to an analyzer."""

    conversation_id: str
    title: str
    messages: list[TranscriptMessage] = field(default_factory=list)
    category: Optional[str] = None

    @property
    def user_messages(self) -> list[TranscriptMessage]:
        return [m for m in self.messages if m.role == "user"]

    @property
    def assistant_messages(self) -> list[TranscriptMessage]:
        return [m for m in self.messages if m.role == "assistant"]

"""
Recall - Extraction Schema
Validated shape of an LLM memory extraction response.

Wire format is camelCase JSON (schemaVersion, emotionalContext, ...);
Python attributes are snake_case.
"""

from typing import Optional, List, Dict, Union, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from config import SCHEMA_VERSION

SIGNIFICANCE_COMPONENT_WHITELIST = (
    "emotional_impact",
    "relationship_significance",
    "personal_growth",
    "milestone_achievement",
    "conflict_resolution",
    "vulnerability_shared",
    "breakthrough_moment",
    "support_impact",
    "memory_durability",
    "life_changing_potential",
)

RELATIONSHIP_KEY_WHITELIST = (
    "trust_level",
    "conflict_present",
    "support_given",
    "support_received",
    "boundary_crossed",
    "intimacy_level",
    "power_dynamic",
    "communication_quality",
    "shared_experience",
    "relationship_stage",
)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class EmotionalContext(_WireModel):
    primary_emotion: str = Field(min_length=1)
    secondary_emotions: List[str] = Field(default_factory=list, max_length=5)
    intensity: float = Field(ge=0.0, le=1.0)
    valence: float = Field(ge=-1.0, le=1.0)
    themes: List[str] = Field(default_factory=list, max_length=8)


class Significance(_WireModel):
    overall: float = Field(ge=0.0, le=10.0)
    components: Dict[str, float] = Field(default_factory=dict)

    @field_validator("components")
    @classmethod
    def _check_components(cls, value: Dict[str, float]) -> Dict[str, float]:
        if len(value) > 10:
            raise ValueError("Maximum 10 significance components allowed")
        unknown = [key for key in value if key not in SIGNIFICANCE_COMPONENT_WHITELIST]
        if unknown:
            raise ValueError(f"Invalid significance component key: {unknown[0]}")
        return value


class MemoryItem(_WireModel):
    """One extracted memory."""
    id: Optional[str] = None
    content: str = Field(min_length=10, max_length=1200)
    emotional_context: EmotionalContext
    significance: Significance
    relationship_dynamics: Optional[Dict[str, Union[bool, int, float, str]]] = None
    rationale: Optional[str] = Field(default=None, max_length=800)
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("relationship_dynamics")
    @classmethod
    def _check_dynamics(cls, value):
        if value is None:
            return value
        if len(value) > 5:
            raise ValueError("Maximum 5 relationship dynamics keys allowed")
        for key, item in value.items():
            if key not in RELATIONSHIP_KEY_WHITELIST:
                raise ValueError(f"Invalid relationship dynamics key: {key}")
            if isinstance(item, str) and len(item) > 500:
                raise ValueError(f"Relationship dynamics value too long: {key}")
        return value


class ExtractionResult(_WireModel):
    """Canonical response: one to ten memories."""
    schema_version: str
    memories: List[MemoryItem] = Field(min_length=1, max_length=10)

    @field_validator("schema_version")
    @classmethod
    def _requested_version(cls, value: str, info: ValidationInfo) -> str:
        expected = (info.context or {}).get("schema_version", SCHEMA_VERSION)
        if value != expected:
            raise ValueError(f"expected {expected}, got {value}")
        return value

    def to_wire(self) -> Dict[str, Any]:
        """camelCase dict, as it would appear on the wire."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @property
    def average_confidence(self) -> float:
        return sum(m.confidence for m in self.memories) / len(self.memories)


def validate_result(data: Any, schema_version: str = SCHEMA_VERSION) -> ExtractionResult:
    """
    Validate decoded JSON against the canonical schema.

    Args:
        data: Decoded JSON
        schema_version: The schemaVersion the request asked for

    Raises:
        pydantic.ValidationError: if the payload does not conform
    """
    return ExtractionResult.model_validate(data, context={"schema_version": schema_version})


def describe_validation_error(error: ValidationError, limit: int = 3) -> str:
    """Short one-line summary of the first few validation problems."""
    parts = []
    for item in error.errors()[:limit]:
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    more = len(error.errors()) - limit
    if more > 0:
        parts.append(f"+{more} more")
    return "; ".join(parts)

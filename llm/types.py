"""
Recall - LLM Types
Requests, responses, stream events and the error taxonomy shared by every
provider and by the retry layer.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from config import SCHEMA_VERSION, EXTRACTION_MAX_TOKENS


class ErrorKind(Enum):
    """
    Classification carried by every provider failure.

    The retry table is keyed on these values.
    """
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    PARSING = "parsing"
    BUDGET_EXCEEDED = "budget_exceeded"
    POLICY = "policy"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class Outcome(Enum):
    """Terminal outcome of one extraction."""
    SUCCESS = "success"
    FALLBACK_SUCCESS = "fallback_success"
    ERROR = "error"                  # Rendered as error_<kind>
    CIRCUIT_OPEN = "circuit_open"
    BUDGET_BLOCKED = "budget_blocked"
    CANCELLED = "cancelled"


class ProviderError(Exception):
    """
    Classified failure from a provider call or from response handling.

    Attributes:
        kind: ErrorKind driving retry and fallback decisions
        message: Human-readable description (already safe to log)
        provider: Provider name, when known
        local: True when raised by this process (e.g. rate-limit wait timeout)
        retry_after: Server-suggested wait in seconds, if any
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        provider: Optional[str] = None,
        local: bool = False,
        retry_after: Optional[float] = None
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.provider = provider
        self.local = local
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return f"ProviderError({self.kind.value}, {self.message!r}, provider={self.provider!r})"


class UnknownProviderError(LookupError):
    """Raised by the provider factory for an unregistered name."""
    kind = "unknown_provider"

    def __init__(self, name: str):
        super().__init__(f"Unknown provider: {name}")
        self.name = name


@dataclass(frozen=True)
class MessageExcerpt:
    """One turn of the conversation handed to the extractor."""
    speaker: str
    content: str
    timestamp: Optional[str] = None


CORRECTIVE_INSTRUCTION = (
    "Your previous reply could not be parsed. Respond again with ONLY a single "
    "JSON object matching the schema. No prose, no code fences, no commentary."
)

SYSTEM_PROMPT = """You extract emotionally significant memories from a conversation.

Respond with a single JSON object and nothing else:
{{
  "schemaVersion": "{schema_version}",
  "memories": [
    {{
      "content": "what happened, 10-1200 characters",
      "emotionalContext": {{
        "primaryEmotion": "joy",
        "secondaryEmotions": ["relief"],
        "intensity": 0.0-1.0,
        "valence": -1.0-1.0,
        "themes": ["family"]
      }},
      "significance": {{
        "overall": 0-10,
        "components": {{"emotional_impact": 0-10}}
      }},
      "relationshipDynamics": {{"trust_level": "high"}},
      "rationale": "why this matters, up to 800 characters",
      "confidence": 0.0-1.0
    }}
  ]
}}

Return between 1 and 10 memories."""


@dataclass(frozen=True)
class ExtractionRequest:
    """
    Immutable input to one extraction.

    Built upstream (mood scoring and salience selection); this layer only
    renders it into provider messages.
    """
    messages: Tuple[MessageExcerpt, ...]
    mood_context: Dict[str, Any] = field(default_factory=dict)
    schema_version: str = SCHEMA_VERSION
    max_tokens: int = EXTRACTION_MAX_TOKENS
    instructions: Optional[str] = None
    corrective: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractionRequest":
        """Build a request from a plain mapping (e.g. a JSON file)."""
        messages = tuple(
            MessageExcerpt(
                speaker=str(m.get("speaker", "user")),
                content=str(m.get("content", "")),
                timestamp=m.get("timestamp"),
            )
            for m in data.get("messages", [])
        )
        return cls(
            messages=messages,
            mood_context=dict(data.get("moodContext", data.get("mood_context", {})) or {}),
            schema_version=data.get("schemaVersion", SCHEMA_VERSION),
            max_tokens=int(data.get("maxTokens", EXTRACTION_MAX_TOKENS)),
            instructions=data.get("instructions"),
        )

    def with_corrective_instruction(self) -> "ExtractionRequest":
        """Copy of this request asking for strict JSON."""
        return replace(self, corrective=True)

    def system_prompt(self) -> str:
        prompt = SYSTEM_PROMPT.format(schema_version=self.schema_version)
        if self.instructions:
            prompt = f"{prompt}\n\n{self.instructions}"
        return prompt

    def user_prompt(self) -> str:
        lines = []
        if self.mood_context:
            mood = ", ".join(f"{k}={v}" for k, v in sorted(self.mood_context.items()))
            lines.append(f"Mood context: {mood}")
            lines.append("")
        lines.append("Conversation:")
        for excerpt in self.messages:
            stamp = f"[{excerpt.timestamp}] " if excerpt.timestamp else ""
            lines.append(f"{stamp}{excerpt.speaker}: {excerpt.content}")
        if self.corrective:
            lines.append("")
            lines.append(CORRECTIVE_INSTRUCTION)
        return "\n".join(lines)

    def render_messages(self) -> List[Dict[str, str]]:
        """Chat messages in the common system/user format."""
        return [
            {"role": "system", "content": self.system_prompt()},
            {"role": "user", "content": self.user_prompt()},
        ]

    def prompt_text(self) -> str:
        """All prompt text concatenated, for token estimation."""
        return self.system_prompt() + "\n" + self.user_prompt()


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported (or estimated) for one call."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ProviderResponse:
    """Complete (non-streamed or assembled) provider reply."""
    text: str
    model: str
    provider: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"  # "stop", "length", "error"


@dataclass(frozen=True)
class StreamEvent:
    """
    One event from a provider stream.

    type is "start", "delta", "stop" or "error". Usage may arrive on start
    (input tokens) and on stop (output tokens).
    """
    type: str
    content: str = ""
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def start(cls, usage: Optional[TokenUsage] = None) -> "StreamEvent":
        return cls(type="start", usage=usage)

    @classmethod
    def delta(cls, content: str) -> "StreamEvent":
        return cls(type="delta", content=content)

    @classmethod
    def stop(cls, usage: Optional[TokenUsage] = None, finish_reason: str = "stop") -> "StreamEvent":
        return cls(type="stop", usage=usage, finish_reason=finish_reason)

    @classmethod
    def error(cls, kind: ErrorKind, message: str = "") -> "StreamEvent":
        return cls(type="error", error_kind=kind, message=message)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static limits and features of a provider/model pair."""
    max_input_tokens: int
    max_output_tokens: int
    supports_streaming: bool
    json_mode: bool = False
    local: bool = False


@dataclass(frozen=True)
class CostEstimate:
    """Pre-call cost estimate used for the budget reservation."""
    input_tokens: int
    output_tokens: int
    usd: float


@dataclass(frozen=True)
class AttemptRecord:
    """
    One provider attempt within an extraction.

    outcome is "success" or "error"; error_kind is set for failures.
    """
    provider: str
    model: str
    timestamp: datetime
    latency_ms: float
    outcome: str
    error_kind: Optional[ErrorKind] = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    corrective: bool = False
    fallback: bool = False

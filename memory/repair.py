"""
Recall - Response Repair Pipeline
Turns raw model text into a validated ExtractionResult.

Passes run cheapest first and the first one whose output validates wins:
    1. direct       parse the text as-is
    2. strip_prose  drop code fences and prose around the outermost object
    3. balance      fix trailing commas and bare keys, close open strings,
                    arrays and objects
    4. legacy       adapt {memory: {...}} / missing schemaVersion shapes
If nothing validates the pipeline raises ProviderError(parsing).
"""

import json
import re
import time
from dataclasses import dataclass
from typing import Optional, List, Any, Tuple

from pydantic import ValidationError

from core.logger import log_debug, log_warning
from core.metrics import MetricsSink
from llm.types import ErrorKind, ProviderError
from memory.schema import ExtractionResult, SCHEMA_VERSION, validate_result, describe_validation_error

_CODE_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_FENCE_MARKER = re.compile(r"```(?:json|JSON)?")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*):")
_DANGLING_KEY = re.compile(r"[{,]\s*\"(?:[^\"\\]|\\.)*\"\s*$")


@dataclass(frozen=True)
class ParseStatistics:
    total_memories: int
    average_confidence: float
    processing_ms: float
    content_length: int


@dataclass(frozen=True)
class RepairOutcome:
    """A validated result and which pass produced it."""
    result: ExtractionResult
    pass_name: str
    legacy: bool
    repair_attempts: int
    statistics: ParseStatistics


def strip_prose(text: str) -> Optional[str]:
    """
    Cut the outermost JSON object out of surrounding text.

    Returns:
        The candidate object text, or None if there is no opening brace
    """
    fenced = _CODE_FENCE.search(text)
    if fenced and "{" in fenced.group(1):
        text = fenced.group(1)
    start = text.find("{")
    if start < 0:
        return None
    end = text.rfind("}")
    if end <= start:
        return text[start:].strip()
    return text[start:end + 1]


def _split_strings(text: str) -> Tuple[List[Tuple[bool, str]], bool, bool]:
    """
    Split text into (is_string, segment) pieces.

    Returns:
        Segments, whether the text ends inside a string, and whether that
        string ends on a dangling backslash
    """
    segments = []
    current = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            current.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                segments.append((True, "".join(current)))
                current = []
                in_string = False
        elif char == '"':
            if current:
                segments.append((False, "".join(current)))
            current = [char]
            in_string = True
        else:
            current.append(char)
    if current:
        segments.append((in_string, "".join(current)))
    return segments, in_string, escaped


def balance_json(text: str) -> Optional[str]:
    """
    Best-effort structural repair of a JSON object.

    Only text outside string literals is rewritten, so commas and colons
    inside memory content are left alone.
    """
    start = text.find("{")
    if start < 0:
        return None
    segments, open_string, dangling_escape = _split_strings(text[start:])

    pieces = []
    stack = []
    for is_string, segment in segments:
        if is_string:
            pieces.append(segment)
            continue
        segment = _BARE_KEY.sub(r'\1"\2"\3:', segment)
        for char in segment:
            if char in "{[":
                stack.append(char)
            elif char in "}]" and stack:
                stack.pop()
        pieces.append(segment)

    body = "".join(pieces)
    if open_string:
        if dangling_escape:
            body = body[:-1]
        body += '"'

    body = body.rstrip()
    while body.endswith(","):
        body = body[:-1].rstrip()
    if body.endswith(":"):
        body += " null"
    elif _DANGLING_KEY.search(body) and (not stack or stack[-1] == "{"):
        body += ": null"

    body += "".join("}" if opener == "{" else "]" for opener in reversed(stack))

    # Trailing commas last: closing the structure can expose new ones
    segments, _, _ = _split_strings(body)
    return "".join(
        segment if is_string else _TRAILING_COMMA.sub(r"\1", segment)
        for is_string, segment in segments
    )


def adapt_legacy(data: Any, schema_version: str = SCHEMA_VERSION) -> Optional[Any]:
    """
    Map older response shapes onto {schemaVersion, memories: [...]}.

    Handles the singular {memory: {...}} form, a bare list of memories, a
    bare memory object, and a missing schemaVersion. Returns None when the
    data has no recognisable memory payload.
    """
    if isinstance(data, list):
        return {"schemaVersion": schema_version, "memories": data}
    if not isinstance(data, dict):
        return None

    adapted = dict(data)
    if "memories" not in adapted:
        if "memory" in adapted:
            memory = adapted.pop("memory")
            adapted["memories"] = memory if isinstance(memory, list) else [memory]
        elif "content" in adapted and "emotionalContext" in adapted:
            adapted = {"memories": [adapted]}
        else:
            return None
    if "schemaVersion" not in adapted:
        adapted["schemaVersion"] = schema_version
    return adapted


class ResponseRepairPipeline:
    """Multi-pass repair plus schema validation."""

    def __init__(self, metrics: Optional[MetricsSink] = None, schema_version: str = SCHEMA_VERSION):
        self.metrics = metrics
        self.schema_version = schema_version

    def _validate(self, data: Any, schema_version: str) -> Tuple[Optional[ExtractionResult], Optional[str]]:
        try:
            result = validate_result(data, schema_version)
        except ValidationError as e:
            if self.metrics:
                self.metrics.record_validation("failure")
            return None, describe_validation_error(e)
        if self.metrics:
            self.metrics.record_validation("success")
        return result, None

    def _record_repair(self, succeeded: bool) -> None:
        if self.metrics:
            self.metrics.record_repair("success" if succeeded else "failure")

    def repair(self, text: str, schema_version: Optional[str] = None) -> RepairOutcome:
        """
        Run the passes over `text`.

        Args:
            text: Raw model output
            schema_version: schemaVersion the request asked for (pipeline default if None)

        Returns:
            RepairOutcome for the first pass that validates

        Raises:
            ProviderError(parsing): when no pass yields a valid result
        """
        schema_version = schema_version or self.schema_version
        started = time.perf_counter()
        decoded: List[Any] = []
        last_problem = "no JSON object found"
        attempts = 0

        stripped = strip_prose(text)
        unfenced = _FENCE_MARKER.sub("", text)
        candidates = [
            ("direct", text),
            ("strip_prose", stripped),
            ("balance", balance_json(unfenced)),
            ("balance", balance_json(stripped) if stripped is not None else None),
        ]

        seen = set()
        for pass_name, candidate in candidates:
            if candidate is None or candidate in seen:
                continue
            seen.add(candidate)
            repairing = pass_name != "direct"
            if repairing:
                attempts += 1

            try:
                data = json.loads(candidate)
            except json.JSONDecodeError as e:
                last_problem = f"invalid JSON ({e.msg} at {e.pos})"
                if repairing:
                    self._record_repair(False)
                continue

            decoded.append(data)
            result, problem = self._validate(data, schema_version)
            if repairing:
                self._record_repair(result is not None)
            if result is not None:
                return self._outcome(result, pass_name, False, attempts, started, text)
            last_problem = problem

        attempts += 1
        for data in decoded:
            adapted = adapt_legacy(data, schema_version)
            if adapted is None:
                continue
            result, problem = self._validate(adapted, schema_version)
            if result is not None:
                self._record_repair(True)
                log_debug("Adapted legacy response shape")
                return self._outcome(result, "legacy", True, attempts, started, text)
            last_problem = problem
        self._record_repair(False)

        log_warning(f"Response could not be repaired: {last_problem}")
        raise ProviderError(ErrorKind.PARSING, f"Unparseable response: {last_problem}")

    def _outcome(
        self,
        result: ExtractionResult,
        pass_name: str,
        legacy: bool,
        attempts: int,
        started: float,
        text: str,
    ) -> RepairOutcome:
        return RepairOutcome(
            result=result,
            pass_name=pass_name,
            legacy=legacy,
            repair_attempts=attempts,
            statistics=ParseStatistics(
                total_memories=len(result.memories),
                average_confidence=result.average_confidence,
                processing_ms=(time.perf_counter() - started) * 1000.0,
                content_length=len(text),
            ),
        )

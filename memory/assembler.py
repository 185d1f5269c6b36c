"""
Recall - Response Assembler
Collects a provider stream into one text buffer.

State machine:
    awaiting_start -> collecting -> complete | truncated | errored

Structural state (brace/bracket depth, string and escape flags) is tracked
incrementally so a stream that stops mid-object is reported as truncated
instead of being passed off as a full answer. The buffer is always handed
to the repair pipeline; truncation only changes how the result is labelled.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Iterable

from core.clock import Clock, get_clock
from core.logger import log_debug, log_warning
from concurrency.cancellation import CancellationToken
from config import STREAM_BUFFER_LIMIT
from llm.types import ErrorKind, ProviderError, StreamEvent, TokenUsage


class AssemblerState(Enum):
    AWAITING_START = "awaiting_start"
    COLLECTING = "collecting"
    COMPLETE = "complete"
    TRUNCATED = "truncated"
    ERRORED = "errored"


TERMINAL_STATES = (AssemblerState.COMPLETE, AssemblerState.TRUNCATED, AssemblerState.ERRORED)


@dataclass(frozen=True)
class AssembledResponse:
    """Final buffer and how the stream ended."""
    text: str
    state: AssemblerState
    usage: TokenUsage
    finish_reason: str

    @property
    def truncated(self) -> bool:
        return self.state == AssemblerState.TRUNCATED


class ResponseAssembler:
    """
    Accumulates StreamEvents for a single call.

    Not reusable: create one per provider attempt.
    """

    def __init__(self, max_buffer: int = STREAM_BUFFER_LIMIT, clock: Optional[Clock] = None):
        self.max_buffer = max_buffer
        self._clock = clock or get_clock()
        self.state = AssemblerState.AWAITING_START

        self._chunks = []
        self._length = 0
        self._brace_depth = 0
        self._bracket_depth = 0
        self._in_string = False
        self._escaped = False
        self._seen_object = False

        self._input_tokens = 0
        self._output_tokens = 0
        self._finish_reason = "stop"

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def is_balanced(self) -> bool:
        """True when every opened object, array and string has been closed."""
        return (
            self._seen_object
            and self._brace_depth == 0
            and self._bracket_depth == 0
            and not self._in_string
        )

    def _scan(self, chunk: str) -> None:
        for char in chunk:
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif char == "\\":
                    self._escaped = True
                elif char == '"':
                    self._in_string = False
                continue

            if char == '"':
                self._in_string = True
            elif char == "{":
                self._brace_depth += 1
                self._seen_object = True
            elif char == "}":
                self._brace_depth = max(0, self._brace_depth - 1)
            elif char == "[":
                self._bracket_depth += 1
            elif char == "]":
                self._bracket_depth = max(0, self._bracket_depth - 1)

    def _absorb_usage(self, usage: Optional[TokenUsage]) -> None:
        if usage is None:
            return
        if usage.input_tokens:
            self._input_tokens = usage.input_tokens
        if usage.output_tokens:
            self._output_tokens = usage.output_tokens

    def feed(self, event: StreamEvent) -> AssemblerState:
        """
        Apply one event.

        Returns:
            State after the event

        Raises:
            ProviderError: for an error event (its kind) or buffer overflow (parsing)
        """
        if self.state in TERMINAL_STATES:
            log_debug(f"Ignoring {event.type} event after stream ended ({self.state.value})")
            return self.state

        if event.type == "start":
            self._absorb_usage(event.usage)
            self.state = AssemblerState.COLLECTING

        elif event.type == "delta":
            self.state = AssemblerState.COLLECTING
            if self._length + len(event.content) > self.max_buffer:
                self.state = AssemblerState.ERRORED
                raise ProviderError(
                    ErrorKind.PARSING,
                    f"Streamed response exceeded {self.max_buffer} characters",
                )
            self._chunks.append(event.content)
            self._length += len(event.content)
            self._scan(event.content)

        elif event.type == "stop":
            self._absorb_usage(event.usage)
            self._finish_reason = event.finish_reason or "stop"
            if self._finish_reason == "length" or not self.is_balanced():
                self.state = AssemblerState.TRUNCATED
            else:
                self.state = AssemblerState.COMPLETE

        elif event.type == "error":
            self.state = AssemblerState.ERRORED
            raise ProviderError(event.error_kind or ErrorKind.UNKNOWN, event.message or "stream error")

        return self.state

    def finish(self) -> AssembledResponse:
        """Close the stream; one that ended without a stop event is truncated."""
        if self.state in (AssemblerState.AWAITING_START, AssemblerState.COLLECTING):
            self.state = AssemblerState.TRUNCATED
            self._finish_reason = "length"
        if self.state == AssemblerState.TRUNCATED:
            log_warning(f"Stream truncated after {self._length} characters")
        return AssembledResponse(
            text=self.text,
            state=self.state,
            usage=TokenUsage(self._input_tokens, self._output_tokens),
            finish_reason=self._finish_reason,
        )

    def consume(
        self,
        events: Iterable[StreamEvent],
        deadline: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AssembledResponse:
        """
        Drain a stream into an AssembledResponse.

        Args:
            events: The provider's event iterator (consumed once)
            deadline: Monotonic time by which the stream must finish
            cancel: Caller cancellation token

        Raises:
            ProviderError: error events, overflow, or the deadline passing (timeout)
        """
        iterator = iter(events)
        try:
            for event in iterator:
                self.feed(event)
                if self.state in TERMINAL_STATES:
                    break
                if deadline is not None and self._clock.monotonic() >= deadline:
                    self.state = AssemblerState.ERRORED
                    raise ProviderError(ErrorKind.TIMEOUT, "Stream exceeded its deadline")
                if cancel is not None and cancel.is_cancelled():
                    self.state = AssemblerState.ERRORED
                    raise ProviderError(ErrorKind.TIMEOUT, "Stream cancelled")
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        return self.finish()

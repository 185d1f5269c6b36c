"""
Recall - OpenAI Provider
Chat Completions client (OpenAI or any compatible endpoint) over requests,
with SSE streaming.
"""

import json
import re
from typing import Optional, Iterator, Dict, Any

import requests

from core.logger import log_error, log_info, redact_for_log
from llm.provider import ProviderClient
from llm.types import (
    ErrorKind, ProviderError, ExtractionRequest, ProviderResponse,
    StreamEvent, ProviderCapabilities, TokenUsage
)

FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
}
POLICY_CODES = ("content_filter", "content_policy_violation")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_reset_duration(value: Optional[str]) -> Optional[float]:
    """Parse OpenAI reset headers like '1s', '6m0s' or '250ms' into seconds."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    scale = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
    parts = _DURATION_PART.findall(value)
    if not parts:
        return None
    return sum(float(amount) * scale[unit] for amount, unit in parts)


class OpenAIProvider(ProviderClient):
    """Provider for OpenAI-compatible chat completion APIs."""

    name = "openai"

    def __init__(self, settings, pricing=None, estimator=None, session: Optional[requests.Session] = None):
        super().__init__(settings, pricing, estimator)
        self.api_key = settings.api_key
        self.base_url = (settings.base_url or "https://api.openai.com/v1").rstrip("/")
        self._session = session or requests.Session()

    def capabilities(self) -> ProviderCapabilities:
        large = self.model.startswith(("gpt-4-turbo", "gpt-4o"))
        return ProviderCapabilities(
            max_input_tokens=128000 if large else 16385,
            max_output_tokens=4096,
            supports_streaming=True,
            json_mode=True,
        )

    def validate_config(self) -> None:
        if not self.api_key:
            raise ProviderError(ErrorKind.AUTHENTICATION, "OpenAI API key not configured", provider=self.name)
        if not self.model:
            raise ProviderError(ErrorKind.INVALID_REQUEST, "OpenAI model not configured", provider=self.name)
        if not self.base_url.startswith(("http://", "https://")):
            raise ProviderError(ErrorKind.INVALID_REQUEST, f"Invalid base URL: {self.base_url}", provider=self.name)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, request: ExtractionRequest, stream: bool) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": request.render_messages(),
            "max_tokens": min(request.max_tokens, self.capabilities().max_output_tokens),
            "temperature": 0,
            "response_format": {"type": "json_object"},
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _report_rate_headers(self, response: requests.Response) -> None:
        if self.rate_hint_listener is None:
            return
        remaining = response.headers.get("x-ratelimit-remaining-requests")
        reset = parse_reset_duration(response.headers.get("x-ratelimit-reset-requests"))
        try:
            remaining_count = int(remaining) if remaining is not None else None
        except ValueError:
            remaining_count = None
        if remaining_count is not None or reset is not None:
            self.rate_hint_listener(remaining_count, reset)

    def _classify_response(self, response: requests.Response) -> ProviderError:
        """Map a non-200 response onto the shared error taxonomy."""
        status = response.status_code
        code = ""
        message = f"HTTP {status}"
        try:
            error = response.json().get("error") or {}
            code = error.get("code") or error.get("type") or ""
            message = error.get("message") or message
        except ValueError:
            message = f"HTTP {status}: {response.text[:200]}"
        message = redact_for_log(message)

        retry_after = None
        if status == 429:
            if code == "insufficient_quota":
                kind = ErrorKind.BUDGET_EXCEEDED
            else:
                kind = ErrorKind.RATE_LIMIT
                retry_after = parse_reset_duration(response.headers.get("retry-after"))
        elif status in (401, 403):
            kind = ErrorKind.AUTHENTICATION
        elif code in POLICY_CODES:
            kind = ErrorKind.POLICY
        elif status in (400, 404, 413, 422):
            kind = ErrorKind.INVALID_REQUEST
        elif status == 408:
            kind = ErrorKind.TIMEOUT
        elif status >= 500:
            kind = ErrorKind.TRANSIENT
        else:
            kind = ErrorKind.UNKNOWN
        return ProviderError(kind, message, provider=self.name, retry_after=retry_after)

    def _post(self, payload: Dict[str, Any], timeout: float, stream: bool) -> requests.Response:
        try:
            response = self._session.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=payload,
                timeout=timeout,
                stream=stream,
            )
        except requests.Timeout as e:
            raise ProviderError(ErrorKind.TIMEOUT, "Request timed out", provider=self.name) from e
        except requests.ConnectionError as e:
            raise ProviderError(ErrorKind.TRANSIENT, "Connection failed", provider=self.name) from e

        self._report_rate_headers(response)
        if response.status_code != 200:
            classified = self._classify_response(response)
            log_error(f"OpenAI error ({classified.kind.value}): {classified.message}")
            raise classified
        return response

    def send(self, request: ExtractionRequest, timeout: float) -> ProviderResponse:
        response = self._post(self._payload(request, stream=False), timeout, stream=False)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(ErrorKind.TRANSIENT, "Malformed completion body", provider=self.name) from e

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(ErrorKind.TRANSIENT, "Completion had no choices", provider=self.name)
        choice = choices[0]
        finish_reason = choice.get("finish_reason")
        if finish_reason in POLICY_CODES:
            raise ProviderError(ErrorKind.POLICY, "Completion blocked by content filter", provider=self.name)

        usage = data.get("usage") or {}
        return ProviderResponse(
            text=(choice.get("message") or {}).get("content") or "",
            model=data.get("model", self.model),
            provider=self.name,
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0) or 0,
                output_tokens=usage.get("completion_tokens", 0) or 0,
            ),
            finish_reason=FINISH_REASONS.get(finish_reason, "stop"),
        )

    def stream(self, request: ExtractionRequest, timeout: float) -> Iterator[StreamEvent]:
        """
        Stream a completion over server-sent events.

        Usage arrives in a final chunk with no choices (include_usage).
        """
        try:
            response = self._post(self._payload(request, stream=True), timeout, stream=True)
        except ProviderError as e:
            yield StreamEvent.error(e.kind, e.message)
            return

        yield StreamEvent.start()
        finish_reason = None
        usage = None
        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    if finish_reason in POLICY_CODES:
                        yield StreamEvent.error(ErrorKind.POLICY, "Completion blocked by content filter")
                        return
                    log_info("OpenAI stream complete", prefix="📡")
                    yield StreamEvent.stop(usage, FINISH_REASONS.get(finish_reason, "stop"))
                    return

                try:
                    chunk = json.loads(data)
                except ValueError:
                    continue

                if chunk.get("usage"):
                    usage = TokenUsage(
                        input_tokens=chunk["usage"].get("prompt_tokens", 0) or 0,
                        output_tokens=chunk["usage"].get("completion_tokens", 0) or 0,
                    )
                for choice in chunk.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield StreamEvent.delta(content)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except requests.Timeout:
            yield StreamEvent.error(ErrorKind.TIMEOUT, "Stream timed out")
        except requests.RequestException as e:
            yield StreamEvent.error(ErrorKind.TRANSIENT, redact_for_log(str(e)))
        finally:
            response.close()

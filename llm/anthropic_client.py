"""
Recall - Anthropic Claude Provider
Claude Messages API client with streaming and error classification
"""

from typing import Optional, Iterator, Dict, Any

from core.logger import log_info, log_error, redact_for_log
from llm.provider import ProviderClient
from llm.types import (
    ErrorKind, ProviderError, ExtractionRequest, ProviderResponse,
    StreamEvent, ProviderCapabilities, TokenUsage
)

FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


class AnthropicProvider(ProviderClient):
    """
    Provider for the Anthropic Claude API.

    The SDK client is created lazily so the package imports without an
    API key and without the anthropic package loaded.
    """

    name = "anthropic"

    def __init__(self, settings, pricing=None, estimator=None):
        super().__init__(settings, pricing, estimator)
        self.api_key = settings.api_key
        self.base_url = settings.base_url or None
        self._client = None

    def _get_client(self):
        """Lazy-load the Anthropic client."""
        if self._client is None:
            import anthropic
            kwargs = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = anthropic.Anthropic(**kwargs)
        return self._client

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            max_input_tokens=200000,
            max_output_tokens=4096,
            supports_streaming=True,
            json_mode=False,
        )

    def validate_config(self) -> None:
        if not self.api_key:
            raise ProviderError(ErrorKind.AUTHENTICATION, "Anthropic API key not configured", provider=self.name)
        if not self.model:
            raise ProviderError(ErrorKind.INVALID_REQUEST, "Anthropic model not configured", provider=self.name)

    def _build_params(self, request: ExtractionRequest) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": min(request.max_tokens, self.capabilities().max_output_tokens),
            "temperature": 0,
            "system": request.system_prompt(),
            "messages": [{"role": "user", "content": request.user_prompt()}],
        }

    def _classify_error(self, error: Exception) -> ProviderError:
        """
        Map an SDK exception onto the shared error taxonomy.

        Returns:
            ProviderError with kind, safe message and retry-after hint
        """
        import anthropic

        error_msg = redact_for_log(str(error))
        retry_after = None

        if isinstance(error, anthropic.APITimeoutError):
            kind = ErrorKind.TIMEOUT
        elif isinstance(error, anthropic.APIConnectionError):
            kind = ErrorKind.TRANSIENT
        elif isinstance(error, anthropic.RateLimitError):
            kind = ErrorKind.RATE_LIMIT
            retry_after = self._get_retry_after(error)
        elif isinstance(error, anthropic.APIStatusError):
            status = error.status_code
            lowered = error_msg.lower()
            if status == 529 or status >= 500:
                kind = ErrorKind.TRANSIENT
            elif status in (401, 403):
                kind = ErrorKind.AUTHENTICATION
            elif status == 429:
                kind = ErrorKind.RATE_LIMIT
            elif "credit balance" in lowered or "billing" in lowered:
                kind = ErrorKind.BUDGET_EXCEEDED
            elif status in (400, 404, 413, 422):
                kind = ErrorKind.INVALID_REQUEST
            else:
                kind = ErrorKind.UNKNOWN
        else:
            lowered = error_msg.lower()
            if "overloaded" in lowered:
                kind = ErrorKind.TRANSIENT
            elif "rate" in lowered:
                kind = ErrorKind.RATE_LIMIT
            elif "authentication" in lowered or "api key" in lowered:
                kind = ErrorKind.AUTHENTICATION
            else:
                kind = ErrorKind.UNKNOWN

        return ProviderError(kind, error_msg, provider=self.name, retry_after=retry_after)

    def _get_retry_after(self, error: Exception) -> Optional[float]:
        """Extract retry-after delay from a rate limit error, if available."""
        response = getattr(error, "response", None)
        if response is not None:
            retry_after = response.headers.get("retry-after")
            if retry_after:
                try:
                    return float(retry_after)
                except (ValueError, TypeError):
                    return None
        return None

    def send(self, request: ExtractionRequest, timeout: float) -> ProviderResponse:
        client = self._get_client()
        try:
            response = client.messages.create(timeout=timeout, **self._build_params(request))
        except Exception as e:
            classified = self._classify_error(e)
            log_error(f"Anthropic error ({classified.kind.value}): {classified.message}")
            raise classified from e

        if response.stop_reason == "refusal":
            raise ProviderError(ErrorKind.POLICY, "Model refused the request", provider=self.name)

        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        return ProviderResponse(
            text=text,
            model=getattr(response, "model", self.model) or self.model,
            provider=self.name,
            usage=TokenUsage(
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            ),
            finish_reason=FINISH_REASONS.get(response.stop_reason, "stop"),
        )

    def stream(self, request: ExtractionRequest, timeout: float) -> Iterator[StreamEvent]:
        """
        Stream a completion as StreamEvents.

        SDK failures mid-stream are yielded as a single error event rather
        than raised, so the consumer sees everything received before them.
        """
        input_tokens = 0
        output_tokens = 0
        stop_reason = None

        try:
            client = self._get_client()
            with client.messages.stream(timeout=timeout, **self._build_params(request)) as stream:
                for event in stream:
                    event_type = getattr(event, "type", None)

                    if event_type == "message_start":
                        message = getattr(event, "message", None)
                        usage = getattr(message, "usage", None) if message else None
                        if usage:
                            input_tokens = getattr(usage, "input_tokens", 0) or 0
                        yield StreamEvent.start(TokenUsage(input_tokens=input_tokens))

                    elif event_type == "content_block_delta":
                        delta = getattr(event, "delta", None)
                        if delta is not None and getattr(delta, "type", None) == "text_delta":
                            chunk = getattr(delta, "text", "")
                            if chunk:
                                yield StreamEvent.delta(chunk)

                    elif event_type == "message_delta":
                        delta = getattr(event, "delta", None)
                        if delta is not None:
                            stop_reason = getattr(delta, "stop_reason", None) or stop_reason
                        usage = getattr(event, "usage", None)
                        if usage:
                            output_tokens = getattr(usage, "output_tokens", 0) or 0

                    elif event_type == "message_stop":
                        if stop_reason == "refusal":
                            yield StreamEvent.error(ErrorKind.POLICY, "Model refused the request")
                            return
                        log_info(f"Anthropic stream complete ({output_tokens} output tokens)", prefix="📡")
                        yield StreamEvent.stop(
                            TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
                            FINISH_REASONS.get(stop_reason, "stop"),
                        )
                        return

        except Exception as e:
            classified = self._classify_error(e)
            log_error(f"Anthropic streaming error ({classified.kind.value}): {classified.message}", prefix="[Stream]")
            yield StreamEvent.error(classified.kind, classified.message)

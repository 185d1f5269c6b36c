"""
Recall - KoboldCpp Provider
HTTP client for local LLM via KoboldCpp API
"""

import requests

from core.logger import log_error
from llm.provider import ProviderClient
from llm.types import (
    ErrorKind, ProviderError, ExtractionRequest, ProviderResponse,
    ProviderCapabilities, TokenUsage
)


class KoboldProvider(ProviderClient):
    """
    Provider for a local KoboldCpp server.

    KoboldCpp exposes the KoboldAI generate API. No streaming, no API key,
    and no per-token cost.
    """

    name = "kobold"

    def __init__(self, settings, pricing=None, estimator=None, max_context: int = 4096):
        """
        Initialize the KoboldCpp provider.

        Args:
            settings: ProviderSettings (base_url points at the server)
            pricing: Pricing catalog
            estimator: Token estimator
            max_context: Maximum context length of the loaded model
        """
        super().__init__(settings, pricing, estimator)
        self.api_url = (settings.base_url or "http://127.0.0.1:5001").rstrip("/")
        self.max_context = max_context

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            max_input_tokens=self.max_context,
            max_output_tokens=1024,
            supports_streaming=False,
            json_mode=False,
            local=True,
        )

    def validate_config(self) -> None:
        if not self.api_url.startswith(("http://", "https://")):
            raise ProviderError(
                ErrorKind.INVALID_REQUEST,
                f"KoboldCpp URL must be http(s): {self.api_url}",
                provider=self.name,
            )

    def _format_prompt(self, request: ExtractionRequest) -> str:
        """Llama-3 instruct format."""
        return (
            "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n\n"
            f"{request.system_prompt()}<|eot_id|>"
            "<|start_header_id|>user<|end_header_id|>\n\n"
            f"{request.user_prompt()}<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\n\n"
        )

    def send(self, request: ExtractionRequest, timeout: float) -> ProviderResponse:
        prompt = self._format_prompt(request)
        max_length = min(request.max_tokens, self.capabilities().max_output_tokens)
        payload = {
            "prompt": prompt,
            "max_length": max_length,
            "temperature": 0.2,
            "top_p": 0.9,
            "rep_pen": 1.1,
            "max_context_length": self.max_context,
            "stop_sequence": ["<|eot_id|>"],
        }

        try:
            response = requests.post(f"{self.api_url}/api/v1/generate", json=payload, timeout=timeout)
        except requests.Timeout as e:
            raise ProviderError(ErrorKind.TIMEOUT, "Request timed out", provider=self.name) from e
        except requests.ConnectionError as e:
            raise ProviderError(
                ErrorKind.TRANSIENT, "Connection failed - is KoboldCpp running?", provider=self.name
            ) from e

        if response.status_code != 200:
            kind = ErrorKind.TRANSIENT if response.status_code >= 500 else ErrorKind.INVALID_REQUEST
            if response.status_code == 503:
                kind = ErrorKind.RATE_LIMIT  # Server busy with another generation
            log_error(f"KoboldCpp HTTP {response.status_code}")
            raise ProviderError(kind, f"HTTP {response.status_code}: {response.text[:200]}", provider=self.name)

        try:
            results = response.json().get("results", [])
        except ValueError as e:
            raise ProviderError(ErrorKind.TRANSIENT, "Malformed KoboldCpp response", provider=self.name) from e
        if not results:
            raise ProviderError(ErrorKind.TRANSIENT, "No results in response", provider=self.name)

        text = results[0].get("text", "")
        output_tokens = self.estimate_tokens(text)
        return ProviderResponse(
            text=text.strip(),
            model=self.model,
            provider=self.name,
            usage=TokenUsage(input_tokens=self.estimate_tokens(prompt), output_tokens=output_tokens),
            finish_reason="length" if output_tokens >= max_length else "stop",
        )

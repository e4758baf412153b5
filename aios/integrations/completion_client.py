# aios/integrations/completion_client.py
"""
Completion Client for AIOS agents

Async access to the Anthropic Messages API over httpx. Used by the execution
engine's generic fallback (agents without registered Capabilities) and by the
phase gate review.

  - complete: prompt (+ optional system prompt) -> text of the first block
  - Standardized error envelope via CompletionClientError
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from aios.config import Settings, get_settings

logger = logging.getLogger("aios.integrations.completion")

ANTHROPIC_VERSION = "2023-06-01"


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class CompletionConfig:
    """Completion client configuration"""
    api_url: str = "https://api.anthropic.com/v1/messages"
    api_key: Optional[str] = None
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 1024
    timeout: int = 120

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CompletionConfig":
        settings = settings or get_settings()
        return cls(
            api_url=settings.ANTHROPIC_API_URL,
            api_key=settings.ANTHROPIC_API_KEY,
            model=settings.COMPLETION_MODEL,
            max_tokens=settings.COMPLETION_MAX_TOKENS,
            timeout=settings.COMPLETION_TIMEOUT,
        )


# =============================================================================
# Exceptions
# =============================================================================

class CompletionClientError(Exception):
    """
    Standardized error envelope for completion failures.

    Wraps transport, HTTP and response-shape errors with context.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "COMPLETION_ERROR",
        model: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.model = model
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "model": self.model,
            "context": self.context
        }


# =============================================================================
# Completion Client
# =============================================================================

class CompletionClient:
    """Async client for the external AI completion service"""

    def __init__(
        self,
        config: Optional[CompletionConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or CompletionConfig.from_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(f"CompletionClient initialized | url={self.config.api_url} | model={self.config.model}")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx async client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.debug("CompletionClient closed")

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        if not self.config.api_key:
            raise CompletionClientError(
                message="ANTHROPIC_API_KEY is not set",
                error_code="MISSING_API_KEY",
                model=self.config.model
            )
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """
        Send one user prompt and return the text of the first content block.

        Raises:
            CompletionClientError: On any failure
        """
        model = self.config.model
        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": self.config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            body["system"] = system_prompt

        headers = self._headers()
        logger.debug(f"complete | model={model} | prompt_chars={len(prompt)}")

        try:
            client = await self._get_client()
            response = await client.post(
                self.config.api_url,
                json=body,
                headers=headers,
                timeout=httpx.Timeout(self.config.timeout)
            )
            response.raise_for_status()
            data = response.json()

        except httpx.TimeoutException as e:
            raise CompletionClientError(
                message=f"Timeout after {self.config.timeout}s",
                error_code="TIMEOUT",
                model=model,
                original_error=e
            )
        except httpx.HTTPStatusError as e:
            raise CompletionClientError(
                message=f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                error_code=f"HTTP_{e.response.status_code}",
                model=model,
                original_error=e
            )
        except httpx.HTTPError as e:
            raise CompletionClientError(
                message=f"Request failed: {e}",
                error_code="REQUEST_FAILED",
                model=model,
                original_error=e
            )
        except ValueError as e:
            raise CompletionClientError(
                message="Response body is not valid JSON",
                error_code="INVALID_RESPONSE",
                model=model,
                original_error=e
            )

        blocks = data.get("content") or []
        if not blocks or blocks[0].get("type") != "text":
            raise CompletionClientError(
                message="Unexpected response format from completion service",
                error_code="INVALID_RESPONSE",
                model=model,
                context={"stop_reason": data.get("stop_reason")}
            )

        usage = data.get("usage", {})
        logger.info(
            f"complete success | model={model} | "
            f"input_tokens={usage.get('input_tokens', 0)} | output_tokens={usage.get('output_tokens', 0)}"
        )
        return blocks[0]["text"]

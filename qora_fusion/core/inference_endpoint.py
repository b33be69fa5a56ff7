"""
Inference Endpoint - OpenRouter Chat Completions Client
========================================================

The one outbound collaborator of the fusion core:

    POST <base_url>
    body: {model, messages, temperature, max_tokens}
    -> 200 {choices: [{message: {content}}], usage: {...}}
    -> non-200 {error: ...}

Every failure is raised as InferenceError with a category; the invoker turns
it into a failed ModelResponse. Deadlines are applied by the caller through
task cancellation, so the session itself only bounds connection setup.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from qora_fusion.core.errors import ErrorCategory, InferenceError
from qora_fusion.core.fusion_config import EndpointConfig
from qora_fusion.core.fusion_types import GenerationParams

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """Text and token usage returned by one successful call."""
    text: str
    model: str
    usage: Dict[str, Any] = field(default_factory=dict)


class InferenceEndpoint(Protocol):
    """Anything that can run one chat completion for a model id."""

    async def complete(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        params: GenerationParams,
    ) -> CompletionResult:
        ...

    async def close(self) -> None:
        ...


class OpenRouterEndpoint:
    """
    aiohttp client for an OpenRouter-compatible chat completions API.

    One pooled session is created lazily and shared by all concurrent calls.
    """

    def __init__(self, config: Optional[EndpointConfig] = None, api_key: Optional[str] = None) -> None:
        self.config = config or EndpointConfig()
        self._api_key = api_key if api_key is not None else self.config.resolve_api_key()
        self._session: Optional[aiohttp.ClientSession] = None
        if not self._api_key:
            logger.warning(f"No API key in ${self.config.api_key_env}; inference calls will fail")

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                connect=self.config.connect_timeout_s,
            )
            connector = aiohttp.TCPConnector(
                limit=self.config.max_connections,
                ttl_dns_cache=300,
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                connector=connector,
            )
        return self._session

    async def close(self) -> None:
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.config.referer,
            "X-Title": self.config.title,
        }

    async def complete(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        params: GenerationParams,
    ) -> CompletionResult:
        """Run one chat completion, raising InferenceError on any failure."""
        if not self._api_key:
            raise InferenceError(
                category=ErrorCategory.CONFIGURATION,
                message=f"API key not set (${self.config.api_key_env})",
                model_id=model_id,
            )

        payload = {
            "model": model_id,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
        }

        session = await self._get_session()
        try:
            async with session.post(self.config.base_url, json=payload, headers=self._headers()) as response:
                body = await response.text()
                if response.status != 200:
                    raise self._http_error(model_id, response.status, body, response.headers.get("Retry-After"))
                data = json.loads(body)
        except aiohttp.ClientError as e:
            raise InferenceError(
                category=ErrorCategory.NETWORK,
                message=f"{type(e).__name__}: {e}",
                model_id=model_id,
            ) from e
        except json.JSONDecodeError as e:
            raise InferenceError(
                category=ErrorCategory.MALFORMED_RESPONSE,
                message=f"invalid JSON body: {e}",
                model_id=model_id,
            ) from e

        return self._parse_completion(model_id, data)

    def _parse_completion(self, model_id: str, data: Any) -> CompletionResult:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise InferenceError(
                category=ErrorCategory.MALFORMED_RESPONSE,
                message=f"missing choices[0].message.content ({type(e).__name__})",
                model_id=model_id,
            ) from e

        if not isinstance(content, str) or not content.strip():
            raise InferenceError(
                category=ErrorCategory.MALFORMED_RESPONSE,
                message="empty completion",
                model_id=model_id,
            )

        usage = data.get("usage")
        if usage is None:
            usage = {}
        elif not isinstance(usage, dict):
            raise InferenceError(
                category=ErrorCategory.MALFORMED_RESPONSE,
                message=f"usage is {type(usage).__name__}, expected an object",
                model_id=model_id,
            )
        logger.debug(f"{model_id} completed ({len(content)} chars, usage={usage})")
        return CompletionResult(text=content.strip(), model=data.get("model", model_id), usage=usage)

    @staticmethod
    def _http_error(model_id: str, status: int, body: str, retry_after: Optional[str]) -> InferenceError:
        message = body[:200]
        try:
            error = json.loads(body).get("error")
            if isinstance(error, dict):
                message = str(error.get("message", error))
            elif error:
                message = str(error)
        except (ValueError, AttributeError):
            pass

        retry: Optional[float] = None
        if retry_after:
            try:
                retry = float(retry_after)
            except ValueError:
                retry = None

        category = ErrorCategory.RATE_LIMIT if status == 429 else ErrorCategory.HTTP_ERROR
        return InferenceError(
            category=category,
            message=f"HTTP {status}: {message}",
            model_id=model_id,
            status_code=status,
            retry_after=retry,
        )


__all__ = [
    "CompletionResult",
    "InferenceEndpoint",
    "OpenRouterEndpoint",
]

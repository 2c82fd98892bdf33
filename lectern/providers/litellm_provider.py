"""LiteLLM provider implementation for multi-provider streaming."""

import asyncio
import time
from typing import Any, AsyncIterator

import litellm
from litellm import acompletion

from lectern.logging import get_logger, mask_in, mask_secret
from lectern.providers.base import LLMProvider, LLMResponse, StreamOptions

logger = get_logger("lectern.providers.litellm")


# Standard OpenAI chat-completion message keys; extras are stripped for strict providers.
_ALLOWED_MSG_KEYS = frozenset({"role", "content", "name"})

_GOOGLE_SEARCH_TOOL = {"googleSearch": {}}
_THINKING_BUDGET_TOKENS = 1024


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Gemini-specific switches (live Google Search grounding, context caches,
    thought summaries) are passed through LiteLLM's Gemini integration.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gemini/gemini-2.5-flash",
        extra_headers: dict[str, str] | None = None,
        max_tokens: int = 8192,
        temperature: float = 0.7,
        timeout: float | None = None,
        max_retries: int = 0,
        circuit_breaker_threshold: int = 0,
        circuit_breaker_cooldown: float = 60.0,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries

        # Resilience: circuit-breaker
        self.circuit_breaker_threshold = circuit_breaker_threshold
        self.circuit_breaker_cooldown = circuit_breaker_cooldown
        self._consecutive_failures: int = 0
        self._circuit_open_until: float = 0.0

        if api_key:
            logger.info("provider_initialized", model=default_model, api_key=mask_secret(api_key))

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers (e.g. thinking on non-reasoning models)
        litellm.drop_params = True

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Strip non-standard keys and replace empty content that strict providers reject."""
        sanitized = []
        for msg in messages:
            clean = {k: v for k, v in msg.items() if k in _ALLOWED_MSG_KEYS}
            if clean.get("content") in (None, ""):
                clean["content"] = "(empty)"
            sanitized.append(clean)
        return sanitized

    @staticmethod
    def _value(obj: Any, key: str, default: Any = None) -> Any:
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)

    @classmethod
    def _extract_delta_text(cls, delta: Any) -> str:
        content = cls._value(delta, "content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                text = cls._value(item, "text")
                if isinstance(text, str) and text:
                    parts.append(text)
            return "".join(parts)
        return ""

    @classmethod
    def _extract_delta_thinking(cls, delta: Any) -> str:
        reasoning = cls._value(delta, "reasoning_content")
        return reasoning if isinstance(reasoning, str) else ""

    @classmethod
    def _usage_dict(cls, usage: Any) -> dict[str, int]:
        result = {
            "prompt_tokens": int(cls._value(usage, "prompt_tokens", 0) or 0),
            "completion_tokens": int(cls._value(usage, "completion_tokens", 0) or 0),
            "total_tokens": int(cls._value(usage, "total_tokens", 0) or 0),
        }
        details = cls._value(usage, "prompt_tokens_details")
        cached = cls._value(details, "cached_tokens") if details is not None else None
        if cached:
            result["cached_tokens"] = int(cached)
        return result

    def _check_circuit_breaker(self) -> str | None:
        """Return an error message if the circuit is open, else None."""
        if self.circuit_breaker_threshold <= 0:
            return None
        if self._consecutive_failures < self.circuit_breaker_threshold:
            return None
        now = time.monotonic()
        if now < self._circuit_open_until:
            return (
                f"Circuit breaker open: {self._consecutive_failures} consecutive failures. "
                f"Retry after {int(self._circuit_open_until - now)}s cooldown."
            )
        # Cooldown over: half-open, let one call through
        return None

    def _record_result(self, success: bool) -> None:
        """Update circuit-breaker counters after a call."""
        if self.circuit_breaker_threshold <= 0:
            return
        if success:
            self._consecutive_failures = 0
            self._circuit_open_until = 0.0
        else:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.circuit_breaker_threshold:
                self._circuit_open_until = time.monotonic() + self.circuit_breaker_cooldown
                logger.warning(
                    "circuit_breaker_opened",
                    failures=self._consecutive_failures,
                    cooldown=self.circuit_breaker_cooldown,
                )

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: StreamOptions,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            "max_tokens": max(1, options.max_tokens or self.max_tokens),
            "temperature": self.temperature if options.temperature is None else options.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if self.timeout:
            kwargs["request_timeout"] = self.timeout
        if self.max_retries:
            kwargs["num_retries"] = self.max_retries

        tools: list[dict[str, Any]] = []
        if options.enable_search:
            tools.append(dict(_GOOGLE_SEARCH_TOOL))
        if options.enable_tools and options.tools:
            tools.extend(options.tools)
        if tools:
            kwargs["tools"] = tools
        if options.cached_content:
            kwargs["cached_content"] = options.cached_content
        if options.include_thoughts:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": _THINKING_BUDGET_TOKENS}
        return kwargs

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        options: StreamOptions | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream chat completion as provider-agnostic events."""
        model = model or self.default_model
        options = options or StreamOptions()
        kwargs = self._build_kwargs(messages, model, options)

        content_parts: list[str] = []
        thinking_parts: list[str] = []
        final_finish_reason = "stop"
        final_usage: dict[str, int] = {}
        used_model = model
        stream: Any = None

        try:
            cb_error = self._check_circuit_breaker()
            if cb_error:
                yield {
                    "type": "done",
                    "response": LLMResponse(content=f"Error calling LLM: {cb_error}", finish_reason="error"),
                }
                return

            coro = acompletion(**kwargs)
            if self.timeout:
                stream = await asyncio.wait_for(coro, timeout=self.timeout + 30)
            else:
                stream = await coro

            async for chunk in stream:
                chunk_model = self._value(chunk, "model")
                if isinstance(chunk_model, str) and chunk_model:
                    used_model = chunk_model
                usage = self._value(chunk, "usage")
                if usage is not None:
                    final_usage = self._usage_dict(usage)

                choices = self._value(chunk, "choices") or []
                if not choices:
                    continue
                choice = choices[0]
                finish_reason = self._value(choice, "finish_reason")
                if isinstance(finish_reason, str) and finish_reason:
                    final_finish_reason = finish_reason

                delta = self._value(choice, "delta") or {}
                thought = self._extract_delta_thinking(delta)
                if thought:
                    thinking_parts.append(thought)
                    yield {"type": "thinking_delta", "delta": thought}
                text = self._extract_delta_text(delta)
                if text:
                    content_parts.append(text)
                    yield {"type": "text_delta", "delta": text}

            self._record_result(True)
            yield {
                "type": "done",
                "response": LLMResponse(
                    content="".join(content_parts) or None,
                    finish_reason=final_finish_reason or "stop",
                    usage=final_usage,
                    reasoning_content="".join(thinking_parts) or None,
                    model=used_model,
                ),
            }
        except asyncio.TimeoutError:
            self._record_result(False)
            logger.error("llm_stream_timeout", model=model)
            yield {
                "type": "done",
                "response": LLMResponse(
                    content="Error calling LLM: request timed out",
                    finish_reason="error",
                ),
            }
        except Exception as e:
            self._record_result(False)
            error_msg = mask_in(str(e), self.api_key)
            logger.error("llm_stream_failed", model=model, error=error_msg)
            yield {
                "type": "done",
                "response": LLMResponse(
                    content=f"Error calling LLM: {error_msg}",
                    finish_reason="error",
                ),
            }
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("llm_stream_close_failed", model=model)

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model

# concierge/clients/openai_client.py
#
# Single integration layer for the chat completions endpoint (OpenRouter by
# default, any OpenAI-compatible base URL works). Retries, error
# classification and cost extraction live here; callers only see LLMResponse,
# Completion or one of the errors from concierge.core.errors.

from dataclasses import dataclass, field
import random
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import openai
from openai import OpenAI

from concierge.config.settings import Settings
from concierge.core.errors import TransientUpstreamError, UpstreamError
from concierge.memory.models import ABSENT, OpaquePayload, ToolCall
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: Optional[float] = None


@dataclass
class LLMResponse:
    """Either final text, or tool calls plus the opaque reasoning to echo back."""
    text: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    reasoning: OpaquePayload = ABSENT
    usage: Usage = field(default_factory=Usage)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class Completion:
    text: str
    usage: Usage = field(default_factory=Usage)


# ---------------------------------------------------------------------------
# Request ids, backoff and error classification
# ---------------------------------------------------------------------------

def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _is_transient_status(code: int) -> bool:
    return code in TRANSIENT_STATUS


def backoff_delay(attempt_idx: int) -> float:
    base = 0.4 * (2 ** max(0, attempt_idx - 1))
    jitter = random.uniform(0.0, 0.25)
    return min(3.0, base + jitter)


def _classify_openai_error(e: Exception) -> Tuple[str, bool]:
    """Return (code, transient) for an exception raised by the SDK."""
    if isinstance(e, openai.APITimeoutError):
        return "openai_timeout", True
    if isinstance(e, openai.APIConnectionError):
        return "openai_network", True
    if isinstance(e, openai.AuthenticationError):
        return "openai_auth", False
    if isinstance(e, openai.RateLimitError):
        return "openai_rate_limit", True
    if isinstance(e, openai.APIStatusError):
        status = int(getattr(e, "status_code", 0) or 0)
        return f"openai_{status}", _is_transient_status(status)

    msg = (str(e) or "").lower()
    if "timeout" in msg or "timed out" in msg:
        return "openai_timeout", True
    return "openai_unknown", False


def _safe_host_from_url(url: str) -> str:
    u = (url or "").strip().replace("https://", "").replace("http://", "")
    return u.split("/")[0] or "unknown-host"


class LLMClient:
    def __init__(
        self,
        settings: Settings,
        client: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if client is None:
            api_key = (settings.openai_api_key or "").strip()
            if not api_key:
                # Hard fail early: nothing will work without this
                raise RuntimeError("OPENAI_API_KEY is not set in .env or environment")
            # Retries are handled here so attempts and backoff are logged uniformly
            client = OpenAI(
                api_key=api_key,
                base_url=settings.openai_base_url,
                timeout=settings.openai_timeout_seconds,
                max_retries=0,
            )
        self.settings = settings
        self.client = client
        self._sleep = sleep
        self._max_attempts = max(1, settings.openai_max_attempts)
        self._is_openrouter = "openrouter" in (settings.openai_base_url or "")
        logger.info("LLM client ready host=%s model=%s summary_model=%s",
                    _safe_host_from_url(settings.openai_base_url), settings.model, settings.summary_model)

    # ------------------------------------------------------------------
    # Public calls
    # ------------------------------------------------------------------

    def chat(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        reasoning_effort: Optional[str] = None,
    ) -> LLMResponse:
        """
        Send one turn-loop request. `messages` are already in chat completions
        format; the system prompt is prepended here.
        """
        model = self.settings.model
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}] + messages,
        }
        if tools:
            kwargs["tools"] = tools
        kwargs.update(self._extra(reasoning_effort or self.settings.reasoning_effort))

        resp = self._create_with_retry("chat", kwargs)
        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise UpstreamError("The model returned no choices.", code="no_choices")

        msg = choices[0].message
        usage = self._usage(resp)
        raw_calls = getattr(msg, "tool_calls", None) or []
        if raw_calls:
            calls = tuple(
                ToolCall(
                    id=c.id,
                    name=c.function.name,
                    arguments=c.function.arguments or "{}",
                )
                for c in raw_calls
            )
            extra = getattr(msg, "model_extra", None) or {}
            reasoning = OpaquePayload.from_value(extra.get("reasoning_details"))
            return LLMResponse(text=msg.content or "", tool_calls=calls, reasoning=reasoning, usage=usage)

        return LLMResponse(text=(msg.content or "").strip(), usage=usage)

    def complete(self, system_prompt: str, user_prompt: str, max_tokens: int = 2000) -> Completion:
        """Plain single-shot completion used for summaries and archive search."""
        kwargs: Dict[str, Any] = {
            "model": self.settings.summary_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": 0.3,
        }
        kwargs.update(self._extra(None))
        resp = self._create_with_retry("complete", kwargs)
        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise UpstreamError("The model returned no choices.", code="no_choices")
        return Completion(text=(choices[0].message.content or "").strip(), usage=self._usage(resp))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _extra(self, reasoning_effort: Optional[str]) -> Dict[str, Any]:
        if not self._is_openrouter:
            return {}
        body: Dict[str, Any] = {"usage": {"include": True}}
        if reasoning_effort:
            body["reasoning"] = {"effort": reasoning_effort}
        return {"extra_body": body}

    def _usage(self, resp: Any) -> Usage:
        raw = getattr(resp, "usage", None)
        if raw is None:
            return Usage()
        prompt = int(getattr(raw, "prompt_tokens", 0) or 0)
        completion = int(getattr(raw, "completion_tokens", 0) or 0)
        cost = getattr(raw, "cost", None)
        if cost is None:
            extra = getattr(raw, "model_extra", None) or {}
            cost = extra.get("cost")
        if cost is None and (self.settings.prompt_price_per_mtok or self.settings.completion_price_per_mtok):
            cost = (prompt * self.settings.prompt_price_per_mtok
                    + completion * self.settings.completion_price_per_mtok) / 1_000_000
        return Usage(prompt_tokens=prompt, completion_tokens=completion,
                     cost_usd=float(cost) if cost is not None else None)

    def _create_with_retry(self, kind: str, kwargs: Dict[str, Any]) -> Any:
        req_id = _mk_req_id(kind)
        last_err: Optional[Exception] = None
        last_code = "openai_unknown"
        transient = False

        logger.info("[%s] req_id=%s start model=%s msg_count=%d tools=%d",
                    kind, req_id, kwargs.get("model"), len(kwargs.get("messages", [])),
                    len(kwargs.get("tools") or []))

        for attempt in range(1, self._max_attempts + 1):
            t0 = time.monotonic()
            try:
                resp = self.client.chat.completions.create(**kwargs)
                dt_ms = int((time.monotonic() - t0) * 1000)
                logger.info("[%s] req_id=%s OK attempt=%d latency_ms=%d", kind, req_id, attempt, dt_ms)
                return resp
            except Exception as e:
                last_err = e
                dt_ms = int((time.monotonic() - t0) * 1000)
                last_code, transient = _classify_openai_error(e)

                logger.warning("[%s] req_id=%s FAIL attempt=%d/%d latency_ms=%d code=%s transient=%s err=%s",
                               kind, req_id, attempt, self._max_attempts, dt_ms, last_code, transient, str(e))

                if attempt >= self._max_attempts or not transient:
                    break

                self._sleep(backoff_delay(attempt))

        logger.error("[%s] req_id=%s failed after retries. last_code=%s last_err=%r",
                     kind, req_id, last_code, last_err)
        if transient:
            raise TransientUpstreamError("The model provider is unavailable right now.", code=last_code) from last_err
        raise UpstreamError("The model provider rejected the request.", code=last_code) from last_err

import asyncio
import logging
import threading
import random
import time
import traceback
from typing import Callable, TypeVar, Any, Dict, List, Optional

from openai import OpenAI
from langchain_core.messages import BaseMessage, HumanMessage, AIMessage, SystemMessage

from studyplan.model_props import ProviderSettings, ProviderConfigError

T = TypeVar("T")

logger = logging.getLogger("studyplan_backend")


class MaxRetryErrorsException(Exception):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_rate_limited_error(e: Exception) -> bool:
    if getattr(e, "status_code", None) == 429:
        return True
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Rate limit" in msg
            or "Too Many Requests" in msg
        )
    )


def _respect_global_backoff() -> None:
    while True:
        with _global_backoff_lock:
            now = time.monotonic()
            wait = _global_wait_until - now
        if wait <= 0:
            return
        time.sleep(min(wait, 1.0))


def _register_429_and_get_delay() -> float:
    global _global_wait_until, _global_backoff_seconds

    with _global_backoff_lock:
        now = time.monotonic()
        base = _global_backoff_seconds
        delay = random.uniform(base * 0.95, base * 1.35)
        _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
        _global_wait_until = max(_global_wait_until, now + delay)
        return delay


def _reset_backoff_on_success() -> None:
    global _global_backoff_seconds
    with _global_backoff_lock:
        _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)


def reset_global_backoff() -> None:
    global _global_wait_until, _global_backoff_seconds
    with _global_backoff_lock:
        _global_wait_until = 0.0
        _global_backoff_seconds = 30.0


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.
    """
    last_exception: Exception | None = None

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_rate_limited_error(e) or _is_timeout_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class ChatLlmClient:
    """
    Chat wrapper over the OpenAI-compatible OpenRouter endpoint:

        chat_llm = ChatLlmClient(build_provider_settings(model="google/gemini-2.0-flash"))
        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...)])

    The settings carry the resolved model id and the pinned base URL; this
    class only composes them with the generic client.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        timeout: float | None = None,
        client: Any = None,
    ):
        if not settings.model:
            raise ProviderConfigError("ChatLlmClient: empty model name")
        self.settings = settings
        self.model_name = settings.model
        self.last_usage: Optional[Dict[str, int]] = None

        if timeout is None and settings.http_options is not None:
            timeout = settings.http_options.timeout
        self._timeout = timeout

        if client is not None:
            self._client = client
        else:
            client_kwargs: Dict[str, Any] = {
                "api_key": settings.api_key,
                "base_url": settings.base_url,
                "default_headers": settings.default_headers(),
                "max_retries": 0,
            }
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _merge_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        inc = {
            "prompt_token_count": getattr(usage, "prompt_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "completion_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
        }
        if self.last_usage is None:
            self.last_usage = inc
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "system"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def _request_kwargs(self) -> Dict[str, Any]:
        kwargs = dict(self.settings.parameters)
        if self.settings.strict_response:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _invoke_once(self, messages: List[BaseMessage]) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        resp = self._client.chat.completions.create(
            model=self.model_name,
            messages=self._to_openai_messages(messages),
            **self._request_kwargs(),
        )
        self._merge_usage(resp)

        choices = getattr(resp, "choices", None) or []
        if not choices:
            return ""
        text = getattr(choices[0].message, "content", "") or ""
        return text.strip()

    def invoke(
        self,
        messages: List[BaseMessage] | str,
        *,
        retries: int = 3,
    ) -> str:
        """
        Synchronous chat call with global 429/timeout backoff + retries.
        A plain string is sent as a single user message.
        """
        if isinstance(messages, str):
            messages = [HumanMessage(content=messages)]
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            retries=retries,
            log=lambda msg: logger.warning(f"[CHAT-LLM-RETRY] {msg}"),
        )

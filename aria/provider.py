"""Provider client: one chat-completion exchange through LiteLLM."""

import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Callable, Protocol

from .conversation import Conversation, ToolCall
from .report import (
    Cancelled,
    ConfigError,
    ContextOverflowError,
    FatalProviderError,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "anthropic"
DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"
DEFAULT_REQUEST_TIMEOUT = 300
_CANCEL_POLL_INTERVAL = 0.05

# provider -> (environment variable holding the key, default model)
PROVIDERS: dict[str, tuple[str | None, str | None]] = {
    "anthropic": ("ANTHROPIC_API_KEY", "claude-3-7-sonnet-20250219"),
    "openai": ("OPENAI_API_KEY", None),
    "openrouter": ("OPENROUTER_API_KEY", None),
    "lmstudio": (None, None),
}

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ProviderResponse:
    text: str | None
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    usage: dict | None = field(default=None, compare=False)


class ProviderClient(Protocol):
    def send(
        self,
        conversation: Conversation,
        tools: list[dict],
        *,
        max_output_tokens: int,
        cancel: threading.Event | None = None,
        on_text: Callable[[str], None] | None = None,
    ) -> ProviderResponse: ...


def resolve_provider(
    provider: str | None,
    model: str | None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> tuple[str, str, str | None, str | None]:
    """Validate provider settings and fill in defaults.

    Returns (provider, model, api_key, base_url). Raises ConfigError when a
    setting is missing or unknown.
    """
    provider = provider or DEFAULT_PROVIDER
    if provider not in PROVIDERS:
        raise ConfigError(
            f"unknown provider {provider!r}; choose one of {', '.join(PROVIDERS)}"
        )
    env_var, default_model = PROVIDERS[provider]

    model = model or default_model
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")

    if env_var is not None:
        api_key = api_key or os.environ.get(env_var)
        if not api_key:
            raise ConfigError(
                f"no API key for {provider}: set {env_var} or pass --api-key"
            )
    if provider == "lmstudio":
        base_url = base_url or DEFAULT_LMSTUDIO_URL

    return provider, model, api_key, base_url


def model_string(provider: str, model: str) -> str:
    """The LiteLLM model string for a provider/model pair."""
    if provider == "openrouter":
        # Only strip the prefix if the user already included the LiteLLM
        # "openrouter/" prefix (i.e. "openrouter/openrouter/free"). Don't strip
        # org names like "openrouter" in "openrouter/free".
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        return f"openrouter/{bare_id}"
    if provider == "lmstudio":
        return f"openai/{model}"
    return f"{provider}/{model.removeprefix(provider + '/')}"


def model_context_length(provider: str, model: str) -> int | None:
    """Context window size LiteLLM knows for the model, or None."""
    import litellm

    try:
        info = litellm.get_model_info(model_string(provider, model))
    except Exception:
        # Unknown models (local ones in particular) are not in the price map.
        return None
    return info.get("max_input_tokens") or info.get("max_tokens")


def clamp_output_tokens(
    conversation: Conversation,
    tools: list | None,
    context_length: int | None,
    requested_max_output: int,
) -> int:
    """Reduce max_output_tokens if prompt + output would exceed context."""
    if context_length is None:
        return requested_max_output
    prompt_tokens = conversation.estimate_tokens(tools)
    available = context_length - prompt_tokens
    if available < 1:
        return 1  # Nearly full; use minimal budget and let overflow retry handle it
    return min(requested_max_output, available)


# -- Error classification ----------------------------------------------------


def _retry_after_seconds(err: Exception) -> float | None:
    """Seconds the server asked us to wait (Retry-After), or None."""
    resp = getattr(err, "response", None)
    headers = getattr(resp, "headers", None) or getattr(
        err, "litellm_response_headers", None
    )
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    if not value:
        return None
    value = str(value).strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, dt.timestamp() - time.time())


def classify_error(err: Exception) -> ProviderError:
    """Map a LiteLLM (or transport) exception to transient or fatal."""
    import litellm

    if isinstance(err, litellm.ContextWindowExceededError):
        return ContextOverflowError("context window exceeded (typed)")
    if isinstance(err, litellm.BadRequestError):
        if _CONTEXT_OVERFLOW_RE.search(str(err)):
            return ContextOverflowError(f"context window exceeded (inferred): {err}")
        return FatalProviderError(f"request rejected: {err}")
    if isinstance(
        err,
        (
            litellm.AuthenticationError,
            litellm.PermissionDeniedError,
            litellm.NotFoundError,
        ),
    ):
        return FatalProviderError(f"{type(err).__name__}: {err}")
    if isinstance(
        err,
        (
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.RateLimitError,
            litellm.InternalServerError,
            litellm.ServiceUnavailableError,
            TimeoutError,
            ConnectionError,
        ),
    ):
        return TransientProviderError(
            f"{type(err).__name__}: {err}", retry_after=_retry_after_seconds(err)
        )

    status = getattr(err, "status_code", None)
    if isinstance(status, int):
        if status in (408, 429) or status >= 500:
            return TransientProviderError(
                f"HTTP {status}: {err}", retry_after=_retry_after_seconds(err)
            )
        return FatalProviderError(f"HTTP {status}: {err}")
    return FatalProviderError(f"model call failed: {err}")


# -- Client ------------------------------------------------------------------


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _usage_dict(usage) -> dict | None:
    if usage is None:
        return None
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", None),
        "completion_tokens": getattr(usage, "completion_tokens", None),
    }


def _close_stream(stream) -> None:
    for target in (stream, getattr(stream, "completion_stream", None)):
        close = getattr(target, "close", None)
        if callable(close):
            try:
                close()
            except Exception as exc:
                logger.debug("closing stream failed: %s", exc)


def _completion(litellm, kwargs: dict, cancel: threading.Event | None):
    """Run litellm.completion, giving up as soon as ``cancel`` is set.

    The request runs on a daemon thread; a response that arrives after
    cancellation is dropped (and a stream closed) by that thread.
    """
    if cancel is None:
        return litellm.completion(**kwargs)

    done = threading.Event()
    outcome: dict = {}
    abandoned = threading.Event()

    def worker():
        try:
            outcome["response"] = litellm.completion(**kwargs)
        except BaseException as exc:
            outcome["error"] = exc
        finally:
            done.set()
            if abandoned.is_set() and "response" in outcome:
                _close_stream(outcome["response"])

    threading.Thread(target=worker, name="aria-completion", daemon=True).start()
    try:
        while not done.wait(_CANCEL_POLL_INTERVAL):
            if cancel.is_set():
                raise Cancelled("cancelled while waiting for the model")
    except (Cancelled, KeyboardInterrupt):
        abandoned.set()
        if done.is_set() and "response" in outcome:
            _close_stream(outcome["response"])
        raise
    if "error" in outcome:
        raise outcome["error"]
    return outcome["response"]


class LiteLLMProvider:
    """ProviderClient over litellm.completion.

    Stateless between calls: everything the model needs is rebuilt from
    the conversation on every send().
    """

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        stream: bool = True,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.stream = stream
        self.request_timeout = request_timeout
        self.model_str = model_string(provider, model)

    def _transport_kwargs(self) -> dict:
        if self.provider == "lmstudio":
            base = (self.base_url or DEFAULT_LMSTUDIO_URL).rstrip("/")
            return {"api_base": f"{base}/v1", "api_key": self.api_key or "lm-studio"}
        kwargs: dict = {"api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs

    def send(
        self,
        conversation: Conversation,
        tools: list[dict],
        *,
        max_output_tokens: int,
        cancel: threading.Event | None = None,
        on_text: Callable[[str], None] | None = None,
    ) -> ProviderResponse:
        import litellm

        litellm.suppress_debug_info = True

        completion_kwargs = dict(
            model=self.model_str,
            messages=conversation.to_messages(),
            max_tokens=max_output_tokens,
            timeout=self.request_timeout,
            **self._transport_kwargs(),
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            completion_kwargs["temperature"] = self.temperature
        if self.stream:
            completion_kwargs["stream"] = True

        logger.debug(
            "calling %s with max_tokens=%d, %d messages",
            self.model_str,
            max_output_tokens,
            len(completion_kwargs["messages"]),
        )

        if cancel is not None and cancel.is_set():
            raise Cancelled("cancelled before the request was sent")
        try:
            response = _completion(litellm, completion_kwargs, cancel)
        except Exception as exc:
            raise classify_error(exc) from exc

        if self.stream:
            return self._consume_stream(response, cancel, on_text)

        if cancel is not None and cancel.is_set():
            raise Cancelled("cancelled while waiting for the model")
        choice = response.choices[0]
        message = choice.message
        calls = tuple(
            ToolCall.from_raw(
                tc.id or new_call_id(), tc.function.name, tc.function.arguments
            )
            for tc in (getattr(message, "tool_calls", None) or [])
        )
        return ProviderResponse(
            text=message.content or None,
            tool_calls=calls,
            finish_reason=choice.finish_reason,
            usage=_usage_dict(getattr(response, "usage", None)),
        )

    def _consume_stream(self, stream, cancel, on_text) -> ProviderResponse:
        """Assemble text and tool-call fragments from a streamed response."""
        text_parts: list[str] = []
        fragments: dict[int, dict] = {}
        finish_reason = None
        usage = None
        try:
            for chunk in stream:
                if cancel is not None and cancel.is_set():
                    raise Cancelled("cancelled while streaming the response")
                if getattr(chunk, "usage", None) is not None:
                    usage = _usage_dict(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = choice.delta
                if delta is None:
                    continue
                if delta.content:
                    text_parts.append(delta.content)
                    if on_text is not None:
                        on_text(delta.content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    index = tc.index if tc.index is not None else len(fragments)
                    frag = fragments.setdefault(
                        index, {"id": None, "name": "", "arguments": []}
                    )
                    if tc.id:
                        frag["id"] = tc.id
                    fn = tc.function
                    if fn is not None:
                        if fn.name:
                            frag["name"] = fn.name
                        if fn.arguments:
                            frag["arguments"].append(fn.arguments)
        except Cancelled:
            _close_stream(stream)
            raise
        except KeyboardInterrupt:
            _close_stream(stream)
            raise
        except Exception as exc:
            _close_stream(stream)
            raise classify_error(exc) from exc

        calls = tuple(
            ToolCall.from_raw(
                frag["id"] or new_call_id(), frag["name"], "".join(frag["arguments"])
            )
            for _, frag in sorted(fragments.items())
        )
        return ProviderResponse(
            text="".join(text_parts) or None,
            tool_calls=calls,
            finish_reason=finish_reason,
            usage=usage,
        )

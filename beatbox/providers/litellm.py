from __future__ import annotations

import asyncio
import atexit
import json
import logging
import warnings
from collections.abc import Mapping
from threading import Event, Lock, Thread
from typing import Any, Coroutine

from json_repair import repair_json  # type: ignore[import]
from pydantic import BaseModel, ValidationError

from ..config import PatternResult
from ..errors import PatternFormatError, PatternGenerateError, PatternTransportError
from ..patterns import EXTERNAL_PREFIX, build_pattern_prompt, build_user_message

_DEFAULT_TEMPERATURE = 0.7
_LOGGER = logging.getLogger("beatbox.providers.litellm")
_RESERVED_LITELLM_KWARGS = frozenset({"model", "messages", "response_format", "api_key"})


class _ClientLoop:
    """Event loop on a daemon thread that every LiteLLM call runs on.

    LiteLLM caches async HTTP clients per loop; routing all requests through
    one long-lived loop keeps those clients valid across ``asyncio.run`` calls.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: Thread | None = None
        self._ready = Event()
        self._lock = Lock()

    def get(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._ready.clear()
                self._thread = Thread(target=self._serve, name=self._name, daemon=True)
                self._thread.start()
                self._ready.wait()
                atexit.register(self.shutdown)
            assert self._loop is not None
            return self._loop

    def _serve(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            loop.close()

    def shutdown(self) -> None:
        loop, thread = self._loop, self._thread
        if loop is None or thread is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=1.0)

    async def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        loop = self.get()
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            return await coro
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            future.cancel()
            raise


_CLIENT_LOOP = _ClientLoop("beatbox-litellm-loop")
_quiet_litellm = False


def _silence_litellm(litellm_module: Any) -> None:
    global _quiet_litellm
    if _quiet_litellm:
        return
    _quiet_litellm = True
    # Prompts and replies stay out of LiteLLM's own logs.
    litellm_module.turn_off_message_logging = True
    litellm_module.suppress_debug_info = True
    warnings.filterwarnings("ignore", message="Pydantic serializer warnings")


def _extract_json_payload(content: str) -> str | None:
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return content[start : end + 1]


def _content_snippet(content: str, limit: int = 200) -> str:
    cleaned = content.strip()
    if len(cleaned) <= limit:
        return cleaned
    return f"{cleaned[:limit]}..."


def parse_pattern_payload(payload: str) -> PatternResult:
    """Decode a JSON reply into a sanitized result.

    Raises ``ValueError`` (including pydantic's ``ValidationError``) when the
    text is not a JSON object or its fields cannot be interpreted.
    """
    data = json.loads(payload)
    if not isinstance(data, Mapping):
        raise ValueError("pattern payload must be a JSON object")
    return PatternResult.from_payload(data)


class _LiteLLMRequest(BaseModel):
    model: str
    messages: list[dict[str, str]]
    temperature: float | None = None
    api_key: str | None = None


class LiteLLMPatternAdapter:
    """Pattern-generation client for any chat model LiteLLM can reach."""

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        litellm_kwargs: Mapping[str, Any] | None = None,
        temperature: float | None = _DEFAULT_TEMPERATURE,
        system_prompt: str | None = None,
    ) -> None:
        if model.startswith(EXTERNAL_PREFIX):
            model = model.removeprefix(EXTERNAL_PREFIX)
        self._model = model
        self._api_key = api_key
        self._litellm_kwargs = dict(litellm_kwargs or {})
        self._temperature = temperature
        self._system_prompt = system_prompt
        self._base_prompt = build_pattern_prompt()
        if self._api_key is None:
            _LOGGER.debug("No API key provided; letting LiteLLM read from env vars.")
        invalid_keys = _RESERVED_LITELLM_KWARGS.intersection(self._litellm_kwargs)
        if invalid_keys:
            keys = ", ".join(sorted(invalid_keys))
            raise PatternGenerateError(f"litellm_kwargs cannot override: {keys}")

    @property
    def model(self) -> str:
        return self._model

    def build_messages(self, prompt: str) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = [{"role": "system", "content": self._base_prompt}]
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": build_user_message(prompt)})
        return messages

    async def generate(self, prompt: str) -> PatternResult:
        try:
            import litellm  # type: ignore[import]
        except ImportError as exc:
            _LOGGER.warning("LiteLLM not installed: %s", exc)
            raise PatternTransportError("litellm is not installed") from exc

        _silence_litellm(litellm)
        request = _LiteLLMRequest(
            model=self._model,
            messages=self.build_messages(prompt),
            temperature=self._temperature,
            api_key=self._api_key or None,
        ).model_dump(exclude_none=True)
        request["response_format"] = {"type": "json_object"}
        request.update(self._litellm_kwargs)

        try:
            response: Any = await _CLIENT_LOOP.run(litellm.acompletion(**request))
        except Exception as exc:
            _LOGGER.warning("LiteLLM request failed: %s", exc, exc_info=True)
            raise PatternTransportError(str(exc)) from exc

        choices = getattr(response, "choices", None)
        if not choices:
            raise PatternFormatError("LiteLLM response missing choices")
        raw_content = choices[0].message.content
        if not isinstance(raw_content, str) or not raw_content.strip():
            raise PatternFormatError("LiteLLM returned empty content")
        content = raw_content.strip()

        try:
            return parse_pattern_payload(content)
        except ValidationError as exc:
            snippet = _content_snippet(content)
            _LOGGER.warning("LiteLLM returned an invalid pattern: %s", snippet)
            raise PatternFormatError(f"LiteLLM returned an invalid pattern: {snippet}") from exc
        except ValueError as exc:
            recovered = self._recover(content)
            if recovered is not None:
                return recovered
            snippet = _content_snippet(content) or "<empty>"
            _LOGGER.warning("LiteLLM returned invalid JSON: %s", snippet)
            raise PatternFormatError(f"LiteLLM returned non-JSON content: {snippet}") from exc

    def _recover(self, content: str) -> PatternResult | None:
        extracted = _extract_json_payload(content)
        if extracted:
            try:
                return parse_pattern_payload(extracted)
            except ValueError:
                _LOGGER.warning("LiteLLM returned invalid JSON after extraction.", exc_info=True)
        try:
            return parse_pattern_payload(repair_json(content))
        except ValueError:
            _LOGGER.warning("LiteLLM returned invalid JSON after repair.", exc_info=True)
        return None

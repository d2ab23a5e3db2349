"""Language-model backend used by the pipeline stages.

Calls go through ``langchain-openai``'s ``ChatOpenAI`` against whichever
OpenAI-compatible provider the :class:`ModelRouter` selects. Failures are
classified into transient (network, overload, rate limiting upstream) and
terminal (rejected input, auth, content policy) so the orchestrator can map
them to retryable / non-retryable errors. The backend never retries.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import openai
import requests
from langchain_openai import ChatOpenAI

from ..domain.models import ModelTier, Stage
from .model_router import ModelRouter


LOG = logging.getLogger("genstream.llm")

ChunkCallback = Callable[[str], None]

_TRANSIENT_STATUS = {408, 409, 429, 500, 502, 503, 504, 529}


class BackendError(Exception):
    retryable = False


class BackendTransientError(BackendError):
    retryable = True


class BackendTerminalError(BackendError):
    retryable = False


class BackendUnavailableError(BackendError):
    """No provider is configured for the requested stage."""


@dataclass
class BackendReply:
    text: str
    input_tokens: int
    output_tokens: int
    model: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class StageBackend(Protocol):
    def complete(
        self,
        stage: Stage,
        messages: List[Dict[str, str]],
        *,
        tier: ModelTier = "balanced",
        on_chunk: Optional[ChunkCallback] = None,
    ) -> BackendReply: ...


def classify_backend_error(exc: BaseException) -> BackendError:
    """Map an SDK / transport exception onto the backend error taxonomy."""

    if isinstance(exc, BackendError):
        return exc
    if isinstance(exc, (openai.APIConnectionError, requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return BackendTransientError(str(exc) or exc.__class__.__name__)
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code in _TRANSIENT_STATUS:
            return BackendTransientError(f"{exc.status_code}: {exc.message}")
        return BackendTerminalError(f"{exc.status_code}: {exc.message}")
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return BackendTransientError(str(exc) or exc.__class__.__name__)
    return BackendTerminalError(str(exc) or exc.__class__.__name__)


def _approx_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0


def _usage_from(message: Any) -> Dict[str, int]:
    usage = getattr(message, "usage_metadata", None) or {}
    return {
        "input": int(usage.get("input_tokens") or 0),
        "output": int(usage.get("output_tokens") or 0),
    }


class LangChainBackend:
    """``ChatOpenAI`` backend; one client per (provider, model)."""

    def __init__(self, router: Optional[ModelRouter] = None, temperature: float = 0.2) -> None:
        self._router = router or ModelRouter()
        self._temperature = temperature
        self._clients: Dict[tuple, Any] = {}

    def _client_for(self, stage: Stage, tier: ModelTier) -> tuple[Any, str]:
        try:
            selection = self._router.select_provider(stage, tier)
        except RuntimeError as exc:
            raise BackendUnavailableError(str(exc)) from exc

        key = (selection.name, selection.model)
        client = self._clients.get(key)
        if client is None:
            api_key = os.getenv(selection.api_key_env) if selection.api_key_env else None
            base_url = selection.default_base_url
            if selection.base_url_env:
                base_url = os.getenv(selection.base_url_env, base_url or "")
            LOG.info(
                "Using LLM provider name=%s model=%s base_url=%s",
                selection.name,
                selection.model,
                base_url,
            )
            client = ChatOpenAI(
                api_key=api_key or "not-needed",
                base_url=base_url,
                model=selection.model,
                temperature=self._temperature,
                max_retries=0,
                stream_usage=True,
            )
            self._clients[key] = client
        return client, selection.model

    def complete(
        self,
        stage: Stage,
        messages: List[Dict[str, str]],
        *,
        tier: ModelTier = "balanced",
        on_chunk: Optional[ChunkCallback] = None,
    ) -> BackendReply:
        client, model = self._client_for(stage, tier)
        try:
            if on_chunk is None:
                res = client.invoke(messages)
                text = res.content if hasattr(res, "content") else str(res)
                usage = _usage_from(res)
            else:
                parts: List[str] = []
                usage = {"input": 0, "output": 0}
                for chunk in client.stream(messages):
                    token = chunk.content if isinstance(chunk.content, str) else ""
                    if token:
                        parts.append(token)
                        on_chunk(token)
                    chunk_usage = _usage_from(chunk)
                    usage["input"] += chunk_usage["input"]
                    usage["output"] += chunk_usage["output"]
                text = "".join(parts)
        except Exception as exc:
            err = classify_backend_error(exc)
            LOG.warning(
                "llm_call_failed",
                extra={"stage": stage.value, "model": model, "retryable": err.retryable, "err": str(exc)},
            )
            raise err from exc

        if not usage["input"] and not usage["output"]:
            # Provider omitted usage; approximate so the ledger still moves.
            prompt_text = "".join(m.get("content", "") for m in messages)
            usage = {"input": _approx_tokens(prompt_text), "output": _approx_tokens(text)}
        return BackendReply(text=text, input_tokens=usage["input"], output_tokens=usage["output"], model=model)

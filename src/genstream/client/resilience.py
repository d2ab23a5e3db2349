"""Caller-side wrapper around ``POST /generate/project``.

Drives one logical generation through as many HTTP attempts as the retry
policy allows. Every path ends in exactly one returned outcome: a
:class:`GenerationResult` or a :class:`GenerationError`; exceptions from the
transport never escape.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..core.state_machine import ClientState
from ..domain.models import GenerationError, GenerationRequest, GenerationResult, ProgressEvent
from ..services.streaming import error_from_payload
from .decoder import DEFAULT_STALL_TIMEOUT, FrameDecoder


logger = logging.getLogger("genstream.client")

Outcome = Union[GenerationResult, GenerationError]
ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class RetryPolicy:
    max_retries: int = 2
    retry_delay: float = 1.0
    on_retry: Optional[Callable[[int, GenerationError], None]] = None


def _build_session() -> requests.Session:
    session = requests.Session()
    # Retries are owned by GenerationClient; the adapter only pools connections.
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _error(code: str, message: str, retryable: bool, details: Optional[str] = None) -> GenerationError:
    return GenerationError(code=code, message=message, retryable=retryable, details=details)


_CANCEL_POLL_SECONDS = 0.1


def _close_on_cancel(response: requests.Response, cancel: threading.Event, done: threading.Event) -> None:
    """Close ``response`` as soon as ``cancel`` is set so a blocked read returns."""

    while not done.is_set():
        if cancel.wait(_CANCEL_POLL_SECONDS):
            response.close()
            return


class GenerationClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        stall_timeout: Optional[float] = None,
        connect_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        path: str = "/generate/project",
    ) -> None:
        if stall_timeout is None:
            try:
                stall_timeout = float(os.getenv("GENSTREAM_STALL_TIMEOUT_SECONDS", DEFAULT_STALL_TIMEOUT))
            except ValueError:
                stall_timeout = DEFAULT_STALL_TIMEOUT
        self.url = base_url.rstrip("/") + path
        self.session = session or _build_session()
        self.stall_timeout = stall_timeout
        self.connect_timeout = connect_timeout
        self._clock = clock
        self._sleep = sleep

    def generate(
        self,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Outcome:
        policy = policy or RetryPolicy()
        state = ClientState()
        attempt = 0
        while True:
            attempt += 1
            if cancel is not None and cancel.is_set():
                state.advance("failed")
                return self._cancelled(request)

            # Each attempt is a new run server-side and gets its own request id.
            sent = request if attempt == 1 else request.model_copy(update={"request_id": uuid.uuid4().hex})
            state.advance("connecting")
            outcome = self._attempt(sent, on_progress, cancel, state)
            if isinstance(outcome, GenerationResult):
                state.advance("completed")
                logger.info("generation_completed request_id=%s attempts=%s", request.request_id, attempt)
                return outcome

            if not outcome.retryable or outcome.rate_limited:
                state.advance("failed")
                logger.warning(
                    "generation_failed request_id=%s code=%s attempts=%s",
                    request.request_id,
                    outcome.code,
                    attempt,
                )
                return outcome

            state.advance("interrupted")
            if attempt > policy.max_retries:
                state.advance("failed")
                logger.warning(
                    "generation_retries_exhausted request_id=%s code=%s attempts=%s",
                    request.request_id,
                    outcome.code,
                    attempt,
                )
                return outcome

            logger.info(
                "generation_retry request_id=%s attempt=%s code=%s",
                request.request_id,
                attempt + 1,
                outcome.code,
            )
            if self._wait(policy.retry_delay, cancel):
                state.advance("failed")
                return self._cancelled(request)
            if policy.on_retry is not None:
                policy.on_retry(attempt, outcome)
            state.advance("retrying")

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep before a retry; True when cancellation arrived meanwhile."""

        if cancel is None:
            if delay > 0:
                self._sleep(delay)
            return False
        if cancel.is_set():
            return True
        if delay > 0:
            return cancel.wait(delay)
        return False

    def _cancelled(self, request: GenerationRequest) -> GenerationError:
        logger.info("generation_cancelled request_id=%s", request.request_id)
        return _error("cancelled", "Generation cancelled", retryable=False)

    def _attempt(
        self,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[threading.Event],
        state: ClientState,
    ) -> Outcome:
        body = request.model_dump(mode="json")
        try:
            response = self.session.post(
                self.url,
                json=body,
                stream=request.stream,
                timeout=(self.connect_timeout, self.stall_timeout),
            )
        except requests.RequestException as exc:
            logger.warning("generation_request_failed request_id=%s error=%s", request.request_id, exc)
            return _error("network_error", "Network error while contacting the generation service", True, str(exc)[:400])

        try:
            if response.status_code >= 400:
                return self._http_error(response)
            if not request.stream:
                return self._json_outcome(response)
            state.advance("streaming")
            return self._read_stream(response, on_progress, cancel)
        finally:
            response.close()

    def _http_error(self, response: requests.Response) -> GenerationError:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and "error" in payload:
            error = error_from_payload(payload)
            if "retryable" not in payload:
                error = error.model_copy(update={"retryable": status >= 500})
            return error
        if status == 422:
            return _error("validation_failed", "Request rejected by the generation service", False, response.text[:400])
        if status >= 500:
            return _error("backend_unavailable", f"Generation service returned HTTP {status}", True)
        return _error("generation_failed", f"Generation service returned HTTP {status}", False)

    def _json_outcome(self, response: requests.Response) -> Outcome:
        try:
            payload = response.json()
        except ValueError as exc:
            return _error("network_error", "Unreadable response from the generation service", True, str(exc)[:400])
        if not isinstance(payload, dict):
            return _error("generation_failed", "Unexpected response from the generation service", False)
        if payload.get("success") is False or "error" in payload:
            return error_from_payload(payload)
        return self._result(payload)

    def _read_stream(
        self,
        response: requests.Response,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[threading.Event],
    ) -> Outcome:
        decoder = FrameDecoder(stall_timeout=self.stall_timeout, clock=self._clock)
        done = threading.Event()
        if cancel is not None:
            threading.Thread(
                target=_close_on_cancel,
                args=(response, cancel, done),
                name="generate-cancel-watch",
                daemon=True,
            ).start()
        try:
            for chunk in response.iter_content(chunk_size=None):
                if cancel is not None and cancel.is_set():
                    return _error("cancelled", "Generation cancelled", retryable=False)
                if decoder.stalled():
                    return _error("stream_interrupted", "Connection stalled - no data received", True)
                for frame in decoder.feed(chunk):
                    outcome = self._handle_frame(frame, on_progress)
                    if outcome is not None:
                        return outcome
            for frame in decoder.flush():
                outcome = self._handle_frame(frame, on_progress)
                if outcome is not None:
                    return outcome
        except Exception as exc:
            # A response closed by the cancel watcher fails with whatever the transport raises.
            if cancel is not None and cancel.is_set():
                return _error("cancelled", "Generation cancelled", retryable=False)
            if not isinstance(exc, requests.RequestException):
                raise
            logger.warning("stream_interrupted error=%s", exc)
            return _error("stream_interrupted", "Connection lost while receiving the generation stream", True, str(exc)[:400])
        finally:
            done.set()
        if cancel is not None and cancel.is_set():
            return _error("cancelled", "Generation cancelled", retryable=False)
        return _error("stream_ended", "Stream ended without a result", True)

    def _handle_frame(self, frame: Dict[str, Any], on_progress: Optional[ProgressCallback]) -> Optional[Outcome]:
        kind = frame.get("type")
        if kind == "progress":
            try:
                event = ProgressEvent(
                    stage=frame.get("stage"),
                    kind=frame.get("kind", "Start"),
                    message=frame.get("message"),
                )
            except ValidationError:
                logger.warning("progress_frame_invalid frame=%r", frame)
                return None
            if on_progress is not None:
                on_progress(event)
            return None
        if kind == "complete":
            result = frame.get("result")
            if not isinstance(result, dict):
                return _error("stream_interrupted", "Complete frame without a result", True)
            return self._result(result)
        if kind == "error":
            return error_from_payload(frame)
        logger.debug("frame_ignored type=%s", kind)
        return None

    def _result(self, payload: Dict[str, Any]) -> Outcome:
        try:
            return GenerationResult.model_validate(payload)
        except ValidationError as exc:
            return _error("stream_interrupted", "Malformed generation result", True, str(exc)[:400])

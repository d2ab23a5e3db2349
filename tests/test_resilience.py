import json
import threading
import time

import requests

from src.genstream.client.resilience import GenerationClient, RetryPolicy
from src.genstream.domain.models import GenerationError, GenerationResult, Stage

from tests.utils import make_request


RESULT = {
    "success": True,
    "intent": {"category": "blog"},
    "architecture": {"template": "blog"},
    "generated_at": "2026-05-01T09:00:00Z",
}


def _ndjson(*frames):
    return b"".join(json.dumps(f).encode() + b"\n" for f in frames)


class FakeResponse:
    def __init__(self, status_code=200, chunks=None, body=None, raise_after=None):
        self.status_code = status_code
        self._chunks = chunks or []
        self._body = body
        self._raise_after = raise_after
        self.closed = False
        self.text = json.dumps(body) if body is not None else ""

    def iter_content(self, chunk_size=None):
        for i, chunk in enumerate(self._chunks):
            if self._raise_after is not None and i == self._raise_after:
                raise requests.exceptions.ChunkedEncodingError("connection broken")
            yield chunk

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.posts = []

    def post(self, url, json=None, stream=False, timeout=None):
        self.posts.append({"url": url, "json": json, "stream": stream, "timeout": timeout})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(session, **kwargs):
    sleeps = []
    client = GenerationClient("http://gen.local/api/", session=session, sleep=sleeps.append, **kwargs)
    return client, sleeps


def test_streaming_success_forwards_progress_and_returns_result():
    body = _ndjson(
        {"type": "progress", "stage": "Intent", "kind": "Start", "message": "Analyzing project intent..."},
        {"type": "heartbeat"},
        {"type": "progress", "stage": "Intent", "kind": "Complete"},
        {"type": "complete", "result": RESULT},
    )
    response = FakeResponse(chunks=[body[:30], body[30:77], body[77:]])
    session = FakeSession([response])
    client, _ = _client(session, stall_timeout=30)
    seen = []

    outcome = client.generate(make_request(stream=True), on_progress=seen.append)

    assert isinstance(outcome, GenerationResult)
    assert outcome.intent.category == "blog"
    assert [(e.stage, e.kind.value) for e in seen] == [(Stage.INTENT, "Start"), (Stage.INTENT, "Complete")]
    assert session.posts[0]["url"] == "http://gen.local/api/generate/project"
    assert session.posts[0]["stream"] is True
    assert session.posts[0]["timeout"] == (10.0, 30)
    assert response.closed is True


def test_retry_bound_is_max_retries_plus_one_attempts():
    responses = [requests.exceptions.ConnectionError("refused") for _ in range(3)]
    session = FakeSession(responses)
    client, sleeps = _client(session)
    retries = []

    outcome = client.generate(
        make_request(stream=True),
        policy=RetryPolicy(max_retries=2, retry_delay=0.5, on_retry=lambda n, err: retries.append((n, err.code))),
    )

    assert outcome.code == "network_error"
    assert outcome.retryable is True
    assert len(session.posts) == 3
    assert retries == [(1, "network_error"), (2, "network_error")]
    assert sleeps == [0.5, 0.5]


def test_interrupted_stream_is_retried_from_scratch():
    partial = FakeResponse(chunks=[_ndjson({"type": "progress", "stage": "Intent", "kind": "Start"}), b"x"], raise_after=1)
    ok = FakeResponse(chunks=[_ndjson({"type": "complete", "result": RESULT})])
    session = FakeSession([partial, ok])
    client, _ = _client(session)

    outcome = client.generate(make_request(stream=True))
    assert isinstance(outcome, GenerationResult)
    assert len(session.posts) == 2
    assert partial.closed is True


def test_stream_ending_without_terminal_frame_is_stream_ended():
    session = FakeSession([FakeResponse(chunks=[_ndjson({"type": "progress", "stage": "Intent", "kind": "Start"})])])
    client, _ = _client(session)
    outcome = client.generate(make_request(stream=True), policy=RetryPolicy(max_retries=0))
    assert outcome.code == "stream_ended"
    assert outcome.retryable is True


def test_stalled_stream_reports_stream_interrupted():
    now = {"t": 0.0}

    class StallingResponse(FakeResponse):
        def iter_content(self, chunk_size=None):
            yield _ndjson({"type": "progress", "stage": "Intent", "kind": "Start"})
            now["t"] = 500.0
            yield b'{"type":"heartbeat"}\n'

    session = FakeSession([StallingResponse()])
    client, _ = _client(session, stall_timeout=120, clock=lambda: now["t"])
    outcome = client.generate(make_request(stream=True), policy=RetryPolicy(max_retries=0))

    assert outcome.code == "stream_interrupted"
    assert outcome.retryable is True


def test_non_retryable_error_frame_is_returned_immediately():
    frame = {"type": "error", "error": "budget_exceeded", "message": "Daily token limit", "retryable": False}
    session = FakeSession([FakeResponse(chunks=[_ndjson(frame)])])
    client, sleeps = _client(session)
    retries = []

    outcome = client.generate(make_request(stream=True), policy=RetryPolicy(on_retry=lambda *a: retries.append(a)))

    assert outcome.code == "budget_exceeded"
    assert outcome.retryable is False
    assert len(session.posts) == 1
    assert retries == [] and sleeps == []


def test_rate_limited_http_response_is_not_retried():
    body = {"success": False, "error": "rate_limited", "message": "limit", "retryable": False,
            "rateLimited": True, "resetAt": "2026-05-02T00:00:00Z"}
    session = FakeSession([FakeResponse(status_code=429, body=body)])
    client, _ = _client(session)

    outcome = client.generate(make_request())
    assert isinstance(outcome, GenerationError)
    assert outcome.rate_limited is True
    assert outcome.reset_at == "2026-05-02T00:00:00Z"
    assert len(session.posts) == 1


def test_http_5xx_without_retryable_flag_is_retried():
    session = FakeSession([
        FakeResponse(status_code=502),
        FakeResponse(status_code=200, body=RESULT),
    ])
    client, _ = _client(session)
    outcome = client.generate(make_request())
    assert isinstance(outcome, GenerationResult)
    assert len(session.posts) == 2
    assert session.posts[0]["stream"] is False


def test_http_4xx_is_terminal():
    session = FakeSession([FakeResponse(status_code=422, body={"detail": [{"msg": "too long"}]})])
    client, _ = _client(session)
    outcome = client.generate(make_request())
    assert outcome.code == "validation_failed"
    assert outcome.retryable is False


def test_cancel_before_retry_returns_cancelled():
    cancel = threading.Event()
    session = FakeSession([requests.exceptions.Timeout("read timed out")])
    client, _ = _client(session)

    def _on_retry(attempt, error):
        cancel.set()

    outcome = client.generate(make_request(), policy=RetryPolicy(on_retry=_on_retry), cancel=cancel)
    assert outcome.code == "cancelled"
    assert outcome.retryable is False
    assert len(session.posts) == 1


def test_cancel_mid_stream_closes_response():
    cancel = threading.Event()

    class CancellingResponse(FakeResponse):
        def iter_content(self, chunk_size=None):
            yield _ndjson({"type": "progress", "stage": "Intent", "kind": "Start"})
            cancel.set()
            yield _ndjson({"type": "complete", "result": RESULT})

    response = CancellingResponse()
    client, _ = _client(FakeSession([response]))
    seen = []
    outcome = client.generate(make_request(stream=True), on_progress=seen.append, cancel=cancel)

    assert outcome.code == "cancelled"
    assert response.closed is True
    assert len(seen) == 1


def test_complete_frame_with_unusable_result_is_retried():
    broken = FakeResponse(chunks=[_ndjson(
        {"type": "progress", "stage": "Intent", "kind": "Start"},
        {"type": "complete", "result": {}},
    )])
    ok = FakeResponse(chunks=[_ndjson({"type": "complete", "result": RESULT})])
    session = FakeSession([broken, ok])
    client, _ = _client(session)

    outcome = client.generate(make_request(stream=True), policy=RetryPolicy(max_retries=1))
    assert isinstance(outcome, GenerationResult)
    assert len(session.posts) == 2


def test_complete_frame_without_result_is_stream_interrupted():
    session = FakeSession([FakeResponse(chunks=[_ndjson({"type": "complete"})])])
    client, _ = _client(session)
    outcome = client.generate(make_request(stream=True), policy=RetryPolicy(max_retries=0))
    assert outcome.code == "stream_interrupted"
    assert outcome.retryable is True


def test_rate_limited_error_is_never_retried_even_if_marked_retryable():
    frame = {"type": "error", "error": "rate_limited", "message": "limit", "retryable": True, "rateLimited": True}
    session = FakeSession([FakeResponse(chunks=[_ndjson(frame)]), FakeResponse(chunks=[_ndjson(frame)])])
    client, sleeps = _client(session)

    outcome = client.generate(make_request(stream=True), policy=RetryPolicy(max_retries=1))
    assert outcome.rate_limited is True
    assert len(session.posts) == 1
    assert sleeps == []


def test_each_retry_sends_a_fresh_request_id():
    session = FakeSession([
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.ConnectionError("refused"),
        FakeResponse(status_code=200, body=RESULT),
    ])
    client, _ = _client(session)
    request = make_request()

    outcome = client.generate(request)
    assert isinstance(outcome, GenerationResult)
    ids = [post["json"]["request_id"] for post in session.posts]
    assert ids[0] == request.request_id
    assert len(set(ids)) == 3
    assert all(post["json"]["description"] == request.description for post in session.posts)


def test_cancel_unblocks_a_read_waiting_on_silent_stream():
    cancel = threading.Event()

    class SilentResponse(FakeResponse):
        def __init__(self):
            super().__init__()
            self._released = threading.Event()

        def iter_content(self, chunk_size=None):
            yield _ndjson({"type": "progress", "stage": "Intent", "kind": "Start"})
            # Blocks like a socket read until the response is closed.
            self._released.wait(10)
            raise ValueError("I/O operation on closed file")

        def close(self):
            self.closed = True
            self._released.set()

    response = SilentResponse()
    client, _ = _client(FakeSession([response]))
    started = time.monotonic()
    outcome = client.generate(make_request(stream=True), on_progress=lambda _e: cancel.set(), cancel=cancel)

    assert outcome.code == "cancelled"
    assert response.closed is True
    assert time.monotonic() - started < 5

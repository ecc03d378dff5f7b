# playsync test scripts
from __future__ import annotations

import threading
import time

from playsync.dispatcher import Request, RequestQueue
from playsync.response import ErrorInfo, Response, try_response


def test_outcomes_follow_add_order() -> None:
    queue = RequestQueue(max_workers=4)
    for n in range(6):
        queue.add(Request(call=lambda n=n: n * 10, context={"n": n}))

    outcomes = queue.run()

    assert [o.request.context["n"] for o in outcomes] == list(range(6))
    assert [o.result for o in outcomes] == [0, 10, 20, 30, 40, 50]
    assert all(o.success for o in outcomes)
    assert len(queue) == 0


def test_one_failure_does_not_affect_siblings(log_messages: list[str]) -> None:
    def boom() -> None:
        raise ConnectionError("refused")

    queue = RequestQueue(max_workers=2)
    queue.add(Request(call=lambda: "ok", context={"client": "plex", "backend": "home"}))
    queue.add(Request(call=boom, context={"client": "plex", "backend": "home", "action": "plex.updateState"}))
    queue.add(Request(call=lambda: "ok"))

    first, failed, last = queue.run()

    assert first.success and last.success
    assert failed.success is False
    assert failed.error is not None
    assert failed.error.context["exception"]["kind"] == "ConnectionError"
    assert "'plex: home' plex.updateState" in failed.error.message
    assert any("Unhandled exception was thrown" in m for m in log_messages)


def test_false_response_counts_as_failure() -> None:
    queue = RequestQueue()
    queue.add(Request(call=lambda: Response(status=False, error=ErrorInfo(message="rejected"))))
    [outcome] = queue.run()
    assert outcome.success is False
    assert outcome.error.message == "rejected"


def test_same_key_runs_in_order() -> None:
    seen: list[int] = []
    lock = threading.Lock()

    def record(n: int) -> None:
        time.sleep(0.01 * (3 - n))
        with lock:
            seen.append(n)

    queue = RequestQueue(max_workers=4)
    for n in range(3):
        queue.add(Request(call=lambda n=n: record(n), key="imdb://tt1"))
    queue.run()

    assert seen == [0, 1, 2]


def test_run_timeout_reports_unfinished_requests() -> None:
    release = threading.Event()
    queue = RequestQueue(max_workers=2, timeout=0.2)
    queue.add(Request(call=lambda: "fast"))
    queue.add(Request(call=lambda: release.wait(5), context={"item": "slow"}))

    started = time.monotonic()
    fast, slow = queue.run()
    release.set()

    assert time.monotonic() - started < 5
    assert fast.success is True
    assert slow.success is False
    assert "run timeout" in slow.error.message


def test_empty_queue_returns_nothing() -> None:
    assert RequestQueue().run() == []


def test_try_response_passes_through_success() -> None:
    response = try_response({"client": "plex", "backend": "home"}, lambda: Response(status=True, extra={"a": 1}), "test")
    assert response.status is True
    assert response.extra == {"a": 1}
    assert not response.has_error()

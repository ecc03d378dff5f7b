from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable
from loguru import logger

from playsync.response import ErrorInfo, Response, try_response


@dataclass
class Request:
    """One backend mutation. Requests sharing a key run in the order they were added."""
    call: Callable[[], Any]
    context: dict[str, Any] = field(default_factory=dict)
    key: Hashable | None = None


@dataclass
class Outcome:
    request: Request
    success: bool
    error: ErrorInfo | None = None
    result: Any = None


class RequestQueue:
    def __init__(self, max_workers: int = 10, timeout: float | None = None) -> None:
        self.max_workers = max(1, max_workers)
        # Seconds for a whole run() batch, None or 0 waits forever
        self.timeout = timeout or None
        self._pending: list[Request] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> list[Request]:
        return list(self._pending)

    def add(self, request: Request) -> None:
        self._pending.append(request)

    def _execute(self, request: Request) -> Outcome:
        def body() -> Response:
            result = request.call()
            if isinstance(result, Response):
                return result
            return Response(status=True, extra={"result": result})

        action = request.context.get("action", "request")
        response = try_response(request.context, body, action)
        if not response.status:
            return Outcome(request, False, response.error)
        return Outcome(request, True, None, response.extra.get("result"))

    def _run_group(self, indexes: list[int], requests: list[Request]) -> list[tuple[int, Outcome]]:
        return [(i, self._execute(requests[i])) for i in indexes]

    def run(self) -> list[Outcome]:
        """
        Execute every pending request and return one Outcome per request, in add order.

        A failing request never affects its siblings. When the batch timeout expires,
        unfinished requests are reported as failed and their late results are dropped.
        """
        requests, self._pending = self._pending, []
        if not requests:
            return []

        groups: dict[Hashable, list[int]] = {}
        for i, request in enumerate(requests):
            group = request.key if request.key is not None else ("request", i)
            groups.setdefault(group, []).append(i)

        outcomes: list[Outcome | None] = [None] * len(requests)
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups)))
        not_done = set()
        try:
            futures = {executor.submit(self._run_group, indexes, requests): indexes for indexes in groups.values()}
            done, not_done = wait(futures, timeout=self.timeout)

            for future in done:
                for i, outcome in future.result():
                    outcomes[i] = outcome

            for future in not_done:
                future.cancel()
                for i in futures[future]:
                    outcomes[i] = Outcome(
                        requests[i],
                        False,
                        ErrorInfo(
                            message=f"Request cancelled after run timeout of {self.timeout}s",
                            context=dict(requests[i].context),
                        ),
                    )
        finally:
            executor.shutdown(wait=not not_done, cancel_futures=True)

        failed = sum(1 for o in outcomes if o and not o.success)
        if not_done:
            logger.warning(f"[System] Run timeout reached, {sum(len(futures[f]) for f in not_done)} requests discarded")
        logger.debug(f"[System] Dispatched {len(requests)} requests, {failed} failed")
        return [o for o in outcomes if o is not None]

from dataclasses import dataclass, field, replace
from functools import partial
from math import floor
from typing import Any, Callable, Mapping, Protocol, Sequence
import requests
from loguru import logger

from playsync.dispatcher import Request, RequestQueue
from playsync.errors import RequestFailure
from playsync.mapper import DiffItem
from playsync.response import Response
from playsync.watched import PROGRESS_MARGIN, Observation


class Options:
    DRY_RUN = "dry_run"
    FULL_RESYNC = "full_resync"
    IGNORE = "ignore"
    LIBRARY_SEGMENT = "library_segment"
    REQUEST_TIMEOUT = "request_timeout"


@dataclass(frozen=True)
class Context:
    """Everything an action needs to talk to one backend. Never mutated during a run."""
    client_name: str
    backend_name: str
    backend_url: str
    backend_token: str | None = None
    backend_user: str | None = None
    backend_headers: Mapping[str, str] = field(default_factory=dict)
    options: Mapping[str, Any] = field(default_factory=dict)
    session: requests.Session | None = field(default=None, compare=False, repr=False)

    @property
    def dry_run(self) -> bool:
        return bool(self.options.get(Options.DRY_RUN, False))

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def with_options(self, **options: Any) -> "Context":
        return replace(self, options={**self.options, **options})

    def url(self, path: str) -> str:
        return self.backend_url.rstrip("/") + "/" + path.lstrip("/")


@dataclass
class LibraryPage:
    items: list[Observation | Mapping[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None


class BackendClient(Protocol):
    client_name: str

    def fetch_library(self, context: Context, page_token: str | None = None) -> LibraryPage:
        ...

    def update_state(
        self,
        context: Context,
        items: Sequence[DiffItem],
        queue: RequestQueue,
        opts: Mapping[str, Any] | None = None,
    ) -> Response:
        ...

    def close(self) -> None:
        ...


# Builds the request for one item: (context, item id, watched, progress or None) -> result
StateCall = Callable[[Context, str, bool, int | None], Any]


def queue_state_changes(
    context: Context,
    items: Sequence[DiffItem],
    queue: RequestQueue,
    make_call: StateCall,
    action: str,
    opts: Mapping[str, Any] | None = None,
) -> Response:
    """
    Shared body of every update_state action.

    Items without a backend-local id, ignored ids and items already in the desired
    state are skipped. In dry-run one log entry is written per would-be change and
    nothing is queued.
    """
    opts = opts or {}
    dry_run = bool(opts.get(Options.DRY_RUN, context.dry_run))
    full = bool(opts.get(Options.FULL_RESYNC, False))
    ignore = {str(x) for x in context.option(Options.IGNORE, ())}

    queued = logged = skipped = unchanged = 0
    for item in items:
        entity = item.entity
        meta = entity.get_metadata(context.backend_name)
        if meta is None or not meta.id:
            skipped += 1
            continue

        if meta.id in ignore:
            logger.debug(f"[{context.backend_name}] Ignoring '{entity.name()}' ({meta.id})")
            skipped += 1
            continue

        progress = None
        if item.progress is not None and not item.watched and (full or abs(meta.progress - item.progress) >= PROGRESS_MARGIN):
            progress = item.progress

        if item.watched == meta.watched and progress is None and not full:
            unchanged += 1
            continue

        play_state = "played" if item.watched else "unplayed"
        item_context = {
            "action": action,
            "client": context.client_name,
            "backend": context.backend_name,
            "handle": item.handle,
            "watched": item.watched,
            "progress": progress,
            "play_state": play_state,
            "item": {
                "id": meta.id,
                "title": entity.name(),
                "type": entity.kind.value,
                "state": play_state,
            },
        }

        if dry_run:
            if progress is not None and item.watched == meta.watched:
                msg = f"Would update '{context.backend_name}' {entity.kind.value} '{entity.name()}' progress to {floor(progress / 60_000)}m."
            else:
                msg = f"Would mark '{context.backend_name}' {entity.kind.value} '{entity.name()}' as '{play_state}'."
            logger.bind(**item_context).info(f"[DRYRUN] [{context.backend_name}] {msg}")
            logged += 1
            continue

        queue.add(
            Request(
                call=partial(make_call, context, meta.id, item.watched, progress),
                context=item_context,
                key=entity.key,
            )
        )
        queued += 1

    if queued or logged:
        logger.info(
            f"[{context.backend_name}] {'[DRYRUN] ' if dry_run else ''}"
            f"{queued or logged} state changes {'logged' if dry_run else 'queued'}, {skipped} skipped"
        )

    return Response(
        status=True,
        extra={"queued": queued, "dry_run": logged, "skipped": skipped, "unchanged": unchanged},
    )


def check_response(context: Context, response: requests.Response, item_id: str) -> requests.Response:
    if response.status_code >= 300:
        raise RequestFailure(
            f"[{context.backend_name}] Request for item '{item_id}' returned unexpected status code '{response.status_code}'",
            {"backend": context.backend_name, "item": item_id, "status_code": response.status_code},
        )
    return response

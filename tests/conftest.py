# playsync test scripts
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from loguru import logger  # noqa: E402

from playsync.backend import Context, LibraryPage, queue_state_changes  # noqa: E402
from playsync.config import Config  # noqa: E402
from playsync.connection import Backend  # noqa: E402
from playsync.dispatcher import RequestQueue  # noqa: E402
from playsync.mapper import DiffItem  # noqa: E402
from playsync.response import Response, try_response  # noqa: E402


@dataclass
class FakeClient:
    """In-memory backend. items maps item id -> observation dict."""
    name: str
    items: dict[str, dict[str, Any]] = field(default_factory=dict)
    page_size: int = 2
    unavailable: bool = False
    failing: set[str] = field(default_factory=set)
    calls: list[tuple[str, bool, int | None]] = field(default_factory=list)
    client_name: str = "fake"
    closed: bool = False

    def fetch_library(self, context: Context, page_token: str | None = None) -> LibraryPage:
        if self.unavailable:
            raise ConnectionError("connection refused")
        start = int(page_token or 0)
        rows = list(self.items.values())[start:start + self.page_size]
        end = start + len(rows)
        return LibraryPage(items=[dict(r) for r in rows], next_page_token=str(end) if end < len(self.items) else None)

    def send_state(self, context: Context, item_id: str, watched: bool, progress: int | None) -> dict[str, Any]:
        self.calls.append((item_id, watched, progress))
        if item_id in self.failing:
            raise ConnectionError(f"item {item_id} rejected")
        self.items[item_id]["watched"] = watched
        return {"id": item_id}

    def update_state(
        self,
        context: Context,
        items: Sequence[DiffItem],
        queue: RequestQueue,
        opts: Mapping[str, Any] | None = None,
    ) -> Response:
        return try_response(
            context,
            lambda: queue_state_changes(context, items, queue, self.send_state, "fake.updateState", opts),
            "fake.updateState",
        )

    def close(self) -> None:
        self.closed = True


def make_backend(client: FakeClient, **options: Any) -> Backend:
    context = Context(
        client_name=client.client_name,
        backend_name=client.name,
        backend_url=f"http://{client.name}.local",
        options=options,
    )
    return Backend(context=context, client=client)


def movie(item_id: str, watched: bool = False, observed_at: int = 100, **extra: Any) -> dict[str, Any]:
    data = {
        "id": item_id,
        "kind": "movie",
        "title": extra.pop("title", "Fight Club"),
        "year": extra.pop("year", 1999),
        "guids": extra.pop("guids", {"imdb": "tt0137523"}),
        "watched": watched,
        "observed_at": observed_at,
    }
    data.update(extra)
    return data


@pytest.fixture()
def log_messages() -> list[str]:
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="TRACE", format="{message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture()
def config(tmp_path: Path) -> Config:
    return Config(
        config_dir=str(tmp_path),
        state_file=str(tmp_path / "watched_state.json"),
        backup_dir=str(tmp_path / "backup"),
        log_file=str(tmp_path / "log.log"),
        max_threads=2,
    )

from datetime import datetime
from typing import Any, Mapping, Sequence
import requests
from loguru import logger

from playsync.backend import (
    Context,
    LibraryPage,
    Options,
    check_response,
    queue_state_changes,
)
from playsync.dispatcher import RequestQueue
from playsync.errors import RequestFailure
from playsync.mapper import DiffItem
from playsync.response import Response, try_response
from playsync.watched import normalize_guids

# Jellyfin and Emby store positions in 100ns ticks
TICKS_PER_MS = 10_000

ITEM_FIELDS = "ProviderIds,DateCreated,DateLastSaved,Path,ProductionYear"


def _parse_date(value: str | None) -> int:
    if not value:
        return 0
    try:
        # Trim sub-second precision beyond what fromisoformat accepts
        head = value.rstrip("Z").split(".")[0]
        return int(datetime.fromisoformat(head + "+00:00").timestamp())
    except ValueError:
        return 0


def get_observation(item: Mapping[str, Any], show_guids: Mapping[str, str] | None = None) -> dict[str, Any]:
    user_data = item.get("UserData") or {}
    observed_at = max(
        _parse_date(user_data.get("LastPlayedDate")),
        _parse_date(item.get("DateLastSaved")),
        _parse_date(item.get("DateCreated")),
    )

    data: dict[str, Any] = {
        "id": item.get("Id"),
        "kind": {"Movie": "movie", "Episode": "episode"}.get(item.get("Type", "")),
        "title": item.get("Name"),
        "year": item.get("ProductionYear"),
        "guids": normalize_guids(item.get("ProviderIds") or {}),
        "watched": bool(user_data.get("Played", False)),
        "progress": int((user_data.get("PlaybackPositionTicks") or 0) / TICKS_PER_MS),
        "observed_at": observed_at,
        "extra": {"path": item.get("Path")},
    }

    if data["kind"] == "episode":
        data["show_title"] = item.get("SeriesName")
        data["show_guids"] = dict(show_guids or {})
        data["season"] = item.get("ParentIndexNumber")
        data["episode"] = item.get("IndexNumber")

    return data


class JellyfinClient:
    client_name = "jellyfin"
    update_action = "jellyfin.updateState"

    def __init__(self) -> None:
        # {backend: {series id: guids}}
        self.series_cache: dict[str, dict[str, dict[str, str]]] = {}

    def _get(self, context: Context, path: str, params: Mapping[str, Any] | None = None) -> Any:
        http = context.session or requests
        response = http.get(
            context.url(path),
            params=params,
            headers=dict(context.backend_headers),
            timeout=context.option(Options.REQUEST_TIMEOUT, 300),
        )
        if response.status_code != 200:
            raise RequestFailure(
                f"[{context.backend_name}] Request to '{path}' returned unexpected status code '{response.status_code}'",
                {"backend": context.backend_name, "path": path, "status_code": response.status_code},
            )
        return response.json()

    def _show_guids(self, context: Context, series_id: str | None) -> dict[str, str]:
        if not series_id:
            return {}
        cache = self.series_cache.setdefault(context.backend_name, {})
        if series_id not in cache:
            series = self._get(context, f"/Users/{context.backend_user}/Items/{series_id}", {"Fields": "ProviderIds"})
            cache[series_id] = normalize_guids(series.get("ProviderIds") or {})
        return cache[series_id]

    def fetch_library(self, context: Context, page_token: str | None = None) -> LibraryPage:
        """Page token is the StartIndex of the next page."""
        start = int(page_token or 0)
        segment = int(context.option(Options.LIBRARY_SEGMENT, 1_000))

        data = self._get(
            context,
            f"/Users/{context.backend_user}/Items",
            {
                "Recursive": "true",
                "IncludeItemTypes": "Movie,Episode",
                "Fields": ITEM_FIELDS,
                "EnableUserData": "true",
                "StartIndex": start,
                "Limit": segment,
            },
        )

        rows = data.get("Items") or []
        items = [get_observation(row, self._show_guids(context, row.get("SeriesId"))) for row in rows]
        logger.debug(f"[{context.backend_name}] Fetched {len(items)} items at offset {start}")

        total = int(data.get("TotalRecordCount") or 0)
        next_start = start + len(rows)
        next_token = str(next_start) if rows and next_start < total else None
        return LibraryPage(items=items, next_page_token=next_token)

    def send_state(self, context: Context, item_id: str, watched: bool, progress: int | None) -> requests.Response:
        http = context.session or requests
        timeout = context.option(Options.REQUEST_TIMEOUT, 300)
        headers = dict(context.backend_headers)
        path = f"/Users/{context.backend_user}/PlayedItems/{item_id}"

        if watched:
            response = http.post(context.url(path), headers=headers, timeout=timeout)
        else:
            response = http.delete(context.url(path), headers=headers, timeout=timeout)
        check_response(context, response, item_id)

        if progress is not None and not watched:
            response = http.post(
                context.url(f"/Users/{context.backend_user}/Items/{item_id}/UserData"),
                json={"PlaybackPositionTicks": progress * TICKS_PER_MS},
                headers=headers,
                timeout=timeout,
            )
            check_response(context, response, item_id)

        return response

    def update_state(
        self,
        context: Context,
        items: Sequence[DiffItem],
        queue: RequestQueue,
        opts: Mapping[str, Any] | None = None,
    ) -> Response:
        return try_response(
            context,
            lambda: queue_state_changes(context, items, queue, self.send_state, self.update_action, opts),
            self.update_action,
        )

    def close(self) -> None:
        self.series_cache.clear()


class EmbyClient(JellyfinClient):
    client_name = "emby"
    update_action = "emby.updateState"

from typing import Any, Mapping, Sequence
import requests
from loguru import logger

from plexapi.server import PlexServer
from plexapi.library import LibrarySection
from plexapi.video import Show, Episode, Movie

from playsync.backend import (
    Context,
    LibraryPage,
    Options,
    check_response,
    queue_state_changes,
)
from playsync.dispatcher import RequestQueue
from playsync.mapper import DiffItem
from playsync.response import Response, try_response
from playsync.watched import normalize_guids

PLEX_IDENTIFIER = "com.plexapp.plugins.library"


def extract_guids_from_item(item: Movie | Show | Episode, server_info: str = "") -> dict[str, str]:
    prefix = f"[{server_info}] " if server_info else ""

    guids: list[str] = []
    for guid in getattr(item, "guids", []) or []:
        if guid.id and len(guid.id.strip()) > 0:
            guids.append(guid.id)

    # Fallback: item.guid holds the agent guid for legacy agents and the plex:// guid otherwise
    if getattr(item, "guid", None):
        guids.append(item.guid)

    output = normalize_guids(guids)
    if output:
        logger.trace(f"{prefix}Extracted GUIDs for '{item.title}': {output}")
    return output


def _timestamp(value: Any) -> int:
    if value and hasattr(value, "timestamp"):
        return int(value.timestamp())
    return 0


def get_observation(item: Movie | Episode, show_guids: Mapping[str, str] | None = None, server_info: str = "") -> dict[str, Any]:
    # lastViewedAt moves on play, updatedAt on metadata/state changes
    observed_at = max(
        _timestamp(getattr(item, "lastViewedAt", None)),
        _timestamp(getattr(item, "updatedAt", None)),
        _timestamp(getattr(item, "addedAt", None)),
    )

    data: dict[str, Any] = {
        "id": str(item.ratingKey),
        "kind": "movie" if item.type == "movie" else "episode",
        "title": item.title,
        "year": getattr(item, "year", None),
        "guids": extract_guids_from_item(item, server_info),
        "watched": bool(item.isWatched),
        "progress": getattr(item, "viewOffset", 0) or 0,
        "observed_at": observed_at,
        "extra": {"library": getattr(item, "librarySectionTitle", None)},
    }

    if item.type == "episode":
        data["show_title"] = getattr(item, "grandparentTitle", None)
        data["show_guids"] = dict(show_guids or {})
        data["season"] = getattr(item, "parentIndex", None)
        data["episode"] = getattr(item, "index", None)

    return data


class PlexClient:
    client_name = "plex"
    update_action = "plex.updateState"

    def __init__(self) -> None:
        # Cache for PlexServer instances to prevent repeated connections
        self.server_cache: dict[str, PlexServer] = {}
        # {backend: {show ratingKey: guids}}
        self.show_cache: dict[str, dict[str, dict[str, str]]] = {}

    def server(self, context: Context) -> PlexServer:
        if context.backend_name not in self.server_cache:
            self.server_cache[context.backend_name] = PlexServer(
                context.backend_url,
                context.backend_token,
                session=context.session,
                timeout=context.option(Options.REQUEST_TIMEOUT, 300),
            )
        return self.server_cache[context.backend_name]

    def get_libraries(self, context: Context) -> list[LibrarySection]:
        output = []
        for library in self.server(context).library.sections():
            if library.type not in ["movie", "show"]:
                logger.debug(f"[{context.backend_name}] Skipping Library {library.title} found type {library.type}")
                continue
            output.append(library)
        return output

    def _load_shows(self, context: Context, section: LibrarySection) -> None:
        shows = self.show_cache.setdefault(context.backend_name, {})
        for show in section.search(libtype="show"):
            shows[str(show.ratingKey)] = extract_guids_from_item(show, context.backend_name)
        logger.debug(f"[{context.backend_name}] Cached guids of {len(shows)} shows from '{section.title}'")

    def fetch_library(self, context: Context, page_token: str | None = None) -> LibraryPage:
        """Page token is '<section key>:<offset>'. Sections are walked in server order."""
        sections = self.get_libraries(context)
        if not sections:
            return LibraryPage()

        keys = [str(section.key) for section in sections]
        if page_token:
            section_key, offset_str = page_token.rsplit(":", 1)
            offset = int(offset_str)
        else:
            section_key, offset = keys[0], 0

        section = sections[keys.index(section_key)]
        segment = int(context.option(Options.LIBRARY_SEGMENT, 1_000))
        libtype = "movie" if section.type == "movie" else "episode"

        if libtype == "episode" and offset == 0:
            self._load_shows(context, section)
        shows = self.show_cache.get(context.backend_name, {})

        videos = section.search(libtype=libtype, container_start=offset, container_size=segment, maxresults=segment)
        items = [
            get_observation(video, shows.get(str(getattr(video, "grandparentRatingKey", ""))), context.backend_name)
            for video in videos
        ]
        logger.debug(f"[{context.backend_name}] Fetched {len(items)} items from '{section.title}' at offset {offset}")

        if len(videos) >= segment:
            next_token = f"{section_key}:{offset + segment}"
        else:
            idx = keys.index(section_key)
            next_token = f"{keys[idx + 1]}:0" if idx + 1 < len(keys) else None

        return LibraryPage(items=items, next_page_token=next_token)

    def send_state(self, context: Context, item_id: str, watched: bool, progress: int | None) -> requests.Response:
        http = context.session or requests
        timeout = context.option(Options.REQUEST_TIMEOUT, 300)
        headers = dict(context.backend_headers)
        params = {"identifier": PLEX_IDENTIFIER, "key": item_id}

        response = http.get(
            context.url("/:/scrobble" if watched else "/:/unscrobble"),
            params=params,
            headers=headers,
            timeout=timeout,
        )
        check_response(context, response, item_id)

        if progress is not None and not watched:
            response = http.get(
                context.url("/:/progress"),
                params={**params, "time": progress, "state": "stopped"},
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
        self.server_cache.clear()
        self.show_cache.clear()

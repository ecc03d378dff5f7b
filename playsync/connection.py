import os
from dataclasses import dataclass
from typing import Any, Mapping
import requests
from loguru import logger
from requests.adapters import HTTPAdapter as RequestsHTTPAdapter
from urllib3.util.retry import Retry

from playsync.backend import BackendClient, Context, Options
from playsync.config import Config
from playsync.errors import ConfigValidationError
from playsync.functions import parse_string_to_list
from playsync.jellyfin import EmbyClient, JellyfinClient
from playsync.plex import PlexClient

# Closed set of backend families, name -> implementation
SUPPORTED: dict[str, type] = {
    PlexClient.client_name: PlexClient,
    JellyfinClient.client_name: JellyfinClient,
    EmbyClient.client_name: EmbyClient,
}


# Bypass hostname validation for ssl. Taken from https://github.com/pkkid/python-plexapi/issues/143#issuecomment-775485186
class HostNameIgnoringAdapter(RequestsHTTPAdapter):
    def init_poolmanager(
        self, connections: int, maxsize: int | None, block=..., **pool_kwargs
    ) -> None:
        pool_kwargs["assert_hostname"] = False
        return super().init_poolmanager(
            connections, maxsize, block, **pool_kwargs
        )


@dataclass
class Backend:
    context: Context
    client: BackendClient

    @property
    def name(self) -> str:
        return self.context.backend_name


def build_session(ssl_bypass: bool = False, retries: int = 3) -> requests.Session:
    """One session shared by every backend. Auth lives in each Context, not here."""
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=1,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=None,
    )
    adapter_cls = HostNameIgnoringAdapter if ssl_bypass else RequestsHTTPAdapter
    session.mount("https://", adapter_cls(max_retries=retry))
    session.mount("http://", RequestsHTTPAdapter(max_retries=retry))
    return session


def backend_headers(client_name: str, token: str | None) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if not token:
        return headers
    if client_name == PlexClient.client_name:
        headers["X-Plex-Token"] = token
    else:
        headers["X-Emby-Token"] = token
    return headers


def make_client(client_name: str) -> BackendClient:
    try:
        return SUPPORTED[client_name.lower()]()
    except KeyError:
        raise ConfigValidationError(
            "BACKEND_TYPES", f"Unsupported backend type '{client_name}', expected one of {sorted(SUPPORTED)}"
        ) from None


def generate_backends(config: Config, environ: Mapping[str, str] | None = None, session: requests.Session | None = None) -> list[Backend]:
    env: Mapping[str, Any] = os.environ if environ is None else environ
    backends: list[Backend] = []

    names = parse_string_to_list(env.get("BACKEND_NAMES"))
    types = parse_string_to_list(env.get("BACKEND_TYPES"))
    urls = parse_string_to_list(env.get("BACKEND_URLS"))
    tokens = parse_string_to_list(env.get("BACKEND_TOKENS"))
    users = parse_string_to_list(env.get("BACKEND_USERS"))
    # Per backend, '|' separated item ids
    ignores = parse_string_to_list(env.get("BACKEND_IGNORE"))

    if not names:
        return backends

    if not (len(names) == len(types) == len(urls) == len(tokens)):
        raise ConfigValidationError(
            "BACKEND_NAMES", "BACKEND_NAMES, BACKEND_TYPES, BACKEND_URLS and BACKEND_TOKENS must have the same number of entries"
        )

    if len(set(names)) != len(names):
        raise ConfigValidationError("BACKEND_NAMES", "Backend names must be unique")

    session = session or build_session(config.ssl_bypass)

    for i, name in enumerate(names):
        client = make_client(types[i])
        user = users[i] if i < len(users) and users[i] else None
        if client.client_name != PlexClient.client_name and not user:
            raise ConfigValidationError("BACKEND_USERS", f"Backend '{name}' of type '{client.client_name}' needs a user id")

        context = Context(
            client_name=client.client_name,
            backend_name=name,
            backend_url=urls[i],
            backend_token=tokens[i],
            backend_user=user,
            backend_headers=backend_headers(client.client_name, tokens[i]),
            options={
                Options.DRY_RUN: config.dry_run,
                Options.IGNORE: tuple(x for x in (ignores[i] if i < len(ignores) else "").split("|") if x),
                Options.LIBRARY_SEGMENT: config.library_segment,
                Options.REQUEST_TIMEOUT: config.request_timeout,
            },
            session=session,
        )
        logger.debug(f"[System] Configured {client.client_name} backend: {name} ({urls[i]})")
        backends.append(Backend(context=context, client=client))

    return backends

from enum import Enum
from typing import Any, Dict, Iterable, Mapping
from pydantic import BaseModel, Field, field_validator

# Lower index wins when a stable key has to be picked from a guid set.
GUID_PRIORITY: tuple[str, ...] = ("imdb", "tmdb", "tvdb", "tvmaze", "tvrage", "anidb", "plex")

# Legacy agent schemes -> canonical scheme
AGENT_SCHEMES: dict[str, str] = {
    "imdb": "imdb",
    "themoviedb": "tmdb",
    "tmdb": "tmdb",
    "thetvdb": "tvdb",
    "tvdb": "tvdb",
    "tvmaze": "tvmaze",
    "tvrage": "tvrage",
    "anidb": "anidb",
    "plex": "plex",
}

_SENTINELS = {"", "none", "null", "nan", "undefined", "unknown", "0"}

# Leading path segment naming the media type, dropped from provider values
_PATH_TYPES = {"movie", "movies", "tv", "show", "shows", "series", "title", "episode"}

# Progress below this offset (ms) is treated as noise
PROGRESS_MARGIN = 60_000


# ---------------------------------------------------------
# DATA MODELS
# ---------------------------------------------------------
class MediaKind(str, Enum):
    MOVIE = "movie"
    EPISODE = "episode"


class WatchedPolicy(str, Enum):
    # Watched once any backend plays it after the last reset to unplayed
    PLAYED_SINCE_RESET = "played_since_reset"
    MOST_RECENT = "most_recent"
    WATCHED_WINS = "watched_wins"


class BackendMetadata(BaseModel):
    """What one backend last told us about an item."""
    id: str
    watched: bool = False
    observed_at: int = 0
    progress: int = 0
    # Set when a complete library scan no longer lists the item
    missing_since: int | None = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class Observation(BaseModel):
    id: str
    kind: MediaKind
    title: str | None = None
    year: int | None = None
    guids: Dict[str, str] = Field(default_factory=dict)
    show_title: str | None = None
    show_guids: Dict[str, str] = Field(default_factory=dict)
    season: int | None = None
    episode: int | None = None
    watched: bool = False
    progress: int = 0
    observed_at: int = 0
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("guids", "show_guids", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> dict[str, str]:
        return normalize_guids(value or {})


class Entity(BaseModel):
    key: str
    kind: MediaKind
    title: str | None = None
    year: int | None = None
    guids: Dict[str, str] = Field(default_factory=dict)
    show_title: str | None = None
    show_guids: Dict[str, str] = Field(default_factory=dict)
    season: int | None = None
    episode: int | None = None
    watched: bool = False
    progress: int = 0
    updated_at: int = 0
    # Newest play and the last flip to unplayed
    watched_at: int = 0
    unwatched_at: int = 0
    isolated: bool = False
    per_backend: Dict[str, BackendMetadata] = Field(default_factory=dict)

    def get_metadata(self, backend: str) -> BackendMetadata | None:
        return self.per_backend.get(backend)

    def name(self) -> str:
        if self.kind == MediaKind.EPISODE:
            season = self.season if self.season is not None else 0
            episode = self.episode if self.episode is not None else 0
            return f"{self.show_title or '??'} - {season:02}x{episode:03} - {self.title or '??'}"
        if self.year:
            return f"{self.title or '??'} ({self.year})"
        return self.title or "??"


# ---------------------------------------------------------
# GUID NORMALIZATION
# ---------------------------------------------------------
def parse_guid(guid: str) -> tuple[str, str] | None:
    """
    Split a provider guid into (scheme, value).

    Handles 'imdb://tt1', 'tmdb://movie/550', 'com.plexapp.agents.imdb://tt1?lang=en'
    and 'plex://movie/5d776...' (plex keeps its full path as value).
    """
    if not guid or "://" not in guid:
        return None

    scheme, value = guid.strip().split("://", 1)
    scheme = scheme.lower().split(".")[-1]
    scheme = AGENT_SCHEMES.get(scheme)
    if not scheme:
        return None

    value = value.split("?")[0].strip("/")
    if scheme != "plex":
        head, _, rest = value.partition("/")
        # 'tmdb://movie/550', 'imdb://title/tt1'. Legacy episode paths like '81189/1/2' stay whole.
        if rest and head.lower() in _PATH_TYPES:
            value = rest

    value = _clean_value(scheme, value)
    if not value:
        return None
    return scheme, value


def _clean_value(scheme: str, value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if s.lower() in _SENTINELS:
        return None
    if scheme == "imdb":
        s = s.lower()
    return s


def normalize_guids(guids: Mapping[str, Any] | Iterable[str]) -> dict[str, str]:
    """Accept a scheme -> id mapping or a list of guid strings."""
    output: dict[str, str] = {}
    if isinstance(guids, Mapping):
        for scheme, value in guids.items():
            if isinstance(value, str) and "://" in value:
                parsed = parse_guid(value)
                if parsed and parsed[0] not in output:
                    output[parsed[0]] = parsed[1]
                continue
            key = str(scheme).strip().lower()
            key = AGENT_SCHEMES.get(key, key)
            cleaned = _clean_value(key, value)
            if key and cleaned and key not in output:
                output[key] = cleaned
        return output

    for guid in guids:
        parsed = parse_guid(guid)
        if parsed and parsed[0] not in output:
            output[parsed[0]] = parsed[1]
    return output


# ---------------------------------------------------------
# IDENTIFIER COMPARISON LOGIC
# ---------------------------------------------------------
GuidPair = tuple[str, str]


def _pairs(guids: Mapping[str, str] | Iterable[GuidPair]) -> set[GuidPair]:
    if isinstance(guids, Mapping):
        return set(guids.items())
    return set(guids)


def match(a: Mapping[str, str] | Iterable[GuidPair], b: Mapping[str, str] | Iterable[GuidPair]) -> bool:
    return not _pairs(a).isdisjoint(_pairs(b))


def identity_pairs(item: Observation | Entity, episodes_disable_guid: bool = True) -> list[GuidPair]:
    """
    Pairs used to find the same media on other backends.

    Episodes are keyed relative to their show ('imdb', 'tt0903747/1/2') when possible.
    Their own guids are used when episodes_disable_guid is off, or when no relative
    identity can be built.
    """
    pairs: list[GuidPair] = []
    if item.kind == MediaKind.EPISODE:
        if item.show_guids and item.season is not None and item.episode is not None:
            for scheme, value in item.show_guids.items():
                pairs.append((scheme, f"{value}/{item.season}/{item.episode}"))
        if pairs and episodes_disable_guid:
            return pairs

    pairs.extend(item.guids.items())
    return pairs


def preferred_pair(pairs: Iterable[GuidPair]) -> GuidPair | None:
    ranked = sorted(pairs, key=lambda p: (GUID_PRIORITY.index(p[0]) if p[0] in GUID_PRIORITY else len(GUID_PRIORITY), p))
    return ranked[0] if ranked else None


def merge_guids(existing: Dict[str, str], incoming: Mapping[str, str]) -> Dict[str, str]:
    """Union of two guid sets. The first value seen for a scheme is kept."""
    merged = dict(existing)
    for scheme, value in incoming.items():
        if scheme not in merged:
            merged[scheme] = value
    return merged


# ---------------------------------------------------------
# STATE RESOLUTION
# ---------------------------------------------------------
def resolve_state(
    entity: Entity,
    observation: Observation,
    policy: WatchedPolicy,
    previous: BackendMetadata | None = None,
) -> bool:
    """
    Apply one observation to the canonical state. Returns True when state changed.

    previous is what the observing backend reported before this observation, if anything.
    """
    before = (entity.watched, entity.progress)
    at = observation.observed_at

    if policy == WatchedPolicy.WATCHED_WINS:
        watched = any(meta.watched for meta in entity.per_backend.values())
        if watched != entity.watched:
            entity.watched = watched
            entity.updated_at = max(entity.updated_at, at)
        if not entity.watched and at >= entity.updated_at:
            entity.progress = observation.progress
            entity.updated_at = at
        elif entity.watched:
            entity.progress = 0
        return before != (entity.watched, entity.progress)

    if policy == WatchedPolicy.MOST_RECENT:
        newer = at > entity.updated_at
        # Clock tie: watched wins
        tie = at == entity.updated_at and observation.watched and not entity.watched
        if newer or tie:
            entity.watched = observation.watched
            entity.progress = 0 if observation.watched else observation.progress
            entity.updated_at = at
        return before != (entity.watched, entity.progress)

    if observation.watched:
        # Plays older than the last reset are history, a tie with it counts as a replay
        if entity.watched or at >= entity.unwatched_at:
            if not entity.watched:
                entity.watched = True
                entity.updated_at = max(entity.updated_at, at)
            entity.watched_at = max(entity.watched_at, at)
            entity.progress = 0
    elif entity.watched:
        # Only a played -> unplayed transition on one backend resets the canonical state
        if previous is not None and previous.watched and at > entity.watched_at:
            entity.watched = False
            entity.unwatched_at = at
            entity.progress = observation.progress
            entity.updated_at = max(entity.updated_at, at)
    elif at >= entity.updated_at:
        entity.progress = observation.progress
        entity.updated_at = at

    return before != (entity.watched, entity.progress)


def observation_metadata(observation: Observation) -> BackendMetadata:
    return BackendMetadata(
        id=observation.id,
        watched=observation.watched,
        observed_at=observation.observed_at,
        progress=observation.progress,
        extra=dict(observation.extra),
    )


def new_entity(key: str, backend: str, observation: Observation, isolated: bool = False) -> Entity:
    return Entity(
        key=key,
        kind=observation.kind,
        title=observation.title,
        year=observation.year,
        guids=dict(observation.guids),
        show_title=observation.show_title,
        show_guids=dict(observation.show_guids),
        season=observation.season,
        episode=observation.episode,
        watched=observation.watched,
        progress=0 if observation.watched else observation.progress,
        updated_at=observation.observed_at,
        watched_at=observation.observed_at if observation.watched else 0,
        isolated=isolated,
        per_backend={backend: observation_metadata(observation)},
    )


def _fill_identity(existing: Entity, incoming: Observation | Entity) -> None:
    existing.guids = merge_guids(existing.guids, incoming.guids)
    existing.show_guids = merge_guids(existing.show_guids, incoming.show_guids)
    existing.title = existing.title or incoming.title
    existing.year = existing.year or incoming.year
    existing.show_title = existing.show_title or incoming.show_title
    if existing.season is None:
        existing.season = incoming.season
    if existing.episode is None:
        existing.episode = incoming.episode


def merge(existing: Entity, incoming: Observation, backend: str, policy: WatchedPolicy = WatchedPolicy.PLAYED_SINCE_RESET) -> Entity:
    """Fold a backend observation into an existing entity of the same kind."""
    _fill_identity(existing, incoming)

    previous = existing.per_backend.get(backend)
    if previous is not None and previous.id != incoming.id:
        # A different copy took over the record, its history does not apply
        previous = None
    existing.per_backend[backend] = observation_metadata(incoming)
    resolve_state(existing, incoming, policy, previous)
    return existing


def fold(into: Entity, other: Entity, policy: WatchedPolicy = WatchedPolicy.PLAYED_SINCE_RESET) -> Entity:
    """
    Join two entities that turned out to be the same media.

    into keeps its key, and its per-backend record wins when both know the same backend.
    """
    _fill_identity(into, other)
    for name, meta in other.per_backend.items():
        into.per_backend.setdefault(name, meta)

    newest = other if other.updated_at > into.updated_at else into
    into.watched_at = max(into.watched_at, other.watched_at)
    into.unwatched_at = max(into.unwatched_at, other.unwatched_at)

    if policy == WatchedPolicy.WATCHED_WINS:
        watched = any(meta.watched for meta in into.per_backend.values())
    elif policy == WatchedPolicy.MOST_RECENT and into.updated_at != other.updated_at:
        watched = newest.watched
    elif policy == WatchedPolicy.MOST_RECENT:
        watched = into.watched or other.watched
    else:
        watched = (into.watched or other.watched) and into.watched_at >= into.unwatched_at

    into.watched = watched
    into.progress = 0 if watched else newest.progress
    into.updated_at = max(into.updated_at, other.updated_at)
    return into

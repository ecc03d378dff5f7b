# playsync test scripts
from __future__ import annotations

import pytest
from pydantic import ValidationError

from playsync.watched import (
    MediaKind,
    Observation,
    WatchedPolicy,
    fold,
    identity_pairs,
    match,
    merge,
    new_entity,
    normalize_guids,
    parse_guid,
    preferred_pair,
)


def test_parse_guid_common_patterns() -> None:
    assert parse_guid("imdb://tt0137523") == ("imdb", "tt0137523")
    assert parse_guid("tmdb://movie/550") == ("tmdb", "550")
    assert parse_guid("com.plexapp.agents.imdb://tt0137523?lang=en") == ("imdb", "tt0137523")
    assert parse_guid("com.plexapp.agents.themoviedb://550?lang=en") == ("tmdb", "550")
    assert parse_guid("com.plexapp.agents.thetvdb://81189/1/2?lang=en") == ("tvdb", "81189/1/2")
    assert parse_guid("imdb://title/tt7654321") == ("imdb", "tt7654321")
    assert parse_guid("plex://movie/5d7768ba96b655001fdc0408") == ("plex", "movie/5d7768ba96b655001fdc0408")


def test_parse_guid_rejects_unknown_and_empty() -> None:
    assert parse_guid("") is None
    assert parse_guid("tt0137523") is None
    assert parse_guid("local://12345") is None
    assert parse_guid("imdb://") is None
    assert parse_guid("tmdb://0") is None


def test_normalize_guids_from_provider_ids() -> None:
    ids = normalize_guids({"Imdb": "TT0012345", "Tmdb": " 550 ", "Tvdb": None, "TheMovieDb": "999"})
    assert ids == {"imdb": "tt0012345", "tmdb": "550"}


def test_normalize_guids_from_list_keeps_first() -> None:
    ids = normalize_guids(["imdb://tt1", "tmdb://2", "imdb://tt9"])
    assert ids == {"imdb": "tt1", "tmdb": "2"}


def test_match_needs_one_shared_pair() -> None:
    assert match({"imdb": "tt1", "tmdb": "2"}, {"tmdb": "2"})
    assert not match({"imdb": "tt1"}, {"imdb": "tt2"})
    assert not match({}, {"imdb": "tt1"})


def test_preferred_pair_follows_priority() -> None:
    assert preferred_pair([("tmdb", "550"), ("imdb", "tt1"), ("plex", "movie/x")]) == ("imdb", "tt1")
    assert preferred_pair([("plex", "movie/x"), ("custom", "a")]) == ("plex", "movie/x")
    assert preferred_pair([]) is None


def test_observation_requires_kind() -> None:
    with pytest.raises(ValidationError):
        Observation.model_validate({"id": "1", "title": "No kind"})


def test_episode_identity_uses_show_guid_and_numbering() -> None:
    ep = Observation(
        id="7",
        kind=MediaKind.EPISODE,
        guids={"tvdb": "349232"},
        show_guids={"imdb": "tt0903747"},
        season=1,
        episode=2,
    )
    assert identity_pairs(ep) == [("imdb", "tt0903747/1/2")]
    assert identity_pairs(ep, episodes_disable_guid=False) == [("imdb", "tt0903747/1/2"), ("tvdb", "349232")]


def test_episode_without_show_guids_falls_back_to_own_guids() -> None:
    ep = Observation(id="7", kind=MediaKind.EPISODE, guids={"tvdb": "349232"}, season=1, episode=2)
    assert identity_pairs(ep) == [("tvdb", "349232")]


def test_merge_unions_guids_and_keeps_first_value() -> None:
    first = Observation(id="1", kind=MediaKind.MOVIE, title="Fight Club", guids={"imdb": "tt0137523"}, observed_at=10)
    second = Observation(id="a", kind=MediaKind.MOVIE, guids={"imdb": "tt0137523", "tmdb": "550"}, observed_at=5)
    entity = new_entity("imdb://tt0137523", "plex", first)

    merge(entity, second, "jellyfin")

    assert entity.guids == {"imdb": "tt0137523", "tmdb": "550"}
    assert entity.title == "Fight Club"
    assert set(entity.per_backend) == {"plex", "jellyfin"}
    assert entity.per_backend["jellyfin"].id == "a"


@pytest.mark.parametrize("order", [("plex", "jellyfin"), ("jellyfin", "plex")])
def test_newer_play_wins_in_either_order(order: tuple[str, str]) -> None:
    observations = {
        "plex": Observation(id="1", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=True, observed_at=200),
        "jellyfin": Observation(id="a", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=False, observed_at=100),
    }
    first, second = order
    entity = new_entity("imdb://tt1", first, observations[first])
    merge(entity, observations[second], second)

    assert entity.watched is True
    assert entity.updated_at == 200


def test_most_recent_tie_prefers_watched() -> None:
    unwatched = Observation(id="1", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=False, observed_at=100)
    watched = Observation(id="a", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=True, observed_at=100)
    entity = new_entity("imdb://tt1", "plex", unwatched)
    merge(entity, watched, "jellyfin", WatchedPolicy.MOST_RECENT)
    assert entity.watched is True


def test_watched_wins_ignores_timestamps() -> None:
    watched = Observation(id="1", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=True, observed_at=100)
    newer = Observation(id="a", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=False, observed_at=500)
    entity = new_entity("imdb://tt1", "plex", watched)
    merge(entity, newer, "jellyfin", WatchedPolicy.WATCHED_WINS)
    assert entity.watched is True


def test_unwatched_from_backend_that_never_played_keeps_watched() -> None:
    played = Observation(id="1", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=True, observed_at=100)
    never_played = Observation(id="a", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=False, observed_at=200)
    entity = new_entity("imdb://tt1", "plex", played)

    merge(entity, never_played, "jellyfin")

    assert entity.watched is True
    assert entity.watched_at == 100
    assert entity.unwatched_at == 0


def test_unplaying_on_one_backend_resets_until_played_again() -> None:
    entity = new_entity("imdb://tt1", "plex", Observation(id="1", kind=MediaKind.MOVIE, watched=True, observed_at=100))
    merge(entity, Observation(id="a", kind=MediaKind.MOVIE, watched=True, observed_at=150), "jellyfin")

    merge(entity, Observation(id="a", kind=MediaKind.MOVIE, watched=False, observed_at=300), "jellyfin")
    assert entity.watched is False
    assert entity.unwatched_at == 300

    # plex still reports the play from before the reset
    merge(entity, Observation(id="1", kind=MediaKind.MOVIE, watched=True, observed_at=100), "plex")
    assert entity.watched is False

    merge(entity, Observation(id="1", kind=MediaKind.MOVIE, watched=True, observed_at=400), "plex")
    assert entity.watched is True
    assert entity.watched_at == 400


def test_unplayed_copy_taking_over_a_record_is_not_a_reset() -> None:
    entity = new_entity("imdb://tt1", "plex", Observation(id="1", kind=MediaKind.MOVIE, watched=True, observed_at=100))
    merge(entity, Observation(id="2", kind=MediaKind.MOVIE, watched=False, observed_at=200), "plex")
    assert entity.watched is True
    assert entity.per_backend["plex"].id == "2"


def test_most_recent_policy_lets_newer_unwatched_win() -> None:
    played = Observation(id="1", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=True, observed_at=100)
    never_played = Observation(id="a", kind=MediaKind.MOVIE, guids={"imdb": "tt1"}, watched=False, observed_at=200)
    entity = new_entity("imdb://tt1", "plex", played)

    merge(entity, never_played, "jellyfin", WatchedPolicy.MOST_RECENT)

    assert entity.watched is False
    assert entity.updated_at == 200


@pytest.mark.parametrize(
    "policy, expected",
    [(WatchedPolicy.PLAYED_SINCE_RESET, True), (WatchedPolicy.MOST_RECENT, False), (WatchedPolicy.WATCHED_WINS, True)],
)
def test_fold_joins_identity_and_state(policy: WatchedPolicy, expected: bool) -> None:
    played = new_entity("imdb://tt1", "plex", Observation(id="1", kind=MediaKind.MOVIE, title="Fight Club", guids={"imdb": "tt1"}, watched=True, observed_at=100))
    other = new_entity("tmdb://550", "jellyfin", Observation(id="a", kind=MediaKind.MOVIE, guids={"tmdb": "550"}, watched=False, observed_at=200))

    fold(played, other, policy)

    assert played.key == "imdb://tt1"
    assert played.guids == {"imdb": "tt1", "tmdb": "550"}
    assert set(played.per_backend) == {"plex", "jellyfin"}
    assert played.watched is expected
    assert played.updated_at == 200


def test_entity_name() -> None:
    ep = Observation(id="7", kind=MediaKind.EPISODE, title="Cat's in the Bag...", show_title="Breaking Bad", season=1, episode=2)
    assert new_entity("k", "plex", ep).name() == "Breaking Bad - 01x002 - Cat's in the Bag..."
    film = Observation(id="1", kind=MediaKind.MOVIE, title="Fight Club", year=1999)
    assert new_entity("k", "plex", film).name() == "Fight Club (1999)"

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from tmdb_images import (
    ConfigurationCache,
    EndpointKind,
    ImageFetcher,
    ImageResult,
    RateLimitedError,
    RequestQueue,
    TransportError,
    build_url,
    parse_paths_response,
    parse_ranked_response,
    pick_top_ranked,
)


BASE = "https://api.test/3"
IMG = "https://image.tmdb.org/t/p/"

SERIES_BODY = {
    "poster_path": "/show.jpg",
    "backdrop_path": "/fanart.jpg",
    "seasons": [
        {"season_number": 0, "poster_path": "/specials.jpg"},
        {"season_number": 1, "poster_path": "/s1.jpg"},
        {"season_number": 2, "poster_path": None},
        {"poster_path": "/orphan.jpg"},
    ],
}


@pytest.fixture
def cache(store, transport, now_ms):
    store.set_many(
        {
            "base_url": IMG,
            "sizes": json.dumps({"poster": "w342", "backdrop": "original", "still": "w300"}),
            "lastUpdate": now_ms.value,
        }
    )
    return ConfigurationCache(
        store=store,
        transport=transport,
        config_url=f"{BASE}/configuration?api_key=k",
        now_ms=now_ms,
    )


@pytest.fixture
def mock_queue():
    queue = MagicMock(spec=RequestQueue)
    queue.submit = AsyncMock(return_value={})
    return queue


def make_fetcher(queue, cache, image_mode="paths"):
    return ImageFetcher(
        queue=queue,
        cache=cache,
        api_key="k",
        base_url=BASE,
        language="en",
        image_mode=image_mode,
    )


@pytest.mark.asyncio
async def test_series_images_resolve_every_path(mock_queue, cache):
    mock_queue.submit.return_value = SERIES_BODY
    fetcher = make_fetcher(mock_queue, cache)

    result = await fetcher.get_series_images(1399)

    mock_queue.submit.assert_awaited_once_with(f"{BASE}/tv/1399?language=en&api_key=k")
    assert result.poster == f"{IMG}w342/show.jpg"
    assert result.backdrop == f"{IMG}original/fanart.jpg"
    assert result.seasons == {
        0: f"{IMG}w342/specials.jpg",
        1: f"{IMG}w342/s1.jpg",
        2: None,
    }
    assert result.still is None


@pytest.mark.asyncio
async def test_episode_images_use_still_size(mock_queue, cache):
    mock_queue.submit.return_value = {"still_path": "/ep.jpg"}
    fetcher = make_fetcher(mock_queue, cache)

    result = await fetcher.get_episode_images(1399, 2, 5)

    mock_queue.submit.assert_awaited_once_with(
        f"{BASE}/tv/1399/season/2/episode/5/images?language=en&api_key=k"
    )
    assert result == ImageResult(still=f"{IMG}w300/ep.jpg")


@pytest.mark.asyncio
async def test_season_images_return_season_poster(mock_queue, cache):
    mock_queue.submit.return_value = {"poster_path": "/season3.jpg", "episodes": []}
    fetcher = make_fetcher(mock_queue, cache)

    result = await fetcher.get_season_images(1399, 3)

    mock_queue.submit.assert_awaited_once_with(f"{BASE}/tv/1399/season/3?language=en&api_key=k")
    assert result.poster == f"{IMG}w342/season3.jpg"
    assert result.backdrop is None


@pytest.mark.parametrize(
    "call",
    [
        lambda f: f.get_series_images(0),
        lambda f: f.get_series_images(None),
        lambda f: f.get_series_images(""),
        lambda f: f.get_season_images(1399, 0),
        lambda f: f.get_episode_images(1399, None, 1),
        lambda f: f.get_episode_images(1399, 1, 0),
    ],
)
@pytest.mark.asyncio
async def test_missing_identifiers_short_circuit(mock_queue, cache, call, caplog):
    fetcher = make_fetcher(mock_queue, cache)

    with caplog.at_level(logging.ERROR, logger="tmdb-images"):
        result = await call(fetcher)

    assert result == ImageResult()
    assert result.to_dict() == {"poster": None, "backdrop": None, "seasons": {}, "still": None}
    mock_queue.submit.assert_not_called()
    assert "Missing TMDB ID" in caplog.text


@pytest.mark.parametrize(
    "error",
    [
        TransportError("500 from GET", status=500),
        RateLimitedError("429 again"),
        TransportError("connection refused", status=0),
    ],
)
@pytest.mark.asyncio
async def test_queue_failures_become_empty_results(mock_queue, cache, error, caplog):
    mock_queue.submit.side_effect = error
    fetcher = make_fetcher(mock_queue, cache)

    with caplog.at_level(logging.ERROR, logger="tmdb-images"):
        result = await fetcher.get_series_images(1399)

    assert result.is_empty()
    assert result.seasons == {}
    assert "Error fetching series images for series 1399" in caplog.text


@pytest.mark.asyncio
async def test_unexpected_body_shape_degrades_to_absent_fields(mock_queue, cache):
    mock_queue.submit.return_value = ["not", "a", "dict"]
    fetcher = make_fetcher(mock_queue, cache)

    assert await fetcher.get_series_images(1399) == ImageResult()

    mock_queue.submit.return_value = {"seasons": "nope"}
    assert await fetcher.get_series_images(1399) == ImageResult()


@pytest.mark.asyncio
async def test_empty_cache_yields_absent_urls(mock_queue, store, transport, now_ms):
    empty = ConfigurationCache(store=store, transport=transport, config_url="u", now_ms=now_ms)
    mock_queue.submit.return_value = SERIES_BODY
    fetcher = make_fetcher(mock_queue, empty)

    result = await fetcher.get_series_images(1399)

    assert result.poster is None
    assert result.backdrop is None
    assert set(result.seasons) == {0, 1, 2}
    assert not any(result.seasons.values())


@pytest.mark.asyncio
async def test_ranked_mode_picks_most_voted_images(mock_queue, cache):
    mock_queue.submit.return_value = {
        "posters": [
            {"file_path": "/low.jpg", "vote_count": 2},
            {"file_path": "/top.jpg", "vote_count": 14},
        ],
        "backdrops": [{"file_path": "/bg.jpg", "vote_count": 0}],
    }
    fetcher = make_fetcher(mock_queue, cache, image_mode="ranked")

    result = await fetcher.get_series_images(1399)

    mock_queue.submit.assert_awaited_once_with(f"{BASE}/tv/1399/images?language=en&api_key=k")
    assert result.poster == f"{IMG}w342/top.jpg"
    assert result.backdrop == f"{IMG}original/bg.jpg"
    assert result.seasons == {}


@pytest.mark.asyncio
async def test_ranked_mode_episode_stills(mock_queue, cache):
    mock_queue.submit.return_value = {
        "stills": [
            {"file_path": "/a.jpg", "vote_count": 5},
            {"file_path": "/b.jpg", "vote_count": 5},
        ]
    }
    fetcher = make_fetcher(mock_queue, cache, image_mode="ranked")

    result = await fetcher.get_episode_images(1399, 1, 1)

    assert result.still == f"{IMG}w300/a.jpg"


def test_pick_top_ranked_skips_unusable_entries():
    entries = [
        "junk",
        {"vote_count": 100},
        {"file_path": "/x.jpg", "vote_count": "bad"},
        {"file_path": "/y.jpg", "vote_count": 1},
    ]
    assert pick_top_ranked(entries) == "/y.jpg"
    assert pick_top_ranked(None) is None
    assert pick_top_ranked([]) is None


def test_parse_ranked_season_uses_posters():
    def resolve(path, category):
        return f"{category}:{path}" if path else None

    result = parse_ranked_response(
        EndpointKind.SEASON,
        {"posters": [{"file_path": "/p.jpg", "vote_count": 1}]},
        resolve,
    )
    assert result == ImageResult(poster="poster:/p.jpg")


def test_unknown_image_mode_is_rejected(mock_queue, cache):
    with pytest.raises(ValueError, match="Unsupported image mode"):
        make_fetcher(mock_queue, cache, image_mode="guess")


@pytest.mark.asyncio
async def test_network_error_through_real_queue_is_not_retried(clock, transport, cache):
    queue = RequestQueue(transport, sleep=clock.sleep)
    url = build_url(EndpointKind.SERIES, base_url=BASE, api_key="k", series_id=1399)
    transport.script(url, TransportError("connection refused", status=0))
    fetcher = make_fetcher(queue, cache)

    result = await clock.run_until_complete(fetcher.get_series_images(1399))

    assert result == ImageResult()
    await clock.run_until_idle()
    assert transport.urls == [url]
    assert queue.stats.retried == 0


@pytest.mark.asyncio
async def test_single_429_through_real_queue_still_returns_images(clock, transport, cache):
    queue = RequestQueue(transport, sleep=clock.sleep)
    url = build_url(EndpointKind.EPISODE, base_url=BASE, api_key="k", series_id=1, season_id=1, episode_id=2)
    transport.script(url, RateLimitedError("429"), {"still_path": "/still.jpg"})
    fetcher = make_fetcher(queue, cache)

    result = await clock.run_until_complete(fetcher.get_episode_images(1, 1, 2))

    assert result.still == f"{IMG}w300/still.jpg"
    assert transport.urls == [url, url]


@pytest.mark.parametrize("seasons", [5, None, {"1": "/s1.jpg"}, True])
@pytest.mark.asyncio
async def test_malformed_seasons_keep_show_images(mock_queue, cache, seasons):
    mock_queue.submit.return_value = {
        "poster_path": "/show.jpg",
        "backdrop_path": "/fanart.jpg",
        "seasons": seasons,
    }
    fetcher = make_fetcher(mock_queue, cache)

    result = await fetcher.get_series_images(1399)

    assert result.poster == f"{IMG}w342/show.jpg"
    assert result.backdrop == f"{IMG}original/fanart.jpg"
    assert result.seasons == {}


def test_parse_paths_series_tolerates_non_list_seasons():
    def resolve(path, category):
        return f"{category}:{path}" if path else None

    result = parse_paths_response(
        EndpointKind.SERIES,
        {"poster_path": "/p.jpg", "backdrop_path": "/b.jpg", "seasons": 5},
        resolve,
    )
    assert result == ImageResult(poster="poster:/p.jpg", backdrop="backdrop:/b.jpg")

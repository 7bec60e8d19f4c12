#!/usr/bin/env python3
"""Rate-limited TMDB image lookups for shows, seasons and episodes.

Architecture:
- RequestQueue: single-lane admission queue. Serializes outbound TMDB calls,
  spends a fixed quota per window, cools down when the quota is used up and
  retries a rate-limited (429) request exactly once after a short backoff.
- ConfigurationCache: keeps the image base URL and the chosen size tokens in
  the local state store, refreshing them from /configuration when stale.
- ImageFetcher: validates identifiers, submits endpoint URLs to the queue and
  resolves the returned image paths into absolute URLs. Never raises.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import enum
import json
import logging
import sqlite3
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table


LOGGER = logging.getLogger("tmdb-images")


DEFAULT_CONFIG: Dict[str, Any] = {
    "api_keys": {
        "tmdb": "",
    },
    "runtime": {
        "database_path": "tmdb_images.sqlite3",
        "log_file_path": "logs/tmdb_images.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
    },
    "tmdb": {
        "base_url": "https://api.themoviedb.org/3",
        "language": "en",
        "timeout_seconds": 20,
        "image_mode": "paths",
        # A bit over 10 seconds, TMDB still answers 429 at exactly 10.
        "rate_limit": {
            "requests": 40,
            "per_seconds": 10.7,
        },
        "retry_backoff_seconds": 0.5,
        "dispatch_interval_seconds": 0.001,
        "config_max_age_days": 7,
    },
}


SUPPORTED_IMAGE_MODES: Set[str] = {
    "paths",
    "ranked",
}

IMAGE_CATEGORIES: Tuple[str, ...] = ("poster", "backdrop", "still")

# category -> (configuration list, preferred token, fallback offset from the end)
SIZE_PREFERENCES: Dict[str, Tuple[str, str, int]] = {
    "poster": ("poster_sizes", "w342", 2),
    "backdrop": ("backdrop_sizes", "original", 1),
    "still": ("still_sizes", "w300", 2),
}

STATE_BASE_URL_KEY = "base_url"
STATE_SIZES_KEY = "sizes"
STATE_LAST_UPDATE_KEY = "lastUpdate"

DAY_MS = 24 * 60 * 60 * 1000


def now_epoch_ms() -> int:
    return int(time.time() * 1000)


def parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def sanitize_url_for_logs(url: str) -> str:
    sensitive_keys = {"api_key", "apikey", "token", "access_token"}
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        query = [
            (key, "***" if key.lower() in sensitive_keys else value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
        ]
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path, urlencode(query, safe="*"), parts.fragment)
        )
    except ValueError:
        return url


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, OSError)


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def normalize_config(loaded: Dict[str, Any]) -> Dict[str, Any]:
    config = merge_dict(DEFAULT_CONFIG, loaded)

    raw_key = str(config.get("api_keys", {}).get("tmdb", "")).strip()
    placeholder_markers = ("YOUR_", "YOUR-", "CHANGEME", "REPLACE_ME")
    if not raw_key or any(marker in raw_key.upper() for marker in placeholder_markers):
        raise ValueError("Missing required API keys in config: api_keys.tmdb")
    config["api_keys"]["tmdb"] = raw_key

    runtime_cfg = config["runtime"]
    log_file_path = str(runtime_cfg.get("log_file_path", "logs/tmdb_images.log")).strip()
    runtime_cfg["log_file_path"] = log_file_path or "logs/tmdb_images.log"
    runtime_cfg["log_file_max_bytes"] = max(
        1024, int(runtime_cfg.get("log_file_max_bytes", 10485760))
    )
    runtime_cfg["log_file_backup_count"] = max(
        0, int(runtime_cfg.get("log_file_backup_count", 5))
    )

    tmdb_cfg = config["tmdb"]
    tmdb_cfg["base_url"] = str(tmdb_cfg["base_url"]).strip().rstrip("/")
    if not tmdb_cfg["base_url"]:
        raise ValueError("tmdb.base_url must not be empty")
    tmdb_cfg["language"] = str(tmdb_cfg.get("language") or "en").strip()
    tmdb_cfg["timeout_seconds"] = max(1, int(tmdb_cfg["timeout_seconds"]))

    image_mode = str(tmdb_cfg.get("image_mode", "paths")).strip().lower()
    if image_mode not in SUPPORTED_IMAGE_MODES:
        raise ValueError(
            "Invalid tmdb.image_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_IMAGE_MODES))
        )
    tmdb_cfg["image_mode"] = image_mode

    rate_cfg = tmdb_cfg["rate_limit"]
    rate_cfg["requests"] = max(1, int(rate_cfg["requests"]))
    rate_cfg["per_seconds"] = max(0.001, float(rate_cfg["per_seconds"]))
    tmdb_cfg["retry_backoff_seconds"] = max(0.0, float(tmdb_cfg["retry_backoff_seconds"]))
    tmdb_cfg["dispatch_interval_seconds"] = max(
        0.0, float(tmdb_cfg["dispatch_interval_seconds"])
    )
    tmdb_cfg["config_max_age_days"] = max(1, int(tmdb_cfg["config_max_age_days"]))

    return config


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)

    if not isinstance(loaded, dict):
        raise ValueError("Config root must be a JSON object")
    return normalize_config(loaded)


# --------------------------------------------------------------------------
# Errors


class TMDBImagesError(Exception):
    """Base class for every error raised by this module."""


class ValidationError(TMDBImagesError):
    """A required show/season/episode identifier is missing."""


class ConfigurationIncompleteError(TMDBImagesError):
    """The configuration endpoint answered without the expected image fields."""


class TransportError(TMDBImagesError):
    """Non-2xx response, unreadable body or network failure."""

    def __init__(self, message: str, *, status: int = 0, url: str = ""):
        super().__init__(message)
        self.status = status
        self.url = url


class RateLimitedError(TransportError):
    def __init__(self, message: str, *, url: str = ""):
        super().__init__(message, status=429, url=url)


# --------------------------------------------------------------------------
# Endpoints and image URLs


class EndpointKind(enum.Enum):
    CONFIGURATION = "configuration"
    SERIES = "series"
    SEASON = "season"
    EPISODE = "episode"


ENDPOINT_TEMPLATES: Dict[EndpointKind, str] = {
    EndpointKind.CONFIGURATION: "/configuration",
    EndpointKind.SERIES: "/tv/{series_id}",
    EndpointKind.SEASON: "/tv/{series_id}/season/{season_id}",
    EndpointKind.EPISODE: "/tv/{series_id}/season/{season_id}/episode/{episode_id}/images",
}

ENDPOINT_REQUIRED_IDS: Dict[EndpointKind, Tuple[str, ...]] = {
    EndpointKind.CONFIGURATION: (),
    EndpointKind.SERIES: ("series_id",),
    EndpointKind.SEASON: ("series_id", "season_id"),
    EndpointKind.EPISODE: ("series_id", "season_id", "episode_id"),
}


def build_url(
    kind: EndpointKind,
    *,
    base_url: str,
    api_key: str,
    language: str = "en",
    series_id: Any = None,
    season_id: Any = None,
    episode_id: Any = None,
    images: bool = False,
) -> str:
    """Return the fully qualified endpoint URL for ``kind``.

    Raises ValidationError when an identifier the endpoint needs is falsy.
    ``images`` selects the ``/images`` variant of the series and season
    endpoints; the episode endpoint always is one.
    """
    ids = {"series_id": series_id, "season_id": season_id, "episode_id": episode_id}
    missing = [name for name in ENDPOINT_REQUIRED_IDS[kind] if not ids[name]]
    if missing:
        raise ValidationError(
            f"Missing TMDB ID ({', '.join(missing)}) for {kind.value}: "
            f"series={series_id!r} season={season_id!r} episode={episode_id!r}"
        )

    path = ENDPOINT_TEMPLATES[kind].format(**ids)
    if images and kind in (EndpointKind.SERIES, EndpointKind.SEASON):
        path = f"{path}/images"

    if kind is EndpointKind.CONFIGURATION:
        params = {"api_key": api_key}
    else:
        params = {"language": language, "api_key": api_key}
    return f"{base_url.rstrip('/')}{path}?{urlencode(params)}"


def build_image_url(
    base_url: Optional[str],
    sizes: Optional[Mapping[str, str]],
    path: Optional[str],
    category: str,
) -> Optional[str]:
    if not path or not base_url or not sizes:
        return None
    size = sizes.get(category)
    if not size:
        return None
    return f"{base_url}{size}{path}"


# --------------------------------------------------------------------------
# Collaborators: state store and HTTP transport


class StateStore:
    """Key/value strings persisted in a SQLite ``state`` table."""

    def __init__(self, path: Union[str, Path]):
        self.path = path
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def close(self) -> None:
        self.conn.close()

    def get(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM state WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def has(self, key: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM state WHERE key = ?", (key,)).fetchone()
        return row is not None

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> None:
        # One transaction: either every key lands or none does.
        with self.conn:
            self.conn.executemany(
                """
                INSERT INTO state(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                [(key, str(value)) for key, value in values.items()],
            )


class HTTPTransport:
    """GETs a URL and returns its JSON body. Retrying is the caller's job."""

    def __init__(self, timeout_seconds: float = 20):
        self.timeout_seconds = timeout_seconds

    async def get_json(self, url: str) -> Any:
        safe_url = sanitize_url_for_logs(url)
        try:
            raw_resp = await asyncio.to_thread(
                requests.get,
                url,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            if is_network_unavailable_error(exc):
                LOGGER.warning("Network unavailable for GET %s: %s", safe_url, exc)
            raise TransportError(
                f"GET {safe_url} failed: {exc}", status=0, url=safe_url
            ) from exc

        status = raw_resp.status_code
        if status == 429:
            raise RateLimitedError(f"429 Too Many Requests from {safe_url}", url=safe_url)
        if not 200 <= status < 300:
            compact = " ".join((raw_resp.text or "").split())[:180]
            raise TransportError(
                f"{status} from GET {safe_url} {compact}".rstrip(),
                status=status,
                url=safe_url,
            )

        try:
            return raw_resp.json()
        except ValueError as exc:
            raise TransportError(
                f"Invalid JSON body from GET {safe_url}", status=status, url=safe_url
            ) from exc


# --------------------------------------------------------------------------
# Configuration cache


def select_size(available: Any, preferred: str, fallback_offset: int) -> Optional[str]:
    if not isinstance(available, list) or not available:
        return None
    if preferred in available:
        return preferred
    if len(available) < fallback_offset:
        return None
    candidate = available[-fallback_offset]
    return str(candidate) if candidate else None


def parse_image_configuration(payload: Any) -> Tuple[str, Dict[str, str]]:
    images = payload.get("images") if isinstance(payload, dict) else None
    if not isinstance(images, dict):
        raise ConfigurationIncompleteError("response has no 'images' object")

    missing: List[str] = []
    base_url = images.get("secure_base_url")
    if not base_url or not isinstance(base_url, str):
        missing.append("secure_base_url")

    sizes: Dict[str, str] = {}
    for category in IMAGE_CATEGORIES:
        list_key, preferred, fallback_offset = SIZE_PREFERENCES[category]
        size = select_size(images.get(list_key), preferred, fallback_offset)
        if size is None:
            missing.append(list_key)
        else:
            sizes[category] = size

    if missing:
        raise ConfigurationIncompleteError("missing " + ", ".join(missing))
    return base_url, sizes


class ConfigurationCache:
    def __init__(
        self,
        *,
        store: StateStore,
        transport: Any,
        config_url: str,
        max_age_days: int = 7,
        now_ms: Callable[[], int] = now_epoch_ms,
    ):
        self.store = store
        self.transport = transport
        self.config_url = config_url
        self.max_age_ms = int(max_age_days) * DAY_MS
        self._now_ms = now_ms

        self.base_url: Optional[str] = None
        self.sizes: Optional[Dict[str, str]] = None
        self.last_refreshed: Optional[int] = None
        self._refresh_lock: Optional[asyncio.Lock] = None
        self._load()

    def _load(self) -> None:
        self.base_url = self.store.get(STATE_BASE_URL_KEY) or None
        raw_sizes = self.store.get(STATE_SIZES_KEY)
        if raw_sizes:
            try:
                parsed = json.loads(raw_sizes)
            except ValueError:
                LOGGER.warning("Ignoring unreadable cached TMDB sizes: %r", raw_sizes)
                parsed = None
            self.sizes = parsed if isinstance(parsed, dict) and parsed else None
        self.last_refreshed = parse_int(self.store.get(STATE_LAST_UPDATE_KEY))

    def is_populated(self) -> bool:
        return bool(self.base_url and self.sizes)

    def is_stale(self) -> bool:
        if not self.is_populated() or self.last_refreshed is None:
            return True
        return self._now_ms() - self.last_refreshed > self.max_age_ms

    async def refresh(self) -> bool:
        """Fetch /configuration directly, outside the request queue.

        Returns False and keeps the previous values on any failure.
        """
        safe_url = sanitize_url_for_logs(self.config_url)
        try:
            payload = await self.transport.get_json(self.config_url)
            base_url, sizes = parse_image_configuration(payload)
        except ConfigurationIncompleteError as exc:
            LOGGER.error("Error fetching TMDB configuration, missing data? %s", exc)
            return False
        except TransportError as exc:
            LOGGER.error("Error fetching TMDB configuration from %s: %s", safe_url, exc)
            return False

        refreshed_at = self._now_ms()
        self.store.set_many(
            {
                STATE_BASE_URL_KEY: base_url,
                STATE_SIZES_KEY: json.dumps(sizes),
                STATE_LAST_UPDATE_KEY: refreshed_at,
            }
        )
        self.base_url = base_url
        self.sizes = sizes
        self.last_refreshed = refreshed_at
        LOGGER.info(
            "TMDB configuration refreshed: base_url=%s poster=%s backdrop=%s still=%s",
            base_url,
            sizes["poster"],
            sizes["backdrop"],
            sizes["still"],
        )
        return True

    async def ensure_fresh(self) -> bool:
        # Created lazily so it binds to the loop that awaits it.
        if self._refresh_lock is None:
            self._refresh_lock = asyncio.Lock()
        async with self._refresh_lock:
            if not self.is_stale():
                return True
            LOGGER.info("Fetching new TMDB configuration")
            refreshed = await self.refresh()
            return refreshed or self.is_populated()

    def resolve(self, path: Optional[str], category: str) -> Optional[str]:
        return build_image_url(self.base_url, self.sizes, path, category)


# --------------------------------------------------------------------------
# Rate-limited request queue


class QueueState(enum.Enum):
    IDLE = "idle"
    DRAINING = "draining"
    COOLING = "cooling"


class RequestState(enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_REQUEST_TRANSITIONS: Dict[RequestState, Set[RequestState]] = {
    RequestState.PENDING: {RequestState.EXECUTING},
    RequestState.EXECUTING: {
        RequestState.SUCCEEDED,
        RequestState.FAILED,
        RequestState.RETRY_SCHEDULED,
    },
    RequestState.RETRY_SCHEDULED: {RequestState.EXECUTING},
    RequestState.SUCCEEDED: set(),
    RequestState.FAILED: set(),
}


@dataclass
class PendingRequest:
    url: str
    future: "asyncio.Future[Any]"
    attempted: bool = False
    attempts: int = 0
    state: RequestState = RequestState.PENDING

    def _move(self, target: RequestState) -> None:
        if target not in ALLOWED_REQUEST_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal request transition {self.state.value} -> {target.value}"
            )
        self.state = target

    def begin_attempt(self) -> None:
        self._move(RequestState.EXECUTING)
        self.attempts += 1

    def schedule_retry(self) -> None:
        if self.attempted:
            raise RuntimeError(f"Request already retried once: {self.url}")
        self._move(RequestState.RETRY_SCHEDULED)
        self.attempted = True

    def succeed(self, body: Any) -> None:
        self._move(RequestState.SUCCEEDED)
        if not self.future.done():
            self.future.set_result(body)

    def fail(self, exc: BaseException) -> None:
        self._move(RequestState.FAILED)
        if not self.future.done():
            self.future.set_exception(exc)


@dataclass
class QuotaState:
    remaining: int
    window_active: bool = False


@dataclass
class QueueStats:
    dispatched: int = 0
    retried: int = 0
    failed: int = 0
    cooldowns: int = 0


class RequestQueue:
    """Single-lane admission queue with a per-window request quota.

    At most ``capacity`` requests are dispatched before the queue cools down
    for ``window_seconds``; the quota is then reset to full capacity. A 429
    answer re-appends the request at the tail after ``retry_backoff_seconds``,
    once. Everything runs on the event loop that calls ``submit``.
    """

    def __init__(
        self,
        transport: Any,
        *,
        capacity: int = 40,
        window_seconds: float = 10.7,
        retry_backoff_seconds: float = 0.5,
        dispatch_interval_seconds: float = 0.001,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.capacity = max(1, int(capacity))
        self.window_seconds = float(window_seconds)
        self.retry_backoff_seconds = float(retry_backoff_seconds)
        self.dispatch_interval_seconds = float(dispatch_interval_seconds)
        self._sleep = sleep
        self._clock = clock

        self.state = QueueState.IDLE
        self.quota = QuotaState(remaining=self.capacity)
        self.stats = QueueStats()
        self._pending: Deque[PendingRequest] = deque()
        self._draining = False
        self._tasks: Set["asyncio.Task[Any]"] = set()
        # clock readings of the latest dispatches, one per quota slot
        self.dispatch_times: Deque[float] = deque(maxlen=self.capacity)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def submit(self, url: str) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._pending.append(PendingRequest(url=url, future=future))
        self._ensure_draining()
        return await future

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        while self._pending:
            request = self._pending.popleft()
            if not request.future.done():
                request.future.cancel()
        self._draining = False
        self.state = QueueState.IDLE

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _ensure_draining(self) -> None:
        if self._draining:
            return
        self._draining = True
        self.state = QueueState.DRAINING
        self._spawn(self._drain())

    async def _drain(self) -> None:
        try:
            while True:
                if self.quota.remaining <= 0:
                    await self._cool_down()
                    continue
                if not self._pending:
                    break
                request = self._pending.popleft()
                self.quota.remaining -= 1
                self.stats.dispatched += 1
                self.dispatch_times.append(self._clock())
                self._spawn(self._execute(request))
                await self._sleep(self.dispatch_interval_seconds)
        finally:
            self._draining = False
            self.state = QueueState.IDLE

    async def _cool_down(self) -> None:
        self.state = QueueState.COOLING
        self.quota.window_active = True
        self.stats.cooldowns += 1
        spent_over = self._clock() - self.dispatch_times[0] if self.dispatch_times else 0.0
        LOGGER.info(
            "[queue] Quota of %s requests used in %.2fs. Cooling down %.1fs (%s pending)",
            self.capacity,
            spent_over,
            self.window_seconds,
            len(self._pending),
        )
        await self._sleep(self.window_seconds)
        self.quota.remaining = self.capacity
        self.quota.window_active = False
        self.state = QueueState.DRAINING

    async def _execute(self, request: PendingRequest) -> None:
        request.begin_attempt()
        safe_url = sanitize_url_for_logs(request.url)
        LOGGER.debug("[queue] GET %s (attempt %s)", safe_url, request.attempts)
        try:
            body = await self.transport.get_json(request.url)
        except asyncio.CancelledError:
            request.future.cancel()
            raise
        except RateLimitedError as exc:
            if request.attempted:
                LOGGER.warning("429 again from %s. Giving up", safe_url)
                self.stats.failed += 1
                request.fail(exc)
                return
            request.schedule_retry()
            self.stats.retried += 1
            LOGGER.warning(
                "429 from %s. Retrying once in %.1fs",
                safe_url,
                self.retry_backoff_seconds,
            )
            self._spawn(self._requeue_after_backoff(request))
            return
        except Exception as exc:
            self.stats.failed += 1
            request.fail(exc)
            return
        request.succeed(body)

    async def _requeue_after_backoff(self, request: PendingRequest) -> None:
        try:
            await self._sleep(self.retry_backoff_seconds)
        except asyncio.CancelledError:
            request.future.cancel()
            raise
        self._pending.append(request)
        self._ensure_draining()


# --------------------------------------------------------------------------
# Response parsing and image fetching


@dataclass
class ImageResult:
    poster: Optional[str] = None
    backdrop: Optional[str] = None
    seasons: Dict[int, Optional[str]] = field(default_factory=dict)
    still: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.poster or self.backdrop or self.still or any(self.seasons.values()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poster": self.poster,
            "backdrop": self.backdrop,
            "seasons": dict(self.seasons),
            "still": self.still,
        }


Resolver = Callable[[Optional[str], str], Optional[str]]


def pick_top_ranked(entries: Any) -> Optional[str]:
    if not isinstance(entries, list):
        return None
    best_path: Optional[str] = None
    best_votes = float("-inf")
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("file_path"):
            continue
        try:
            votes = float(entry.get("vote_count") or 0)
        except (TypeError, ValueError):
            votes = 0.0
        if votes > best_votes:
            best_votes = votes
            best_path = str(entry["file_path"])
    return best_path


def parse_paths_response(kind: EndpointKind, data: Any, resolve: Resolver) -> ImageResult:
    if not isinstance(data, dict):
        return ImageResult()

    if kind is EndpointKind.EPISODE:
        return ImageResult(still=resolve(data.get("still_path"), "still"))
    if kind is EndpointKind.SEASON:
        return ImageResult(poster=resolve(data.get("poster_path"), "poster"))

    raw_seasons = data.get("seasons")
    if not isinstance(raw_seasons, list):
        raw_seasons = []
    seasons: Dict[int, Optional[str]] = {}
    for season in raw_seasons:
        if not isinstance(season, dict):
            continue
        number = parse_int(season.get("season_number"))
        if number is None:
            continue
        seasons[number] = resolve(season.get("poster_path"), "poster")
    return ImageResult(
        poster=resolve(data.get("poster_path"), "poster"),
        backdrop=resolve(data.get("backdrop_path"), "backdrop"),
        seasons=seasons,
    )


def parse_ranked_response(kind: EndpointKind, data: Any, resolve: Resolver) -> ImageResult:
    if not isinstance(data, dict):
        return ImageResult()

    if kind is EndpointKind.EPISODE:
        return ImageResult(still=resolve(pick_top_ranked(data.get("stills")), "still"))
    if kind is EndpointKind.SEASON:
        return ImageResult(poster=resolve(pick_top_ranked(data.get("posters")), "poster"))
    return ImageResult(
        poster=resolve(pick_top_ranked(data.get("posters")), "poster"),
        backdrop=resolve(pick_top_ranked(data.get("backdrops")), "backdrop"),
    )


RESPONSE_PARSERS: Dict[str, Callable[[EndpointKind, Any, Resolver], ImageResult]] = {
    "paths": parse_paths_response,
    "ranked": parse_ranked_response,
}


class ImageFetcher:
    """Public lookups. Every failure degrades to an empty ImageResult."""

    def __init__(
        self,
        *,
        queue: RequestQueue,
        cache: ConfigurationCache,
        api_key: str,
        base_url: str = "https://api.themoviedb.org/3",
        language: str = "en",
        image_mode: str = "paths",
    ):
        if image_mode not in RESPONSE_PARSERS:
            raise ValueError(f"Unsupported image mode: {image_mode}")
        self.queue = queue
        self.cache = cache
        self.api_key = api_key
        self.base_url = base_url
        self.language = language
        self.image_mode = image_mode

    async def get_series_images(self, series_id: Any) -> ImageResult:
        return await self._get_images(EndpointKind.SERIES, series_id=series_id)

    async def get_season_images(self, series_id: Any, season_id: Any) -> ImageResult:
        return await self._get_images(
            EndpointKind.SEASON,
            series_id=series_id,
            season_id=season_id,
        )

    async def get_episode_images(
        self, series_id: Any, season_id: Any, episode_id: Any
    ) -> ImageResult:
        return await self._get_images(
            EndpointKind.EPISODE,
            series_id=series_id,
            season_id=season_id,
            episode_id=episode_id,
        )

    async def _get_images(self, kind: EndpointKind, **ids: Any) -> ImageResult:
        try:
            url = build_url(
                kind,
                base_url=self.base_url,
                api_key=self.api_key,
                language=self.language,
                images=self.image_mode == "ranked",
                **ids,
            )
        except ValidationError as exc:
            LOGGER.error("%s", exc)
            return ImageResult()

        parser = RESPONSE_PARSERS[self.image_mode]
        try:
            data = await self.queue.submit(url)
            return parser(kind, data, self.cache.resolve)
        except Exception as exc:
            LOGGER.error(
                "Error fetching %s images for series %s: %s",
                kind.value,
                ids.get("series_id"),
                exc,
            )
            return ImageResult()


# --------------------------------------------------------------------------
# Composition


class TMDBImageClient:
    def __init__(
        self,
        *,
        queue: RequestQueue,
        cache: ConfigurationCache,
        fetcher: ImageFetcher,
        store: Optional[StateStore] = None,
        owns_store: bool = False,
    ):
        self.queue = queue
        self.cache = cache
        self.fetcher = fetcher
        self.store = store
        self.owns_store = owns_store

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        *,
        transport: Any = None,
        store: Optional[StateStore] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now_ms: Callable[[], int] = now_epoch_ms,
    ) -> "TMDBImageClient":
        tmdb_cfg = config["tmdb"]
        api_key = config["api_keys"]["tmdb"]
        if transport is None:
            transport = HTTPTransport(timeout_seconds=tmdb_cfg["timeout_seconds"])
        owns_store = store is None
        if store is None:
            db_path = Path(config["runtime"]["database_path"]).expanduser().resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            store = StateStore(db_path)

        queue = RequestQueue(
            transport,
            capacity=int(tmdb_cfg["rate_limit"]["requests"]),
            window_seconds=float(tmdb_cfg["rate_limit"]["per_seconds"]),
            retry_backoff_seconds=float(tmdb_cfg["retry_backoff_seconds"]),
            dispatch_interval_seconds=float(tmdb_cfg["dispatch_interval_seconds"]),
            sleep=sleep,
            clock=clock,
        )
        cache = ConfigurationCache(
            store=store,
            transport=transport,
            config_url=build_url(
                EndpointKind.CONFIGURATION,
                base_url=tmdb_cfg["base_url"],
                api_key=api_key,
            ),
            max_age_days=int(tmdb_cfg["config_max_age_days"]),
            now_ms=now_ms,
        )
        fetcher = ImageFetcher(
            queue=queue,
            cache=cache,
            api_key=api_key,
            base_url=tmdb_cfg["base_url"],
            language=tmdb_cfg["language"],
            image_mode=tmdb_cfg["image_mode"],
        )
        return cls(
            queue=queue,
            cache=cache,
            fetcher=fetcher,
            store=store,
            owns_store=owns_store,
        )

    async def ensure_configuration(self) -> bool:
        return await self.cache.ensure_fresh()

    async def get_series_images(self, series_id: Any) -> ImageResult:
        return await self.fetcher.get_series_images(series_id)

    async def get_season_images(self, series_id: Any, season_id: Any) -> ImageResult:
        return await self.fetcher.get_season_images(series_id, season_id)

    async def get_episode_images(
        self, series_id: Any, season_id: Any, episode_id: Any
    ) -> ImageResult:
        return await self.fetcher.get_episode_images(series_id, season_id, episode_id)

    async def aclose(self) -> None:
        await self.queue.aclose()
        if self.owns_store and self.store is not None:
            self.store.close()


# --------------------------------------------------------------------------
# Rate-limit probe


@dataclass
class ProbeRecord:
    index: int
    started_at: float
    finished_at: float
    result: ImageResult


async def probe_rate_limits(
    client: TMDBImageClient,
    series_id: Any,
    count: int = 45,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> List[ProbeRecord]:
    """Fire ``count`` series lookups at once to exercise quota and 429 handling.

    Disable any HTTP cache in between, or TMDB never sees the burst.
    """
    origin = clock()

    async def one(index: int) -> ProbeRecord:
        started = clock() - origin
        result = await client.get_series_images(series_id)
        return ProbeRecord(
            index=index,
            started_at=started,
            finished_at=clock() - origin,
            result=result,
        )

    return list(await asyncio.gather(*(one(i) for i in range(max(1, int(count))))))


def render_probe(records: List[ProbeRecord], stats: QueueStats) -> Panel:
    table = Table(expand=True)
    table.add_column("#", justify="right", no_wrap=True, style="bold")
    table.add_column("Done (s)", justify="right", no_wrap=True)
    table.add_column("Poster", overflow="fold")
    table.add_column("Backdrop", overflow="fold")
    table.add_column("Seasons", justify="right", no_wrap=True)

    for record in records:
        result = record.result
        table.add_row(
            str(record.index + 1),
            f"{record.finished_at:.2f}",
            result.poster or "-",
            result.backdrop or "-",
            str(sum(1 for url in result.seasons.values() if url)),
        )

    failures = sum(1 for record in records if record.result.is_empty())
    title = (
        f"Probe: dispatched={stats.dispatched} retried={stats.retried} "
        f"failed={stats.failed} cooldowns={stats.cooldowns} empty={failures}"
    )
    return Panel(table, title=title, border_style="cyan", title_align="left")


def render_result(result: ImageResult) -> Table:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold yellow", no_wrap=True)
    table.add_column(overflow="fold")
    table.add_row("Poster", result.poster or "-")
    table.add_row("Backdrop", result.backdrop or "-")
    table.add_row("Still", result.still or "-")
    for number in sorted(result.seasons):
        table.add_row(f"Season {number}", result.seasons[number] or "-")
    return table


# --------------------------------------------------------------------------
# Logging and entry point


def configure_logging(config: Dict[str, Any]) -> Path:
    runtime_cfg = config.get("runtime", {})
    level_name = runtime_cfg.get("log_level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    raw_log_path = Path(str(runtime_cfg.get("log_file_path", "logs/tmdb_images.log"))).expanduser()
    if not raw_log_path.is_absolute():
        raw_log_path = (Path.cwd() / raw_log_path).resolve()
    raw_log_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        raw_log_path,
        maxBytes=max(1024, int(runtime_cfg.get("log_file_max_bytes", 10485760))),
        backupCount=max(0, int(runtime_cfg.get("log_file_backup_count", 5))),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.captureWarnings(True)

    # Keep third-party debug noise out of terminal output.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return raw_log_path


async def run_cli(args: argparse.Namespace, config: Dict[str, Any], console: Console) -> int:
    client = TMDBImageClient.from_config(config)
    try:
        if not await client.ensure_configuration():
            LOGGER.warning("No usable TMDB configuration; image URLs will be empty")

        if args.probe is not None:
            records = await probe_rate_limits(client, args.probe, count=args.count)
            console.print(render_probe(records, client.queue.stats))
            return 0

        if args.series is None:
            LOGGER.error("Nothing to do: pass --series or --probe")
            return 2
        if args.episode is not None:
            result = await client.get_episode_images(args.series, args.season, args.episode)
        elif args.season is not None:
            result = await client.get_season_images(args.series, args.season)
        else:
            result = await client.get_series_images(args.series)
        console.print(render_result(result))
        return 0 if not result.is_empty() else 1
    finally:
        await client.aclose()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Look up TMDB show/season/episode images through the rate-limited queue",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    parser.add_argument("--series", type=int, help="TMDB show id")
    parser.add_argument("--season", type=int, help="Season number")
    parser.add_argument("--episode", type=int, help="Episode number")
    parser.add_argument(
        "--probe",
        type=int,
        metavar="SERIES_ID",
        help="Fire a burst of lookups for one show to exercise the rate limiter",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=45,
        help="Number of lookups fired by --probe (default: 45)",
    )
    return parser


def main() -> int:
    parser = build_arg_parser()
    args = parser.parse_args()

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
    except (OSError, ValueError) as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    log_path = configure_logging(config)
    console = Console()

    try:
        return asyncio.run(run_cli(args, config, console))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        return 0
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", log_path)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

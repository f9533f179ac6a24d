"""
Room ID Resolver

Resolves a broadcaster handle to the room identifier of its current live
session. Strategies run one after another (never in parallel, to avoid
bursting the upstream), each retried with exponential backoff unless the
failure is terminal for that strategy. Successful lookups are cached for a
fixed TTL.
"""

from __future__ import annotations

import asyncio
import json
import random
import re
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel

from livefeed.config import Settings, settings as default_settings
from livefeed.ingest.errors import ResolutionAttempt, ResolutionError, StrategyError
from livefeed.utils.backoff import compute_backoff_delay
from livefeed.utils.logging import get_logger

if TYPE_CHECKING:
    from livefeed.ingest.diagnostics import DiagnosticsRecorder

logger = get_logger(__name__, category="resolver")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def browser_headers(referer: Optional[str] = None) -> Dict[str, str]:
    """Request headers of a current desktop Chrome navigation."""
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9,de;q=0.8",
        "Accept-Encoding": "gzip, deflate, br",
        "DNT": "1",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
        "Cache-Control": "max-age=0",
        "sec-ch-ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
    }
    if referer:
        headers["Referer"] = referer
        headers["Sec-Fetch-Site"] = "same-origin"
    return headers


def normalize_handle(handle: str) -> str:
    return handle.strip().lstrip("@").lower()


def dig(data: Any, path: Sequence[str]) -> Any:
    """Follow a key path through nested dicts, returning None on any miss."""
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def plausible_room_id(value: Any) -> Optional[str]:
    """Room IDs are positive integers, sometimes serialized as strings."""
    if value is None or isinstance(value, bool):
        return None
    candidate = str(value).strip()
    if not candidate.isdigit() or int(candidate) == 0:
        return None
    return candidate


class CachedRoomId(BaseModel):
    room_id: str
    resolved_at: float


class ResolutionStrategy:
    """One independent way of finding the room ID."""

    name = "base"
    optional = False
    timeout_setting = "api_timeout_seconds"

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def timeout(self) -> float:
        return float(getattr(self.settings, self.timeout_setting))

    def is_available(self, credentials: Optional[str], disable_optional_fallback: bool) -> bool:
        return True

    async def fetch(self, handle: str, client: httpx.AsyncClient, credentials: Optional[str] = None) -> str:
        raise NotImplementedError

    async def run(self, handle: str, client: httpx.AsyncClient, credentials: Optional[str] = None) -> str:
        """Call fetch, normalizing transport failures into StrategyError."""
        try:
            return await self.fetch(handle, client, credentials=credentials)
        except httpx.TimeoutException as e:
            raise StrategyError(f"{self.name} fetch timeout after {self.timeout:g}s") from e
        except httpx.RequestError as e:
            raise StrategyError(f"Network error during {self.name} fetch: {e}") from e
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise StrategyError(f"Malformed {self.name} response: {e}") from e

    @staticmethod
    def _check_status(response: httpx.Response, source: str) -> None:
        status = response.status_code
        if status == 429:
            raise StrategyError(f"Rate limited by {source} (429)", status_code=429)
        if status == 401:
            raise StrategyError(f"{source} rejected the request as unauthorized (401)", status_code=401, terminal=True)
        if status >= 500:
            raise StrategyError(f"{source} returned HTTP {status}", status_code=status)


class PageScrapeStrategy(ResolutionStrategy):
    """Parse the embedded state blob of the broadcaster's live page."""

    name = "html"
    timeout_setting = "html_timeout_seconds"

    STATE_PATTERNS = (
        re.compile(r'<script id="SIGI_STATE" type="application/json">(.*?)</script>', re.S),
        re.compile(
            r'<script id="__UNIVERSAL_DATA_FOR_REHYDRATION__" type="application/json">(.*?)</script>',
            re.S,
        ),
        re.compile(r"__SIGI_STATE__\s*=\s*({.*?});", re.S),
    )

    ROOM_ID_PATHS: Tuple[Tuple[str, ...], ...] = (
        ("LiveRoom", "liveRoomUserInfo", "user", "roomId"),
        ("LiveRoom", "liveRoomUserInfo", "liveRoom", "roomId"),
        ("UserModule", "users", "{handle}", "roomId"),
        ("UserPage", "userInfo", "user", "roomId"),
        ("__DEFAULT_SCOPE__", "webapp.user-detail", "userInfo", "user", "roomId"),
        ("__DEFAULT_SCOPE__", "webapp.live-detail", "liveRoomUserInfo", "user", "roomId"),
    )

    def extract_states(self, html: str) -> List[dict]:
        """Every JSON state blob any pattern can find, in pattern order."""
        states = []
        for pattern in self.STATE_PATTERNS:
            match = pattern.search(html)
            if not match:
                continue
            try:
                state = json.loads(match.group(1))
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse page state with pattern {pattern.pattern[:40]}: {e}")
                continue
            if isinstance(state, dict):
                states.append(state)
        return states

    def extract_room_id(self, states: Iterable[dict], handle: str) -> Optional[str]:
        for state in states:
            for path in self.ROOM_ID_PATHS:
                resolved_path = [handle if key == "{handle}" else key for key in path]
                room_id = plausible_room_id(dig(state, resolved_path))
                if room_id:
                    logger.debug(f"Room ID found at {'.'.join(path)}")
                    return room_id
        return None

    async def fetch(self, handle: str, client: httpx.AsyncClient, credentials: Optional[str] = None) -> str:
        url = f"{self.settings.platform_base_url}/@{handle}/live"
        response = await client.get(url, headers=browser_headers(), timeout=self.timeout)

        if response.status_code == 403:
            raise StrategyError(
                "Access forbidden by platform (403), possibly blocked by a captcha or geo restriction",
                status_code=403,
                terminal=True,
            )
        self._check_status(response, "platform")

        states = self.extract_states(response.text)
        if not states:
            raise StrategyError(
                "Failed to extract SIGI_STATE from page - pattern mismatch or blocked by platform"
            )

        room_id = self.extract_room_id(states, handle)
        if not room_id:
            keys = sorted({key for state in states for key in state.keys()})[:10]
            logger.warning(f"Page state has no room ID; top-level keys: {keys}")
            raise StrategyError("Failed to extract room ID from page state - structure changed")
        return room_id


class LiveDetailApiStrategy(ResolutionStrategy):
    """Primary platform API: live room detail by handle."""

    name = "api"

    ROOM_ID_PATHS = (
        ("data", "user", "roomId"),
        ("LiveRoomInfo", "roomId"),
        ("data", "liveRoom", "roomId"),
    )
    STATUS_PATHS = (
        ("data", "liveRoom", "status"),
        ("LiveRoomInfo", "status"),
    )
    OFFLINE_STATUS = 4

    async def fetch(self, handle: str, client: httpx.AsyncClient, credentials: Optional[str] = None) -> str:
        base = self.settings.platform_base_url
        response = await client.get(
            f"{base}/api/live/detail/",
            params={"uniqueId": handle},
            headers=browser_headers(referer=base),
            timeout=self.timeout,
        )
        if response.status_code == 403:
            raise StrategyError("Platform API denied permission (403)", status_code=403, terminal=True)
        self._check_status(response, "platform API")

        data = response.json()
        for path in self.ROOM_ID_PATHS:
            room_id = plausible_room_id(dig(data, path))
            if room_id:
                return room_id

        for path in self.STATUS_PATHS:
            if dig(data, path) == self.OFFLINE_STATUS:
                raise StrategyError(f"User is not live (status: {self.OFFLINE_STATUS})", terminal=True)
        raise StrategyError("Failed to extract room ID from API response")


class UserDetailApiStrategy(ResolutionStrategy):
    """Secondary platform API: user profile detail."""

    name = "web_api"

    async def fetch(self, handle: str, client: httpx.AsyncClient, credentials: Optional[str] = None) -> str:
        base = self.settings.platform_base_url
        response = await client.get(
            f"{base}/api/user/detail/",
            params={"uniqueId": handle},
            headers=browser_headers(referer=base),
            timeout=self.timeout,
        )
        if response.status_code == 403:
            raise StrategyError("Platform web API denied permission (403)", status_code=403, terminal=True)
        self._check_status(response, "platform web API")

        room_id = plausible_room_id(dig(response.json(), ("userInfo", "user", "roomId")))
        if not room_id:
            raise StrategyError("Failed to extract room ID from web API response")
        return room_id


class FallbackServiceStrategy(ResolutionStrategy):
    """Third-party lookup service; needs an API key and can be switched off."""

    name = "fallback"
    optional = True
    timeout_setting = "fallback_timeout_seconds"

    def is_available(self, credentials: Optional[str], disable_optional_fallback: bool) -> bool:
        return bool(credentials) and not disable_optional_fallback

    async def fetch(self, handle: str, client: httpx.AsyncClient, credentials: Optional[str] = None) -> str:
        if not credentials:
            raise StrategyError("Fallback API key not configured", terminal=True)

        response = await client.get(
            self.settings.fallback_api_url,
            params={"unique_id": handle},
            headers={
                "Authorization": f"Bearer {credentials}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )
        if response.status_code == 401:
            raise StrategyError("Fallback API key is invalid or expired (401)", status_code=401, terminal=True)
        if response.status_code == 403:
            raise StrategyError("Fallback API key lacks permission (403)", status_code=403, terminal=True)
        self._check_status(response, "fallback API")

        data = response.json()
        if not isinstance(data, dict):
            raise StrategyError(f"Malformed fallback API response: expected an object, got {type(data).__name__}")
        if data.get("code") != 200:
            raise StrategyError(f"Fallback API error: {data.get('message') or 'Unknown error'}")

        room_id = plausible_room_id(data.get("room_id"))
        if not room_id:
            raise StrategyError("Failed to extract room ID from fallback response")
        return room_id


def default_strategies(settings: Settings) -> List[ResolutionStrategy]:
    """Strategies in priority order."""
    return [
        PageScrapeStrategy(settings),
        LiveDetailApiStrategy(settings),
        UserDetailApiStrategy(settings),
        FallbackServiceStrategy(settings),
    ]


class RoomResolver:
    """Cascading, cached room ID resolution."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        diagnostics: Optional["DiagnosticsRecorder"] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        strategies: Optional[List[ResolutionStrategy]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """
        Args:
            settings: Settings instance (defaults to the global settings)
            diagnostics: Recorder notified of final success or failure
            http_client: Shared client; created lazily when omitted
            strategies: Ordered strategies (defaults to default_strategies)
            clock: Monotonic clock used for cache ages
            sleep: Coroutine used between retries
            rand: Uniform [0, 1) source for backoff jitter
        """
        self.settings = settings or default_settings
        self.diagnostics = diagnostics
        self.strategies = strategies if strategies is not None else default_strategies(self.settings)
        self.cache_ttl = float(self.settings.room_id_cache_ttl_seconds)
        self.max_attempts = self.settings.resolver_max_attempts

        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._cache: Dict[str, CachedRoomId] = {}

        self._client = http_client
        self._owns_client = http_client is None
        self._client_lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        timeout=httpx.Timeout(30.0, connect=10.0),
                        follow_redirects=True,
                        max_redirects=5,
                    )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def backoff_delay(self, attempt: int) -> float:
        return compute_backoff_delay(
            attempt,
            initial=self.settings.resolver_initial_delay_seconds,
            multiplier=self.settings.resolver_backoff_multiplier,
            max_delay=self.settings.resolver_max_delay_seconds,
            jitter_ratio=self.settings.resolver_jitter_ratio,
            rand=self._rand,
        )

    # Cache

    def get_cached(self, handle: str) -> Optional[str]:
        key = normalize_handle(handle)
        cached = self._cache.get(key)
        if cached is None:
            return None

        age = self._clock() - cached.resolved_at
        if age >= self.cache_ttl:
            del self._cache[key]
            return None

        logger.info(f"Using cached room ID for @{key}: {cached.room_id} (age: {int(age)}s)")
        return cached.room_id

    def _cache_room_id(self, handle: str, room_id: str) -> None:
        self._cache[handle] = CachedRoomId(room_id=room_id, resolved_at=self._clock())

    def clear_cache(self, handle: Optional[str] = None) -> None:
        if handle:
            self._cache.pop(normalize_handle(handle), None)
            logger.info(f"Cleared room ID cache for @{normalize_handle(handle)}")
        else:
            self._cache.clear()
            logger.info("Cleared all room ID cache entries")

    def cache_stats(self) -> Dict[str, Any]:
        now = self._clock()
        entries = [
            {
                "handle": handle,
                "room_id": cached.room_id,
                "age": int(now - cached.resolved_at),
                "expires_in": int(self.cache_ttl - (now - cached.resolved_at)),
            }
            for handle, cached in self._cache.items()
            if now - cached.resolved_at < self.cache_ttl
        ]
        return {"size": len(entries), "max_age": int(self.cache_ttl), "entries": entries}

    # Resolution

    @staticmethod
    def is_terminal(error: StrategyError) -> bool:
        """Auth rejection, permission denial and offline broadcasters end a strategy."""
        if error.terminal or error.status_code in (401, 403):
            return True
        return "not live" in str(error).lower()

    async def resolve(
        self,
        handle: str,
        *,
        use_cache: bool = True,
        credentials: Optional[str] = None,
        disable_optional_fallback: bool = False,
    ) -> str:
        """
        Resolve the room ID for ``handle``.

        Raises:
            ResolutionError: every available strategy failed
        """
        handle = normalize_handle(handle)

        if use_cache:
            cached = self.get_cached(handle)
            if cached:
                return cached

        strategies = [
            s for s in self.strategies if s.is_available(credentials, disable_optional_fallback)
        ]
        logger.info(
            f"Starting room ID resolution for @{handle} "
            f"(strategies: {', '.join(s.name for s in strategies)})"
        )

        client = await self._get_client()
        attempts: List[ResolutionAttempt] = []

        for strategy in strategies:
            for attempt in range(self.max_attempts):
                try:
                    room_id = await strategy.run(handle, client, credentials=credentials)
                except StrategyError as e:
                    attempts.append(
                        ResolutionAttempt(strategy=strategy.name, attempt=attempt + 1, error=str(e))
                    )
                    logger.warning(
                        f"[{strategy.name}] Attempt {attempt + 1}/{self.max_attempts}: {e}"
                    )
                    if self.is_terminal(e) or attempt >= self.max_attempts - 1:
                        break
                    delay = self.backoff_delay(attempt)
                    logger.info(f"Retrying {strategy.name} in {delay:.2f}s...")
                    await self._sleep(delay)
                    continue

                self._cache_room_id(handle, room_id)
                logger.info(f"Room ID resolved for @{handle} via {strategy.name}: {room_id}")
                if self.diagnostics is not None:
                    self.diagnostics.record_attempt(
                        handle,
                        True,
                        f"RESOLVED_VIA_{strategy.name.upper()}",
                        f"Room ID retrieved via {strategy.name}"
                        + ("" if strategy is self.strategies[0] else " fallback"),
                    )
                return room_id

            logger.warning(f"{strategy.name} method exhausted for @{handle}")

        error = ResolutionError(handle, attempts)
        logger.error(str(error))
        if self.diagnostics is not None:
            self.diagnostics.record_attempt(handle, False, "ROOM_ID_RESOLUTION_FAILED", str(error))
        raise error

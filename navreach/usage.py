"""Per-user daily action quota enforcement."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from navreach.config import UsageConfig, get_config
from navreach.exceptions import RemoteDataError
from navreach.logging import get_logger
from navreach.protocol import Credentials
from navreach.remote import RemoteDataClient, decode_user_id

log = get_logger(__name__)


class UsageDecision(str, Enum):
    ALLOWED = "allowed"
    LIMIT_REACHED = "limit_reached"


@dataclass
class UsageCounter:
    """Today's usage for one user."""

    count: int = 0
    limit: int = 100
    is_unmetered: bool = False

    @property
    def reached(self) -> bool:
        return not self.is_unmetered and self.count >= self.limit


class UsageBackend(ABC):
    """Persistent store for daily usage counters."""

    @abstractmethod
    async def load(self, access_token: str) -> UsageCounter:
        pass

    @abstractmethod
    async def increment(self, access_token: str, by: int = 1) -> int:
        pass


class InMemoryUsageBackend(UsageBackend):
    """Process-local counters keyed by user id."""

    def __init__(
        self,
        limit: int | None = None,
        counts: dict[str, int] | None = None,
        unmetered_users: set[str] | None = None,
    ):
        self.limit = get_config().usage.daily_limit if limit is None else limit
        self.counts: dict[str, int] = dict(counts or {})
        self.unmetered_users = set(unmetered_users or set())

    async def load(self, access_token: str) -> UsageCounter:
        user_id = decode_user_id(access_token)
        return UsageCounter(
            count=self.counts.get(user_id, 0),
            limit=self.limit,
            is_unmetered=user_id in self.unmetered_users,
        )

    async def increment(self, access_token: str, by: int = 1) -> int:
        user_id = decode_user_id(access_token)
        self.counts[user_id] = self.counts.get(user_id, 0) + by
        return self.counts[user_id]


class RemoteUsageBackend(UsageBackend):
    """Counters kept by the remote data service's usage RPCs."""

    def __init__(self, client: RemoteDataClient, config: UsageConfig | None = None):
        self.client = client
        self.config = config or get_config().usage

    async def _resolve_limit(self, access_token: str) -> int:
        limit = self.config.daily_limit
        settings = await self.client.get_system_settings()
        if settings.get("free_tier_ai_actions_limit") not in (None, ""):
            limit = int(settings["free_tier_ai_actions_limit"])
        user_settings = await self.client.get_user_settings(access_token)
        if user_settings.get("ai_actions_limit") is not None:
            limit = int(user_settings["ai_actions_limit"])
        return limit

    async def load(self, access_token: str) -> UsageCounter:
        if await self.client.has_active_subscription(access_token, self.config.unmetered_statuses):
            return UsageCounter(count=0, limit=0, is_unmetered=True)
        count = await self.client.get_usage(access_token, self.config.usage_type, self.config.timezone)
        return UsageCounter(count=count, limit=await self._resolve_limit(access_token))

    async def increment(self, access_token: str, by: int = 1) -> int:
        return await self.client.increment_usage(
            access_token,
            self.config.usage_type,
            self.config.timezone,
            increment_by=by,
        )


class UsageGuard:
    """Gate tool executions on the caller's daily quota.

    The counter is loaded once per request. The in-memory count is bumped
    synchronously so the very next check sees it; the persistent increment
    runs as a background task whose failures are only logged.
    """

    def __init__(
        self,
        backend: UsageBackend | None,
        credentials_getter: Callable[[], Credentials | None],
        config: UsageConfig | None = None,
    ):
        self.backend = backend
        self._credentials_getter = credentials_getter
        self.config = config or get_config().usage
        self.counter: UsageCounter | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    async def _load(self, access_token: str) -> UsageCounter:
        if self.counter is None:
            try:
                self.counter = await self.backend.load(access_token)
            except RemoteDataError as e:
                log.warning("Usage lookup failed; allowing actions", error=str(e))
                self.counter = UsageCounter(is_unmetered=True)
            log.debug(
                "Usage loaded",
                count=self.counter.count,
                limit=self.counter.limit,
                unmetered=self.counter.is_unmetered,
            )
        return self.counter

    async def check_and_increment(self) -> UsageDecision:
        if not self.config.enabled or self.backend is None:
            return UsageDecision.ALLOWED
        credentials = self._credentials_getter()
        if credentials is None or not credentials.access_token:
            return UsageDecision.ALLOWED

        counter = await self._load(credentials.access_token)
        if counter.is_unmetered:
            return UsageDecision.ALLOWED
        if counter.reached:
            log.info("Usage limit reached", count=counter.count, limit=counter.limit)
            return UsageDecision.LIMIT_REACHED

        counter.count += 1
        task = asyncio.create_task(self._persist_increment())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return UsageDecision.ALLOWED

    async def _persist_increment(self) -> None:
        credentials = self._credentials_getter()
        if credentials is None or not credentials.access_token:
            return
        try:
            await self.backend.increment(credentials.access_token)
        except Exception as e:
            log.warning("Persistent usage increment failed", error=str(e))

    async def flush(self) -> None:
        """Wait for outstanding background increments."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

"""
Stale-while-revalidate reads over the local catalog.

A read never waits on the remote site when cached data exists: stale data is
returned immediately and a refresh is started in the background. Only a cold
read (nothing cached for the key) acquires synchronously.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from rich.console import Console

from shelfsync.config.settings import config
from shelfsync.transformers.record_transformer import utcnow

console = Console()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _scraped_at(record) -> datetime:
    if isinstance(record, dict):
        value = record.get("last_scraped_at")
    else:
        value = getattr(record, "last_scraped_at", None)

    if value is None:
        return _EPOCH
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def newest_scraped_at(records: list) -> Optional[datetime]:
    """Most recent last_scraped_at in a set; drives the staleness decision."""
    if not records:
        return None
    return max(_scraped_at(record) for record in records)


class StalenessController:
    """
    Decides, per entity-set key, whether cached data is served as is or refreshed.

    Args:
        read_cached: key -> cached records (empty list when nothing is cached)
        acquire: key -> awaitable that fetches, persists and returns fresh records
        ttl_seconds: age after which a set counts as stale
        clock: returns the current UTC time
    """

    def __init__(
        self,
        read_cached: Callable[[str], list],
        acquire: Callable[[str], Awaitable[list]],
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.read_cached = read_cached
        self.acquire = acquire
        self.ttl_seconds = config.staleness.ttl_seconds if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> set[str]:
        """Keys with a background refresh still running."""
        return {key for key, task in self._tasks.items() if not task.done()}

    def is_stale(self, records: list) -> bool:
        newest = newest_scraped_at(records)
        if newest is None:
            return True
        age = (self.clock() - newest).total_seconds()
        return age >= self.ttl_seconds

    async def get_or_refresh(self, key: str) -> list:
        """Cached records for a key, refreshing in the background when stale."""
        cached = self.read_cached(key)

        if cached:
            if self.is_stale(cached):
                console.print(f"[yellow]Cache expired for {key}, refreshing in background[/yellow]")
                self.schedule_refresh(key)
            else:
                console.print(f"[dim]Returning {len(cached)} cached records for {key}[/dim]")
            return cached

        console.print(f"[cyan]No cached data for {key}, acquiring now...[/cyan]")
        return await self.acquire(key)

    def schedule_refresh(self, key: str) -> bool:
        """
        Start a background refresh for a key.

        Returns False when a refresh for the same key is already running.
        """
        running = self._tasks.get(key)
        if running is not None and not running.done():
            return False

        task = asyncio.create_task(self._refresh(key))
        self._tasks[key] = task
        task.add_done_callback(lambda finished, key=key: self._forget(key, finished))
        return True

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _refresh(self, key: str) -> None:
        try:
            records = await self.acquire(key)
            console.print(f"[green]Background refresh of {key}: {len(records)} records[/green]")
        except Exception as e:
            console.print(f"[red]Background refresh of {key} failed: {e}[/red]")

    async def drain(self) -> None:
        """Wait for every running background refresh to finish."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

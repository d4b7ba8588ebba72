"""
Client-side status poller: one asyncio task per book that re-fetches the
pipeline status on a fixed interval until the book reaches a terminal state.

Usage:
  python -m app.poller Harry_Potter The_Little_Fox
"""

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import httpx

from app.settings import AppConfig

logger = logging.getLogger("storybook-admin")

StatusFetcher = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]
StatusCallback = Callable[[str, Dict[str, Any]], None]

NON_TERMINAL = {"processing", "in_progress", "pending"}


def should_poll(status: Optional[Dict[str, Any]]) -> bool:
    """Keep polling while the book looks in flight or its status is not loaded yet."""
    if status is None:
        return True
    return bool(
        status.get("isProcessing")
        or status.get("overallStatus") in NON_TERMINAL
        or status.get("bookStatus") == "processing"
    )


class HttpStatusFetcher:
    """Fetches status payloads from the admin API's status endpoint"""

    def __init__(self, status_url: str = None, client: Optional[httpx.AsyncClient] = None):
        self.status_url = status_url or AppConfig.get_value("status_api_url")
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def __call__(self, safe_title: str) -> Optional[Dict[str, Any]]:
        response = await self._client.get(self.status_url, params={"bookSafeTitle": safe_title})
        if response.status_code != 200:
            logger.error(f"Failed to load pipeline status for {safe_title}: {response.status_code}")
            return None
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


class StatusPoller:
    """
    Independent timers keyed by safe_title. There is no cap on concurrent
    polls; the number of books in flight at once is expected to be small.
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        interval: float = None,
        on_update: Optional[StatusCallback] = None,
    ):
        self._fetch_status = fetch_status
        self.interval = (
            interval if interval is not None else AppConfig.get_float("poll_interval_seconds", 3.0)
        )
        self._on_update = on_update
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_polling(self, safe_title: str) -> bool:
        return safe_title in self._tasks

    @property
    def active(self):
        return sorted(self._tasks)

    async def refresh(self, safe_title: str) -> Optional[Dict[str, Any]]:
        """Fetch once and record the result; fetch errors leave the last status in place."""
        try:
            status = await self._fetch_status(safe_title)
        except Exception as e:
            logger.error(f"Error loading pipeline status for {safe_title}: {e}")
            return self.statuses.get(safe_title)
        if status is None:
            return self.statuses.get(safe_title)
        self.statuses[safe_title] = status
        if self._on_update:
            self._on_update(safe_title, status)
        return status

    def watch(self, safe_titles: Iterable[str]) -> None:
        """Start loops for books that look in flight, stop loops for those that don't."""
        for safe_title in safe_titles:
            wanted = should_poll(self.statuses.get(safe_title))
            if wanted and not self.is_polling(safe_title):
                self.start(safe_title)
            elif not wanted and self.is_polling(safe_title):
                self.stop(safe_title)

    def start(self, safe_title: str) -> None:
        if self.is_polling(safe_title):
            return
        task = asyncio.create_task(self._run(safe_title), name=f"poll:{safe_title}")
        self._tasks[safe_title] = task
        task.add_done_callback(lambda t, key=safe_title: self._forget(key, t))

    def stop(self, safe_title: str) -> None:
        task = self._tasks.pop(safe_title, None)
        if task is not None:
            task.cancel()

    async def aclose(self) -> None:
        """Cancel every loop; call on teardown so no polls outlive the view."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, safe_title: str, task: asyncio.Task) -> None:
        if self._tasks.get(safe_title) is task:
            del self._tasks[safe_title]

    async def _run(self, safe_title: str) -> None:
        while True:
            await asyncio.sleep(self.interval)
            status = await self.refresh(safe_title)
            if not should_poll(status):
                logger.info(
                    f"Stopped polling {safe_title}: {status.get('overallStatus')}"
                )
                return


async def watch_books(safe_titles: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Poll the given books until all of them settle, printing each update."""
    fetcher = HttpStatusFetcher()
    poller = StatusPoller(
        fetcher,
        on_update=lambda key, s: print(f"{key}: {s.get('overallStatus')} ({len(s.get('steps', []))} steps)"),
    )
    titles = list(safe_titles)
    try:
        for safe_title in titles:
            await poller.refresh(safe_title)
        poller.watch(titles)
        while poller.active:
            await asyncio.sleep(poller.interval)
        return poller.statuses
    finally:
        await poller.aclose()
        await fetcher.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(watch_books(sys.argv[1:]))

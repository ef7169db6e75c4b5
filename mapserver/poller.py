"""
Pull client that fetches probe records from an upstream HTTP endpoint on a
fixed interval.

A failed fetch is recorded and stops the loop; there is no retry or
backoff, the host restarts the poller on a manual refresh.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Upstream answered with an unusable response"""


class RecordPoller:
    def __init__(self, url: str, workspace: str,
                 on_records: Callable[[str, List[Dict]], Awaitable[None]],
                 poll_interval: int = 30, lookback_minutes: int = 60, timeout: int = 10,
                 on_failure: Optional[Callable[[str, Exception], None]] = None):
        self.url = url
        self.workspace = workspace
        self.on_records = on_records
        self.on_failure = on_failure
        self.poll_interval = poll_interval
        self.lookback_minutes = lookback_minutes
        self.timeout = timeout

        self.session: Optional[aiohttp.ClientSession] = None
        self.task: Optional[asyncio.Task] = None
        self.last_error: Optional[str] = None
        self.failed_at: Optional[float] = None
        self.last_success: Optional[float] = None

    async def _init_session(self):
        """Initialize HTTP session"""
        if not self.session:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def failed(self) -> bool:
        return self.last_error is not None

    def status(self) -> Dict:
        return {
            'url': self.url,
            'workspace': self.workspace,
            'running': self.running,
            'last_success': self.last_success,
            'last_error': self.last_error,
            'failed_at': self.failed_at,
        }

    async def fetch(self) -> List[Dict]:
        """One GET of the upstream window"""
        await self._init_session()
        params = {'workspace': self.workspace, 'lookback': self.lookback_minutes}

        async with self.session.get(self.url, params=params) as resp:
            if resp.status != 200:
                raise FetchError(f"Upstream returned HTTP {resp.status}")
            data = await resp.json()

        if isinstance(data, dict):
            data = data.get('records', data.get('data'))
        if not isinstance(data, list):
            raise FetchError("Upstream response is not a record list")
        return data

    async def poll_once(self) -> int:
        records = await self.fetch()
        await self.on_records(self.workspace, records)
        self.last_success = time.time()
        return len(records)

    async def run(self):
        """Poll until the first failure or cancellation"""
        try:
            while True:
                count = await self.poll_once()
                logger.debug(f"Fetched {count} records for workspace {self.workspace}")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info(f"Poller for workspace {self.workspace} cancelled")
            raise
        except Exception as e:
            self.last_error = str(e)
            self.failed_at = time.time()
            logger.error(f"Fetching records for workspace {self.workspace} failed, "
                         f"poller stopped until manual refresh: {e}")
            if self.on_failure is not None:
                self.on_failure(self.workspace, e)

    def start(self) -> asyncio.Task:
        """Start polling; a running poller is left alone"""
        if not self.running:
            self.last_error = None
            self.failed_at = None
            self.task = asyncio.create_task(self.run())
        return self.task

    def restart(self) -> asyncio.Task:
        logger.info(f"Restarting poller for workspace {self.workspace}")
        return self.start()

    async def stop(self):
        if self.task is not None and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None
        if self.session:
            await self.session.close()
            self.session = None

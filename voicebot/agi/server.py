"""FastAGI server.

Asterisk connects here when the dialplan runs `AGI(agi://host:port)`. Each
connection becomes an `AGISession` handed to the `on_session` callback; the
socket is closed when the callback returns.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Optional, Set

from prometheus_client import Counter, Gauge

from ..config import AGIConfig
from ..logging_config import get_logger
from .session import AGISession, AGISessionClosed, AGITimeout

logger = get_logger(__name__)

_AGI_SESSIONS_ACTIVE = Gauge(
    "voicebot_agi_active_sessions",
    "Number of open FastAGI sessions",
)
_AGI_SESSIONS_TOTAL = Counter(
    "voicebot_agi_sessions_total",
    "FastAGI connections accepted",
    labelnames=("outcome",),
)


class AGIServer:
    def __init__(self, config: AGIConfig, on_session: Callable[[AGISession], Awaitable[None]]) -> None:
        self.config = config
        self.host = config.host
        self.port = config.port
        self._on_session = on_session
        self._server: Optional[asyncio.base_events.Server] = None
        self._connection_tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._server:
            logger.warning("AGI server already running")
            return
        self._server = await asyncio.start_server(self._handle_client, host=self.host, port=self.port)
        sockets = self._server.sockets or []
        if sockets:
            # update port in case OS picked an ephemeral port (port=0)
            self.port = sockets[0].getsockname()[1]
        logger.info("AGI server listening", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        tasks = list(self._connection_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        _AGI_SESSIONS_ACTIVE.set(0)
        logger.info("AGI server stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connection_tasks.add(task)
        peer = writer.get_extra_info("peername")
        session = AGISession(reader, writer, self.config)
        _AGI_SESSIONS_ACTIVE.inc()
        outcome = "ok"
        try:
            await session.start()
            await self._on_session(session)
        except (AGISessionClosed, AGITimeout) as exc:
            outcome = "closed"
            logger.info("AGI session ended early", peer=peer, channel=session.channel, reason=str(exc))
        except Exception:
            outcome = "error"
            logger.error("AGI session handler failed", peer=peer, channel=session.channel, exc_info=True)
        finally:
            await session.close()
            _AGI_SESSIONS_ACTIVE.dec()
            _AGI_SESSIONS_TOTAL.labels(outcome=outcome).inc()
            if task is not None:
                self._connection_tasks.discard(task)

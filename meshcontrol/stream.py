"""Long-poll streaming of map updates to a connected client."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Protocol

from .models import Machine, MapRequest

log = logging.getLogger(__name__)

KEEP_ALIVE_INTERVAL = 60.0
CHANNEL_SIZE = 8

# Order in which sources are served when several are ready at once.
_SOURCE_ORDER = ("shutdown", "data", "keep_alive", "update", "closed")


class _Server(Protocol):
    def update_machine_from_database(self, machine: Machine) -> None: ...

    def touch_machine(self, machine: Machine) -> None: ...

    def get_map_response_data(
        self, map_request: MapRequest, machine: Machine, is_noise: bool
    ) -> bytes: ...

    def get_map_keep_alive_response_data(
        self, map_request: MapRequest, machine: Machine, is_noise: bool
    ) -> bytes: ...

    def is_outdated(self, machine: Machine) -> bool: ...


class _Writer(Protocol):
    def write(self, data: bytes) -> Any: ...


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class PollStream:
    """Streams map data, keep-alives and updates to one client until it leaves.

    Data queued on ``poll_data`` is written as is, ``keep_alive`` carries
    keep-alive messages and any item on ``updates`` asks for a fresh map if
    the machine is outdated.  Setting ``closed`` ends the stream as the
    client going away does; setting ``shutdown`` ends it as the server
    stopping does.
    """

    def __init__(
        self,
        server: _Server,
        machine: Machine,
        map_request: MapRequest,
        writer: _Writer,
        *,
        update_check_interval: float,
        keep_alive_interval: float = KEEP_ALIVE_INTERVAL,
        is_noise: bool = False,
        shutdown: asyncio.Event | None = None,
        closed: asyncio.Event | None = None,
        updates_from_node: Counter | None = None,
        updates_received: Counter | None = None,
        updates_sent: Counter | None = None,
        last_state_update: dict[tuple[str, str], float] | None = None,
    ) -> None:
        self.server = server
        self.machine = machine
        self.map_request = map_request
        self.writer = writer
        self.update_check_interval = update_check_interval
        self.keep_alive_interval = keep_alive_interval
        self.is_noise = is_noise
        self.shutdown = shutdown if shutdown is not None else asyncio.Event()
        self.closed = closed if closed is not None else asyncio.Event()
        self.poll_data: asyncio.Queue[bytes] = asyncio.Queue(CHANNEL_SIZE)
        self.keep_alive: asyncio.Queue[bytes] = asyncio.Queue(1)
        self.updates: asyncio.Queue[Any] = asyncio.Queue(CHANNEL_SIZE)
        self.updates_from_node = updates_from_node if updates_from_node is not None else Counter()
        self.updates_received = updates_received if updates_received is not None else Counter()
        self.updates_sent = updates_sent if updates_sent is not None else Counter()
        self.last_state_update = last_state_update if last_state_update is not None else {}
        self._finished = asyncio.Event()

    @property
    def _labels(self) -> tuple[str, str]:
        return self.machine.namespace.name, self.machine.hostname

    # -- main loop -----------------------------------------------------------

    async def run(self) -> None:
        """Serve the client until it disconnects, the server stops or an error occurs."""
        worker = asyncio.create_task(self.scheduled_worker())
        sources = {
            "data": self.poll_data.get,
            "keep_alive": self.keep_alive.get,
            "update": self.updates.get,
            "closed": self.closed.wait,
            "shutdown": self.shutdown.wait,
        }
        handlers = {
            "data": self._on_data,
            "keep_alive": self._on_keep_alive,
            "update": self._on_update,
        }
        pending = {name: asyncio.create_task(factory()) for name, factory in sources.items()}
        log.debug("waiting for data to stream to %s", self.machine.hostname)
        try:
            while True:
                done, _ = await asyncio.wait(
                    pending.values(), return_when=asyncio.FIRST_COMPLETED
                )
                name = next(n for n in _SOURCE_ORDER if pending[n] in done)
                result = pending[name].result()

                if name == "shutdown":
                    log.info("the long-poll handler for %s is shutting down", self.machine.hostname)
                    return
                if name == "closed":
                    log.info("client %s has closed the connection", self.machine.hostname)
                    await self._on_closed()
                    return

                pending[name] = asyncio.create_task(sources[name]())
                if not await handlers[name](result):
                    return
        finally:
            self._finished.set()
            for task in pending.values():
                task.cancel()
            worker.cancel()
            await asyncio.gather(worker, *pending.values(), return_exceptions=True)

    async def _write(self, data: bytes, channel: str) -> bool:
        try:
            await _maybe_await(self.writer.write(data))
        except OSError as err:
            log.error("cannot write %s data to %s: %s", channel, self.machine.hostname, err)
            return False
        flush = getattr(self.writer, "flush", None)
        if flush is None:
            log.error("cannot flush the writer for %s", self.machine.hostname)
        else:
            await _maybe_await(flush())
        return True

    def _refresh(self, channel: str) -> bool:
        try:
            self.server.update_machine_from_database(self.machine)
        except Exception as err:
            # The machine was removed since the stream opened.
            log.error("cannot update %s from database (%s): %s", self.machine.hostname, channel, err)
            return False
        return True

    def _touch(self, channel: str) -> bool:
        try:
            self.server.touch_machine(self.machine)
        except Exception as err:
            log.error("cannot persist %s (%s): %s", self.machine.hostname, channel, err)
            return False
        return True

    def _mark_successful_update(self, now: datetime) -> None:
        self.last_state_update[self._labels] = now.timestamp()
        self.machine.last_successful_update = now

    async def _on_data(self, data: bytes) -> bool:
        log.debug("sending %d bytes of poll data to %s", len(data), self.machine.hostname)
        if not await self._write(data, "pollData"):
            return False
        if not self._refresh("pollData"):
            return False
        now = datetime.now(timezone.utc)
        self.machine.last_seen = now
        self._mark_successful_update(now)
        return self._touch("pollData")

    async def _on_keep_alive(self, data: bytes) -> bool:
        log.debug("sending keep alive to %s", self.machine.hostname)
        if not await self._write(data, "keepAlive"):
            return False
        if not self._refresh("keepAlive"):
            return False
        self.machine.last_seen = datetime.now(timezone.utc)
        return self._touch("keepAlive")

    async def _on_update(self, _signal: Any) -> bool:
        namespace, hostname = self._labels
        self.updates_received[namespace, hostname] += 1
        if not self.server.is_outdated(self.machine):
            log.debug(
                "%s is up to date (last successful update %s)",
                hostname,
                self.machine.last_successful_update,
            )
            return True

        log.debug("there have been updates since the last successful update to %s", hostname)
        try:
            data = self.server.get_map_response_data(self.map_request, self.machine, False)
        except Exception as err:
            log.error("could not get the map update for %s: %s", hostname, err)
            return False
        if not await self._write(data, "update"):
            self.updates_sent[namespace, hostname, "failed"] += 1
            return False
        self.updates_sent[namespace, hostname, "success"] += 1

        if not self._refresh("update"):
            return False
        self._mark_successful_update(datetime.now(timezone.utc))
        return self._touch("update")

    async def _on_closed(self) -> None:
        if not self._refresh("Done"):
            return
        self.machine.last_seen = datetime.now(timezone.utc)
        self._touch("Done")

    # -- scheduled work ------------------------------------------------------

    def _stopping(self) -> bool:
        return self.closed.is_set() or self._finished.is_set()

    async def _wait_stopped(self, timeout: float) -> bool:
        if self._stopping():
            return True
        waiters = [
            asyncio.create_task(self.closed.wait()),
            asyncio.create_task(self._finished.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        return self._stopping()

    async def _deliver(self, queue: asyncio.Queue, item: Any) -> bool:
        put = asyncio.create_task(queue.put(item))
        stops = [
            asyncio.create_task(self.closed.wait()),
            asyncio.create_task(self._finished.wait()),
        ]
        try:
            done, _ = await asyncio.wait([put, *stops], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (put, *stops):
                if not task.done():
                    task.cancel()
            await asyncio.gather(put, *stops, return_exceptions=True)
        return put in done and not put.cancelled()

    async def scheduled_worker(self) -> None:
        """Send keep-alives and update requests on their intervals until the stream ends."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        next_keep_alive = start + self.keep_alive_interval
        next_update = start + self.update_check_interval
        namespace, hostname = self._labels

        while True:
            deadline = min(next_keep_alive, next_update)
            if await self._wait_stopped(max(0.0, deadline - loop.time())):
                return
            now = loop.time()

            if now >= next_keep_alive:
                while next_keep_alive <= now:
                    next_keep_alive += self.keep_alive_interval
                try:
                    data = self.server.get_map_keep_alive_response_data(
                        self.map_request, self.machine, self.is_noise
                    )
                except Exception as err:
                    log.error("error generating the keep alive message: %s", err)
                    return
                log.debug("sending keepalive to %s", hostname)
                if not await self._deliver(self.keep_alive, data):
                    return

            if now >= next_update:
                while next_update <= now:
                    next_update += self.update_check_interval
                log.debug("sending update request for %s", hostname)
                self.updates_from_node[namespace, hostname, "scheduled-update"] += 1
                if not await self._deliver(self.updates, None):
                    return
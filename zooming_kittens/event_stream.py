"""Event stream: one compositor connection, broadcast to many subscribers.

The reader loop owns the transport, decodes each record and fans the typed
events out to every subscriber's bounded queue. The reader never awaits a
subscriber: a subscriber whose queue is full is disconnected and sees
OverrunError on its next read, while the other subscribers keep going.

No reconnect is attempted. When the transport ends (EOF, I/O error or close())
every subscription is terminated and run() returns a StreamTermination.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from .decoder import EventDecoder
from .errors import DecodeError, IpcConnectionError, OverrunError, UnknownEventError
from .models import WindowEvent
from .transports import EventTransport

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_BUFFER = 256

_END = object()


class _Overrun:
    def __init__(self, dropped: int) -> None:
        self.dropped = dropped


@dataclass
class StreamTermination:
    """Why the stream stopped.

    reason is one of "eof" (peer closed), "closed" (close() was called) or
    "error" (transport failure, see error).
    """

    reason: str
    error: Optional[BaseException] = None

    @property
    def is_error(self) -> bool:
        return self.reason == "error"


class Subscription:
    """Ordered, independent view of the event stream.

    Iterate with ``async for``. Iteration stops when the stream terminates;
    ``error`` then holds the transport error, if any.
    """

    def __init__(self, stream: "EventStream", maxsize: int, name: str) -> None:
        self._stream = stream
        self.maxsize = maxsize
        self.name = name
        # Unbounded on purpose: the bound is enforced in _offer() so the
        # termination marker always fits.
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._finished = False
        self.error: Optional[BaseException] = None
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: WindowEvent) -> bool:
        """Queue an event. Returns False if the subscriber overran."""
        if self._closed:
            return True
        if self._queue.qsize() >= self.maxsize:
            self._overrun()
            return False
        self._queue.put_nowait(event)
        return True

    def _overrun(self) -> None:
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        self._closed = True
        self._queue.put_nowait(_Overrun(dropped))
        logger.warning(
            f"Subscriber {self.name} fell behind ({self.maxsize} events buffered); "
            f"disconnected, {dropped} event(s) dropped"
        )

    def _terminate(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.error = error
        self._queue.put_nowait(_END)

    def close(self) -> None:
        """Stop receiving events."""
        self._stream._remove(self)
        self._terminate()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> WindowEvent:
        if self._finished:
            raise StopAsyncIteration

        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Overrun):
            self._finished = True
            raise OverrunError(
                f"Subscriber {self.name} overran its {self.maxsize}-event buffer",
                context={"dropped": item.dropped},
            )

        self.delivered += 1
        return item

    async def get(self) -> Optional[WindowEvent]:
        """Next event, or None once the stream has ended."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None


class EventStream:
    """Single-producer / multi-consumer window event stream."""

    def __init__(
        self,
        transport: EventTransport,
        decoder: Optional[EventDecoder] = None,
        subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER,
    ) -> None:
        """Initialize event stream.

        Args:
            transport: Compositor transport (not yet connected)
            decoder: Record decoder (default: EventDecoder())
            subscriber_buffer: Default per-subscriber queue bound
        """
        if subscriber_buffer < 1:
            raise ValueError("subscriber_buffer must be >= 1")

        self.transport = transport
        self.decoder = decoder or EventDecoder()
        self.subscriber_buffer = subscriber_buffer
        self._subscribers: List[Subscription] = []
        self._connected = False
        self._closing = False
        self._subscriber_seq = 0
        self.termination: Optional[StreamTermination] = None

        self.events_received = 0
        self.events_decoded = 0
        self.decode_failures = 0
        self.unknown_events = 0
        self.overruns = 0

    @property
    def is_connected(self) -> bool:
        return self._connected and self.termination is None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def connect(self) -> None:
        """Open the transport.

        Raises:
            IpcConnectionError: If the endpoint is unreachable or rejects the handshake
        """
        if self._connected:
            return
        try:
            await self.transport.connect()
        except IpcConnectionError:
            raise
        except OSError as e:
            raise IpcConnectionError(f"Cannot connect to {self.transport.name} IPC: {e}") from e
        self._connected = True

    def subscribe(self, maxsize: Optional[int] = None, name: Optional[str] = None) -> Subscription:
        """Add a subscriber that observes every event from now on."""
        self._subscriber_seq += 1
        subscription = Subscription(
            self,
            maxsize=maxsize or self.subscriber_buffer,
            name=name or f"subscriber-{self._subscriber_seq}",
        )
        if self.termination is not None:
            subscription._terminate(self.termination.error)
            return subscription

        self._subscribers.append(subscription)
        logger.debug(f"Added {subscription.name} (buffer={subscription.maxsize})")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def _publish(self, event: WindowEvent) -> None:
        for subscription in list(self._subscribers):
            if not subscription._offer(event):
                self.overruns += 1
                self._remove(subscription)

    def _terminate_all(self, termination: StreamTermination) -> None:
        self.termination = termination
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._terminate(termination.error)

    async def run(self) -> StreamTermination:
        """Read, decode and broadcast events until the transport ends.

        Returns:
            StreamTermination describing why the loop stopped
        """
        if not self._connected:
            raise IpcConnectionError("Event stream is not connected")
        if self.termination is not None:
            return self.termination

        logger.info(f"Event stream started ({self.transport.name})")
        termination: Optional[StreamTermination] = None

        try:
            while True:
                raw = await self.transport.read_message()
                if raw is None:
                    termination = StreamTermination("closed" if self._closing else "eof")
                    break

                self.events_received += 1
                try:
                    event = self.decoder.decode(raw)
                except UnknownEventError as e:
                    self.unknown_events += 1
                    logger.debug(f"Skipping event: {e}")
                    continue
                except DecodeError as e:
                    self.decode_failures += 1
                    logger.warning(f"Skipping undecodable event: {e}")
                    continue

                self.events_decoded += 1
                self._publish(event)

        except IpcConnectionError as e:
            logger.error(f"Event stream transport failed: {e}")
            termination = StreamTermination("error", e)
        except asyncio.CancelledError:
            self._terminate_all(StreamTermination("closed"))
            raise
        except Exception as e:
            logger.error(f"Event stream reader crashed: {e}", exc_info=True)
            termination = StreamTermination("error", e)

        self._terminate_all(termination)
        logger.info(
            f"Event stream stopped: reason={termination.reason} "
            f"(received={self.events_received}, decoded={self.events_decoded}, "
            f"decode_failures={self.decode_failures}, overruns={self.overruns})"
        )
        return termination

    async def close(self) -> None:
        """Close the transport; run() returns and all subscriptions end."""
        if self._closing:
            return
        self._closing = True
        await self.transport.close()
        if self.termination is None and not self._connected:
            self._terminate_all(StreamTermination("closed"))

    def stats(self) -> dict:
        return {
            "backend": self.transport.name,
            "connected": self.is_connected,
            "subscribers": self.subscriber_count,
            "events_received": self.events_received,
            "events_decoded": self.events_decoded,
            "decode_failures": self.decode_failures,
            "unknown_events": self.unknown_events,
            "overruns": self.overruns,
        }

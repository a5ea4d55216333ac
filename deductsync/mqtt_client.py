"""MQTT bridge: bus events out, worker control messages in.

Every event emitted on the bus is published as JSON under
``<prefix>/events/<event name>``. JSON objects received on
``<prefix>/control`` are queued and handed to a control handler, normally
``AssetCacheWorker.handle_message``.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .events import ALL_EVENTS, Event, EventBus

logger = logging.getLogger(__name__)

ControlHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class ControlMessage:
    """A decoded control message."""

    topic: str
    data: dict[str, Any]
    received_at: float = field(default_factory=time.time)


def decode_control(raw: bytes) -> dict[str, Any] | None:
    """Decode a control payload, or None if it is not a JSON object."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


class MQTTBridge:
    """Mirrors the event bus onto a broker and collects control messages."""

    def __init__(self, config: MQTTConfig):
        self.config = config

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.on_disconnect = self._on_disconnect

        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None
        self._controls: asyncio.Queue[ControlMessage] | None = None
        self._detach_bus: Callable[[], None] | None = None

    @property
    def events_topic(self) -> str:
        return f"{self.config.topic_prefix}/events"

    @property
    def control_topic(self) -> str:
        return f"{self.config.topic_prefix}/control"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Paho callbacks run on the network thread; anything touching asyncio
    # state goes through call_soon_threadsafe.

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code != 0:
            logger.error(f"Broker refused connection: {reason_code}")
            return

        self._connected = True
        client.subscribe(self.control_topic)
        logger.info(
            f"Bridge connected to {self.config.broker}:{self.config.port}, "
            f"listening on {self.control_topic}"
        )
        if self._loop and self._ready:
            self._loop.call_soon_threadsafe(self._ready.set)

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage) -> None:
        data = decode_control(msg.payload)
        if data is None:
            logger.warning(f"Ignoring non-JSON control message on {msg.topic}")
            return

        if self._loop and self._controls:
            self._loop.call_soon_threadsafe(
                self._controls.put_nowait, ControlMessage(msg.topic, data)
            )

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        self._connected = False
        logger.warning(f"Bridge lost broker connection: {reason_code}")

    async def connect(self) -> bool:
        """Connect and wait for the broker to accept the session.

        Returns:
            True once connected, False on error or after ``connect_timeout``.
        """
        self._loop = asyncio.get_running_loop()
        self._ready = asyncio.Event()
        self._controls = asyncio.Queue()

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(
                self.config.broker, self.config.port, keepalive=self.config.keepalive
            )
        except OSError as e:
            logger.error(f"Cannot reach broker {self.config.broker}: {e}")
            return False

        self._client.loop_start()
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError:
            logger.error(f"No CONNACK within {self.config.connect_timeout}s")
            return False
        return True

    async def disconnect(self) -> None:
        """Stop forwarding bus events and close the broker session."""
        if self._detach_bus:
            self._detach_bus()
            self._detach_bus = None
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    def bridge(self, bus: EventBus) -> None:
        """Forward every event emitted on ``bus``. Replaces any earlier bus."""
        if self._detach_bus:
            self._detach_bus()
        self._detach_bus = bus.subscribe(ALL_EVENTS, self.publish_event)

    def publish_event(self, event: Event) -> bool:
        """Publish one bus event.

        Returns:
            True if paho accepted the message, False when offline.
        """
        if not self._connected:
            logger.debug(f"Bridge offline, {event.name} not forwarded")
            return False

        body = {"name": event.name, "payload": event.payload, "timestamp": event.timestamp}
        info = self._client.publish(
            f"{self.events_topic}/{event.name}", json.dumps(body, ensure_ascii=False)
        )
        return info.rc == mqtt.MQTT_ERR_SUCCESS

    async def next_control(self, timeout: float | None = None) -> ControlMessage | None:
        """Wait for the next control message.

        Args:
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            The message, or None on timeout or before ``connect``.
        """
        if self._controls is None:
            return None
        try:
            return await asyncio.wait_for(self._controls.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def run_control_loop(self, handler: ControlHandler) -> None:
        """Hand control messages to ``handler`` until cancelled."""
        while True:
            message = await self.next_control()
            if message is None:
                await asyncio.sleep(0.1)
                continue
            try:
                await handler(message.data)
            except Exception as e:
                logger.error(f"Control handler failed for {message.data}: {e}")

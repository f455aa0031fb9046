"""
Scheduler loop of the ebusd MQTT bridge.

One worker drives everything through tick(): drain the MQTT network loop
(the only blocking point, bounded by the loop timeout), run the periodic
tasks every TASK_INTERVAL_S (reconnect permission, uptime, signal, definition
passes) and flush the messages the bus side reported as updated.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Hashable, Optional

from ebusd_mqtt.catalog import BusCatalog
from ebusd_mqtt.config import BridgeConfig, validate_topic
from ebusd_mqtt.core.cmd_context import BridgeContext
from ebusd_mqtt.core.definitions import DefinitionPublisher
from ebusd_mqtt.core.handlers import on_topic, publish_message
from ebusd_mqtt.core.integration import load_integration_file
from ebusd_mqtt.mqtt_client import BridgeMQTTClient

logger = logging.getLogger(__name__)

TASK_INTERVAL_S = 15
WAIT_DISCONNECTED_S = 5.0
WAIT_BUSY_S = 1.0


class UpdateQueue:
    """Keys of messages changed on the bus; filled by the bus side, drained by the bridge."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: deque[Hashable] = deque()
        self._pending: set[Hashable] = set()

    def put(self, key: Hashable) -> None:
        with self._lock:
            if key not in self._pending:
                self._pending.add(key)
                self._keys.append(key)

    def drain(self) -> list[Hashable]:
        with self._lock:
            keys = list(self._keys)
            self._keys.clear()
            self._pending.clear()
        return keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class MqttBridge:
    def __init__(
        self,
        ctx: BridgeContext,
        client: BridgeMQTTClient,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ctx = ctx
        self.client = client
        self.definitions = DefinitionPublisher(ctx, clock=clock)
        ctx.definitions = self.definitions
        self.updates = UpdateQueue()
        self._clock = clock
        self._stop = threading.Event()

        now = clock()
        self._start = now
        self._last_task_run = now
        self._last_signal = 0.0
        self._last_updates = 0.0
        self._signal = False
        self._allow_reconnect = False
        self._last_update_check: Optional[str] = None
        self._last_scan_status: Optional[str] = None

        client.set_message_handler(self._on_message)

    def _on_message(self, topic: str, payload: str) -> None:
        try:
            on_topic(self.ctx, topic, payload)
        except Exception:
            logger.exception("Failed to handle topic %s", topic)

    def start(self) -> bool:
        """Connect to the broker. False if the bridge has to be disabled."""
        return self.client.start()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def notify_update(self, key: Hashable) -> None:
        """Called from the bus side when messages under key changed."""
        self.updates.put(key)

    def notify_update_check(self, result: str) -> None:
        if result == self._last_update_check:
            return
        self._last_update_check = result
        self.ctx.publish_global("updatecheck", result or "OK")

    def notify_scan_status(self, status: str) -> None:
        if status == self._last_scan_status:
            return
        self._last_scan_status = status
        self.ctx.publish_global("scan", status or "OK")

    def tick(self) -> float:
        """
        Run one scheduler iteration.

        Returns the number of seconds to wait before the next tick.
        """
        client = self.client
        was_connected = client.connected
        needs_wait = client.loop(self._allow_reconnect)
        reconnected = not was_connected and client.connected
        self._allow_reconnect = False
        now = self._clock()
        send_signal = reconnected

        if now < self._start:
            # clock skew
            if now < self._last_signal:
                self._last_signal -= self._last_task_run - now
            self._last_task_run = now
        elif now > self._last_task_run + TASK_INTERVAL_S:
            self._allow_reconnect = True
            self._last_task_run = now
            if client.connected:
                send_signal = True
                try:
                    if self._run_periodic(now):
                        needs_wait = True
                except Exception:
                    logger.exception("Failed to run periodic task")

        if send_signal:
            try:
                self._publish_signal(now, reconnected)
            except Exception:
                logger.exception("Failed to publish signal")

        try:
            self._flush_updates(now)
        except Exception:
            logger.exception("Failed to publish updated messages")

        if not client.connected:
            return WAIT_DISCONNECTED_S
        return WAIT_BUSY_S if needs_wait else 0.0

    def _run_periodic(self, now: float) -> bool:
        """Publish uptime and run the definition pass. True if messages were considered."""
        self.ctx.publish_global("uptime", str(int(now - self._start)), quote=False, retain=False)
        if self.definitions.since == 0:
            self.definitions.publish_globals()
        if not self.definitions.enabled:
            return False
        self.definitions.publish_messages()
        return True

    def _publish_signal(self, now: float, reconnected: bool) -> None:
        if self.ctx.catalog.has_signal():
            self._last_signal = now
            if not self._signal or reconnected:
                self._signal = True
                self.ctx.publish_global("signal", "true", quote=False)
        elif self._signal or reconnected:
            self._signal = False
            self.ctx.publish_global("signal", "false", quote=False)

    def _flush_updates(self, now: float) -> None:
        keys = self.updates.drain()
        if not keys:
            return
        if not self.client.connected:
            return
        catalog = self.ctx.catalog
        only_changes = self.ctx.config.only_changes
        with catalog.lock:
            messages = [message for key in keys for message in catalog.get_by_key(key)]
        for message in messages:
            if not message.last_change_time or not message.available:
                continue
            if only_changes and message.last_change_time <= self._last_updates:
                continue
            publish_message(self.ctx, message)
        self._last_updates = now

    def run(self) -> None:
        """Tick until stop() is called, then publish the final status."""
        try:
            while self.running:
                wait_s = self.tick()
                if wait_s and self._stop.wait(wait_s):
                    break
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        try:
            if self.client.connected:
                self.ctx.publish_global("signal", "false", quote=False)
                # clear the retained scan status
                self.ctx.publish_global("scan", "", quote=False)
        finally:
            self.client.shutdown()


def create_bridge(config: BridgeConfig, catalog: BusCatalog) -> MqttBridge:
    """Build the bridge from configuration. Raises ConfigError or IntegrationError."""
    topic = validate_topic(config.topic)
    integration = load_integration_file(
        config.integration_file, topic, config.version, strict=config.strict
    )
    prefix = topic.render({})
    subscriptions = [prefix + "#"]
    if integration.config_restart_topic:
        subscriptions.append(integration.config_restart_topic)
    client = BridgeMQTTClient(config, prefix + "global/", subscriptions)
    ctx = BridgeContext(
        mqtt=client,
        config=config,
        topic=topic,
        integration=integration,
        catalog=catalog,
    )
    return MqttBridge(ctx, client)

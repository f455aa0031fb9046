"""
MQTT connection engine for the ebusd bridge.

Owns the paho-mqtt client: credentials, TLS and last will, the initial
connect, the reconnect state machine driven by the scheduler tick, and the
announcement of global status topics once the broker accepts the session.
The network loop is drained manually by loop(); all callbacks run inside it.
"""

from __future__ import annotations

import enum
import logging
import ssl
from typing import Any, Callable, Optional, Sequence

import paho.mqtt.client as mqtt

from ebusd_mqtt.config import BridgeConfig
from ebusd_mqtt.core.rate_limit import ErrorRateLimiter

logger = logging.getLogger(__name__)

LOOP_TIMEOUT_S = 1.0
KEEPALIVE_S = 60

_PROTOCOLS = {
    "3.1": mqtt.MQTTv31,
    "3.1.1": mqtt.MQTTv311,
}

_CONNECTION_ERRORS = {
    mqtt.MQTT_ERR_NO_CONN: "not connected",
    mqtt.MQTT_ERR_CONN_LOST: "connection lost",
    mqtt.MQTT_ERR_CONN_REFUSED: "connection refused",
}


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    AWAITING_INITIAL_CONNECT = "awaiting_initial_connect"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


MessageHandler = Callable[[str, str], None]


class BridgeMQTTClient:
    """
    MQTT session of the bridge.

    start() performs the initial connect; afterwards the scheduler calls
    loop() once per tick. Reconnect attempts only happen when the caller
    passes allow_reconnect, which it does on periodic task ticks.
    """

    def __init__(
        self,
        config: BridgeConfig,
        global_topic: str,
        subscriptions: Sequence[str] = (),
        *,
        keepalive: int = KEEPALIVE_S,
    ) -> None:
        self.config = config
        self.global_topic = global_topic
        self.subscriptions = list(subscriptions)
        self.keepalive = keepalive
        self.state = ConnectionState.DISCONNECTED

        self._client: Optional[mqtt.Client] = None
        self._message_handler: Optional[MessageHandler] = None
        self._errors = ErrorRateLimiter(logger)

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def _create_client(self) -> mqtt.Client:
        cfg = self.config
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=cfg.client_id,
            protocol=_PROTOCOLS.get(cfg.protocol_version, mqtt.MQTTv31),
        )
        if cfg.username is not None or cfg.password is not None:
            client.username_pw_set(cfg.username, cfg.password)

        client.will_set(self.global_topic + "running", payload="false", qos=0, retain=True)

        if cfg.uses_tls:
            self._configure_tls(client)
        if cfg.log_lib:
            client.enable_logger(logging.getLogger("ebusd_mqtt.paho"))

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _configure_tls(self, client: mqtt.Client) -> None:
        cfg = self.config
        try:
            context = ssl.create_default_context(cafile=cfg.ca_file, capath=cfg.ca_path)
            if cfg.cert_file:
                context.load_cert_chain(cfg.cert_file, cfg.key_file, password=cfg.key_password)
            client.tls_set_context(context)
            if cfg.insecure:
                client.tls_insecure_set(True)
        except (OSError, ValueError) as exc:
            logger.error("Unable to set TLS: %s", exc)

    def start(self) -> bool:
        """
        Create the client and request the initial connection.

        Returns False when the bridge has to disable itself, i.e. the broker
        parameters are invalid and MQTT_IGNORE_INVALID is not set.
        """
        self._client = self._create_client()
        self.state = ConnectionState.AWAITING_INITIAL_CONNECT
        try:
            self._client.connect(self.config.mqtt_host, self.config.mqtt_port, keepalive=self.keepalive)
        except ValueError as exc:
            if not self.config.ignore_invalid_params:
                logger.error("Unable to connect (invalid parameters): %s", exc)
                self._client = None
                self.state = ConnectionState.DISCONNECTED
                return False
            logger.error("Unable to connect (invalid parameters), retrying: %s", exc)
            return True
        except OSError as exc:
            logger.error("Unable to connect, retrying: %s", exc)
            self.state = ConnectionState.RECONNECTING
            return True
        # assume success until the connect callback says otherwise
        self.state = ConnectionState.CONNECTED
        logger.debug("Connection requested")
        return True

    def _retry_connect(self) -> int:
        assert self._client is not None
        try:
            if self.state is ConnectionState.AWAITING_INITIAL_CONNECT:
                self._client.connect(self.config.mqtt_host, self.config.mqtt_port, keepalive=self.keepalive)
            else:
                self._client.reconnect()
        except ValueError as exc:
            self._errors.error("Unable to connect (invalid parameters), retrying: %s", exc)
            return mqtt.MQTT_ERR_INVAL
        except OSError as exc:
            self._errors.error("Unable to connect, retrying: %s", exc)
            return mqtt.MQTT_ERR_NO_CONN
        return mqtt.MQTT_ERR_SUCCESS

    def loop(self, allow_reconnect: bool = False) -> bool:
        """
        Drain network traffic for up to LOOP_TIMEOUT_S and advance the state.

        Returns True if the caller should wait before the next tick.
        """
        if self._client is None:
            return False
        rc = self._client.loop(timeout=LOOP_TIMEOUT_S)
        if not self.connected and rc in (mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_CONN_LOST) and allow_reconnect:
            rc = self._retry_connect()
        if not self.connected and rc == mqtt.MQTT_ERR_SUCCESS:
            self.state = ConnectionState.CONNECTED
            logger.info("Connection re-established")
        if not self.connected or rc == mqtt.MQTT_ERR_SUCCESS:
            return False
        if rc in _CONNECTION_ERRORS:
            logger.error("Communication error: %s", _CONNECTION_ERRORS[rc])
            self.state = ConnectionState.RECONNECTING
        else:
            self._errors.error("Communication error: %s", mqtt.error_string(rc))
        return True

    def _on_connect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            logger.error("Connection refused: %s", reason_code)
            return
        logger.info("Connection established")
        self._errors.reset()
        self.notify_connected()

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            logger.warning("Unexpected disconnect: %s", reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if not self._message_handler:
            return
        try:
            payload = msg.payload.decode("utf-8") if msg.payload else ""
        except UnicodeDecodeError as exc:
            logger.error("Payload decode failed topic=%s err=%s", msg.topic, exc)
            return
        self._message_handler(msg.topic, payload)

    def notify_connected(self) -> None:
        """Announce version and running state and subscribe to command topics."""
        if self._client is None:
            return
        sep = '"' if self.config.json else ""
        self.publish(self.global_topic + "version", f"{sep}ebusd-mqtt {self.config.version}{sep}", retain=True)
        self.publish(self.global_topic + "running", "true", retain=True)
        for topic in self.subscriptions:
            self.subscribe(topic)

    def subscribe(self, topic: str) -> bool:
        if self._client is None:
            return False
        rc, _mid = self._client.subscribe(topic, qos=0)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self._errors.error("Subscribe %s failed: %s", topic, mqtt.error_string(rc))
            return False
        logger.info("Subscribed: %s", topic)
        return True

    def publish(self, topic: str, payload: str, *, retain: bool = False) -> bool:
        """Publish payload at qos 0, retained if requested or if retain-all is set."""
        return self._publish(topic, payload, self.config.retain or retain)

    def publish_empty(self, topic: str) -> bool:
        """Publish a zero-length payload, retained only if retain-all is set."""
        return self._publish(topic, None, self.config.retain)

    def _publish(self, topic: str, payload: Optional[str], retain: bool) -> bool:
        if self._client is None:
            return False
        logger.debug("Publish %s %s", topic, payload if payload is not None else "<empty>")
        try:
            info = self._client.publish(topic, payload=payload, qos=0, retain=retain)
        except ValueError as exc:
            self._errors.error("Publish %s failed: %s", topic, exc)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._errors.error("Publish %s failed: %s", topic, mqtt.error_string(info.rc))
            return False
        return True

    def shutdown(self) -> None:
        """Publish the final not-running state and tear down the client."""
        if self._client is None:
            return
        try:
            if self.connected:
                # a clean disconnect suppresses the last will
                self.publish(self.global_topic + "running", "false", retain=True)
            self._client.disconnect()
        finally:
            self._client = None
            self.state = ConnectionState.DISCONNECTED

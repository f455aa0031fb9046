"""
Bridge context shared by the command handlers and the definition publisher.

Bundles the MQTT publisher, the immutable configuration, the topic template,
the loaded integration and the bus catalog, plus topic helpers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

from ebusd_mqtt.catalog import BusCatalog, Message, OutputFormat
from ebusd_mqtt.config import BridgeConfig
from ebusd_mqtt.core.integration import Integration
from ebusd_mqtt.mqtt_topics import TopicTemplate

if TYPE_CHECKING:
    from ebusd_mqtt.core.definitions import DefinitionPublisher

logger = logging.getLogger(__name__)


class MqttPublisher(Protocol):
    """
    Minimal MQTT publisher interface for the bridge context.

    This protocol defines the contract that the MQTT client must fulfill.
    """

    def publish(self, topic: str, payload: str, *, retain: bool = False) -> Any:
        ...

    def publish_empty(self, topic: str) -> Any:
        ...

    def subscribe(self, topic: str) -> Any:
        ...


@dataclass
class BridgeContext:
    """
    Execution context of the bridge.

    Provides:
    - MQTT publishing
    - the topic template and derived global/subscribe topics
    - integration variables and type switches
    - bus catalog access
    """

    mqtt: MqttPublisher
    config: BridgeConfig
    topic: TopicTemplate
    integration: Integration
    catalog: BusCatalog
    definitions: Optional[DefinitionPublisher] = field(default=None, repr=False)

    @property
    def publish_by_field(self) -> bool:
        return self.topic.has("field")

    @property
    def output_format(self) -> OutputFormat:
        return self.config.output_format

    @property
    def global_topic(self) -> str:
        return self.topic_for(None, "global/")

    def topic_for(self, message: Optional[Message], suffix: str = "", field_name: str = "") -> str:
        """Render the topic of message (and field), or the bare prefix if message is None."""
        values: dict[str, str] = {}
        if message is not None:
            values["circuit"] = message.circuit
            values["name"] = message.name
            if field_name:
                values["field"] = field_name
        return self.topic.render(values) + suffix

    def publish(self, topic: str, payload: str, *, retain: bool = False) -> Any:
        return self.mqtt.publish(topic, payload, retain=retain)

    def publish_global(self, name: str, value: str, *, quote: bool = True, retain: bool = True) -> Any:
        """Publish a global status value, quoted as JSON string in JSON mode."""
        if quote and self.config.json:
            value = f'"{value}"'
        return self.mqtt.publish(self.global_topic + name, value, retain=retain)

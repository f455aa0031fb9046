"""
Discovery style definition publisher.

Walks the bus catalog and publishes one definition per message field (or per
message with accumulated field payloads) using the integration variables:
``definition-topic``, ``definition-payload`` and ``definition-retain``, after
seeding per message and per field values and folding all templates.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from ebusd_mqtt.catalog import Message, type_suffix
from ebusd_mqtt.core.cmd_context import BridgeContext
from ebusd_mqtt.core.matching import matches
from ebusd_mqtt.core.variables import Variables

logger = logging.getLogger(__name__)

GLOBAL_NAMES = ("running", "version", "signal", "uptime", "updatecheck", "scan")

_NO_RETAIN = {"", "0", "no", "false"}


def direction_code(message: Message) -> str:
    if message.is_write:
        return "uw" if message.is_passive else "w"
    return "r" if message.is_passive else "u"


class DefinitionPublisher:
    def __init__(self, ctx: BridgeContext, *, clock: Callable[[], float] = time.time) -> None:
        self.ctx = ctx
        self._clock = clock
        # 0: nothing published yet, 1: globals published, else time of the last message pass
        self.since = 0.0

    @property
    def enabled(self) -> bool:
        return self.ctx.integration.has_definition_topic

    def reset(self) -> None:
        self.since = 0.0

    def publish_definition(
        self,
        values: Variables,
        prefix: str = "definition-",
        topic: str = "",
        circuit: str = "",
        name: str = "",
        fallback_prefix: str = "",
    ) -> bool:
        """Publish the definition found under prefix (or fallback_prefix). False if it has no topic."""
        if topic or circuit or name:
            values = values.copy()
            if topic:
                values.set("topic", topic)
            if circuit:
                values.set("circuit", circuit)
            if name:
                values.set("name", name)
            values.reduce()

        def lookup(suffix: str) -> str:
            fallback = fallback_prefix + suffix if fallback_prefix else ""
            return values.lookup(prefix + suffix, fallback=fallback)

        def_topic = lookup("topic")
        if not def_topic:
            return False
        payload = lookup("payload")
        retain = lookup("retain") not in _NO_RETAIN
        self.ctx.publish(def_topic, payload, retain=retain)
        return True

    def publish_globals(self) -> None:
        global_topic = self.ctx.global_topic
        variables = self.ctx.integration.variables
        for name in GLOBAL_NAMES:
            self.publish_definition(
                variables,
                f"def_global_{name}-",
                global_topic + name,
                "global",
                name,
                "def_global-",
            )
        self.since = 1.0

    def publish_messages(self) -> int:
        """Publish definitions of all catalog entries created since the last pass."""
        ctx = self.ctx
        variables = ctx.integration.variables
        try:
            filter_priority = int(variables["filter-priority"] or 0)
        except ValueError:
            filter_priority = 0
        if not 0 <= filter_priority <= 9:
            filter_priority = 0
        filter_circuit = variables["filter-circuit"].lower()
        filter_name = variables["filter-name"].lower()
        filter_level = variables["filter-level"].lower()
        filter_field = variables["filter-field"].lower()

        with ctx.catalog.lock:
            messages = list(ctx.catalog.find_all("", "", "", complete_match=False))

        published = 0
        for message in messages:
            if message.create_time <= self.since:
                continue
            if filter_priority > 0 and (
                message.poll_priority == 0 or message.poll_priority > filter_priority
            ):
                continue
            if not (
                matches(message.circuit, filter_circuit)
                and matches(message.name, filter_name)
                and matches(message.level, filter_level)
            ):
                continue
            published += self._publish_message(message, filter_field)

        self.since = self._clock()
        logger.debug("Published %d definitions", published)
        return published

    def _publish_message(self, message: Message, filter_field: str) -> int:
        ctx = self.ctx
        integration = ctx.integration
        msg_values = integration.variables.copy()
        msg_values.set("circuit", message.circuit)
        msg_values.set("name", message.name)
        msg_values.set_number("priority", message.poll_priority)
        msg_values.set("level", message.level)
        msg_values.set("direction", direction_code(message))
        if not ctx.publish_by_field:
            msg_values.set("topic", ctx.topic_for(message))
        msg_values.reduce()

        uses_type_switch = bool(integration.type_switches)
        fields: list[str] = []
        published = 0
        field_count = len(message.fields)
        for index, field in enumerate(message.fields):
            if field.ignored:
                continue
            field_name = field.name
            if not field_name and field_count == 1:
                field_name = "0"
            if not matches(field_name, filter_field):
                continue
            suffix = type_suffix(field.data_type)
            type_value = msg_values.lookup(f"type-{suffix}")
            if not type_value:
                continue

            values = msg_values.copy()
            values.set("type", type_value)
            values.set_number("index", index)
            values.set("field", field_name)
            values.set("fieldcomment", field.comment)
            values.set("unit", field.unit)
            if uses_type_switch:
                values.reduce()
                values.set("type_switch", integration.type_switch(suffix, values.lookup("type_switch-by")))
            values.reduce()
            values.set("type_part", values.lookup(f"type_part-{suffix}"))
            if ctx.publish_by_field:
                values.set("topic", ctx.topic_for(message, "", field_name))
            values.reduce()

            if integration.has_fields_payload:
                value = values["field_payload"]
                if value:
                    fields.append(value)
                continue
            published += self.publish_definition(values)

        if fields:
            msg_values.set("fields_payload", msg_values["field-separator"].join(fields))
            msg_values.reduce()
            published += self.publish_definition(msg_values)
        return published

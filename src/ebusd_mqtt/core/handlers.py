"""
Command handlers for the ebusd MQTT bridge.

Inbound topics end in a verb: <topic>/get reads, <topic>/set writes and
<topic>/list enumerates catalog entries. Every successful bus operation is
followed by publishing the refreshed value of the message.
"""

from __future__ import annotations

import logging
from typing import Optional

from ebusd_mqtt.catalog import BusError, Message, OutputFormat
from ebusd_mqtt.core.cmd_context import BridgeContext

logger = logging.getLogger(__name__)

VERBS = ("get", "set", "list")
FIELD_SEPARATOR = ";"


def split_poll_priority(payload: str) -> tuple[str, Optional[int]]:
    """
    Split a trailing ``?<priority>`` off a read payload.

    The suffix is only recognized at the very start or right after the field
    separator. Returns the remaining payload and the priority (None if absent
    or not within 1..9).
    """
    pos = payload.rfind("?")
    if pos < 0 or (pos > 0 and payload[pos - 1] != FIELD_SEPARATOR):
        return payload, None
    args = payload[pos + 1 :]
    data = payload[: pos - 1] if pos > 0 else ""
    if not args:
        return data, None
    try:
        priority = int(args)
    except ValueError:
        logger.info("Ignoring invalid poll priority %r", args)
        return data, None
    if not 1 <= priority <= 9:
        logger.info("Ignoring poll priority %d out of range", priority)
        return data, None
    return data, priority


def on_topic(ctx: BridgeContext, topic: str, payload: str) -> None:
    """Route one inbound MQTT message."""
    prefix, sep, verb = topic.rpartition("/")
    if not sep:
        return
    integration = ctx.integration
    restart_topic = integration.config_restart_topic
    if restart_topic and topic == restart_topic:
        restart_payload = integration.config_restart_payload
        if (not restart_payload or payload == restart_payload) and ctx.definitions is not None:
            logger.info("Config restart requested, republishing definitions")
            ctx.definitions.reset()
        return
    if verb not in VERBS:
        return

    logger.debug("Received topic %s with data %s", topic, payload)
    match = ctx.topic.match_topic(prefix)
    if verb == "list":
        on_list(ctx, match.circuit, match.name, payload)
        return
    if not match.ok:
        # %field may be omitted to address the whole message
        message_topic = ctx.topic.without_trailing_field()
        if message_topic is not None:
            match = message_topic.match_topic(prefix)
    if not match.ok or not match.circuit or not match.name:
        logger.error("Received unmatchable topic %s", topic)
        return
    on_read_write(ctx, verb == "set", match.circuit, match.name, payload)


def on_list(ctx: BridgeContext, circuit: str, name: str, payload: str) -> None:
    """
    Publish every catalog entry matching circuit/name.

    A trailing ``*`` turns circuit or name into a prefix filter. A non-empty
    payload restricts the list to entries that already received data.
    """
    logger.info("Received list topic for %s %s", circuit, name)
    circuit_prefix = circuit.endswith("*")
    if circuit_prefix:
        circuit = circuit[:-1]
    name_prefix = name.endswith("*")
    if name_prefix:
        name = name[:-1]

    with ctx.catalog.lock:
        messages = list(
            ctx.catalog.find_all(
                circuit,
                name,
                ctx.config.access_levels,
                complete_match=not (circuit_prefix or name_prefix),
            )
        )

    only_with_data = bool(payload)
    for message in messages:
        if circuit_prefix and (
            not message.circuit.startswith(circuit)
            or (not name_prefix and name and message.name != name)
        ):
            continue
        if name_prefix and (
            not message.name.startswith(name)
            or (not circuit_prefix and circuit and message.circuit != circuit)
        ):
            continue
        if only_with_data and not message.last_update_time:
            continue
        publish_message(ctx, message, include_without_data=True)


def on_read_write(ctx: BridgeContext, is_write: bool, circuit: str, name: str, payload: str) -> None:
    """Perform a bus read or write for circuit/name and publish the result."""
    action = "write" if is_write else "read"
    logger.info("Received %s topic for %s %s", "set" if is_write else "get", circuit, name)
    catalog = ctx.catalog
    levels = ctx.config.access_levels
    with catalog.lock:
        message = catalog.find(circuit, name, levels, is_write)
        if message is None:
            message = catalog.find(circuit, name, levels, is_write, relaxed=True)
    if message is None:
        logger.error("%s message %s %s not found", action, circuit, name)
        return

    if not message.is_passive:
        data = payload
        if not is_write and payload:
            data, priority = split_poll_priority(payload)
            if priority is not None and message.set_poll_priority(priority):
                with catalog.lock:
                    catalog.add_poll_message(message)
        try:
            catalog.read_or_write(message, data)
        except BusError as exc:
            logger.error("%s %s %s: %s", action, circuit, name, exc)
            return
        logger.info("%s %s %s: %s", action, circuit, name, payload)

    publish_message(ctx, message)


def publish_message(ctx: BridgeContext, message: Message, *, include_without_data: bool = False) -> None:
    """
    Publish the last decoded data of message.

    Uses one topic per message, or one per field when the topic template
    references %field. A message without data publishes an empty payload if
    include_without_data is set.
    """
    output_format = ctx.output_format
    as_json = bool(output_format & OutputFormat.JSON)
    no_data = include_without_data and not message.last_update_time
    if not ctx.publish_by_field:
        topic = ctx.topic_for(message)
        if no_data:
            ctx.mqtt.publish_empty(topic)
            return
        try:
            data = message.decode_last_data(None, output_format)
        except BusError as exc:
            logger.error("decode %s %s: %s", message.circuit, message.name, exc)
            return
        ctx.publish(topic, "{" + data + "}" if as_json else data)
        return

    if as_json and not output_format & OutputFormat.ALL_ATTRS:
        output_format |= OutputFormat.SHORT
    for index, field in enumerate(message.fields):
        topic = ctx.topic_for(message, "", field.name)
        if no_data:
            ctx.mqtt.publish_empty(topic)
            continue
        try:
            data = message.decode_last_data(index, output_format)
        except BusError as exc:
            logger.error("decode %s %s %s: %s", message.circuit, message.name, field.name, exc)
            return
        ctx.publish(topic, data)

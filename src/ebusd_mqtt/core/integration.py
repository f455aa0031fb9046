"""
Integration settings loader.

The integration file is line oriented text of ``key[?]=value`` entries. An
entry ends at a blank line or at the next line that does not start with
whitespace; indented lines continue the previous value (joined by newline).
Lines starting with ``#`` are skipped without ending the current entry. A
``?`` right before ``=`` marks the value as empty-if-missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from ebusd_mqtt.core.matching import matches
from ebusd_mqtt.core.variables import Variables
from ebusd_mqtt.mqtt_topics import TopicTemplate

logger = logging.getLogger(__name__)

TYPE_NAMES = ("number", "bits", "string", "date", "time", "datetime")


class IntegrationError(ValueError):
    """Raised when an integration entry or file cannot be loaded."""


@dataclass(frozen=True, slots=True)
class TypeSwitchRule:
    label: str
    pattern: str


@dataclass
class Integration:
    variables: Variables
    type_switches: dict[str, list[TypeSwitchRule]] = field(default_factory=dict)

    @property
    def has_definition_topic(self) -> bool:
        return bool(self.variables.lookup("definition-topic"))

    @property
    def has_fields_payload(self) -> bool:
        return self.variables.uses("fields_payload")

    @property
    def config_restart_topic(self) -> str:
        return self.variables.lookup("config_restart-topic")

    @property
    def config_restart_payload(self) -> str:
        return self.variables.lookup("config_restart-payload")

    def type_switch(self, type_suffix: str, discriminator: str) -> str:
        """Return the label of the first rule for type_suffix matching discriminator."""
        for rule in self.type_switches.get(type_suffix, ()):
            if matches(discriminator, rule.pattern):
                return rule.label
        return ""


def parse_entry(variables: Variables, entry: str) -> None:
    """Store one ``key[?]=value`` entry as constant or template."""
    if not entry.strip():
        return
    pos = entry.find("=")
    if pos <= 0:
        raise IntegrationError(f"missing key or '=' in entry: {entry.splitlines()[0]!r}")
    empty_if_missing = entry[pos - 1] == "?"
    key = entry[: pos - 1 if empty_if_missing else pos].strip()
    if not key:
        raise IntegrationError(f"empty key in entry: {entry.splitlines()[0]!r}")
    value = entry[pos + 1 :].strip()
    if "%" not in value:
        variables.set(key, value)
        return
    tpl = TopicTemplate()
    if not tpl.parse(value, empty_if_missing=empty_if_missing):
        raise IntegrationError(f"malformed template for {key}")
    variables.set_template(key, tpl)


def iter_entries(lines: Iterable[str]) -> Iterable[str]:
    """Join physical lines into logical entries."""
    last = ""
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line.strip():
            if last:
                yield last
            last = ""
            continue
        if line.startswith("#"):
            continue
        if not last:
            last = line
        elif line[0] in " \t":
            last += "\n" + line
        else:
            yield last
            last = line
    if last:
        yield last


def build_type_switches(variables: Variables) -> dict[str, list[TypeSwitchRule]]:
    """
    Build per type tables from ``type_switch-<type>`` (falling back to
    ``type_switch``), one ``label=pattern`` rule per line.
    """
    switches: dict[str, list[TypeSwitchRule]] = {}
    for type_name in TYPE_NAMES:
        text = variables.lookup(f"type_switch-{type_name}", fallback="type_switch")
        if not text:
            continue
        for line in text.split("\n"):
            line = line.strip()
            label, sep, pattern = line.partition("=")
            label = label.strip()
            if not sep or not label:
                continue
            switches.setdefault(type_name, []).append(TypeSwitchRule(label, pattern.strip().lower()))
    return switches


def load_integration(
    lines: Iterable[str],
    topic: TopicTemplate,
    version: str,
    *,
    strict: bool = False,
) -> Integration:
    """
    Load integration settings on top of the pre-seeded variables.

    Malformed entries raise IntegrationError when strict is set and are
    skipped with a warning otherwise.
    """
    variables = Variables()
    variables.set_template("mqtttopic", topic.copy())
    variables.set("version", version)
    prefix = variables.lookup("mqtttopic", until_first_empty=True)
    variables.set("prefix", prefix)
    variables.set("prefixn", prefix.rstrip("/_"))

    for entry in iter_entries(lines):
        try:
            parse_entry(variables, entry)
        except IntegrationError as exc:
            if strict:
                raise
            logger.warning("Skipping integration entry: %s", exc)

    variables.reduce()
    type_switches = build_type_switches(variables) if variables.uses("type_switch") else {}
    return Integration(variables=variables, type_switches=type_switches)


def load_integration_file(
    path: Optional[str | Path],
    topic: TopicTemplate,
    version: str,
    *,
    strict: bool = False,
) -> Integration:
    """
    Load the integration file at path, or an empty integration if path is None.

    An unreadable file is logged and yields an empty integration unless strict
    is set.
    """
    if path is None:
        return load_integration((), topic, version)
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            integration = load_integration(f, topic, version, strict=strict)
    except OSError as exc:
        if strict:
            raise IntegrationError(f"unable to open integration file {path}: {exc}") from exc
        logger.error("Unable to open integration file %s: %s", path, exc)
        return load_integration((), topic, version)
    logger.info(
        "Loaded integration file %s: %d constants, %d unresolved",
        path,
        len(integration.variables.constants),
        len(integration.variables.templates),
    )
    return integration

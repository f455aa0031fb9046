"""
Variable store for integration definitions.

Holds named constants and named, still unresolved topic templates. Every
constant written under a lower/mixed-case name is mirrored under its upper-case
name with a normalized value, so templates can use either %name or %NAME.
"""

from __future__ import annotations

import logging
from typing import Optional

from ebusd_mqtt.mqtt_topics import TopicTemplate, normalize

logger = logging.getLogger(__name__)


def _mirror_key(key: str) -> Optional[str]:
    if "-" in key or "_" in key:
        return None
    upper = key.upper()
    return None if upper == key else upper


class Variables:
    def __init__(self) -> None:
        self._constants: dict[str, str] = {}
        self._templates: dict[str, TopicTemplate] = {}

    def copy(self) -> "Variables":
        other = Variables()
        other._constants = dict(self._constants)
        other._templates = {key: tpl.copy() for key, tpl in self._templates.items()}
        return other

    def __getitem__(self, key: str) -> str:
        """Return the constant for key, or an empty string."""
        return self._constants.get(key, "")

    def __contains__(self, key: object) -> bool:
        return key in self._constants or key in self._templates

    @property
    def constants(self) -> dict[str, str]:
        return dict(self._constants)

    @property
    def templates(self) -> dict[str, TopicTemplate]:
        return dict(self._templates)

    def uses(self, field: str) -> bool:
        """Whether any unresolved template references field."""
        return any(tpl.has(field) for tpl in self._templates.values())

    def template(self, key: str) -> TopicTemplate:
        """Return the unresolved template for key, creating an empty one if absent."""
        tpl = self._templates.get(key)
        if tpl is None:
            tpl = self._templates[key] = TopicTemplate()
        return tpl

    def set_template(self, key: str, template: TopicTemplate) -> None:
        self._templates[key] = template

    def set(self, key: str, value: str, *, remove_template: bool = True) -> bool:
        """
        Store a constant and its upper-case mirror.

        Returns True if the mirror was written.
        """
        self._constants[key] = value
        if remove_template:
            self._templates.pop(key, None)
        upper = _mirror_key(key)
        if upper is None:
            return False
        self._constants[upper] = normalize(value)
        if remove_template:
            self._templates.pop(upper, None)
        return True

    def set_number(self, key: str, value: int) -> None:
        self._constants[key] = str(int(value))

    def lookup(
        self,
        key: str,
        *,
        until_first_empty: bool = False,
        only_alphanumeric: bool = False,
        fallback: str = "",
    ) -> str:
        """
        Resolve key to a string.

        A constant wins, otherwise an unresolved template is rendered against
        the current constants. The same is tried for fallback if given.
        """
        for name in (key, fallback) if fallback else (key,):
            if name in self._constants:
                return self._constants[name]
            tpl = self._templates.get(name)
            if tpl is not None:
                return tpl.render(
                    self._constants,
                    until_first_empty=until_first_empty,
                    only_alphanumeric=only_alphanumeric,
                )
        return ""

    def reduce(self) -> int:
        """
        Fold every template whose fields are all constants into a constant.

        Repeats until a full pass resolves nothing. Returns the number of
        templates folded.
        """
        total = 0
        while True:
            resolved: dict[str, str] = {}
            for key, tpl in self._templates.items():
                if not tpl.is_reducible(self._constants):
                    continue
                value, complete = tpl.reduce(self._constants)
                if complete:
                    resolved[key] = value
            if not resolved:
                break
            # upper-case keys sort first so a later lower-case write keeps the normalized mirror
            for key in sorted(resolved):
                self.set(key, resolved[key], remove_template=True)
            total += len(resolved)
        if total:
            logger.debug("Folded %d templates, %d left unresolved", total, len(self._templates))
        return total

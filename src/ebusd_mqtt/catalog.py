"""
Bus catalog interface consumed by the bridge.

The message catalog, value decoding/encoding and the bus itself live in the
daemon; the bridge only sees the protocols below.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import ContextManager, Optional, Protocol, Sequence, Union


class BusError(RuntimeError):
    """Raised by the catalog when a bus read/write or a decode fails."""


class OutputFormat(enum.IntFlag):
    NONE = 0
    NAMES = enum.auto()
    UNITS = enum.auto()
    COMMENTS = enum.auto()
    ALL_ATTRS = enum.auto()
    SHORT = enum.auto()
    JSON = enum.auto()


@dataclass(frozen=True, slots=True)
class NumberType:
    bit_count: int = 8


@dataclass(frozen=True, slots=True)
class DateTimeType:
    has_date: bool = True
    has_time: bool = True


@dataclass(frozen=True, slots=True)
class StringType:
    pass


DataType = Union[NumberType, DateTimeType, StringType]


def type_suffix(data_type: DataType) -> str:
    """Physical type name used to select ``type-<suffix>`` definitions."""
    match data_type:
        case NumberType(bit_count=bits):
            return "bits" if bits < 8 else "number"
        case DateTimeType(has_date=True, has_time=True):
            return "datetime"
        case DateTimeType(has_date=True):
            return "date"
        case DateTimeType():
            return "time"
        case StringType():
            return "string"
    raise TypeError(f"unsupported data type: {data_type!r}")


@dataclass(frozen=True, slots=True)
class FieldInfo:
    name: str
    data_type: DataType
    comment: str = ""
    unit: str = ""
    ignored: bool = False


class Message(Protocol):
    circuit: str
    name: str
    level: str
    poll_priority: int
    is_write: bool
    is_passive: bool
    available: bool
    create_time: float
    last_update_time: float
    last_change_time: float
    fields: Sequence[FieldInfo]

    def set_poll_priority(self, priority: int) -> bool:
        """Raise the poll priority; True if the message now needs polling."""
        ...

    def decode_last_data(self, field_index: Optional[int], output_format: OutputFormat) -> str:
        """Decode the last received data (all fields if field_index is None). Raises BusError."""
        ...


class BusCatalog(Protocol):
    lock: ContextManager

    def find(
        self, circuit: str, name: str, levels: str, is_write: bool, *, relaxed: bool = False
    ) -> Optional[Message]:
        ...

    def find_all(
        self, circuit: str, name: str, levels: str, *, complete_match: bool = True
    ) -> Sequence[Message]:
        ...

    def get_by_key(self, key: object) -> Sequence[Message]:
        ...

    def add_poll_message(self, message: Message) -> None:
        ...

    def read_or_write(self, message: Message, payload: str) -> None:
        """Perform the bus read (with query payload) or write. Raises BusError."""
        ...

    def has_signal(self) -> bool:
        ...

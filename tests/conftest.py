"""
Pytest configuration and shared fixtures
"""
import os
import sys
import threading
from dataclasses import dataclass, field, replace
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ebusd_mqtt.catalog import BusError, FieldInfo, NumberType, OutputFormat, StringType  # noqa: E402
from ebusd_mqtt.config import BridgeConfig  # noqa: E402
from ebusd_mqtt.core.cmd_context import BridgeContext  # noqa: E402
from ebusd_mqtt.core.integration import load_integration  # noqa: E402
from ebusd_mqtt.mqtt_topics import TopicTemplate  # noqa: E402


@dataclass
class FakeMessage:
    circuit: str
    name: str
    fields: list = field(default_factory=lambda: [FieldInfo("temp", NumberType(16), unit="°C")])
    values: dict = field(default_factory=dict)
    level: str = ""
    poll_priority: int = 0
    is_write: bool = False
    is_passive: bool = False
    available: bool = True
    create_time: float = 100.0
    last_update_time: float = 0.0
    last_change_time: float = 0.0
    fail_decode: bool = False

    def set_poll_priority(self, priority):
        if self.poll_priority and priority >= self.poll_priority:
            return False
        self.poll_priority = priority
        return True

    def decode_last_data(self, field_index, output_format):
        if self.fail_decode:
            raise BusError("invalid data")
        names = [f.name for f in self.fields] if field_index is None else [self.fields[field_index].name]
        values = [self.values.get(n, "-") for n in names]
        if output_format & OutputFormat.JSON:
            if output_format & OutputFormat.SHORT:
                return ", ".join(values)
            return ", ".join(f'"{n}": {{"value": {v}}}' for n, v in zip(names, values))
        return ";".join(values)


class FakeCatalog:
    def __init__(self, messages=(), *, signal=True):
        self.lock = threading.Lock()
        self.messages = list(messages)
        self.signal = signal
        self.fail = False
        self.calls = []
        self.polled = []

    def find(self, circuit, name, levels, is_write, *, relaxed=False):
        for m in self.messages:
            if m.name != name or m.is_write != is_write:
                continue
            if m.circuit == circuit or (relaxed and m.circuit.lower() == circuit.lower()):
                return m
        return None

    def find_all(self, circuit, name, levels, *, complete_match=True):
        return [
            m for m in self.messages
            if (not complete_match or not circuit or m.circuit == circuit)
            and (not complete_match or not name or m.name == name)
        ]

    def get_by_key(self, key):
        return [m for m in self.messages if (m.circuit, m.name) == key]

    def add_poll_message(self, message):
        self.polled.append(message)

    def read_or_write(self, message, payload):
        if self.fail:
            raise BusError("ERR: no signal")
        self.calls.append((message.circuit, message.name, message.is_write, payload))
        message.last_update_time = 200.0

    def has_signal(self):
        return self.signal


_CONFIG_DEFAULTS = dict(
    mqtt_host="localhost",
    mqtt_port=1883,
    client_id="ebusd_test",
    username=None,
    password=None,
    topic="ebusd",
    retain=False,
    integration_file=None,
    json=False,
    verbose=False,
    log_lib=False,
    protocol_version="3.1",
    ignore_invalid_params=False,
    only_changes=False,
    ca_file=None,
    ca_path=None,
    cert_file=None,
    key_file=None,
    key_password=None,
    insecure=False,
    strict=False,
    access_levels="",
    version="1.0.0",
)


@pytest.fixture
def make_config():
    """Build a BridgeConfig with test defaults"""
    def _make(**overrides):
        return replace(BridgeConfig(**_CONFIG_DEFAULTS), **overrides)
    return _make


@pytest.fixture
def make_message():
    return FakeMessage


@pytest.fixture
def catalog():
    return FakeCatalog([
        FakeMessage("heating", "temp", values={"temp": "21.5"}, last_update_time=150.0),
        FakeMessage("heating", "temp", is_write=True),
        FakeMessage("heatpump", "status", fields=[FieldInfo("state", StringType())]),
        FakeMessage("boiler", "temp", values={"temp": "55"}, last_update_time=150.0),
    ])


@pytest.fixture
def mock_mqtt_client():
    """Create a mock MQTT publisher"""
    client = MagicMock()
    client.publish.return_value = True
    client.publish_empty.return_value = True
    return client


@pytest.fixture
def make_ctx(make_config, mock_mqtt_client, catalog):
    """Build a BridgeContext around the mock publisher and fake catalog"""
    def _make(integration_text="", topic="ebusd", catalog=catalog, **config):
        cfg = make_config(topic=topic, **config)
        template = TopicTemplate.create(topic)
        integration = load_integration(integration_text.splitlines(), template, cfg.version)
        return BridgeContext(
            mqtt=mock_mqtt_client,
            config=cfg,
            topic=template,
            integration=integration,
            catalog=catalog,
        )
    return _make


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    import paho.mqtt.client as mqtt

    fake = MagicMock()
    fake.loop.return_value = mqtt.MQTT_ERR_SUCCESS
    fake.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
    fake.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    fake.connect.return_value = mqtt.MQTT_ERR_SUCCESS
    fake.reconnect.return_value = mqtt.MQTT_ERR_SUCCESS

    def _ctor(*args, **kwargs):
        fake.ctor_args = (args, kwargs)
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake

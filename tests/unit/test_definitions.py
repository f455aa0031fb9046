from __future__ import annotations

import pytest

from ebusd_mqtt.catalog import DateTimeType, FieldInfo, NumberType, StringType, type_suffix
from ebusd_mqtt.core.definitions import DefinitionPublisher, direction_code

SENSORS = """\
definition-topic = homeassistant/%type/%circuit/%name/%field/config
definition-payload = {"name":"%name %field","unit":"%unit","dir":"%direction","state_topic":"%topic"}
definition-retain = true
type-number = sensor
"""

FIELDS_PAYLOAD = """\
definition-topic = homeassistant/%circuit/%name/config
definition-payload = {"fields":[%fields_payload]}
field_payload = "%field"
field-separator = ,
type-number = number
"""

TYPE_SWITCH = """\
definition-topic = homeassistant/%type_switch/%circuit/%name/config
definition-payload = {}
type-number = sensor
type_switch-by = %name,%unit
type_switch-number =
  temperature = temp*,°C
  pressure = *,bar
"""

GLOBALS = """\
def_global-topic = homeassistant/%name/config
def_global-payload = {"state":"%topic"}
def_global_uptime-payload = {"state":"%topic","unit":"s"}
def_global_uptime-retain = 1
"""


def _published(ctx):
    return [(c.args[0], c.args[1], c.kwargs["retain"]) for c in ctx.mqtt.publish.call_args_list]


@pytest.fixture
def make_publisher(make_ctx):
    def _make(text, **kwargs):
        ctx = make_ctx(text, **kwargs)
        return DefinitionPublisher(ctx, clock=lambda: 500.0)
    return _make


@pytest.mark.parametrize(
    "data_type,expected",
    [
        (NumberType(1), "bits"),
        (NumberType(8), "number"),
        (NumberType(16), "number"),
        (DateTimeType(True, True), "datetime"),
        (DateTimeType(True, False), "date"),
        (DateTimeType(False, True), "time"),
        (StringType(), "string"),
    ],
)
def test_type_suffix(data_type, expected):
    assert type_suffix(data_type) == expected


@pytest.mark.parametrize(
    "is_write,is_passive,expected",
    [(False, False, "u"), (False, True, "r"), (True, False, "w"), (True, True, "uw")],
)
def test_direction_code(make_message, is_write, is_passive, expected):
    assert direction_code(make_message("c", "n", is_write=is_write, is_passive=is_passive)) == expected


def test_disabled_without_definition_topic(make_publisher):
    assert not make_publisher("").enabled
    assert make_publisher(SENSORS).enabled


def test_publish_messages(make_publisher):
    pub = make_publisher(SENSORS)

    assert pub.publish_messages() == 3
    assert pub.since == 500.0

    published = _published(pub.ctx)
    assert published[0] == (
        "homeassistant/sensor/heating/temp/temp/config",
        '{"name":"temp temp","unit":"°C","dir":"u","state_topic":"ebusd/heating/temp"}',
        True,
    )
    assert '"dir":"w"' in published[1][1]
    assert published[2][0] == "homeassistant/sensor/boiler/temp/temp/config"


def test_publish_messages_only_new(make_publisher, make_message):
    pub = make_publisher(SENSORS)
    pub.publish_messages()
    pub.ctx.mqtt.publish.reset_mock()

    assert pub.publish_messages() == 0

    pub.ctx.catalog.messages.append(make_message("hc1", "flow", create_time=600.0))
    assert pub.publish_messages() == 1
    assert _published(pub.ctx)[0][0] == "homeassistant/sensor/hc1/flow/temp/config"


def test_reset_republishes(make_publisher):
    pub = make_publisher(SENSORS)
    pub.publish_messages()
    pub.reset()
    assert pub.since == 0
    assert pub.publish_messages() == 3


def test_filter_circuit(make_publisher):
    pub = make_publisher(SENSORS + "filter-circuit = heat\n")
    assert pub.publish_messages() == 2


def test_filter_priority(make_publisher):
    pub = make_publisher(SENSORS + "filter-priority = 3\n")
    assert pub.publish_messages() == 0

    pub.reset()
    pub.ctx.catalog.messages[3].poll_priority = 2
    assert pub.publish_messages() == 1


def test_filter_field(make_publisher):
    pub = make_publisher(SENSORS + "filter-field = state\n")
    assert pub.publish_messages() == 0


def test_missing_type_skips_field(make_publisher, make_message):
    pub = make_publisher(SENSORS)
    pub.ctx.catalog.messages = [make_message("hc1", "mode", fields=[FieldInfo("mode", StringType())])]
    assert pub.publish_messages() == 0


def test_ignored_field_skipped(make_publisher, make_message):
    pub = make_publisher(SENSORS)
    pub.ctx.catalog.messages = [
        make_message("hc1", "curve", fields=[FieldInfo("min", NumberType(), ignored=True), FieldInfo("max", NumberType())])
    ]
    assert pub.publish_messages() == 1
    assert _published(pub.ctx)[0][0] == "homeassistant/sensor/hc1/curve/max/config"


def test_unnamed_single_field(make_publisher, make_message):
    pub = make_publisher(SENSORS)
    pub.ctx.catalog.messages = [make_message("hc1", "flow", fields=[FieldInfo("", NumberType())])]
    pub.publish_messages()
    assert _published(pub.ctx)[0][0] == "homeassistant/sensor/hc1/flow/0/config"


def test_fields_payload(make_publisher, make_message):
    pub = make_publisher(FIELDS_PAYLOAD)
    assert pub.ctx.integration.has_fields_payload
    pub.ctx.catalog.messages = [
        make_message("hc1", "curve", fields=[FieldInfo("min", NumberType()), FieldInfo("max", NumberType())])
    ]

    assert pub.publish_messages() == 1
    assert _published(pub.ctx) == [("homeassistant/hc1/curve/config", '{"fields":["min","max"]}', False)]


def test_type_switch(make_publisher):
    pub = make_publisher(TYPE_SWITCH)
    pub.ctx.catalog.messages = pub.ctx.catalog.messages[:1]

    pub.publish_messages()

    assert _published(pub.ctx)[0][0] == "homeassistant/temperature/heating/temp/config"


def test_publish_by_field_topic(make_publisher):
    pub = make_publisher(SENSORS, topic="ebusd/%circuit/%name/%field")
    pub.ctx.catalog.messages = pub.ctx.catalog.messages[:1]

    pub.publish_messages()

    assert '"state_topic":"ebusd/heating/temp/temp"' in _published(pub.ctx)[0][1]


def test_publish_globals(make_publisher):
    pub = make_publisher(GLOBALS)

    pub.publish_globals()

    assert pub.since == 1
    published = _published(pub.ctx)
    assert [p[0] for p in published] == [
        "homeassistant/running/config",
        "homeassistant/version/config",
        "homeassistant/signal/config",
        "homeassistant/uptime/config",
        "homeassistant/updatecheck/config",
        "homeassistant/scan/config",
    ]
    assert published[0] == ("homeassistant/running/config", '{"state":"ebusd/global/running"}', False)
    assert published[3] == ("homeassistant/uptime/config", '{"state":"ebusd/global/uptime","unit":"s"}', True)


def test_publish_definition_without_topic(make_publisher):
    pub = make_publisher("")
    assert pub.publish_definition(pub.ctx.integration.variables) is False
    pub.ctx.mqtt.publish.assert_not_called()

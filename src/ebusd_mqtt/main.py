"""
ebusd MQTT bridge entrypoint.

CLI:
  ebusd-mqtt run --catalog module.path:factory   -> run bridge (runtime mode)
  ebusd-mqtt check-integration FILE              -> load integration file and print the result
"""

from __future__ import annotations

import argparse
import importlib
import logging
import signal
import sys
from typing import Any, Callable, Optional, TextIO

from ebusd_mqtt.config import package_version

logger = logging.getLogger(__name__)


def get_version_string() -> str:
    return package_version()


def _parse_entrypoint(entrypoint: str) -> tuple[str, str]:
    if ":" not in entrypoint:
        raise ValueError("entrypoint must be in format 'module.path:factory'")
    module_path, attr = entrypoint.split(":", 1)
    if not module_path or not attr:
        raise ValueError("entrypoint must include both module and factory")
    return module_path, attr


def load_catalog(entrypoint: str) -> Any:
    """Import module.path:factory and call the factory to obtain the bus catalog."""
    module_path, attr = _parse_entrypoint(entrypoint)
    module = importlib.import_module(module_path)
    factory: Callable[[], Any] = getattr(module, attr)
    if not callable(factory):
        raise TypeError(f"catalog factory is not callable: {entrypoint}")
    return factory()


def _install_signal_handlers(stop: Callable[[], None]) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_bridge(catalog_entrypoint: str) -> int:
    """
    Runtime mode: load config, connect to MQTT, tick until shutdown.
    Returns process exit code.
    """
    from ebusd_mqtt.bridge import create_bridge
    from ebusd_mqtt.config import ConfigError, load_config
    from ebusd_mqtt.core.integration import IntegrationError

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    try:
        catalog = load_catalog(catalog_entrypoint)
    except Exception:
        logger.exception("Failed to load bus catalog (entrypoint=%s)", catalog_entrypoint)
        return 1

    try:
        bridge = create_bridge(cfg, catalog)
    except (ConfigError, IntegrationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    logger.info("============================================================")
    logger.info("ebusd MQTT bridge")
    logger.info("Version: %s", get_version_string())
    logger.info("Broker: %s:%s as %s", cfg.mqtt_host, cfg.mqtt_port, cfg.client_id)
    logger.info("Topic: %s", bridge.ctx.topic.source())
    logger.info("============================================================")

    if not bridge.start():
        logger.error("MQTT connection failed, bridge disabled")
        return 1

    _install_signal_handlers(bridge.stop)
    logger.info("Bridge running (shutdown via SIGINT/SIGTERM)")
    bridge.run()
    logger.info("Bridge stopped")
    return 0


def check_integration(path: str, topic: str, out: TextIO = sys.stdout) -> int:
    """Load an integration file and print constants, unresolved templates and type switches."""
    from ebusd_mqtt.config import ConfigError, validate_topic
    from ebusd_mqtt.core.integration import IntegrationError, load_integration_file

    try:
        template = validate_topic(topic)
        integration = load_integration_file(path, template, get_version_string(), strict=True)
    except (ConfigError, IntegrationError) as exc:
        print(f"error: {exc}", file=out)
        return 1

    variables = integration.variables
    print("# constants", file=out)
    for key, value in sorted(variables.constants.items()):
        print(f"{key}={value}", file=out)
    print("# unresolved", file=out)
    for key, tpl in sorted(variables.templates.items()):
        missing = [f for f in tpl.fields() if f not in variables.constants]
        print(f"{key}: {tpl.source()!r} missing={','.join(missing)}", file=out)
    if integration.type_switches:
        print("# type switches", file=out)
        for type_name, rules in integration.type_switches.items():
            for rule in rules:
                print(f"{type_name}: {rule.label}={rule.pattern}", file=out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ebusd-mqtt")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    run_parser = sub.add_parser("run", help="Run the MQTT bridge")
    run_parser.add_argument(
        "--catalog",
        required=True,
        metavar="MODULE:FACTORY",
        help="Factory returning the bus catalog, e.g. 'mypkg.bus:create_catalog'",
    )

    check_parser = sub.add_parser("check-integration", help="Load an integration file and print the result")
    check_parser.add_argument("file", help="Integration settings file")
    check_parser.add_argument("--topic", default="ebusd", help="Topic template [ebusd]")

    return p


def main(argv: Optional[list[str]] = None) -> None:
    from ebusd_mqtt.core.log_config import configure_logging

    args = build_parser().parse_args(argv)
    configure_logging()

    if args.cmd == "run":
        raise SystemExit(run_bridge(args.catalog))

    if args.cmd == "check-integration":
        raise SystemExit(check_integration(args.file, args.topic))

    raise SystemExit(2)


if __name__ == "__main__":
    main()

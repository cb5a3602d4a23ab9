#!/usr/bin/env python3
"""Main entry point for the process memory exporter"""
import argparse
import sys
import uvicorn
from config import Config
from app.server import MetricsServer
from collectors.process_memory import ProcessMemoryCollector
from metrics.exporter import PrometheusRenderer
from metrics.registry import ProcessRegistry
from logging_config import setup_structured_logging, get_logger, log_server_startup, log_error


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export per-process memory usage in the Prometheus text format")
    parser.add_argument("--oneshot", action="store_true", help="collect once, print the metrics and exit")
    parser.add_argument("-p", "--port", type=int, help="listen port (overrides METRICS_PORT or PORT)")
    parser.add_argument("--group", help="hostgroup label (overrides HOSTGROUP or GROUP)")
    parser.add_argument("--instance", help="instance label (overrides INSTANCE)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    overrides = {}
    if args.port is not None:
        overrides["metrics_port"] = args.port
    if args.group is not None:
        overrides["hostgroup"] = args.group
    if args.instance is not None:
        overrides["instance"] = args.instance
    return Config(**overrides)


def oneshot(config: Config) -> int:
    """Run a single collection cycle and print the rendered metrics"""
    registry = ProcessRegistry(config.grace_cycles)
    collector = ProcessMemoryCollector(config, registry)
    try:
        result = collector.refresh()
        sys.stdout.write(PrometheusRenderer.from_config(config).render(registry.snapshot()))
    finally:
        collector.close()
    return 0 if result is not None and result.success else 1


def main(argv=None):
    """Main application entry point"""
    try:
        args = parse_args(argv)
        config = build_config(args)

        setup_structured_logging(config)
        logger = get_logger(__name__)

        if args.oneshot:
            sys.exit(oneshot(config))

        log_server_startup(logger, config)

        server = MetricsServer(config)
        uvicorn.run(
            server.get_app(),
            host=config.metrics_host,
            port=config.metrics_port,
            log_config=None  # We handle logging ourselves
        )

    except Exception as e:
        logger = get_logger(__name__)
        log_error(logger, e, "main", phase="startup")
        sys.exit(1)


if __name__ == '__main__':
    main()

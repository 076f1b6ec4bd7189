#!/usr/bin/env python3
"""
Main entry point for the Docker DNS Proxy
Routes <name>.docker queries to the container name service over UDP
"""

import argparse
import errno
import logging
import logging.handlers
import os
import signal
import sys

from docker_dns_proxy.config import ProxyConfig, load_config, parse_address
from docker_dns_proxy.constants import (
    LOG_FILE_BACKUP_COUNT,
    LOG_FILE_MAX_BYTES,
    LOG_FORMAT,
    LOG_LEVELS,
    MAX_PORT_NUMBER,
    MIN_PORT_NUMBER,
)
from docker_dns_proxy.errors import ConfigurationError


def setup_logging(log_level="INFO", log_file=None, syslog=False):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, mode=0o755)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Warning: Could not setup file logging to {log_file}: {e}", file=sys.stderr)

    if syslog:
        try:
            syslog_handler = logging.handlers.SysLogHandler(address="/dev/log")
            syslog_handler.setFormatter(
                logging.Formatter("docker-dns-proxy[%(process)d]: %(levelname)s - %(message)s")
            )
            root_logger.addHandler(syslog_handler)
        except OSError as e:
            print(f"Warning: Could not setup syslog: {e}", file=sys.stderr)


def _validate_port(value):
    """Validate port number is in valid range"""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")
    if port < MIN_PORT_NUMBER or port > MAX_PORT_NUMBER:
        raise argparse.ArgumentTypeError(
            f"Port must be between {MIN_PORT_NUMBER} and {MAX_PORT_NUMBER}"
        )
    return port


def _validate_address(value):
    try:
        return parse_address(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid DNS server address {value!r}: {e}")


def _parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="DNS proxy that resolves <name><suffix> through the container "
        "name service and optionally forwards everything else upstream.",
        epilog="Every option can also be set through environment variables "
        "(LISTEN_ADDR, LISTEN_PORT, DOCKER_DNS, UPSTREAM_DNS, ENABLE_UPSTREAM, "
        "TIMEOUT_SECONDS, LOG_LEVEL, ENABLE_METRICS, STRIP_SUFFIX).",
    )
    parser.add_argument("-c", "--config", help="Configuration file path (INI format)")
    parser.add_argument("-a", "--address", help="Listen address (overrides config)")
    parser.add_argument(
        "-p", "--port", type=_validate_port, help="Listen port (overrides config)"
    )
    parser.add_argument("-L", "--loglevel", choices=LOG_LEVELS, help="Log level")
    parser.add_argument("-l", "--logfile", help="Log file path (overrides config)")
    parser.add_argument(
        "--docker-dns",
        type=_validate_address,
        help="Container name service, IP[:port] or [IPv6]:port (default 127.0.0.11:53)",
    )
    parser.add_argument(
        "-u", "--upstream", type=_validate_address, help="Fallback DNS server, IP[:port]"
    )
    parser.add_argument(
        "--enable-upstream",
        action="store_true",
        default=None,
        help="Forward non-namespaced queries to the fallback server",
    )
    parser.add_argument("--suffix", help="Namespace suffix to strip (default .docker)")
    parser.add_argument("-v", "--version", action="store_true", help="Show version")

    return parser.parse_args(argv)


def _handle_version_check(args):
    """Handle version check and exit if requested"""
    if args.version:
        from docker_dns_proxy import __version__

        print(f"Docker DNS Proxy version {__version__}")
        sys.exit(0)


def _config_overrides(args):
    return {
        "listen_address": args.address,
        "listen_port": args.port,
        "log_level": args.loglevel,
        "log_file": args.logfile,
        "docker_dns": args.docker_dns,
        "upstream_dns": args.upstream,
        "enable_upstream": args.enable_upstream,
        "strip_suffix": args.suffix,
    }


def _log_config(config: ProxyConfig, logger):
    logger.info("=== DNS Proxy Configuration ===")
    logger.info(f"Listen Address:    {config.listen_address}:{config.listen_port}")
    logger.info(f"Docker DNS:        {config.docker_dns[0]}:{config.docker_dns[1]}")
    if config.enable_upstream:
        logger.info(f"Upstream DNS:      {config.upstream_dns[0]}:{config.upstream_dns[1]}")
    else:
        logger.info("Upstream DNS:      DISABLED")
    logger.info(f"Timeout:           {config.timeout}s")
    logger.info(f"Log Level:         {config.log_level}")
    logger.info(f"Strip Suffix:      {config.strip_suffix}")
    logger.info(f"Enable Metrics:    {config.enable_metrics}")
    logger.info("==============================")


def _handle_bind_error(error, port, address, logger):
    """Log a helpful message for port binding errors and exit"""
    error_msg = str(error)
    socket_error = getattr(error, "socketError", error)
    code = getattr(socket_error, "errno", None)

    if "Address already in use" in error_msg or code == errno.EADDRINUSE:
        logger.error(f"Port {port} is already in use on {address}")
        logger.error("Please check if another instance is running or use a different port")
    elif "Permission denied" in error_msg or code == errno.EACCES:
        logger.error(f"Permission denied to bind to port {port}")
        if port < 1024:
            logger.error("Ports below 1024 require root privileges")
    else:
        logger.error(f"Failed to bind to {address}:{port}: {error}")

    sys.exit(1)


def _setup_signal_handlers(logger, on_shutdown):
    """Setup signal handlers for graceful shutdown"""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        from twisted.internet import reactor

        on_shutdown()
        reactor.stop()  # type: ignore[attr-defined]  # Twisted reactor

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def start_dns_server(config: ProxyConfig, logger):
    """Bind the UDP listener and run the reactor until shutdown"""
    from twisted.internet import reactor

    from docker_dns_proxy.metrics import MetricsCollector, MetricsServer
    from docker_dns_proxy.router import QueryRouter
    from docker_dns_proxy.server import DNSProxyProtocol
    from docker_dns_proxy.stats import StatsReporter

    metrics = MetricsCollector() if config.enable_metrics else None
    router = QueryRouter.from_config(config, metrics=metrics)

    try:
        udp_server = reactor.listenUDP(  # type: ignore[attr-defined]  # Twisted reactor
            config.listen_port, DNSProxyProtocol(router), interface=config.listen_address
        )
    except Exception as e:
        _handle_bind_error(e, config.listen_port, config.listen_address, logger)
    logger.info(
        f"DNS proxy server listening on {config.listen_address}:{udp_server.getHost().port}"
    )

    reporter = None
    metrics_server = None
    if config.enable_metrics:
        reporter = StatsReporter(router.counters, config.metrics_interval)
        reactor.callWhenRunning(reporter.start)  # type: ignore[attr-defined]  # Twisted reactor
        if config.metrics_port:
            metrics_server = MetricsServer(metrics, config.listen_address, config.metrics_port)
            try:
                metrics_server.start()
            except Exception as e:
                _handle_bind_error(e, config.metrics_port, config.listen_address, logger)

    def on_shutdown():
        if reporter is not None:
            reporter.stop()
            reporter.report()
        if metrics_server is not None:
            metrics_server.stop()
        logger.info("Shutting down DNS server...")

    _setup_signal_handlers(logger, on_shutdown)

    reactor.run(installSignalHandlers=False)  # type: ignore[attr-defined]  # Twisted reactor
    logger.info("DNS Proxy stopped")


def main(argv=None):
    """Main entry point"""
    args = _parse_arguments(argv)
    _handle_version_check(args)

    # Config warnings are held until the configured handlers exist
    pending = logging.handlers.MemoryHandler(capacity=1000, flushLevel=logging.CRITICAL + 1)
    config_logger = logging.getLogger("docker_dns_proxy.config")
    config_logger.addHandler(pending)
    try:
        config = load_config(args.config, overrides=_config_overrides(args))
    except ConfigurationError as e:
        print(f"Error starting DNS proxy: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        config_logger.removeHandler(pending)

    setup_logging(config.log_level, config.log_file, config.syslog)
    for record in pending.buffer:
        source = logging.getLogger(record.name)
        if source.isEnabledFor(record.levelno):
            source.handle(record)
    pending.buffer.clear()
    pending.close()
    logger = logging.getLogger("docker_dns_proxy")

    logger.info("Starting Docker DNS Proxy")
    _log_config(config, logger)

    start_dns_server(config, logger)


if __name__ == "__main__":
    main()

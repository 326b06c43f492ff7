"""Entry point for ``python -m pgo_controller``.

Configures structured logging, loads settings from the environment, and
runs one controller group per configured namespace until SIGINT / SIGTERM.
"""

from __future__ import annotations

import signal
import sys
import threading

import structlog


def _configure_logging(log_level: str, log_format: str) -> None:
    """Set up structlog with the chosen format and level."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Load config, build the controller manager, and run until signalled."""
    from pgo_controller.config import load_settings
    from pgo_controller.kubeapi import ClientSetupError
    from pgo_controller.manager import ControllerManager

    try:
        settings = load_settings()
    except Exception as exc:
        print(f"ERROR: Failed to load settings: {exc}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(settings.log_level, settings.log_format)
    logger = structlog.get_logger("main")
    logger.info(
        "pgo_controller_starting",
        version="0.1.0",
        namespaces=settings.namespaces,
        workers_per_controller=settings.workers_per_controller,
    )

    if not settings.namespaces:
        logger.error("no_namespaces_configured")
        sys.exit(1)

    try:
        manager = ControllerManager(settings.namespaces, settings=settings)
    except ClientSetupError:
        logger.exception("controller_manager_setup_failed")
        sys.exit(1)

    shutdown = threading.Event()

    def _shutdown(signum: int, _frame: object) -> None:
        try:
            sig_name = signal.Signals(signum).name
        except ValueError:
            sig_name = str(signum)
        logger.info("signal_received", signal=sig_name)
        shutdown.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        manager.run_all()
        for ns in manager.namespaces:
            if shutdown.is_set():
                break
            manager.get_group(ns).wait_for_cache_sync(settings.cache_sync_timeout)
        while not shutdown.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
    finally:
        manager.stop_all()
        manager.remove_all(wait=True, timeout=10.0)
        logger.info("pgo_controller_exited")


if __name__ == "__main__":
    main()

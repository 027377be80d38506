#!/usr/bin/env python3
"""
vtgreet — minimal X11 PIN greeter.

Starts its own X server, shows a fullscreen PIN prompt, authenticates the
configured account through PAM and runs the account's login shell as the
session. Must run as root from a getty-less VT (e.g. a systemd unit).

Shutdown order: the greeter loop ends, the session shell is awaited,
the PAM session is closed, then the X server is stopped.
"""

import argparse
import logging
import os
import sys

from vtgreet.config import load_config
from vtgreet.display import start_display_server, stop_display_server
from vtgreet.errors import GreeterFatal

log = logging.getLogger("vtgreet")


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [vtgreet] %(levelname)s: %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Minimal X11 PIN greeter")
    parser.add_argument("--config", help="Path to config JSON (default: /etc/vtgreet/config.json)")
    parser.add_argument("--user", help="Account to log in (overrides the config file)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.user:
        config = config.model_copy(update={"username": args.user})
    log.info(f"Greeter for {config.username} on {config.display} ({config.vt})")

    start_display_server(config)
    os.environ.setdefault("GDK_BACKEND", "x11")

    # Gtk connects to $DISPLAY on import
    from vtgreet.dispatch import EventDispatcher
    from vtgreet.window import run_greeter

    dispatcher = EventDispatcher(config)
    status = run_greeter(dispatcher)

    if dispatcher.fatal is not None:
        raise dispatcher.fatal
    if dispatcher.session is not None:
        log.info("Waiting for the session to end")
        dispatcher.session.wait()
    return status


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.debug)
    try:
        return run(args)
    except GreeterFatal as e:
        log.critical(f"{type(e).__name__}: {e}")
        return 1
    finally:
        stop_display_server()


if __name__ == "__main__":
    sys.exit(main())

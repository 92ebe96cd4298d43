#!/usr/bin/env python3
"""
BlueK9 entry point.

  bluek9 run [--scan-mode bt|wifi|both|virtual] [--virtual] [--no-web]
  bluek9 export [--output FILE]
"""
import logging
import signal
import sys
import threading
from argparse import ArgumentParser, Namespace
from typing import List, Optional

import settings
from engine import Engine
from log_setup import setup_logging
from sms_service import SmsNotifier
from storage import Storage, export_csv

logger = logging.getLogger("bluek9.main")


def build_engine(storage: Storage) -> Engine:
    notifier = SmsNotifier(storage)
    engine = Engine(storage=storage, notifier=notifier)
    notifier.target_lookup = engine.watchlist.get
    return engine


def add_scanners(engine: Engine, scan_mode: str) -> None:
    if scan_mode == "virtual":
        from scanner import VirtualScanner
        engine.add_scanner("virtual", VirtualScanner(engine.handle_detection))
        return
    if scan_mode in ("bt", "both"):
        from scanner import BleScanner
        engine.add_scanner("bt", BleScanner(engine.handle_detection, adapter=settings.BLEAK_DEVICE))
    if scan_mode in ("wifi", "both"):
        from wifi_scanner import WiFiScanner
        engine.add_scanner("wifi", WiFiScanner(engine.handle_detection, interface=settings.WIFI_INTERFACE))


def run(scan_mode: str, web: bool) -> None:
    storage = Storage()
    storage.init_db()
    setup_logging(storage=storage)
    logger.info("Running BlueK9 %s (scan mode %s, database %s)",
                settings.SYSTEM_NAME, scan_mode, storage.db_path)

    engine = build_engine(storage)
    add_scanners(engine, scan_mode)
    engine.start()
    engine.start_scanning()

    if web:
        from web_ui import start_web_ui
        start_web_ui(engine)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Signal received %s, closing.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        stop_event.wait()
    finally:
        engine.stop()
        logger.info("BlueK9 finished.")


def export(output: Optional[str]) -> None:
    """Write the stored device snapshot as CSV to a file or stdout."""
    storage = Storage()
    storage.init_db()
    content = export_csv(storage.get_devices())
    if output:
        with open(output, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        logger.info("Exported devices to %s", output)
    else:
        sys.stdout.write(content)


def parse_args(argv: Optional[List[str]] = None) -> Namespace:
    parser = ArgumentParser(prog="bluek9")
    subparsers = parser.add_subparsers(dest="command")

    p = subparsers.add_parser("run", help="Start the engine, scanners and web UI (default).")
    p.add_argument("--scan-mode", choices=("bt", "wifi", "both", "virtual"), default=settings.SCAN_MODE,
                   help="Which radios to scan with.")
    p.add_argument("--virtual", action="store_true", help="Shortcut for --scan-mode virtual.")
    p.add_argument("--no-web", action="store_true", help="Do not start the web UI.")

    p = subparsers.add_parser("export", help="Export stored devices as CSV.")
    p.add_argument("--output", "-o", type=str, help="Output file (default: stdout).")

    # `run` is the default subcommand
    argv = list(argv or [])
    if not argv or (argv[0].startswith("-") and argv[0] not in ("-h", "--help")):
        argv = ["run"] + argv
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.command == "export":
        logging.basicConfig(level=logging.INFO, stream=sys.stderr,
                            format="%(asctime)s [%(levelname)s] %(message)s")
        export(args.output)
        return

    scan_mode = "virtual" if args.virtual else args.scan_mode
    run(scan_mode, web=settings.WEB_UI_ENABLED and not args.no_web)


if __name__ == "__main__":
    main()

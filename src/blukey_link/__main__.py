"""
Entry point for running the dongle client as a module.

Usage:
    python -m blukey_link scan
    python -m blukey_link provision --to AA:BB:CC:DD:EE:FF
    python -m blukey_link send-text --to AA:BB:CC:DD:EE:FF "hello"
    python -m blukey_link send-key --to AA:BB:CC:DD:EE:FF 0x28
    python -m blukey_link get-layout --to AA:BB:CC:DD:EE:FF -v  # verbose mode
"""

import argparse
import asyncio
import sys

from .client import main
from .storage import DEFAULT_STORE_PATH
from .transport import SCAN_TIMEOUT


def _int(value: str) -> int:
    return int(value, 0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blukey_link", description="BluKeyborg dongle client")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    device = argparse.ArgumentParser(add_help=False, parents=[common])
    device.add_argument(
        "--to",
        type=str,
        required=True,
        help="Dongle Bluetooth address",
    )
    device.add_argument(
        "--store",
        type=str,
        default=DEFAULT_STORE_PATH,
        help=f"APPKEY store file (default: {DEFAULT_STORE_PATH})",
    )
    device.add_argument(
        "--strict-sequence",
        action="store_true",
        help="Reject replayed secure frames from the dongle",
    )

    scan = sub.add_parser("scan", parents=[common], help="List nearby dongles")
    scan.add_argument("--timeout", type=float, default=SCAN_TIMEOUT, help="Scan time in seconds")

    sub.add_parser("provision", parents=[device], help="Provision an APPKEY with the dongle password")

    send_text = sub.add_parser("send-text", parents=[device], help="Type text on the host")
    send_text.add_argument("text", type=str)
    send_text.add_argument("--newline", action="store_true", help="Append a newline")
    send_text.add_argument("--no-verify", action="store_true", help="Do not wait for the MD5 ack")

    send_key = sub.add_parser("send-key", parents=[device], help="Tap a raw HID key")
    send_key.add_argument("usage", type=_int, help="HID usage id, e.g. 0x28 for Enter")
    send_key.add_argument("--mods", type=_int, default=0, help="Modifier bitmask")
    send_key.add_argument("--repeat", type=int, default=1, help="Repeat count (1-255)")

    sub.add_parser("get-layout", parents=[device], help="Show the dongle keyboard layout")

    set_layout = sub.add_parser("set-layout", parents=[device], help="Select the dongle keyboard layout")
    set_layout.add_argument("layout", type=str, help="Layout code, e.g. DE_WINLIN")

    return parser


def run() -> None:
    args = build_parser().parse_args()
    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()

#!/usr/bin/env python3
"""Send due event reminders once; meant to run from cron every few minutes."""
import argparse
import logging
import sys
from pathlib import Path

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from fellowship.routers.events import dispatch_event_reminders  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Create notifications for events starting soon.")
    parser.add_argument("--verbose", action="store_true", help="Enable INFO logging.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    sent = dispatch_event_reminders()
    print(f"Reminders sent: {sent}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

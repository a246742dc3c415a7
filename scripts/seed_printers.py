#!/usr/bin/env python
"""Populate the printer registry with built-in demo printers."""
from __future__ import annotations

import argparse
from pathlib import Path

from dotenv import load_dotenv

from printdesk.printers.registry import seed_printers


def main() -> None:
    """CLI entrypoint mirroring `printdesk seed-printers`."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Seed the printer registry with demo printers")
    parser.add_argument(
        "--path",
        type=Path,
        default=Path("printer_registry/printers.csv"),
        help="Path to the printer registry CSV",
    )
    args = parser.parse_args()
    written = seed_printers(args.path)
    print(f"wrote {written} printer rows to {args.path}")


if __name__ == "__main__":
    main()

"""Module entrypoint for `python -m agentdock`."""

from __future__ import annotations

import asyncio
import sys

from agentdock.cli import main


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    run()

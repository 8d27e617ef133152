"""Run the periodic sweeps once, for cron-style schedulers.

    python -m app.scripts.run_sweeps poll
    python -m app.scripts.run_sweeps all
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from app.services.container import SWEEPS, run_sweep
from app.utils.logger import configure_logging

_LOGGER = logging.getLogger("app.scripts.run_sweeps")


async def main(names: list[str]) -> int:
    failed = 0
    for name in names:
        try:
            stats = await run_sweep(name)
            _LOGGER.info("[CRON] %s completed: %s", name, stats)
        except Exception:  # noqa: BLE001
            failed += 1
            _LOGGER.exception("[CRON] %s failed", name)
    return 1 if failed else 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run review desk sweeps once.")
    parser.add_argument("sweep", choices=[*SWEEPS, "all"], nargs="?", default="all")
    return parser.parse_args(argv)


if __name__ == "__main__":  # pragma: no cover
    configure_logging()
    args = parse_args()
    names = list(SWEEPS) if args.sweep == "all" else [args.sweep]
    sys.exit(asyncio.run(main(names)))

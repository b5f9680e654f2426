"""Entry point for `python -m amre`: run the engine with periodic maintenance."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from amre.cli_support import configure_cli


async def _serve() -> int:
    from amre.config import get_settings
    from amre.engine import MemoryEngine

    log = logging.getLogger("amre")
    settings = get_settings()
    log.info("Starting AMRE with %r", settings)

    engine = MemoryEngine(settings, enable_scheduler=True)
    if not await engine.start():
        log.error("AMRE failed to start; check AMRE_POSTGRES_URL and the embedding settings.")
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt.
            pass

    # Run one cycle right away, then every AMRE_MAINTENANCE_INTERVAL seconds.
    engine.scheduler.trigger()
    try:
        await stop.wait()
    finally:
        await engine.stop()
    return 0


def main() -> None:
    configure_cli(sys.stdout)
    log = logging.getLogger("amre")

    try:
        from amre.config import get_settings

        get_settings()
    except Exception as e:
        log.error("Configuration error: %s", e)
        log.error("Set AMRE_* environment variables or edit config/.env, then restart.")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(_serve()))
    except KeyboardInterrupt:
        log.info("Interrupted; shutting down.")


if __name__ == "__main__":
    main()

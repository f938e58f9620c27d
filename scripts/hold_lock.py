"""CLI entrypoint that acquires a lock and keeps renewing it until interrupted."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from microlock import AlreadyLockedError, LockEvent, LockNotOwnedError, LockSettings, Microlock, build_store
from microlock.utils.logging import get_logger


logger = get_logger("microlock.cli", logging.INFO)


async def hold(settings: LockSettings, *, seconds: float | None) -> int:
    store = build_store(settings.store)
    lock = Microlock.from_settings(settings, store)
    lock.on(LockEvent.LOCKED, lambda: logger.info("%s became locked", lock.key))
    lock.on(LockEvent.UNLOCKED, lambda: logger.info("%s became unlocked", lock.key))

    try:
        try:
            await lock.lock()
        except AlreadyLockedError as exc:
            logger.error("%s", exc)
            return 1

        logger.info("Holding %s as %s (ttl=%ss). Press Ctrl+C to release.", lock.key, lock.holder_id, lock.ttl)
        interval = max(lock.ttl / 2, 0.5)
        loop = asyncio.get_running_loop()
        deadline = None if seconds is None else loop.time() + seconds
        try:
            while deadline is None or loop.time() < deadline:
                await asyncio.sleep(interval)
                await lock.renew()
        except LockNotOwnedError as exc:
            logger.error("Lost the lock: %s", exc)
            return 2
        finally:
            try:
                await lock.unlock()
                logger.info("Released %s", lock.key)
            except LockNotOwnedError:
                pass
        return 0
    finally:
        lock.destroy()
        await store.close()


async def main() -> int:
    parser = argparse.ArgumentParser(description="Acquire a microlock and hold it, renewing at ttl/2.")
    parser.add_argument("--config", type=Path, default=Path("config/lock.example.yml"), help="Path to lock YAML")
    parser.add_argument("--seconds", type=float, default=None, help="Release after this many seconds")
    args = parser.parse_args()

    settings = LockSettings.from_file(args.config)
    return await hold(settings, seconds=args.seconds)


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")

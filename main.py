import asyncio
import logging
import os
import sys

from localfirst.logging_config import configure_logging
from localfirst.services.auto_sync_engine import create_auto_sync_engine

logger = logging.getLogger("localfirst")


async def main() -> int:
    configure_logging()

    owner_id = os.getenv("LOCALFIRST_OWNER_ID")
    if not owner_id:
        logger.error("Defina LOCALFIRST_OWNER_ID para sincronizar")
        return 1

    engine = create_auto_sync_engine(owner_id=owner_id)
    try:
        await engine.initialize()
        logger.info(f"Pendentes antes do sync: {engine.queue_size}")

        await engine.sync_now()
        status = engine.status
        logger.info(
            f"Último sync: {status.last_sync_time} | pendentes: {status.queue_size} | "
            f"estado: {status.state.value}"
        )
        if status.error:
            logger.error(f"Sync com erro: {status.error}")
            return 1
        return 0
    finally:
        engine.cleanup()
        await engine.remote_peer.aclose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

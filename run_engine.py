import asyncio
import os
import signal

from dotenv import dotenv_values

from dialgov.config import load_config
from dialgov.governance import GovernanceEngine
from dialgov.logger import configure_logging, get_logger
from dialgov.transport import MemoryTransport, MirrorNodeTransport

logger = get_logger("dialgov.run_engine")

config = dotenv_values(".env")

# Prioritize environment variables over .env file
DIALGOV_CONFIG = os.getenv("DIALGOV_CONFIG", config.get("DIALGOV_CONFIG", "config.toml"))


def build_transport(cfg):
    if cfg.transport.kind == "memory":
        return MemoryTransport()
    return MirrorNodeTransport(
        mirror_url=cfg.transport.mirror_url,
        submit_url=cfg.transport.submit_url or None,
        content_url=cfg.transport.content_url or None,
        timeout=cfg.transport.timeout,
    )


async def main():
    cfg = load_config(DIALGOV_CONFIG)
    configure_logging(cfg.engine.log_level)

    transport = build_transport(cfg)
    engine = GovernanceEngine.from_config(cfg, transport)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    await engine.start()
    try:
        await stop_event.wait()
    finally:
        await engine.stop()
        if hasattr(transport, "aclose"):
            await transport.aclose()
        endpoint = engine.dispatcher.endpoint
        if endpoint is not None and hasattr(endpoint, "aclose"):
            await endpoint.aclose()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()

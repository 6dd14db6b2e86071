"""CLI entry point: courier-agent --provider subprocess --port 8080."""

import argparse
import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

# Load .env early so env vars (COURIER_TOKEN, etc.) are available for arg defaults
load_dotenv()

logger = logging.getLogger("courier_agent")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="courier-agent",
        description="Multi-channel conversational agent runtime",
    )
    parser.add_argument(
        "--provider",
        choices=("openai", "subprocess"),
        default=os.environ.get("COURIER_PROVIDER") or None,
        help="Language-model provider (default: from config, else openai)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("COURIER_PORT", "8080")),
        help="HTTP channel port (default: 8080)",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("COURIER_HOST", "0.0.0.0"),
        help="Bind address (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("COURIER_TOKEN", ""),
        help="Bearer auth token for the HTTP channel (default: none)",
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("COURIER_CONFIG", ""),
        help="Path to a JSON config file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    from .channels.http import HttpChannel
    from .config import RuntimeConfig
    from .runtime import AgentRuntime

    config = RuntimeConfig.load(args.config or None)
    if args.provider:
        config.provider = args.provider

    runtime = AgentRuntime(config)
    runtime.add_channel(
        HttpChannel(host=args.host, port=args.port, token=args.token or None, context=runtime.context)
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    await runtime.start()
    logger.info(
        "courier-agent ready  provider=%s  port=%s  auth=%s",
        config.provider,
        args.port,
        "on" if args.token else "off",
    )

    await stop_event.wait()

    logger.info("Shutting down...")
    await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    if args.version:
        from importlib.metadata import version as pkg_version
        try:
            v = pkg_version("courier-agent")
        except Exception:
            v = "dev"
        print(f"courier-agent {v}")
        return

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    asyncio.run(_run(args))


if __name__ == "__main__":
    main()

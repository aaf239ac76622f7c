from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Sequence

from .config import Settings
from .kernel import MemoryKernel
from .memory import build_memory_store

logger = logging.getLogger("companion_memory")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def build_kernel(settings: Settings) -> tuple[Any, MemoryKernel]:
    store = build_memory_store(settings)
    return store, MemoryKernel(store, settings)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="companion_memory",
        description="Emotional memory kernel utilities.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create or migrate the memory store schema.")

    show = commands.add_parser("show-block", help="Print the memory block for a user.")
    show.add_argument("--user-id", required=True)
    show.add_argument("--conversation-id", default=None)
    show.add_argument("--language", default=None, choices=("en", "ar", "mixed"))
    show.add_argument("--persona-id", default=None)
    return parser


async def _init_db(settings: Settings) -> None:
    store, _ = build_kernel(settings)
    try:
        await store.init()
        await store.ping()
        logger.info("Memory store ready backend=%s", getattr(store, "backend_name", "unknown"))
    finally:
        await store.close()


async def _show_block(settings: Settings, args: argparse.Namespace) -> str:
    store, kernel = build_kernel(settings)
    try:
        await store.init()
        return await kernel.build_memory_block(
            args.user_id,
            conversation_id=args.conversation_id,
            language=args.language,
            persona_id=args.persona_id,
        )
    finally:
        await store.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()

    try:
        if args.command == "init-db":
            asyncio.run(_init_db(settings))
            return 0

        block = asyncio.run(_show_block(settings, args))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        return 130

    if block:
        print(block)
    else:
        logger.info("No memory context for user=%s", args.user_id)
    return 0

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .config import BridgeSettings, get_settings
from .inbound.attachments import AttachmentResolver
from .inbound.checkpoint import JsonCheckpointStore, restore_checkpoint
from .inbound.poller import PollState, Poller
from .inbound.store import MessageStore
from .inbound.transcode import HeicTranscoder, default_transcoders
from .logging import get_logger, setup_logging
from .outbound.dispatcher import SendDispatcher
from .process import run_command
from .rpc import METHOD_NAMES, JsonLineWriter, RpcServer, open_stdin_reader

logger = get_logger("imsg_bridge.main")

HELP_FLAGS = ("-h", "--help")


def build_rpc_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imsg-bridge rpc",
        description="Bridge Messages.app to a newline-delimited JSON-RPC stream on stdin/stdout",
        epilog="RPC methods:\n  " + ", ".join(METHOD_NAMES),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    parser.add_argument(
        "--db",
        "--db-path",
        dest="db",
        type=str,
        default=None,
        help="Path to the Messages chat.db (defaults to IMSG_CHAT_DB or ~/Library/Messages/chat.db)",
    )
    return parser


def print_help() -> None:
    sys.stdout.write("Usage:\n  imsg-bridge rpc [--db <path>] [--help]\n\n")
    sys.stdout.write(build_rpc_parser().format_help())


def apply_overrides(settings: BridgeSettings, args: argparse.Namespace) -> BridgeSettings:
    if not args.db:
        return settings
    return settings.model_copy(update={"chat_db_path": Path(args.db).expanduser()})


async def run_rpc(settings: BridgeSettings) -> None:
    store = MessageStore(settings.chat_db_path)
    transcoder = HeicTranscoder(settings.inbox_dir, default_transcoders(run_command))
    checkpoints = JsonCheckpointStore(settings.checkpoint_file)
    state = PollState(last_seen=restore_checkpoint(checkpoints))

    writer = JsonLineWriter(sys.stdout.buffer)
    poller = Poller(
        store,
        state,
        resolver=AttachmentResolver(transcoder),
        on_message=writer.notify_message,
        on_error=writer.notify_error,
        checkpoints=checkpoints,
        interval=settings.poll_interval,
    )
    dispatcher = SendDispatcher(
        settings.staging_policy(),
        store,
        preferred_service=settings.preferred_service,
    )
    server = RpcServer(writer, dispatcher=dispatcher, poller=poller)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, server.request_shutdown)

    logger.info(
        "bridge_starting",
        chat_db=str(settings.chat_db_path),
        outbound_dir=str(settings.outbound_dir),
        staging_dir=str(settings.staging_dir),
        allow_arbitrary_files=settings.allow_arbitrary_files,
        service=settings.preferred_service,
    )
    await server.serve(await open_stdin_reader())


def main(argv: Optional[Sequence[str]] = None) -> int:
    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    setup_logging(settings.effective_log_level)

    if not args or args[0] in HELP_FLAGS:
        print_help()
        return 0

    command, rest = args[0], args[1:]
    if command != "rpc":
        logger.error("unknown_command", command=command)
        return 1
    if any(flag in rest for flag in HELP_FLAGS):
        print_help()
        return 0

    parsed, ignored = build_rpc_parser().parse_known_args(rest)
    if ignored:
        logger.warning("ignored_arguments", arguments=ignored)

    asyncio.run(run_rpc(apply_overrides(settings, parsed)))
    return 0


if __name__ == "__main__":
    sys.exit(main())

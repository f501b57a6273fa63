"""Newline-delimited JSON-RPC front-end.

Requests arrive one per line on stdin; responses and the ``message`` /
``error`` notifications are written one per line to stdout. Diagnostics
never touch stdout.
"""
from __future__ import annotations

import asyncio
import contextlib
import sys
import time
from typing import Any, Awaitable, BinaryIO, Callable, Dict, Optional, Set

import orjson
from pydantic import ValidationError

from .errors import INVALID_PARAMS, SERVER_ERROR, BridgeError, MethodNotFoundError
from .inbound.poller import Poller
from .logging import get_logger
from .models import MessageRecord, RpcRequest, SendParams, SubscribeParams
from .outbound.dispatcher import SendDispatcher

logger = get_logger("imsg_bridge.rpc")

JSONRPC_VERSION = "2.0"
MAX_LINE_BYTES = 16 * 1024 * 1024
METHOD_NAMES = ("send", "chats.list", "watch.subscribe", "watch.unsubscribe")

Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class JsonLineWriter:
    """Serializes protocol frames onto a binary stream, one per line."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.closed = False

    def write(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self.stream.write(orjson.dumps(payload) + b"\n")
            self.stream.flush()
        except (BrokenPipeError, ValueError) as exc:
            logger.warning("rpc_output_closed", error=str(exc))
            self.closed = True

    def result(self, request_id: Any, result: Any) -> None:
        self.write({"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result})

    def error(self, request_id: Any, code: int, message: str) -> None:
        self.write({"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": {"code": code, "message": message}})

    def notify(self, method: str, params: Dict[str, Any]) -> None:
        self.write({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params})

    def notify_message(self, record: MessageRecord) -> None:
        self.notify("message", {"message": record.to_wire()})

    def notify_error(self, description: str) -> None:
        self.notify("error", {"error": description})

    def close(self) -> None:
        self.closed = True


class RpcServer:
    def __init__(self, writer: JsonLineWriter, *, dispatcher: SendDispatcher, poller: Poller) -> None:
        self.writer = writer
        self.dispatcher = dispatcher
        self.poller = poller
        self.subscription_id: Optional[str] = None
        self._methods: Dict[str, Handler] = {
            "send": self._send,
            "chats.list": self._chats_list,
            "watch.subscribe": self._subscribe,
            "watch.unsubscribe": self._unsubscribe,
        }
        self._tasks: Set[asyncio.Task[None]] = set()
        self._shutdown = asyncio.Event()
        self._closed = False

    async def _send(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.dispatcher.send(SendParams.model_validate(params))

    async def _chats_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"chats": [], "count": 0}

    async def _subscribe(self, params: Dict[str, Any]) -> Dict[str, Any]:
        options = SubscribeParams.model_validate(params)
        self.poller.include_attachments = options.attachments
        if self.subscription_id is None:
            self.subscription_id = f"sub-{time.time_ns() // 1_000_000}"
        logger.info("watch_subscribed", subscription=self.subscription_id, attachments=options.attachments)
        self.poller.start()
        return {"subscription": self.subscription_id}

    async def _unsubscribe(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.poller.running:
            logger.info("watch_unsubscribed", subscription=self.subscription_id)
        self.poller.stop()
        return {"ok": True}

    def handle_line(self, raw: bytes) -> None:
        """Parse one input line and schedule its request."""
        line = raw.strip()
        if not line:
            return
        try:
            payload = orjson.loads(line)
        except orjson.JSONDecodeError as exc:
            logger.warning("rpc_parse_error", error=str(exc))
            return
        if not isinstance(payload, dict):
            logger.warning("rpc_invalid_payload", payload_type=type(payload).__name__)
            return
        if payload.get("id") is None:
            logger.debug("rpc_request_without_id_dropped", method=payload.get("method"))
            return

        task = asyncio.create_task(self._run_request(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_request(self, payload: Dict[str, Any]) -> None:
        request_id = payload.get("id")
        try:
            request = RpcRequest.model_validate(payload)
        except ValidationError as exc:
            self.writer.error(request_id, INVALID_PARAMS, f"Invalid params: {exc.errors()[0]['msg']}")
            return
        await self.dispatch(request)

    async def dispatch(self, request: RpcRequest) -> None:
        handler = self._methods.get(request.method) if isinstance(request.method, str) else None
        try:
            if handler is None:
                raise MethodNotFoundError(request.method)
            result = await handler(request.params)
        except BridgeError as exc:
            logger.info("rpc_request_failed", method=request.method, code=exc.code, error=str(exc))
            self.writer.error(request.id, exc.code, str(exc))
        except ValidationError as exc:
            logger.info("rpc_invalid_params", method=request.method, error=str(exc))
            self.writer.error(request.id, INVALID_PARAMS, f"Invalid params: {exc.errors()[0]['msg']}")
        except Exception as exc:
            logger.exception("rpc_handler_error", method=request.method)
            self.writer.error(request.id, SERVER_ERROR, str(exc))
        else:
            self.writer.result(request.id, result)

    def request_shutdown(self) -> None:
        logger.info("rpc_shutdown_requested")
        self._shutdown.set()

    async def _next_line(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        read = asyncio.ensure_future(reader.readline())
        stop = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if not read.done():
            read.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await read
            return None
        return read.result() or None

    async def serve(self, reader: asyncio.StreamReader) -> None:
        """Process requests until end of input or a shutdown request.

        At end of input, requests already in flight are allowed to finish
        before the server closes. A shutdown request cancels them.
        """
        logger.info("rpc_server_started", methods=list(METHOD_NAMES))
        try:
            while not self._shutdown.is_set():
                try:
                    line = await self._next_line(reader)
                except ValueError as exc:
                    logger.warning("rpc_line_too_long", error=str(exc))
                    continue
                if line is None:
                    break
                self.handle_line(line)

            if not self._shutdown.is_set():
                await self.poller.aclose()
                if self._tasks:
                    await asyncio.gather(*list(self._tasks), return_exceptions=True)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.poller.aclose()
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.writer.close()
        logger.info("rpc_server_stopped")


async def open_stdin_reader(limit: int = MAX_LINE_BYTES) -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    try:
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    except ValueError:
        # regular files cannot be registered with the event loop
        reader.feed_data(await asyncio.to_thread(sys.stdin.buffer.read))
        reader.feed_eof()
    return reader


__all__ = ["JsonLineWriter", "METHOD_NAMES", "RpcServer", "open_stdin_reader"]

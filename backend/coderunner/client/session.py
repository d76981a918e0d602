import asyncio, json, logging
from collections import defaultdict
from functools import partial
from typing import Any, Callable

from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.protocol import State

from coderunner.core.config import get_settings
from coderunner.core.errors import ConnectionTimeoutError, ExecutionConnectionError
from coderunner.schemas.enums import CloseReason, MessageType, OutputKind
from coderunner.schemas.messages import (
    InputResponse,
    Ping,
    RunCodeRequest,
    ServerMessage,
    StopExecutionRequest,
)

logger = logging.getLogger(__name__)
settings = get_settings()

EVENTS = ("run_start", "output", "input_request", "success", "error", "stop", "disconnect")

OUTPUT_KINDS = {
    MessageType.output.value: OutputKind.output,
    MessageType.error_output.value: OutputKind.error,
    MessageType.stderr.value: OutputKind.error,
    MessageType.warning.value: OutputKind.warning,
    MessageType.success.value: OutputKind.success,
}

INPUT_REQUESTS = {MessageType.input_request.value, MessageType.waiting_for_input.value}

TERMINAL_ERRORS = {
    MessageType.compilation_error.value: "Compilation failed",
    MessageType.runtime_error.value: "Runtime error",
    MessageType.execution_timeout.value: "Timeout",
}

Handler = Callable[..., Any]


def default_connector():
    # Heartbeats are application-level pings; the library's own keepalive
    # and handshake timeout are disabled so connect_timeout is the only limit.
    return partial(ws_connect, ping_interval=None, open_timeout=None)


def _is_failure_exit(exit_code) -> bool:
    if isinstance(exit_code, bool) or not isinstance(exit_code, (int, float)):
        return False
    return exit_code != 0


class ExecutionSession:
    def __init__(
        self,
        base_url: str | None = None,
        connector: Callable | None = None,
        connect_timeout: float | None = None,
        heartbeat_interval: float | None = None,
        stop_cooldown: float | None = None,
        run_timeout_ms: int | None = None,
    ):
        self.base_url = base_url or settings.SOCKET_BASE_URL
        self._connector = connector or default_connector()
        self.connect_timeout = (
            settings.CONNECT_TIMEOUT_S if connect_timeout is None else connect_timeout
        )
        self.heartbeat_interval = (
            settings.CLIENT_HEARTBEAT_INTERVAL_S
            if heartbeat_interval is None
            else heartbeat_interval
        )
        self.stop_cooldown = (
            settings.STOP_COOLDOWN_S if stop_cooldown is None else stop_cooldown
        )
        self.run_timeout_ms = (
            settings.RUN_TIMEOUT_HINT_MS if run_timeout_ms is None else run_timeout_ms
        )

        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._epoch = 0
        self._stopping = False
        self.running = False
        self.close_reason: CloseReason | None = None

    @property
    def url(self) -> str:
        return self.base_url.rstrip("/") + settings.WS_PATH

    @property
    def socket(self):
        return self._ws

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._is_open(self._ws)

    @staticmethod
    def _is_open(ws) -> bool:
        return getattr(ws, "state", None) is State.OPEN

    # events

    def on(self, event: str, handler: Handler) -> Handler:
        if event not in EVENTS:
            raise ValueError(f"unknown event {event!r}")
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler):
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def _emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception:
                logger.exception("%s handler failed", event)

    # connection

    async def connect(self):
        if self._ws is not None:
            if self._is_open(self._ws):
                return self._ws
            # dropped before the reader noticed
            await self._detach()

        epoch = self._epoch
        logger.info("connecting to %s", self.url)
        try:
            ws = await asyncio.wait_for(self._connector(self.url), self.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("connection to %s timed out", self.url)
            raise ConnectionTimeoutError("Connection timeout")
        except (OSError, WebSocketException) as e:
            logger.warning("connection to %s failed: %s", self.url, e)
            await self.disconnect()
            raise ExecutionConnectionError("Connection error") from e

        if epoch != self._epoch:
            # torn down while the handshake was in flight
            await self._close_socket(ws)
            raise ExecutionConnectionError("Connection aborted")

        self._ws = ws
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("connected to %s", self.url)
        return ws

    async def disconnect(self):
        self.running = False
        if await self._detach() is not None:
            self._emit("disconnect")

    async def _detach(self):
        self._epoch += 1
        current = asyncio.current_task()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat = None
        self._reader = None
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)
        return ws

    async def _close_socket(self, ws):
        if getattr(ws, "state", None) not in (State.OPEN, State.CONNECTING):
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug("error while closing socket: %s", e)

    async def _heartbeat_loop(self, ws):
        frame = Ping().to_json()
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self._is_open(ws):
                return
            try:
                await ws.send(frame)
            except (OSError, WebSocketException) as e:
                logger.debug("heartbeat failed: %s", e)

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                if self._ws is not ws:
                    break
                await self._handle_frame(raw)
                if self._ws is not ws:
                    break
        except ConnectionClosedOK:
            logger.info("server closed the connection")
        except ConnectionClosed as e:
            if self._ws is ws and self.close_reason is None:
                logger.warning("connection lost: %s", e)
                self._emit("error", "Connection failed")
        if self._ws is ws:
            await self.disconnect()

    async def _handle_frame(self, raw):
        try:
            message = ServerMessage.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.debug("unparseable frame: %r", raw)
            self._emit("error", f"Parse error: {e}")
            return
        await self.handle_message(message)

    async def handle_message(self, message: ServerMessage):
        kind = message.type
        if kind in OUTPUT_KINDS:
            data = "" if message.data is None else str(message.data)
            self._emit("output", OUTPUT_KINDS[kind], data)
        elif kind in INPUT_REQUESTS:
            self._emit("input_request")
        elif kind == MessageType.execution_complete.value:
            if _is_failure_exit(message.exit_code):
                self._emit("error", f"Execution failed (exit code: {message.exit_code})")
            else:
                self._emit("success")
            self.close_reason = CloseReason.complete
            await self.disconnect()
        elif kind in TERMINAL_ERRORS:
            self._emit("error", TERMINAL_ERRORS[kind])
            await self.disconnect()

    # operations

    async def run(self, code: str, language: str = "python") -> bool:
        source = (code or "").strip()
        if not source:
            self._emit("error", "No code to execute")
            return False
        if self.running:
            logger.debug("run ignored, execution already in progress")
            return False

        self.running = True
        self.close_reason = None
        self._emit("run_start")
        request = RunCodeRequest(
            code=source, language=language.lower(), timeout=self.run_timeout_ms
        )
        try:
            ws = await self.connect()
            await ws.send(request.to_json())
        except ExecutionConnectionError as e:
            self.running = False
            if self.close_reason is None:
                self._emit("error", f"Connection failed: {e}")
            return False
        except ConnectionClosed as e:
            await self.disconnect()
            self._emit("error", f"Connection failed: {e}")
            return False
        logger.info("run request %s sent (%s)", request.client_id, request.language)
        return True

    async def stop(self) -> bool:
        if self._stopping:
            return False
        self._stopping = True
        self.close_reason = CloseReason.stop

        ws = self._ws
        if ws is not None and self._is_open(ws):
            try:
                await ws.send(StopExecutionRequest().to_json())
            except (OSError, WebSocketException) as e:
                logger.warning("stop request not sent: %s", e)

        self._emit("stop")
        await self.disconnect()
        asyncio.get_running_loop().call_later(self.stop_cooldown, self._release_stop)
        return True

    def _release_stop(self):
        self._stopping = False

    async def send_input(self, text) -> bool:
        ws = self._ws
        if ws is None or not self._is_open(ws):
            self._emit("error", "Not connected")
            return False
        try:
            await ws.send(InputResponse(input=str(text)).to_json())
        except ConnectionClosed:
            self._emit("error", "Not connected")
            return False
        return True

    async def close(self):
        self.close_reason = CloseReason.unmount
        await self.disconnect()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

import asyncio, logging, secrets, shutil, time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from coderunner.core.config import Settings, get_settings
from coderunner.schemas.enums import MessageType
from coderunner.schemas.messages import ClientMessage, ServerMessage
from coderunner.services.history import RunHistory
from coderunner.services.limiter import ExecutionLimiter
from coderunner.services.runner import ExecutionRunner

logger = logging.getLogger(__name__)


def generate_client_id(websocket: WebSocket) -> str:
    host, port = ("unknown", 0)
    if websocket.client is not None:
        host, port = websocket.client.host, websocket.client.port
    return f"{host}:{port}:{int(time.time() * 1000)}:{secrets.token_hex(8)}"


def _is_connected(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


@dataclass
class ClientConnection:
    client_id: str
    websocket: WebSocket
    runner: ExecutionRunner | None = None
    last_activity: float = field(default_factory=time.monotonic)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closing: bool = False


class ClientRegistry:
    def __init__(self, settings: Settings | None = None, history: RunHistory | None = None):
        self.settings = settings or get_settings()
        self.history = history or RunHistory(self.settings)
        self.limiter = ExecutionLimiter(
            self.settings.MAX_CONCURRENT_EXECUTIONS, self.settings.MAX_QUEUE_SIZE
        )
        self.clients: dict[str, ClientConnection] = {}
        self.temp_dirs: set[Path] = set()
        self.shutting_down = False
        self._tasks: list[asyncio.Task] = []

    def register(self, websocket: WebSocket) -> ClientConnection:
        client_id = generate_client_id(websocket)
        conn = ClientConnection(client_id, websocket)
        conn.runner = ExecutionRunner(
            client_id,
            send=partial(self.send, client_id),
            disconnect=partial(self.disconnect_client, client_id),
            limiter=self.limiter,
            settings=self.settings,
            history=self.history,
            temp_dirs=self.temp_dirs,
        )
        self.clients[client_id] = conn
        logger.info("client connected", extra={"client_id": client_id})
        return conn

    async def send(self, client_id: str, message: ServerMessage) -> bool:
        conn = self.clients.get(client_id)
        if conn is None or not _is_connected(conn.websocket):
            return False
        try:
            async with conn.send_lock:
                await conn.websocket.send_text(message.to_json())
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug("send failed: %s", e, extra={"client_id": client_id})
            return False
        return True

    async def handle_message(self, conn: ClientConnection, raw: str | bytes):
        conn.last_activity = time.monotonic()
        if len(raw) > self.settings.MAX_MESSAGE_BYTES:
            logger.warning("oversized frame ignored", extra={"client_id": conn.client_id})
            return
        try:
            message = ClientMessage.model_validate_json(raw)
        except ValidationError:
            logger.debug("invalid frame ignored", extra={"client_id": conn.client_id})
            return

        if message.type == MessageType.run_code.value:
            await conn.runner.start(message.code, message.language)
        elif message.type == MessageType.input_response.value:
            conn.runner.provide_input(message.input)
        elif message.type == MessageType.stop_execution.value:
            await conn.runner.stop()

    async def disconnect_client(self, client_id: str, reason: str = "Execution error"):
        conn = self.clients.get(client_id)
        if conn is None or conn.closing:
            return
        conn.closing = True
        await self.send(
            client_id,
            ServerMessage(
                type=MessageType.disconnect.value,
                message="Connection closed due to execution error",
            ),
        )
        await asyncio.sleep(0.1)
        await self._close(conn, reason)
        await self.cleanup_client(client_id)

    async def _close(self, conn: ClientConnection, reason: str):
        if not _is_connected(conn.websocket):
            return
        try:
            await conn.websocket.close(code=1000, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug("close failed: %s", e, extra={"client_id": conn.client_id})

    async def cleanup_client(self, client_id: str):
        conn = self.clients.pop(client_id, None)
        if conn is None:
            return
        logger.info("client disconnected", extra={"client_id": client_id})
        await conn.runner.stop()

    # periodic jobs

    async def heartbeat(self):
        idle_limit = self.settings.SERVER_HEARTBEAT_INTERVAL_S * 3
        now = time.monotonic()
        for client_id, conn in list(self.clients.items()):
            if now - conn.last_activity > idle_limit:
                logger.info("dropping idle client", extra={"client_id": client_id})
                await self._close(conn, "Idle timeout")
                await self.cleanup_client(client_id)
            elif not await self.send(client_id, ServerMessage(type=MessageType.ping.value)):
                await self.cleanup_client(client_id)

    async def sweep(self):
        in_use = {c.runner.workdir for c in self.clients.values() if c.runner.workdir}
        for path in list(self.temp_dirs - in_use):
            await asyncio.to_thread(shutil.rmtree, path, True)
            self.temp_dirs.discard(path)
        for client_id, conn in list(self.clients.items()):
            if conn.websocket.client_state == WebSocketState.DISCONNECTED:
                await self.cleanup_client(client_id)

    async def _every(self, interval: float, job):
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("%s failed", job.__name__)

    def start(self):
        self._tasks = [
            asyncio.create_task(self._every(self.settings.SERVER_HEARTBEAT_INTERVAL_S, self.heartbeat)),
            asyncio.create_task(self._every(self.settings.CLEANUP_INTERVAL_S, self.sweep)),
        ]

    async def shutdown(self):
        if self.shutting_down:
            return
        self.shutting_down = True
        logger.info("shutting down, %d clients connected", len(self.clients))
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for client_id, conn in list(self.clients.items()):
            await self._close(conn, "Server shutting down")
            await self.cleanup_client(client_id)
        for path in list(self.temp_dirs):
            await asyncio.to_thread(shutil.rmtree, path, True)
        self.temp_dirs.clear()

    def stats(self) -> dict:
        return {"executions": self.limiter.stats(), "clients": len(self.clients)}

from fastapi import APIRouter, WebSocket
from coderunner.core.config import get_settings
from coderunner.schemas.enums import MessageType
from coderunner.schemas.messages import ServerMessage
from coderunner.services.registry import ClientRegistry

router = APIRouter()
settings = get_settings()


@router.websocket(settings.WS_PATH)
async def code_runner(ws: WebSocket):
    registry: ClientRegistry = ws.app.state.registry
    await ws.accept()
    conn = registry.register(ws)
    try:
        await registry.send(
            conn.client_id,
            ServerMessage(
                type=MessageType.connection_established.value,
                message="Connected to multi-language execution server",
                clientId=conn.client_id,
            ),
        )
        while True:
            msg = await ws.receive()
            if msg["type"] == "websocket.disconnect":
                break
            raw = msg.get("text")
            if raw is None:
                raw = msg.get("bytes") or b""
            await registry.handle_message(conn, raw)
    finally:
        await registry.cleanup_client(conn.client_id)

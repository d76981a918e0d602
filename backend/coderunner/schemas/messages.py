from datetime import datetime, timezone
import time
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_client_id() -> str:
    return str(int(time.time() * 1000))


class Frame(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


# Outbound (client -> server)


class RunCodeRequest(Frame):
    type: Literal["run_code"] = "run_code"
    code: str
    language: str = "python"
    timestamp: str = Field(default_factory=utc_timestamp)
    client_id: str = Field(default_factory=make_client_id)
    timeout: int = 30000


class StopExecutionRequest(Frame):
    type: Literal["stop_execution"] = "stop_execution"
    timestamp: str = Field(default_factory=utc_timestamp)


class InputResponse(Frame):
    type: Literal["input_response"] = "input_response"
    input: str
    timestamp: str = Field(default_factory=utc_timestamp)


class Ping(Frame):
    type: Literal["ping"] = "ping"


# Inbound (server -> client), and frames the server builds


class ServerMessage(Frame):
    model_config = ConfigDict(extra="allow")

    type: str
    data: Any = None
    exit_code: Any = None
    message: str | None = None
    clientId: str | None = None


class ClientMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    code: str | None = None
    language: str | None = None
    input: Any = None
    client_id: str | None = None
    timeout: int | None = None

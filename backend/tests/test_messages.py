import json

import pytest
from pydantic import ValidationError

from coderunner.schemas.messages import (
    ClientMessage,
    InputResponse,
    Ping,
    RunCodeRequest,
    ServerMessage,
    StopExecutionRequest,
)


def test_run_request_wire_shape():
    payload = json.loads(RunCodeRequest(code="print(1)", language="python").to_json())
    assert set(payload) == {"type", "code", "language", "timestamp", "client_id", "timeout"}
    assert payload["type"] == "run_code"
    assert payload["timeout"] == 30000


def test_stop_and_input_frames():
    assert json.loads(StopExecutionRequest().to_json())["type"] == "stop_execution"
    frame = json.loads(InputResponse(input="5").to_json())
    assert frame["type"] == "input_response"
    assert frame["input"] == "5"
    assert json.loads(Ping().to_json()) == {"type": "ping"}


def test_server_message_keeps_unknown_fields():
    msg = ServerMessage.model_validate({"type": "output", "data": "x", "extra": 1})
    assert msg.data == "x"
    assert msg.model_extra == {"extra": 1}


def test_server_message_omits_empty_fields():
    frame = json.loads(ServerMessage(type="execution_complete", exit_code=0).to_json())
    assert frame == {"type": "execution_complete", "exit_code": 0}


def test_server_message_requires_type():
    with pytest.raises(ValidationError):
        ServerMessage.model_validate({"data": "x"})


def test_client_message_accepts_any_input_value():
    msg = ClientMessage.model_validate({"type": "input_response", "input": 12})
    assert msg.input == 12

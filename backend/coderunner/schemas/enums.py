import enum


class MessageType(str, enum.Enum):
    # client -> server
    run_code = "run_code"
    stop_execution = "stop_execution"
    input_response = "input_response"
    ping = "ping"
    pong = "pong"
    # server -> client
    connection_established = "connection_established"
    output = "output"
    error_output = "error_output"
    stderr = "stderr"
    warning = "warning"
    success = "success"
    input_request = "input_request"
    waiting_for_input = "waiting_for_input"
    execution_complete = "execution_complete"
    compilation_error = "compilation_error"
    runtime_error = "runtime_error"
    execution_timeout = "execution_timeout"
    error = "error"
    disconnect = "disconnect"


class OutputKind(str, enum.Enum):
    output = "output"
    error = "error"
    warning = "warning"
    success = "success"
    info = "info"
    input = "input"


class CloseReason(str, enum.Enum):
    complete = "complete"
    stop = "stop"
    unmount = "unmount"


class TerminationReason(str, enum.Enum):
    timeout = "timeout"
    output_limit = "output_limit"
    iteration_limit = "iteration_limit"
    error = "error"
    user_stop = "user_stop"


class RunStatus(str, enum.Enum):
    succeeded = "succeeded"
    failed = "failed"
    compilation_failed = "compilation_failed"
    killed = "killed"

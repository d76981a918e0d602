import asyncio, io, os, threading
from pathlib import Path

import pytest

from coderunner.client.session import ExecutionSession
from coderunner.scripts.run_file import infer_language, main, run_source
from conftest import FakeConnector


@pytest.mark.parametrize(
    "name,language",
    [("a.py", "python"), ("Main.java", "java"), ("x.CPP", "cpp"), ("x.c", "c"), ("x.js", "javascript")],
)
def test_infer_language(name, language):
    assert infer_language(Path(name)) == language


def test_infer_language_unknown_suffix():
    with pytest.raises(ValueError, match="--language"):
        infer_language(Path("notes.txt"))


def test_main_rejects_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr("coderunner.scripts.run_file.setup_logging", lambda *a, **kw: None)
    with pytest.raises(SystemExit) as exc:
        main([str(tmp_path / "missing.py")])
    assert exc.value.code == 2


async def test_run_source_streams_output():
    connector = FakeConnector(
        frames=[
            {"type": "output", "data": "hello\n"},
            {"type": "error_output", "data": "warning: x\n"},
            {"type": "success", "data": "=== Code Execution Successful ===\n"},
            {"type": "execution_complete", "exit_code": 0},
        ]
    )
    stdout, stderr = io.StringIO(), io.StringIO()
    session = ExecutionSession(base_url="ws://runner.test", connector=connector)

    code = await run_source('print("hello")', "python", session, io.StringIO(), stdout, stderr)

    assert code == 0
    assert stdout.getvalue() == "hello\n=== Code Execution Successful ===\n"
    assert stderr.getvalue() == "warning: x\n"
    assert connector.socket.frames("run_code")[0]["language"] == "python"


async def test_run_source_relays_stdin():
    def server(ws, frame):
        if frame["type"] == "run_code":
            ws.feed({"type": "output", "data": "Name? "})
            ws.feed({"type": "input_request"})
        elif frame["type"] == "input_response":
            ws.feed({"type": "output", "data": f"Hi {frame['input']}\n"})
            ws.feed({"type": "execution_complete", "exit_code": 0})

    connector = FakeConnector(on_send=server)
    stdout = io.StringIO()
    session = ExecutionSession(base_url="ws://runner.test", connector=connector)

    code = await run_source("name = input()", "python", session, io.StringIO("Ada\n"), stdout, io.StringIO())

    assert code == 0
    assert stdout.getvalue() == "Name? Hi Ada\n"


async def test_run_source_reports_failure():
    connector = FakeConnector(frames=[{"type": "compilation_error", "message": "Compilation failed"}])
    stderr = io.StringIO()
    session = ExecutionSession(base_url="ws://runner.test", connector=connector)

    code = await run_source("print(", "python", session, io.StringIO(), io.StringIO(), stderr)

    assert code == 1
    assert stderr.getvalue() == "Compilation failed\n"


async def test_run_source_fails_when_server_closes_mid_run():
    connector = FakeConnector()
    stderr = io.StringIO()
    session = ExecutionSession(base_url="ws://runner.test", connector=connector)

    async def close_soon():
        await asyncio.sleep(0.05)
        await connector.socket.close()

    closer = asyncio.create_task(close_soon())
    code = await run_source("print(1)", "python", session, io.StringIO(), io.StringIO(), stderr)
    await closer

    assert code == 1
    assert stderr.getvalue() == "Connection closed before execution finished\n"


def test_pending_input_does_not_block_exit():
    read_fd, write_fd = os.pipe()
    stdin = os.fdopen(read_fd, "r")
    connector = FakeConnector(frames=[{"type": "input_request"}, {"type": "execution_timeout"}])
    result = {}

    def target():
        session = ExecutionSession(base_url="ws://runner.test", connector=connector)
        result["code"] = asyncio.run(
            run_source("input()", "python", session, stdin, io.StringIO(), io.StringIO())
        )

    worker = threading.Thread(target=target, daemon=True)
    try:
        worker.start()
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert result["code"] == 1
    finally:
        os.close(write_fd)
        worker.join(timeout=5)
        for thread in threading.enumerate():
            if thread.name == "stdin-reader":
                thread.join(timeout=5)
        stdin.close()

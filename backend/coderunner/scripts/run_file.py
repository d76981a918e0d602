import argparse, asyncio, logging, sys, threading
from pathlib import Path

from coderunner.client.session import ExecutionSession
from coderunner.core.logging import setup_logging
from coderunner.schemas.enums import OutputKind

LANGUAGES_BY_SUFFIX = {
    ".py": "python",
    ".java": "java",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".c": "c",
    ".js": "javascript",
}


def infer_language(path: Path) -> str:
    try:
        return LANGUAGES_BY_SUFFIX[path.suffix.lower()]
    except KeyError:
        raise ValueError(f"cannot infer language for {path.name}, pass --language")


class LineReader:
    """Reads stdin on a daemon thread; a pending read never holds up shutdown."""

    def __init__(self, stream):
        self.stream = stream
        self.lines: asyncio.Queue[str] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._thread: threading.Thread | None = None

    def _pump(self):
        while True:
            line = self.stream.readline()
            try:
                self._loop.call_soon_threadsafe(self.lines.put_nowait, line)
            except RuntimeError:
                # event loop already closed
                return
            if not line:
                return

    async def readline(self) -> str:
        if self._thread is None:
            self._thread = threading.Thread(target=self._pump, name="stdin-reader", daemon=True)
            self._thread.start()
        return await self.lines.get()


async def run_source(
    source: str,
    language: str,
    session: ExecutionSession,
    stdin=None,
    stdout=None,
    stderr=None,
) -> int:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    reader = LineReader(stdin)
    done = asyncio.Event()
    failed = False
    succeeded = False
    pending: set[asyncio.Task] = set()

    def on_output(kind, data):
        stream = stderr if kind == OutputKind.error else stdout
        stream.write(data)
        stream.flush()

    def on_error(message):
        nonlocal failed
        failed = True
        stderr.write(message + "\n")
        stderr.flush()
        done.set()

    def on_success():
        nonlocal succeeded
        succeeded = True
        done.set()

    async def relay_input():
        line = await reader.readline()
        await session.send_input(line.rstrip("\n"))

    def on_input_request():
        task = asyncio.create_task(relay_input())
        pending.add(task)
        task.add_done_callback(pending.discard)

    session.on("output", on_output)
    session.on("error", on_error)
    session.on("success", on_success)
    session.on("disconnect", done.set)
    session.on("input_request", on_input_request)

    async with session:
        try:
            if not await session.run(source, language):
                return 1
            await done.wait()
        except asyncio.CancelledError:
            await session.stop()
            raise
        finally:
            for task in pending:
                task.cancel()
    if not succeeded and not failed:
        stderr.write("Connection closed before execution finished\n")
        stderr.flush()
    return 0 if succeeded and not failed else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="code-runner", description="Run a source file on a code-runner server"
    )
    parser.add_argument("path", type=Path)
    parser.add_argument("-l", "--language")
    parser.add_argument("--url", help="socket base url, e.g. ws://localhost:24650")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)
    try:
        language = args.language or infer_language(args.path)
        source = args.path.read_text(encoding="utf-8")
    except (OSError, ValueError) as e:
        parser.error(str(e))

    session = ExecutionSession(base_url=args.url)
    try:
        return asyncio.run(run_source(source, language, session))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

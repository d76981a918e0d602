import asyncio, codecs, logging, os, re, shutil, tempfile, time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from coderunner.core.config import Settings, get_settings
from coderunner.core.errors import CommandTimeoutError, QueueFullError, UnsupportedLanguageError
from coderunner.schemas.enums import MessageType, RunStatus, TerminationReason
from coderunner.schemas.messages import ServerMessage
from coderunner.services.history import RunHistory
from coderunner.services.limiter import ExecutionLimiter
from coderunner.services.toolchains import INPUT_MARKER, PreparedProgram, Toolchain, get_toolchain

logger = logging.getLogger(__name__)

SUCCESS_BANNER = "=== Code Execution Successful ===\n"
ITERATION_NOTICE = "[Execution limit reached:"
READ_CHUNK = 4096

ERROR_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        # Java
        r"Exception in thread",
        r"\.java:\d+: error:",
        r"cannot find symbol",
        r"class, interface, or enum expected",
        # Python
        r"Traceback \(most recent call last\):",
        r"SyntaxError:",
        r"IndentationError:",
        r"NameError:",
        r"TypeError:",
        r"ValueError:",
        r"AttributeError:",
        r"KeyError:",
        r"IndexError:",
        r"ZeroDivisionError:",
        r"ImportError:",
        r"ModuleNotFoundError:",
        # C / C++
        r"error:",
        r"fatal error:",
        r"undefined reference to",
        r"Segmentation fault",
        r"core dumped",
        # JavaScript
        r"ReferenceError:",
        r"RangeError:",
        # general
        r"panic:",
        r"FATAL:",
        r"compilation terminated",
    )
]

Sender = Callable[[ServerMessage], Awaitable[bool]]
Disconnector = Callable[[], Awaitable[None]]


def is_error_output(text: str) -> bool:
    return any(p.search(text) for p in ERROR_PATTERNS)


def partial_marker_length(text: str, marker: str = INPUT_MARKER) -> int:
    """Length of the longest suffix of ``text`` that could start ``marker``."""
    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if marker.startswith(text[-size:]):
            return size
    return 0


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


async def run_command(cmd: list[str], cwd: Path, timeout: float) -> CommandResult:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        raise CommandTimeoutError(f"{Path(cmd[0]).name} timed out after {timeout:g}s")
    except asyncio.CancelledError:
        _kill(proc)
        raise
    return CommandResult(
        proc.returncode,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )


def _kill(proc):
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class ExecutionRunner:
    def __init__(
        self,
        client_id: str,
        send: Sender,
        disconnect: Disconnector,
        limiter: ExecutionLimiter,
        settings: Settings | None = None,
        history: RunHistory | None = None,
        temp_dirs: set | None = None,
    ):
        self.client_id = client_id
        self._send = send
        self._disconnect = disconnect
        self.limiter = limiter
        self.settings = settings or get_settings()
        self.history = history
        self.temp_dirs = temp_dirs if temp_dirs is not None else set()

        self.process: asyncio.subprocess.Process | None = None
        self.workdir: Path | None = None
        self.is_running = False
        self.termination: TerminationReason | None = None
        self.output_lines = 0
        self.run_count = 0
        self.inputs: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._disconnect_after = False
        self._language = ""
        self._started = 0.0

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def send(self, type: MessageType, **fields) -> bool:
        return await self._send(ServerMessage(type=type.value, **fields))

    # commands from the client

    async def start(self, code: str | None, language: str | None) -> asyncio.Task:
        await self.stop()
        self._task = asyncio.create_task(self._execute(code or "", language or "python"))
        return self._task

    def provide_input(self, text):
        self.inputs.put_nowait("" if text is None else str(text))

    async def stop(self):
        task = self._task
        current = asyncio.current_task()
        proc = self.process
        if self.is_running:
            self.is_running = False
            self.termination = TerminationReason.user_stop
            if proc is not None and proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(proc.wait(), self.settings.STOP_GRACE_S)
                except asyncio.TimeoutError:
                    _kill(proc)
                    await proc.wait()
        elif proc is None and task is not None and task is not current and not task.done():
            # still queued or compiling
            task.cancel()
        if task is not None and task is not current:
            await asyncio.wait([task])

    # execution

    async def _execute(self, code: str, language: str):
        if not code.strip():
            await self.send(MessageType.error, message="No code provided")
            return
        if self.limiter.waiting >= self.settings.MAX_QUEUE_SIZE:
            await self.send(
                MessageType.error, message="Server is overloaded. Please try again later."
            )
            return
        try:
            await self.limiter.acquire()
        except QueueFullError:
            await self.send(
                MessageType.error, message="Server is overloaded. Please try again later."
            )
            return

        self._disconnect_after = False
        try:
            self.run_count += 1
            if self.run_count > self.settings.MAX_RUNS_PER_CONNECTION:
                await self.send(MessageType.error, message="Rate limit exceeded. Please reconnect.")
                return
            try:
                toolchain = get_toolchain(language, self.settings)
            except UnsupportedLanguageError as e:
                await self.send(MessageType.error, message=str(e))
                return
            logger.info(
                "executing %s code", toolchain.name, extra={"client_id": self.client_id}
            )
            await self._compile_and_run(toolchain, code)
        except Exception as e:
            logger.exception("execution failed", extra={"client_id": self.client_id})
            await self.send(MessageType.error, message=f"Execution failed: {e}")
            await self.send(MessageType.execution_complete, exit_code=1)
            self._disconnect_after = True
        finally:
            self.limiter.release()
            await self.cleanup()
        if self._disconnect_after:
            await self._disconnect()

    async def _compile_and_run(self, toolchain: Toolchain, code: str):
        self._language = toolchain.name
        self._started = time.monotonic()
        self.workdir = Path(tempfile.mkdtemp(prefix=f"{toolchain.name}-exec-"))
        self.temp_dirs.add(self.workdir)
        program = toolchain.prepare(code, self.workdir)

        try:
            if program.check:
                try:
                    result = await run_command(program.check, self.workdir, program.check_timeout)
                except CommandTimeoutError as e:
                    result = CommandResult(1, "", str(e))
                if result.returncode != 0:
                    await self._compilation_failed(toolchain, program, result)
                    return
                if program.compiled_notice:
                    await self.send(MessageType.output, data=program.compiled_notice)
            await self._run_program(program)
        except OSError as e:
            logger.warning(
                "%s toolchain unavailable: %s", toolchain.label, e,
                extra={"client_id": self.client_id},
            )
            await self.send(MessageType.error, message=f"{toolchain.label} execution failed: {e}")
            await self.send(MessageType.execution_complete, exit_code=1)
            await self._record(RunStatus.failed, 1)
            self._disconnect_after = True

    async def _compilation_failed(self, toolchain, program: PreparedProgram, result: CommandResult):
        logger.info(
            "%s compilation failed", toolchain.label, extra={"client_id": self.client_id}
        )
        details = program.clean_error(result.stderr or result.stdout)
        await self.send(MessageType.error_output, data=f"{program.failure_label}:\n{details}")
        await self.send(MessageType.compilation_error, message="Compilation failed")
        await self.send(MessageType.execution_complete, exit_code=1)
        await self._record(RunStatus.compilation_failed, 1)
        self._disconnect_after = True

    async def _run_program(self, program: PreparedProgram):
        env = {
            **os.environ,
            "LANG": "en_US.UTF-8",
            "LC_ALL": "en_US.UTF-8",
            "PYTHONUNBUFFERED": "1",
        }
        proc = await asyncio.create_subprocess_exec(
            *program.run,
            cwd=self.workdir,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        self.process = proc
        self.is_running = True
        self.output_lines = 0
        self.termination = None

        feeder = asyncio.create_task(self._feed_input(proc))
        pumps = [
            asyncio.create_task(self._pump_stdout(proc)),
            asyncio.create_task(self._pump_stderr(proc, program)),
        ]
        try:
            _, pending = await asyncio.wait(pumps, timeout=self.settings.EXECUTION_TIMEOUT_S)
            if pending:
                await self._time_limit_reached(proc)
                await asyncio.gather(*pending)
            returncode = await proc.wait()
        finally:
            for task in (feeder, *pumps):
                task.cancel()
            _kill(proc)

        await self._finish(returncode)

    async def _finish(self, returncode: int):
        if self.is_running:
            self.is_running = False
            if returncode != 0:
                logger.info(
                    "execution failed (exit: %s)", returncode,
                    extra={"client_id": self.client_id},
                )
                await self.send(
                    MessageType.runtime_error,
                    message=f"Process exited with error code {returncode}",
                )
                await self.send(MessageType.execution_complete, exit_code=returncode)
                await self._record(RunStatus.failed, returncode)
                self._disconnect_after = True
            else:
                logger.info("execution completed", extra={"client_id": self.client_id})
                await self.send(MessageType.success, data=SUCCESS_BANNER)
                await self.send(MessageType.execution_complete, exit_code=0)
                await self._record(RunStatus.succeeded, 0)
        elif self.termination is TerminationReason.error:
            await self.send(MessageType.runtime_error, message="Execution failed due to error")
            await self.send(MessageType.execution_complete, exit_code=1)
            await self._record(RunStatus.failed, returncode)
            self._disconnect_after = True
        elif self.termination is TerminationReason.user_stop:
            await self.send(MessageType.execution_complete, exit_code=0)
            await self._record(RunStatus.killed, returncode)
        else:
            # time, output or iteration limit; already reported
            await self._record(RunStatus.killed, returncode)

    def _claim(self, reason: TerminationReason) -> bool:
        if not self.is_running:
            return False
        self.is_running = False
        self.termination = reason
        return True

    async def _terminated_by_limit(self, notice: str):
        await self.send(MessageType.warning, data=notice)
        await self.send(MessageType.success, data=SUCCESS_BANNER)
        await self.send(MessageType.execution_complete, exit_code=0)

    async def _time_limit_reached(self, proc):
        if not self._claim(TerminationReason.timeout):
            return
        _kill(proc)
        logger.info("time limit reached", extra={"client_id": self.client_id})
        limit = self.settings.EXECUTION_TIMEOUT_S
        label = "1 minute" if limit == 60 else f"{limit:g} second"
        await self._terminated_by_limit(
            f"\n[Execution automatically terminated: {label} time limit reached]\n"
        )

    async def _forward(self, text: str, type: MessageType, proc) -> bool:
        limit = self.settings.MAX_OUTPUT_LINES
        if self.output_lines > limit:
            return False
        total = self.output_lines + text.count("\n")
        if total <= limit:
            self.output_lines = total
            if text:
                await self.send(type, data=text)
            return True

        allowed = limit - self.output_lines
        if allowed > 0:
            await self.send(type, data="\n".join(text.split("\n")[: allowed + 1]))
        self.output_lines = limit + 1
        if self._claim(TerminationReason.output_limit):
            _kill(proc)
            await self._terminated_by_limit(
                "\n[Execution automatically terminated: Output limit exceeded "
                f"(max {limit} lines)]\n"
            )
        return False

    async def _pump_stdout(self, proc):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        carry = ""
        while True:
            chunk = await proc.stdout.read(READ_CHUNK)
            text = carry + decoder.decode(chunk, final=not chunk)
            carry = ""
            while INPUT_MARKER in text:
                before, text = text.split(INPUT_MARKER, 1)
                if not await self._forward(before, MessageType.output, proc):
                    break
                if self.is_running:
                    await self.send(MessageType.input_request)
            if chunk:
                keep = partial_marker_length(text)
                if keep:
                    text, carry = text[:-keep], text[-keep:]
            if text and self.output_lines <= self.settings.MAX_OUTPUT_LINES:
                await self._forward(text, MessageType.output, proc)
            if not chunk:
                return

    async def _pump_stderr(self, proc, program: PreparedProgram):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await proc.stderr.read(READ_CHUNK)
            if chunk:
                # remap whole lines only
                head, sep, pending = (pending + decoder.decode(chunk)).rpartition("\n")
                text = head + sep
            else:
                text, pending = pending + decoder.decode(b"", final=True), ""
            if text:
                await self._handle_stderr(program.clean_error(text), proc)
            if not chunk:
                return

    async def _handle_stderr(self, text: str, proc):
        if self.termination is TerminationReason.error:
            await self.send(MessageType.error_output, data=text)
        elif ITERATION_NOTICE in text or "iterations exceeded" in text:
            await self.send(MessageType.warning, data=text)
            if self._claim(TerminationReason.iteration_limit):
                _kill(proc)
                await self.send(MessageType.success, data=SUCCESS_BANNER)
                await self.send(MessageType.execution_complete, exit_code=0)
        elif self.is_running and is_error_output(text):
            self._claim(TerminationReason.error)
            _kill(proc)
            await self.send(MessageType.error_output, data=text)
        else:
            await self._forward(text, MessageType.error_output, proc)

    async def _feed_input(self, proc):
        while True:
            line = await self.inputs.get()
            if proc.stdin is None or proc.stdin.is_closing() or proc.returncode is not None:
                return
            proc.stdin.write((line + "\n").encode("utf-8"))
            try:
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                return

    async def _record(self, status: RunStatus, exit_code: int | None):
        if self.history is None:
            return
        wall_ms = int((time.monotonic() - self._started) * 1000)
        await self.history.record(self.client_id, self._language, status, exit_code, wall_ms)

    async def cleanup(self):
        self.inputs = asyncio.Queue()
        self.process = None
        self.is_running = False
        self.output_lines = 0
        self.termination = None
        workdir, self.workdir = self.workdir, None
        if workdir is not None:
            await asyncio.to_thread(shutil.rmtree, workdir, True)
            self.temp_dirs.discard(workdir)

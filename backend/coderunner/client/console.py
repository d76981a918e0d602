import time
from dataclasses import dataclass, field

from coderunner.client.session import ExecutionSession
from coderunner.schemas.enums import OutputKind

COMPLETED = "✓ Execution completed successfully"
WAITING = "⌨️ Waiting for input..."
STOPPED = "⏹️ Execution stopped by user"


@dataclass
class OutputLine:
    kind: OutputKind
    text: str
    timestamp: float = field(default_factory=time.time)


class ExecutionConsole:
    """Output lines of one editor, fed by its own session."""

    def __init__(self, session: ExecutionSession | None = None):
        self.session = session or ExecutionSession()
        self.lines: list[OutputLine] = []
        self.waiting_for_input = False
        self.session.on("output", self._on_output)
        self.session.on("input_request", self._on_input_request)
        self.session.on("success", self._on_success)
        self.session.on("error", self._on_error)
        self.session.on("stop", self._on_stop)

    @property
    def running(self) -> bool:
        return self.session.running

    def add(self, kind: OutputKind, text: str):
        self.lines.append(OutputLine(kind, text))

    def clear(self):
        self.lines = []
        self.waiting_for_input = False

    def texts(self, kind: OutputKind | None = None) -> list[str]:
        return [line.text for line in self.lines if kind is None or line.kind == kind]

    async def execute(self, code: str, language: str = "python") -> bool:
        if self.session.running:
            return False
        if code and code.strip():
            self.clear()
            self.add(OutputKind.info, f"🚀 Executing {language.upper()} code...")
        return await self.session.run(code, language)

    async def stop(self) -> bool:
        self.waiting_for_input = False
        return await self.session.stop()

    async def send_input(self, text) -> bool:
        delivered = await self.session.send_input(text)
        if delivered:
            self.waiting_for_input = False
            self.add(OutputKind.input, f"> {text}")
        return delivered

    async def close(self):
        await self.session.close()

    def _on_output(self, kind: OutputKind, data: str):
        self.add(kind, data[:-1] if data.endswith("\n") else data)

    def _on_input_request(self):
        self.waiting_for_input = True
        self.add(OutputKind.info, WAITING)

    def _on_success(self):
        self.add(OutputKind.success, COMPLETED)

    def _on_error(self, message: str):
        self.add(OutputKind.error, message)

    def _on_stop(self):
        self.add(OutputKind.warning, STOPPED)

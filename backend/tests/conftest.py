import asyncio, json
import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.protocol import State

from coderunner.client.session import ExecutionSession

_CLOSED = object()
_BROKEN = object()


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, frames=(), on_send=None):
        self.state = State.OPEN
        self.sent: list[dict] = []
        self.close_calls = 0
        self.on_send = on_send
        self._incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.feed(frame)

    def feed(self, frame):
        if not isinstance(frame, (str, bytes)):
            frame = json.dumps(frame)
        self._incoming.put_nowait(frame)

    def break_connection(self):
        self._incoming.put_nowait(_BROKEN)

    def frames(self, type: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == type]

    async def send(self, data):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        frame = json.loads(data)
        self.sent.append(frame)
        if self.on_send is not None:
            self.on_send(self, frame)

    async def close(self):
        self.close_calls += 1
        self.state = State.CLOSED
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _BROKEN:
            self.state = State.CLOSED
            raise ConnectionClosedError(None, None)
        return item


class FakeConnector:
    def __init__(self, frames=(), on_send=None):
        self.frames = frames
        self.on_send = on_send
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url):
        self.urls.append(url)
        ws = FakeSocket(self.frames, self.on_send)
        self.sockets.append(ws)
        return ws

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


class EventLog:
    def __init__(self, session: ExecutionSession):
        self.events: list[tuple] = []
        for name in ("run_start", "output", "input_request", "success", "error", "stop", "disconnect"):
            session.on(name, lambda *args, _name=name: self.events.append((_name, *args)))

    def named(self, name: str) -> list[tuple]:
        return [e for e in self.events if e[0] == name]

    def errors(self) -> list[str]:
        return [e[1] for e in self.named("error")]


async def settle(delay: float = 0.02):
    await asyncio.sleep(delay)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def session(connector):
    s = ExecutionSession(base_url="ws://runner.test", connector=connector, stop_cooldown=0.05)
    yield s
    await s.close()


@pytest.fixture
def events(session):
    return EventLog(session)

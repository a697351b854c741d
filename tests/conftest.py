import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from src.parley.infrastructure.conversation_store import InMemoryConversationStore  # noqa: E402
from src.parley.infrastructure.conversation_store_sql import SqlConversationStore  # noqa: E402
from src.parley.services.context_builder import ContextBuilder  # noqa: E402
from src.parley.services.stream_coordinator import StreamCoordinator  # noqa: E402


class FakeClock:
    """Deterministic UTC clock; every call moves forward by ``step``."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class ScriptedProvider:
    """Completion provider double that replays a fixed reply.

    ``fail_at`` makes the stream raise ``error`` before delivering the chunk at
    that index (0 fails on the first pull); ``complete`` raises ``error``
    whenever it is set.
    """

    model = "test-model"

    def __init__(
        self,
        reply: str = "Hello there!",
        chunks: Optional[List[str]] = None,
        error: Optional[BaseException] = None,
        fail_at: Optional[int] = None,
    ) -> None:
        self.reply = reply
        self.chunks = chunks if chunks is not None else ["Hel", "lo ", "there", "!"]
        self.error = error
        self.fail_at = fail_at
        self.complete_calls: List[List[Dict[str, str]]] = []
        self.stream_calls: List[List[Dict[str, str]]] = []
        self.pulled = 0
        self.aborted = False

    def complete(self, messages):
        self.complete_calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply

    def stream(self, messages):
        self.stream_calls.append(messages)
        return self._deltas()

    def _deltas(self):
        try:
            for index, chunk in enumerate(self.chunks):
                if self.error is not None and self.fail_at == index:
                    raise self.error
                self.pulled += 1
                yield chunk
            if self.error is not None and self.fail_at is not None and self.fail_at >= len(self.chunks):
                raise self.error
        except GeneratorExit:
            self.aborted = True
            raise


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryConversationStore()
    return SqlConversationStore.from_url("sqlite:///:memory:")


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def coordinator(store, provider, clock):
    builder = ContextBuilder(store, clock=clock)
    return StreamCoordinator(store, provider, context_builder=builder, clock=clock)

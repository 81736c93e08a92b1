# --- aura-stream ---
import json
import re
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, Optional, TypeVar

from starlette.concurrency import run_in_threadpool


T = TypeVar("T")

_SENTINEL = object()
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class _ThreadpoolIterator(AsyncIterator[T]):
    def __init__(self, it: Iterable[T]) -> None:
        self._iterator: Iterator[T] = iter(it)

    def __aiter__(self) -> "_ThreadpoolIterator[T]":
        return self

    async def __anext__(self) -> T:
        item = await run_in_threadpool(next, self._iterator, _SENTINEL)
        if item is _SENTINEL:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


def iter_in_threadpool(it: Iterable[T]) -> AsyncIterator[T]:
    """Pull a blocking iterable one item at a time without blocking the event loop."""
    return _ThreadpoolIterator(it)


def sse_event(data: str, event: Optional[str] = None) -> str:
    """Frame one server-sent event; each line of ``data`` becomes its own ``data:`` field."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    for line in _LINE_BREAK.split(data):
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def sse_json(payload: Dict[str, Any], event: Optional[str] = None) -> str:
    return sse_event(json.dumps(payload), event=event)

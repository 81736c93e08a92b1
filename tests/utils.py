from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from src.aura_chat.security.auth import User, create_access_token


def auth_headers(user_id: str, *, email: Optional[str] = None) -> Dict[str, str]:
    token = create_access_token(User(user_id=user_id, email=email, name=user_id))
    return {"Authorization": f"Bearer {token}"}


def chunk(text: str) -> Dict[str, Any]:
    """A streamed provider chunk carrying ``text``."""
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class FakeStream:
    def __init__(self, chunks: List[Any]) -> None:
        self.chunks = list(chunks)
        self.closed = False
        self.consumed = 0

    def __iter__(self):
        for item in self.chunks:
            if self.closed:
                return
            if isinstance(item, Exception):
                raise item
            self.consumed += 1
            yield item

    def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Scripted provider: replies are consumed in order, counts are word counts."""

    def __init__(self) -> None:
        self.replies: List[List[Any]] = []
        self.opened: List[List[Dict[str, Any]]] = []
        self.streams: List[FakeStream] = []
        self.count_calls: List[str] = []
        self.open_error: Optional[Exception] = None
        self.count_error: Optional[Exception] = None

    def reply_with(self, *texts: str) -> "FakeProvider":
        self.replies.append([chunk(t) for t in texts])
        return self

    def reply_with_chunks(self, chunks: List[Any]) -> "FakeProvider":
        self.replies.append(list(chunks))
        return self

    def open_stream(self, contents, model):
        self.opened.append(contents)
        if self.open_error is not None:
            raise self.open_error
        chunks = self.replies.pop(0) if self.replies else [chunk("ok")]
        stream = FakeStream(chunks)
        self.streams.append(stream)
        return stream

    def count_tokens(self, text, model):
        self.count_calls.append(text)
        if self.count_error is not None:
            raise self.count_error
        return len(text.split())


def parse_sse(body: str) -> List[Tuple[str, str]]:
    """Split an event-stream body into (event, data) pairs."""
    events: List[Tuple[str, str]] = []
    for block in body.split("\n\n"):
        if not block:
            continue
        event = "message"
        data: List[str] = []
        for line in block.split("\n"):
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data.append(line[len("data: "):])
        events.append((event, "\n".join(data)))
    return events

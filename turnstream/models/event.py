"""Turn progress events shared by every agent backend and the turn service."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import ClassVar, Union

from turnstream.models.usage import Usage


@dataclass(frozen=True)
class ThreadStarted:
    """The backend reported a new or changed resumable session id."""

    type: ClassVar[str] = "thread.started"

    thread_id: str

    def to_dict(self) -> dict:
        return {"type": self.type, "thread_id": self.thread_id}


@dataclass(frozen=True)
class TurnStarted:
    type: ClassVar[str] = "turn.started"

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class TurnCompleted:
    type: ClassVar[str] = "turn.completed"

    usage: Usage | None = None

    def to_dict(self) -> dict:
        return {"type": self.type, "usage": self.usage.to_dict() if self.usage else None}


@dataclass(frozen=True)
class TurnFailed:
    type: ClassVar[str] = "turn.failed"

    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "error": {"message": self.message}}


@dataclass(frozen=True)
class StreamError:
    type: ClassVar[str] = "error"

    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message}


@dataclass(frozen=True)
class _ItemEvent:
    item: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Snapshot the item so later mutation by the producer is not observed.
        object.__setattr__(self, "item", copy.deepcopy(self.item))

    @property
    def item_id(self) -> str | None:
        return self.item.get("id")

    @property
    def item_type(self) -> str:
        return self.item.get("type", "")

    def to_dict(self) -> dict:
        return {"type": self.type, "item": copy.deepcopy(self.item)}  # type: ignore[attr-defined]


@dataclass(frozen=True)
class ItemStarted(_ItemEvent):
    type: ClassVar[str] = "item.started"


@dataclass(frozen=True)
class ItemUpdated(_ItemEvent):
    type: ClassVar[str] = "item.updated"


@dataclass(frozen=True)
class ItemCompleted(_ItemEvent):
    type: ClassVar[str] = "item.completed"


@dataclass(frozen=True)
class TextDelta:
    type: ClassVar[str] = "response.output_text.delta"

    delta: str

    def to_dict(self) -> dict:
        return {"type": self.type, "delta": self.delta}


@dataclass(frozen=True)
class ResponseCompleted:
    type: ClassVar[str] = "response.completed"

    text: str = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "output": [{"text": self.text}]}


TurnEvent = Union[
    ThreadStarted,
    TurnStarted,
    TurnCompleted,
    TurnFailed,
    StreamError,
    ItemStarted,
    ItemUpdated,
    ItemCompleted,
    TextDelta,
    ResponseCompleted,
]

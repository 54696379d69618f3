from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    TEXT = "text"
    ANNOTATION = "annotation"
    DATA = "data"
    REASONING = "reasoning"
    ERROR = "error"
    FINISH = "finish"


@dataclass
class StreamEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)
    seq: int = 0

    @property
    def persist(self) -> bool:
        return self.event is EventType.ANNOTATION

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"

    def to_sse(self) -> dict[str, str]:
        return {
            "event": self.event.value,
            "id": str(self.seq),
            "data": json.dumps(self.data, ensure_ascii=False),
        }

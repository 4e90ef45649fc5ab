from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache

FIFO_SUFFIX = ".fifo"
MAX_QUEUE_NAME_LENGTH = 80

# SQS allows alphanumerics, hyphens and underscores.
_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def to_valid_queue_name(name: str, is_fifo: bool = False) -> str:
    base = str(name or "")
    if base.lower().endswith(FIFO_SUFFIX):
        base = base[: -len(FIFO_SUFFIX)]

    base = _INVALID_CHARS.sub("-", base)
    if is_fifo:
        return base[: MAX_QUEUE_NAME_LENGTH - len(FIFO_SUFFIX)] + FIFO_SUFFIX
    return base[:MAX_QUEUE_NAME_LENGTH]


@dataclass(frozen=True, slots=True)
class QueueName:
    """Logical queue name plus the name actually used on AWS."""

    queue_name: str
    aws_queue_name: str = field(compare=False)
    is_fifo: bool = field(default=False, compare=False)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueueName):
            return NotImplemented
        return self.queue_name.lower() == other.queue_name.lower()

    def __hash__(self) -> int:
        return hash(self.queue_name.lower())

    def __str__(self) -> str:
        return self.queue_name


@lru_cache(maxsize=1024)
def get_queue_name(name: str, is_fifo: bool = False) -> QueueName:
    is_fifo = bool(is_fifo) or str(name).lower().endswith(FIFO_SUFFIX)
    return QueueName(
        queue_name=name,
        aws_queue_name=to_valid_queue_name(name, is_fifo),
        is_fifo=is_fifo,
    )

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class ConditionalUpdateResult(Generic[T]):
    """Outcome of an atomic conditional write at the storage boundary.

    ``matched`` is true only when this call's filter matched and its write
    was applied; ``document`` is then the record as written. When the filter
    did not match, ``document`` is ``None``.
    """

    matched: bool
    document: T | None = None

    @classmethod
    def miss(cls) -> ConditionalUpdateResult[T]:
        return cls(matched=False, document=None)

    @classmethod
    def hit(cls, document: T) -> ConditionalUpdateResult[T]:
        return cls(matched=True, document=document)

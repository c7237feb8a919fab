from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

from psycopg import pq
from psycopg.adapt import PyFormat, Transformer

if TYPE_CHECKING:
    from psycopg.abc import AdaptContext

Value = Optional[bytes]


class BoundParameters(NamedTuple):
    """Positional parameters in their wire representation"""

    types: Tuple[int, ...]
    values: Tuple[Value, ...]
    lengths: Tuple[int, ...]
    formats: Tuple[int, ...]

    @classmethod
    def empty(cls) -> BoundParameters:
        return cls((), (), (), ())

    def __len__(self) -> int:
        return len(self.values)

    @property
    def size(self) -> int:
        return sum(self.lengths)


def bind(
    context: Optional[AdaptContext], args: Sequence[Any]
) -> BoundParameters:
    """Convert each argument to its wire type, bytes, length and format.

    Parameters are always sent in text format. ``None`` is sent as SQL NULL.
    """
    if not args:
        return BoundParameters.empty()

    transformer = Transformer(context)
    dumped = transformer.dump_sequence(
        list(args), [PyFormat.TEXT] * len(args)
    )
    values: List[Value] = [
        None if value is None else bytes(value) for value in dumped
    ]
    return BoundParameters(
        types=tuple(transformer.types or (0,) * len(values)),
        values=tuple(values),
        lengths=tuple(0 if value is None else len(value) for value in values),
        formats=(int(pq.Format.TEXT),) * len(values),
    )


def loader(context: Optional[AdaptContext]) -> Transformer:
    """A transformer used to decode result rows"""
    return Transformer(context)

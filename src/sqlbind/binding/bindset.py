"""
Bind sets: the ordered parameter or result vector of one statement.
"""
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from sqlbind.binding.binders import TypeBinder
from sqlbind.exceptions import BindError, BindIndexOutOfRange
from sqlbind.types import as_var
from sqlbind.wire.descriptor import WireDescriptor

__all__ = ['BindSet']

logger = logging.getLogger(__name__)


class BindSet:
    """Fixed-size sequence of (binder, descriptor) slots.

    The size comes from the server (parameter or column count) and never
    changes; the slot position is the parameter/column position.
    """

    def __init__(self, size: int):
        self._descriptors = [WireDescriptor() for _ in range(size)]
        self._binders: list[TypeBinder | None] = [None] * size

    def __len__(self) -> int:
        return len(self._binders)

    def __repr__(self):
        return f'BindSet({self._binders!r})'

    @property
    def descriptors(self) -> Sequence[WireDescriptor]:
        return self._descriptors

    @property
    def binders(self) -> Sequence[TypeBinder | None]:
        return tuple(self._binders)

    @property
    def is_bound(self) -> bool:
        return all(binder is not None for binder in self._binders)

    @property
    def targets(self) -> tuple:
        return tuple(binder.target if binder else None for binder in self._binders)

    def bind(self, index: int, target: Any) -> TypeBinder:
        """Bind one value or `Var` to the slot at `index`.

        Raises
            BindIndexOutOfRange: index outside the slot range
        """
        if not 0 <= index < len(self._binders):
            raise BindIndexOutOfRange(f'Invalid binding index {index} for {len(self)} slots')
        binder = TypeBinder(as_var(target), self._descriptors[index])
        self._binders[index] = binder
        return binder

    def bind_many(self, *targets: Any) -> None:
        """Bind all slots positionally from index 0.

        Nothing is bound unless every target converts and the count matches.

        Raises
            BindIndexOutOfRange: len(targets) differs from the slot count
        """
        if len(targets) != len(self._binders):
            raise BindIndexOutOfRange(f'Expected {len(self)} bindings, got {len(targets)}')
        binders = [TypeBinder(as_var(target), descriptor)
                   for target, descriptor in zip(targets, self._descriptors)]
        self._binders[:] = binders

    def _bound(self) -> list[TypeBinder]:
        for index, binder in enumerate(self._binders):
            if binder is None:
                raise BindError(f'Slot {index} of {len(self)} has no binding')
        return self._binders

    def pre_execute(self) -> None:
        for binder in self._bound():
            binder.prepare_for_write()

    def post_execute(self) -> None:
        for binder in self._bound():
            binder.post_execute()

    def pre_fetch(self) -> None:
        for binder in self._bound():
            binder.prepare_for_read()

    def collect_refetch_indices(self) -> list[int]:
        """Indices (ascending) whose value needs a column refetch."""
        return [index for index, binder in enumerate(self._bound()) if binder.needs_refetch()]

    def finalize_refetch(self, indices: Iterable[int]) -> None:
        for index in indices:
            self._binders[index].finalize_refetch()

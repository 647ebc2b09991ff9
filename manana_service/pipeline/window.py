"""Reference windows: which completed pages are shown to the model as context."""

from __future__ import annotations

from collections.abc import Callable, Sequence


def build_window(completed_in_order: Sequence[int], max_references: int) -> list[int]:
    """Return the last ``max_references`` completed ordinals, in completion order."""
    if max_references <= 0:
        return []
    return list(completed_in_order[-max_references:])


def rerun_window(target: int, max_references: int, has_result: Callable[[int], bool]) -> list[int]:
    """Walk backwards from ``target - 1`` collecting ordinals that have a result.

    Returned in ascending ordinal order, at most ``max_references`` long.
    """
    refs: list[int] = []
    ordinal = target - 1
    while ordinal >= 0 and len(refs) < max_references:
        if has_result(ordinal):
            refs.append(ordinal)
        ordinal -= 1
    refs.reverse()
    return refs

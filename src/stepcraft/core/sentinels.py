from __future__ import annotations

from typing import Any


class _NoValSentinel:
    """Shared sentinel to represent an absent value (NO_VAL).

    Single-instanced so that ``None`` stays usable as a real default or tool
    result. Use ``is NO_VAL`` to test for absence.
    """
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "NO_VAL"

    def __reduce__(self) -> str:  # pragma: no cover - keeps identity across copy/pickle
        return "NO_VAL"


NO_VAL: Any = _NoValSentinel()

__all__ = ["NO_VAL"]

from __future__ import annotations

from pyenvsync.engine.resolution.tie_break.tie_break_strategy import TieBreakStrategy
from pyenvsync.helper.strategy_loader import load_strategies

ENTRYPOINT_GROUP = "pyenvsync.tie_break"
PACKAGE_NAME = "pyenvsync.engine.resolution.tie_break"


def available_tie_breaks() -> dict[str, TieBreakStrategy]:
    return load_strategies(base=TieBreakStrategy, package_name=PACKAGE_NAME, entrypoint_group=ENTRYPOINT_GROUP)


def load_tie_break(name: str) -> TieBreakStrategy:
    """
    Returns the tie-break strategy registered under `name`.

    Raises:
        ValueError: If no built-in or plugin strategy has that name.
    """
    strategies = available_tie_breaks()
    try:
        return strategies[name]
    except KeyError:
        raise ValueError(
            f"unknown tie-break strategy {name!r}; available: {', '.join(strategies)}") from None

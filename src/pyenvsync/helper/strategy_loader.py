from __future__ import annotations

import importlib
import inspect
import pkgutil
from collections.abc import Iterable, Mapping
from importlib.metadata import entry_points
from typing import Any


def _strategy_name(cls: type) -> str:
    return getattr(cls, "name", cls.__name__)


def _concrete_subclasses(objects: Iterable[Any], base: type) -> list[type]:
    return [
        obj for obj in objects
        if inspect.isclass(obj) and issubclass(obj, base) and obj is not base and not inspect.isabstract(obj)
    ]


def builtin_strategy_classes(base: type, package_name: str) -> list[type]:
    """
    Imports every module below `package_name` and returns the concrete
    subclasses of `base` defined or imported there.

    Args:
        base (type): The strategy base class.
        package_name (str): The dotted name of the package to walk.

    Returns:
        list[type]: The discovered classes, without duplicates.
    """
    package = importlib.import_module(package_name)
    found: dict[type, None] = {}
    for _finder, mod_name, _ispkg in pkgutil.walk_packages(package.__path__, package.__name__ + "."):
        module = importlib.import_module(mod_name)
        for cls in _concrete_subclasses(vars(module).values(), base):
            found[cls] = None
    return list(found)


def entrypoint_strategy_classes(base: type, group: str) -> list[type]:
    """
    Loads the classes published under an entry-point group by installed
    distributions, keeping only subclasses of `base`.
    """
    return _concrete_subclasses((ep.load() for ep in entry_points().select(group=group)), base)


def load_strategies(
        *,
        base: type,
        package_name: str,
        entrypoint_group: str,
        precedence_overrides: Mapping[str, int] | None = None) -> dict[str, Any]:
    """
    Discovers built-in and plugin strategies and instantiates them.

    Plugins are loaded after built-ins, so a plugin that reuses a built-in
    name replaces it. The returned mapping is ordered by precedence (lower
    first), then by name.

    Args:
        base (type): The strategy base class.
        package_name (str): Package holding the built-in strategies.
        entrypoint_group (str): Entry-point group for plugin strategies.
        precedence_overrides (Mapping[str, int] | None): Precedence values
            that replace a strategy's own `precedence` attribute.

    Returns:
        dict[str, Any]: Strategy name to strategy instance.
    """
    by_name: dict[str, type] = {}
    for cls in builtin_strategy_classes(base, package_name) + entrypoint_strategy_classes(base, entrypoint_group):
        by_name[_strategy_name(cls)] = cls

    def _precedence(name: str) -> int:
        if precedence_overrides and name in precedence_overrides:
            return precedence_overrides[name]
        return getattr(by_name[name], "precedence", 100)

    return {name: by_name[name]() for name in sorted(by_name, key=lambda n: (_precedence(n), n))}

"""Explicit registry of named alternative implementations."""

from __future__ import annotations

from typing import Any, Callable, Iterator, Mapping


class FunctionRegistry:
    """Map alternative names (as used in alternatives) to callables.

    Alternatives stay plain strings so combination names remain readable;
    the scheduler swaps a registered name for its callable when it builds
    the keyword arguments of a step.
    """

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._functions: dict[str, Callable[..., Any]] = {}
        for name, function in (functions or {}).items():
            self.register(name, function)

    def register(self, name: str | Callable[..., Any], function: Callable[..., Any] | None = None):
        """Register ``function`` under ``name``; usable as ``@registry.register("name")``."""
        if callable(name) and function is None:
            return self.register(name.__name__, name)
        if function is None:
            def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
                self.register(name, fn)
                return fn

            return decorator
        if not isinstance(name, str) or not name:
            raise ValueError("Registry names must be non-empty strings.")
        if not callable(function):
            raise ValueError(f"Registry entry `{name}` is not callable.")
        self._functions[name] = function
        return function

    def get(self, name: str) -> Callable[..., Any]:
        try:
            return self._functions[name]
        except KeyError:
            raise KeyError(f"No function registered under `{name}`.") from None

    def resolve(self, value: Any) -> Any:
        if isinstance(value, str) and value in self._functions:
            return self._functions[value]
        return value

    def names(self) -> list[str]:
        return list(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(self._functions)

    def __len__(self) -> int:
        return len(self._functions)


__all__ = ["FunctionRegistry"]

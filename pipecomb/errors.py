"""Exception types raised by the combinatorial pipeline runner."""

from __future__ import annotations

from typing import Any


class ConfigurationError(ValueError):
    """Invalid pipeline, alternatives, combination matrix or dataset names."""


class StepExecutionError(RuntimeError):
    """One dataset failed in a step function, or while being initiated."""

    def __init__(
        self,
        dataset: str,
        parameters: dict[str, Any],
        step: str,
        cause: BaseException,
        row: int | None = None,
        dump_path: str | None = None,
    ) -> None:
        self.dataset = dataset
        self.parameters = dict(parameters)
        self.step = step
        self.cause = cause
        self.row = row
        self.dump_path = dump_path
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        params = ", ".join(f"{key}={value}" for key, value in self.parameters.items()) or "(none)"
        message = (
            f"Error in dataset `{self.dataset}` with parameters:\n{params}\n"
            f"in step `{self.step}`:\n{type(self.cause).__name__}: {self.cause}"
        )
        if self.dump_path:
            message += f"\nCurrent variables dumped in {self.dump_path}"
        return message

    def __reduce__(self):
        return (
            self.__class__,
            (self.dataset, self.parameters, self.step, self.cause, self.row, self.dump_path),
        )


class PipelineRunError(RuntimeError):
    """One or more datasets failed during a parallel run."""

    def __init__(self, failures: dict[str, BaseException], partial: Any = None) -> None:
        self.failures = dict(failures)
        self.partial = partial
        lines = [f"{len(self.failures)} dataset(s) failed: {sorted(self.failures)}"]
        for name, exc in self.failures.items():
            lines.append(f"--- {name} ---\n{exc}")
        super().__init__("\n".join(lines))


__all__ = ["ConfigurationError", "StepExecutionError", "PipelineRunError"]

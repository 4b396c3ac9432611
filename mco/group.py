from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from .settings import settings


@dataclass
class Result:
    data: Any = None
    err: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.err is None


class GroupError(Exception):
    """One or more units of a batch failed. Every unit still ran."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors = list(errors)
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} of the batch failed: {detail}")


@runtime_checkable
class GroupRunner(Protocol):
    """Runs a batch of independent units of work and waits for all of them."""

    def run_diff_args(self, fn: Callable[[Any, Any], Any], shared: Any, args: Sequence[Any]) -> None:
        """Call ``fn(shared, arg)`` for every arg. Raises GroupError if any call raised."""
        ...

    def run_with_result(self, funcs: Sequence[Callable[..., Any]], *args: Any) -> list[Result]:
        """Call ``funcs[i](*args)`` for every i; ``result[i]`` belongs to ``funcs[i]``."""
        ...


def _capture(fn: Callable[..., Any], *args: Any) -> Result:
    try:
        return Result(data=fn(*args))
    except Exception as e:
        return Result(err=e)


def _raise_collected(results: Sequence[Result]) -> None:
    errors = [r.err for r in results if r.err is not None]
    if errors:
        raise GroupError(errors)


class ThreadGroupRunner:
    """Fan-out on a thread pool created for the batch and torn down after it.

    Units must not share mutable state unless they synchronize it themselves.
    """

    def __init__(self, max_workers: int | None = None):
        self.max_workers = max(1, int(max_workers or settings.max_concurrency))

    def _run(self, calls: list[tuple[Callable[..., Any], tuple[Any, ...]]]) -> list[Result]:
        results: list[Result] = [Result() for _ in calls]
        if not calls:
            return results

        def _slot(i: int, fn: Callable[..., Any], args: tuple[Any, ...]) -> None:
            # Each unit owns exactly one index, so the buffer needs no lock.
            results[i] = _capture(fn, *args)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(calls)), thread_name_prefix="mco-group") as pool:
            futures = [pool.submit(_slot, i, fn, args) for i, (fn, args) in enumerate(calls)]
            wait(futures)
        return results

    def run_diff_args(self, fn: Callable[[Any, Any], Any], shared: Any, args: Sequence[Any]) -> None:
        _raise_collected(self._run([(fn, (shared, a)) for a in args]))

    def run_with_result(self, funcs: Sequence[Callable[..., Any]], *args: Any) -> list[Result]:
        return self._run([(f, args) for f in funcs])


class SyncGroupRunner:
    """Same contract as ThreadGroupRunner, one unit after another, in order."""

    def run_diff_args(self, fn: Callable[[Any, Any], Any], shared: Any, args: Sequence[Any]) -> None:
        _raise_collected([_capture(fn, shared, a) for a in args])

    def run_with_result(self, funcs: Sequence[Callable[..., Any]], *args: Any) -> list[Result]:
        return [_capture(f, *args) for f in funcs]

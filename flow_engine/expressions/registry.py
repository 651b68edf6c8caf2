"""
Registry of named functions callable from expressions.

Every function carries a millisecond budget. Awaitable results are raced
against a timer; when the timer wins the function's abort signal is set,
the pending work is cancelled and FunctionBudgetExceeded is raised.
Synchronous functions cannot be interrupted, so they fail after the fact
when they overrun.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from flow_engine.core.errors import (
    ConfigurationError,
    FunctionBudgetExceeded,
    FunctionCallError,
)

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_MS = 50


@dataclass
class FunctionCallContext:
    """First argument handed to every registry function."""

    ctx: dict[str, Any]
    abort_signal: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def aborted(self) -> bool:
        return self.abort_signal.is_set()


RegistryFunction = Callable[..., Any]


@dataclass
class RegistryEntry:
    name: str
    fn: RegistryFunction
    budget_ms: int


class FunctionRegistry:
    """Named functions with per-function time budgets."""

    def __init__(self, default_budget_ms: int = DEFAULT_BUDGET_MS):
        self.default_budget_ms = default_budget_ms
        self._entries: dict[str, RegistryEntry] = {}

    def register(
        self,
        name: str,
        fn: RegistryFunction,
        budget_ms: Optional[int] = None,
    ) -> None:
        """
        Register a function under a unique name.

        Raises:
            ConfigurationError: If the name is already registered
        """
        if name in self._entries:
            raise ConfigurationError(f"Function '{name}' already registered")
        budget = self.default_budget_ms if budget_ms is None else budget_ms
        self._entries[name] = RegistryEntry(name=name, fn=fn, budget_ms=budget)
        logger.debug(f"Registered function '{name}' with {budget}ms budget")

    def has(self, name: str) -> bool:
        return name in self._entries

    @property
    def names(self) -> list[str]:
        return sorted(self._entries)

    async def call(self, name: str, ctx: dict[str, Any], *args: Any) -> Any:
        """
        Invoke a registered function within its budget.

        Raises:
            FunctionCallError: If the function is unknown or fails
            FunctionBudgetExceeded: If the function overruns its budget
        """
        entry = self._entries.get(name)
        if entry is None:
            raise FunctionCallError(name, f"Function '{name}' is not allowed")

        call_context = FunctionCallContext(ctx=ctx)
        started = time.perf_counter()

        try:
            result = entry.fn(call_context, *args)
        except FunctionCallError:
            raise
        except Exception as e:
            raise FunctionCallError(name, f"Function '{name}' failed: {e}") from e

        if inspect.isawaitable(result):
            return await self._race(entry, call_context, result)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > entry.budget_ms:
            raise FunctionBudgetExceeded(name, entry.budget_ms, elapsed_ms)
        return result

    async def _race(
        self,
        entry: RegistryEntry,
        call_context: FunctionCallContext,
        awaitable: Any,
    ) -> Any:
        task = asyncio.ensure_future(awaitable)
        done, _ = await asyncio.wait({task}, timeout=entry.budget_ms / 1000)

        if task not in done:
            call_context.abort_signal.set()
            task.cancel()
            logger.warning(f"Function '{entry.name}' timed out after {entry.budget_ms}ms")
            raise FunctionBudgetExceeded(entry.name, entry.budget_ms)

        try:
            return task.result()
        except FunctionCallError:
            raise
        except Exception as e:
            raise FunctionCallError(entry.name, f"Function '{entry.name}' failed: {e}") from e

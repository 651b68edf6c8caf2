"""
Sandboxed JSON-Logic evaluation.

Rules are plain JSON documents: a dict with exactly one key is an operation
(``{"==": [{"var": "a"}, 1]}``), a list evaluates element-wise, anything
else is a literal. Nothing is ever passed to eval/exec and data is only
navigated through dict keys and list indices.

The ``call`` operation invokes a function from the FunctionRegistry, which
is why evaluation is async.
"""

import logging
import math
from typing import Any, Awaitable, Callable, Optional

from flow_engine.core.errors import EngineInvariantError
from flow_engine.core.paths import lookup
from flow_engine.expressions.registry import FunctionRegistry

logger = logging.getLogger(__name__)

Operation = Callable[[list[Any], Any], Awaitable[Any]]


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def truthy(value: Any) -> bool:
    """JSON-Logic truthiness: empty lists are false, objects are true."""
    if isinstance(value, list):
        return len(value) > 0
    if isinstance(value, dict):
        return True
    return bool(value)


def _to_number(value: Any) -> Optional[float]:
    if is_number(value):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        if not value.strip():
            return 0
        try:
            return float(value)
        except ValueError:
            return None
    if value is None:
        return 0
    return None


def _to_index(value: Any) -> int:
    """Integer position for string slicing; non-numeric and non-finite values count as 0."""
    number = _to_number(value)
    if number is None or not math.isfinite(number):
        return 0
    return int(number)


def loose_equals(a: Any, b: Any) -> bool:
    """Equality with number/string coercion, as ``==`` in JSON Logic."""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if is_number(a) or is_number(b) or isinstance(a, bool) or isinstance(b, bool):
        left, right = _to_number(a), _to_number(b)
        if left is not None and right is not None:
            return left == right
    return a == b


def strict_equals(a: Any, b: Any) -> bool:
    """Equality without coercion; booleans never equal numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if is_number(a) and is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def _compare(a: Any, b: Any, op: Callable[[Any, Any], bool]) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return op(a, b)
    left, right = _to_number(a), _to_number(b)
    if left is None or right is None:
        return False
    return op(left, right)


class ExpressionEvaluator:
    """
    Async evaluator for the JSON-Logic subset used by flows.

    Supports:
    - data access: var, missing, missing_some
    - logic: if / ?:, ==, ===, !=, !==, !, !!, and, or
    - comparison: >, >=, <, <= (``<`` and ``<=`` accept a 3-arg between form)
    - arithmetic: +, -, *, /, %, min, max
    - strings and arrays: in, cat, substr, merge, map, filter, all, some, none
    - registry functions: ``{"call": ["name", arg1, ...]}``

    Unknown operators raise EngineInvariantError.
    """

    def __init__(self, registry: FunctionRegistry):
        self.registry = registry
        self._operations: dict[str, Operation] = {
            "var": self._op_var,
            "missing": self._op_missing,
            "missing_some": self._op_missing_some,
            "if": self._op_if,
            "?:": self._op_if,
            "==": self._binary(loose_equals),
            "===": self._binary(strict_equals),
            "!=": self._binary(lambda a, b: not loose_equals(a, b)),
            "!==": self._binary(lambda a, b: not strict_equals(a, b)),
            "!": self._op_not,
            "!!": self._op_double_not,
            "and": self._op_and,
            "or": self._op_or,
            ">": self._binary(lambda a, b: _compare(a, b, lambda x, y: x > y)),
            ">=": self._binary(lambda a, b: _compare(a, b, lambda x, y: x >= y)),
            "<": self._op_less(lambda x, y: x < y),
            "<=": self._op_less(lambda x, y: x <= y),
            "+": self._op_add,
            "-": self._op_subtract,
            "*": self._op_multiply,
            "/": self._op_divide,
            "%": self._op_modulo,
            "min": self._op_min,
            "max": self._op_max,
            "in": self._op_in,
            "cat": self._op_cat,
            "substr": self._op_substr,
            "merge": self._op_merge,
            "map": self._op_map,
            "filter": self._op_filter,
            "all": self._op_all,
            "some": self._op_some,
            "none": self._op_none,
            "call": self._op_call,
        }

    @staticmethod
    def is_logic(rule: Any) -> bool:
        return isinstance(rule, dict) and len(rule) == 1 and isinstance(next(iter(rule)), str)

    async def evaluate(self, rule: Any, data: Any = None) -> Any:
        """Evaluate a rule against data."""
        if isinstance(rule, list):
            return [await self.evaluate(item, data) for item in rule]

        if not self.is_logic(rule):
            return rule

        op, args = next(iter(rule.items()))
        operation = self._operations.get(op)
        if operation is None:
            raise EngineInvariantError(f"Unsupported expression operator '{op}'")

        if not isinstance(args, list):
            args = [args]
        return await operation(args, data)

    async def matches(self, rule: Any, data: Any = None) -> bool:
        """Evaluate a rule and coerce the result to a boolean."""
        return truthy(await self.evaluate(rule, data))

    async def _values(self, args: list[Any], data: Any) -> list[Any]:
        return [await self.evaluate(arg, data) for arg in args]

    def _binary(self, fn: Callable[[Any, Any], bool]) -> Operation:
        async def operation(args: list[Any], data: Any) -> bool:
            values = await self._values(args[:2], data)
            values += [None] * (2 - len(values))
            return fn(values[0], values[1])

        return operation

    def _op_less(self, fn: Callable[[Any, Any], bool]) -> Operation:
        async def operation(args: list[Any], data: Any) -> bool:
            values = await self._values(args[:3], data)
            values += [None] * (2 - len(values))
            if len(values) == 3:
                return _compare(values[0], values[1], fn) and _compare(values[1], values[2], fn)
            return _compare(values[0], values[1], fn)

        return operation

    # ==================== Data Access ====================

    async def _op_var(self, args: list[Any], data: Any) -> Any:
        values = await self._values(args, data)
        path = values[0] if values else None
        default = values[1] if len(values) > 1 else None
        if isinstance(path, float) and path.is_integer():
            path = int(path)
        value = lookup(data, path)
        return default if value is None else value

    async def _op_missing(self, args: list[Any], data: Any) -> list[Any]:
        keys = await self._values(args, data)
        if keys and isinstance(keys[0], list):
            keys = keys[0]
        missing = []
        for key in keys:
            value = lookup(data, key)
            if value is None or value == "":
                missing.append(key)
        return missing

    async def _op_missing_some(self, args: list[Any], data: Any) -> list[Any]:
        values = await self._values(args[:2], data)
        if len(values) < 2 or not isinstance(values[1], list):
            return []
        need, keys = values[0], values[1]
        missing = await self._op_missing([keys], data)
        if len(keys) - len(missing) >= (_to_number(need) or 0):
            return []
        return missing

    # ==================== Logic ====================

    async def _op_if(self, args: list[Any], data: Any) -> Any:
        index = 0
        while index < len(args) - 1:
            if truthy(await self.evaluate(args[index], data)):
                return await self.evaluate(args[index + 1], data)
            index += 2
        if index == len(args) - 1:
            return await self.evaluate(args[index], data)
        return None

    async def _op_not(self, args: list[Any], data: Any) -> bool:
        value = await self.evaluate(args[0], data) if args else None
        return not truthy(value)

    async def _op_double_not(self, args: list[Any], data: Any) -> bool:
        value = await self.evaluate(args[0], data) if args else None
        return truthy(value)

    async def _op_and(self, args: list[Any], data: Any) -> Any:
        value = None
        for arg in args:
            value = await self.evaluate(arg, data)
            if not truthy(value):
                return value
        return value

    async def _op_or(self, args: list[Any], data: Any) -> Any:
        value = None
        for arg in args:
            value = await self.evaluate(arg, data)
            if truthy(value):
                return value
        return value

    # ==================== Arithmetic ====================

    async def _numbers(self, args: list[Any], data: Any) -> Optional[list[float]]:
        numbers = []
        for value in await self._values(args, data):
            number = _to_number(value)
            if number is None:
                return None
            numbers.append(number)
        return numbers

    async def _op_add(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args, data)
        return None if numbers is None else sum(numbers)

    async def _op_subtract(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args[:2], data)
        if not numbers:
            return None
        if len(numbers) == 1:
            return -numbers[0]
        return numbers[0] - numbers[1]

    async def _op_multiply(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args, data)
        if not numbers:
            return None
        product = 1
        for number in numbers:
            product *= number
        return product

    async def _op_divide(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args[:2], data)
        # Division by zero yields None (falsy) rather than raising.
        if numbers is None or len(numbers) < 2 or numbers[1] == 0:
            return None
        return numbers[0] / numbers[1]

    async def _op_modulo(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args[:2], data)
        if numbers is None or len(numbers) < 2 or numbers[1] == 0:
            return None
        return numbers[0] % numbers[1]

    async def _op_min(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args, data)
        return min(numbers) if numbers else None

    async def _op_max(self, args: list[Any], data: Any) -> Optional[float]:
        numbers = await self._numbers(args, data)
        return max(numbers) if numbers else None

    # ==================== Strings & Arrays ====================

    async def _op_in(self, args: list[Any], data: Any) -> bool:
        values = await self._values(args[:2], data)
        if len(values) < 2:
            return False
        needle, haystack = values
        if isinstance(haystack, str):
            return isinstance(needle, str) and needle in haystack
        if isinstance(haystack, list):
            return any(strict_equals(needle, item) for item in haystack)
        return False

    async def _op_cat(self, args: list[Any], data: Any) -> str:
        values = await self._values(args, data)
        return "".join("" if value is None else str(value) for value in values)

    async def _op_substr(self, args: list[Any], data: Any) -> str:
        values = await self._values(args[:3], data)
        source = "" if not values or values[0] is None else str(values[0])
        start = _to_index(values[1]) if len(values) > 1 else 0
        if len(values) < 3:
            return source[start:]
        length = _to_index(values[2])
        if start < 0:
            start = max(len(source) + start, 0)
        if length < 0:
            return source[start:length]
        return source[start:start + length]

    async def _op_merge(self, args: list[Any], data: Any) -> list[Any]:
        merged: list[Any] = []
        for value in await self._values(args, data):
            if isinstance(value, list):
                merged.extend(value)
            else:
                merged.append(value)
        return merged

    async def _scope(self, args: list[Any], data: Any) -> list[Any]:
        scope = await self.evaluate(args[0], data) if args else None
        return scope if isinstance(scope, list) else []

    async def _op_map(self, args: list[Any], data: Any) -> list[Any]:
        items = await self._scope(args, data)
        logic = args[1] if len(args) > 1 else None
        return [await self.evaluate(logic, item) for item in items]

    async def _op_filter(self, args: list[Any], data: Any) -> list[Any]:
        items = await self._scope(args, data)
        logic = args[1] if len(args) > 1 else None
        return [item for item in items if truthy(await self.evaluate(logic, item))]

    async def _op_all(self, args: list[Any], data: Any) -> bool:
        items = await self._scope(args, data)
        if not items:
            return False
        logic = args[1] if len(args) > 1 else None
        for item in items:
            if not truthy(await self.evaluate(logic, item)):
                return False
        return True

    async def _op_some(self, args: list[Any], data: Any) -> bool:
        items = await self._scope(args, data)
        logic = args[1] if len(args) > 1 else None
        for item in items:
            if truthy(await self.evaluate(logic, item)):
                return True
        return False

    async def _op_none(self, args: list[Any], data: Any) -> bool:
        return not await self._op_some(args, data)

    # ==================== Registry Calls ====================

    async def _op_call(self, args: list[Any], data: Any) -> Any:
        values = await self._values(args, data)
        if not values or not isinstance(values[0], str):
            raise EngineInvariantError("call operator requires a function name")
        name, call_args = values[0], values[1:]
        ctx = data if isinstance(data, dict) else {}
        logger.debug(f"Expression calling registry function '{name}' with {len(call_args)} args")
        return await self.registry.call(name, ctx, *call_args)

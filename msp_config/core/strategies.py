"""Ordered fallback chains such as MSP2, then legacy MSP, then CLI."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple

from .msp import (
    CliModeActiveError,
    MSPError,
    MSPTimeoutError,
    NotSupportedError,
    PayloadFormatError,
)

log = logging.getLogger(__name__)

Strategy = Tuple[str, Callable[[], Awaitable[Any]]]

RETRYABLE_ERRORS = (MSPTimeoutError, NotSupportedError, CliModeActiveError, PayloadFormatError)


class Outcome(enum.Enum):
    OK = "ok"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class StrategyResult:
    outcome: Outcome
    value: Any = None
    error: Optional[BaseException] = None
    strategy: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    def unwrap(self) -> Any:
        if self.outcome is Outcome.OK:
            return self.value
        if self.error is not None:
            raise self.error
        raise MSPError(f"strategy {self.strategy or '<none>'} did not succeed")


def classify(exc: BaseException) -> Outcome:
    """Map an exception raised by a strategy to its outcome."""

    if isinstance(exc, RETRYABLE_ERRORS):
        return Outcome.RETRYABLE
    return Outcome.FATAL


async def attempt(name: str, operation: Callable[[], Awaitable[Any]]) -> StrategyResult:
    try:
        value = await operation()
    except MSPError as exc:
        return StrategyResult(classify(exc), error=exc, strategy=name)
    if isinstance(value, StrategyResult):
        value.strategy = value.strategy or name
        return value
    return StrategyResult(Outcome.OK, value=value, strategy=name)


async def run_strategies(
    strategies: Iterable[Strategy],
    on_retry: Optional[Callable[[StrategyResult], None]] = None,
) -> StrategyResult:
    """Try each strategy in order, moving on only after a retryable failure."""

    last: Optional[StrategyResult] = None
    for name, operation in strategies:
        result = await attempt(name, operation)
        if result.outcome is not Outcome.RETRYABLE:
            return result
        log.info("%s failed (%s), trying next strategy", name, result.error)
        if on_retry is not None:
            on_retry(result)
        last = result
    if last is None:
        return StrategyResult(Outcome.FATAL, error=MSPError("no strategies to run"))
    return last

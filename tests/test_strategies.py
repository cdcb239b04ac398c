from __future__ import annotations

import asyncio

import pytest

from msp_config.core.msp import (
    CliModeActiveError,
    MSPTimeoutError,
    NotSupportedError,
    TransportClosedError,
    VerificationMismatchError,
)
from msp_config.core.strategies import Outcome, StrategyResult, classify, run_strategies
from msp_config.core.unsupported import UnsupportedCommandTracker
from msp_config.io.transport import BaseTransport
from msp_config.services.features import feature_names


def test_classify():
    assert classify(MSPTimeoutError("t")) is Outcome.RETRYABLE
    assert classify(NotSupportedError("n")) is Outcome.RETRYABLE
    assert classify(CliModeActiveError("c")) is Outcome.RETRYABLE
    assert classify(TransportClosedError("x")) is Outcome.FATAL
    assert classify(VerificationMismatchError("v")) is Outcome.FATAL


def test_falls_through_retryable_failures():
    retried = []

    async def timeout():
        raise MSPTimeoutError("MSP command 35 timed out")

    async def works():
        return "cli"

    result = asyncio.run(
        run_strategies([("msp", timeout), ("cli", works)], on_retry=lambda r: retried.append(r.strategy))
    )
    assert result.ok and result.value == "cli" and result.strategy == "cli"
    assert retried == ["msp"]


def test_fatal_failure_stops_the_chain():
    called = []

    async def closed():
        raise TransportClosedError("gone")

    async def never():
        called.append("cli")
        return True

    result = asyncio.run(run_strategies([("msp", closed), ("cli", never)]))
    assert result.outcome is Outcome.FATAL
    assert called == []
    with pytest.raises(TransportClosedError):
        result.unwrap()


def test_strategy_can_report_its_own_outcome():
    async def mismatch():
        return StrategyResult(Outcome.RETRYABLE, error=VerificationMismatchError("platform"))

    async def fallback():
        return 1

    result = asyncio.run(run_strategies([("msp2", mismatch), ("cli", fallback)]))
    assert result.value == 1


def test_last_retryable_error_is_returned():
    async def rejected():
        raise NotSupportedError("rejected")

    result = asyncio.run(run_strategies([("a", rejected), ("b", rejected)]))
    assert result.outcome is Outcome.RETRYABLE
    with pytest.raises(NotSupportedError):
        result.unwrap()


def test_unsupported_tracker():
    tracker = UnsupportedCommandTracker()
    tracker.mark_unsupported(34)
    assert tracker.is_unsupported(34) and 34 in tracker
    tracker.clear_unsupported(34)
    assert not tracker.is_unsupported(34)
    tracker.mark_unsupported(36)
    tracker.clear()
    assert len(tracker) == 0


def test_feature_names_for_mask():
    assert feature_names((1 << 7) | (1 << 18)) == ["GPS", "OSD"]


def test_subscription_cancel():
    transport = BaseTransport()
    seen = []
    subscription = transport.subscribe(seen.append)
    transport._dispatch(b"a")
    assert subscription.active
    subscription.cancel()
    transport._dispatch(b"b")
    assert seen == [b"a"] and not subscription.active

from __future__ import annotations

import asyncio
import struct

import pytest

from msp_config.core.commands import MSP2Command, MSPCommand
from msp_config.core.msp import (
    CliModeActiveError,
    MSPTimeoutError,
    MSPVersion,
    NotSupportedError,
    TransportClosedError,
)
from msp_config.io.recorder import MSPRecorder, read_recording
from msp_config.io.simulator import SimulatedFC


def test_request_returns_reply_payload(connect):
    async def scenario():
        conn, transport = await connect()
        api = await conn.request(MSPCommand.MSP_API_VERSION)
        mixer = await conn.request(MSP2Command.INAV_MIXER, version=MSPVersion.V2)
        await conn.close()
        return api, mixer, transport

    api, mixer, transport = asyncio.run(scenario())
    assert api == bytes([0, 2, 5])
    assert len(mixer) == 9
    assert transport.writes[0].startswith(b"$M<")
    assert transport.writes[1].startswith(b"$X<")


def test_concurrent_requests_are_serialized(connect):
    fc = SimulatedFC(delays={MSPCommand.MSP_FEATURE_CONFIG: 0.02})

    async def scenario():
        conn, transport = await connect(fc)
        results = await asyncio.gather(
            conn.request(MSPCommand.MSP_FEATURE_CONFIG),
            conn.request(MSPCommand.MSP_API_VERSION),
            conn.request(MSPCommand.MSP_BOARD_INFO),
            conn.request(MSPCommand.MSP_FC_VARIANT),
        )
        stats = conn.client.stats
        await conn.close()
        return results, stats, transport

    results, stats, transport = asyncio.run(scenario())
    assert results[1] == bytes([0, 2, 5])
    assert results[2] == b"SITL"
    assert results[3] == b"INAV"
    assert stats.max_outstanding == 1
    assert transport.max_in_flight == 1
    assert [f.command for f in transport.requests] == [36, 1, 4, 2]


def test_timeout_then_late_reply_is_discarded(connect, sim_profile):
    fc = SimulatedFC(features=0x01, delays={MSPCommand.MSP_FEATURE_CONFIG: 0.3})

    async def scenario():
        conn, _ = await connect(fc, sim_profile(request_timeout=0.1))
        with pytest.raises(MSPTimeoutError) as excinfo:
            await conn.request(MSPCommand.MSP_FEATURE_CONFIG)
        fc.delays.clear()
        fc.features = 0x20
        second = await conn.request(MSPCommand.MSP_FEATURE_CONFIG, timeout=1.0)
        stats = conn.client.stats
        unsupported = conn.context.unsupported.is_unsupported(MSPCommand.MSP_FEATURE_CONFIG)
        await conn.close()
        return excinfo.value, second, stats, unsupported

    error, second, stats, unsupported = asyncio.run(scenario())
    assert "MSP command 36 timed out" in str(error)
    assert second == b"\x20\x00\x00\x00"
    assert stats.timeouts == 1
    assert stats.discarded == 1
    assert unsupported is False


def test_one_lost_reply_does_not_poison_the_command(connect, sim_profile):
    fc = SimulatedFC(silent={MSPCommand.MSP_ATTITUDE})

    async def scenario():
        conn, _ = await connect(fc, sim_profile(request_timeout=0.1))
        with pytest.raises(MSPTimeoutError):
            await conn.request(MSPCommand.MSP_ATTITUDE)
        fc.silent.clear()
        replies = [await conn.request(MSPCommand.MSP_ATTITUDE) for _ in range(4)]
        stats = conn.client.stats
        await conn.close()
        return replies, stats

    replies, stats = asyncio.run(scenario())
    assert replies == [struct.pack("<hhh", 0, 0, 0)] * 4
    assert stats.timeouts == 1
    assert stats.discarded == 0


def test_repeated_timeouts_expect_one_late_reply(connect, sim_profile):
    fc = SimulatedFC(silent={MSPCommand.MSP_ATTITUDE})

    async def scenario():
        conn, _ = await connect(fc, sim_profile(request_timeout=0.05))
        for _ in range(3):
            with pytest.raises(MSPTimeoutError):
                await conn.request(MSPCommand.MSP_ATTITUDE)
        fc.silent.clear()
        first = await conn.request(MSPCommand.MSP_ATTITUDE)
        second = await conn.request(MSPCommand.MSP_ATTITUDE)
        await conn.close()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second == struct.pack("<hhh", 0, 0, 0)


def test_other_reply_forgets_abandoned_requests(connect, sim_profile):
    fc = SimulatedFC(silent={MSPCommand.MSP_ATTITUDE})

    async def scenario():
        conn, _ = await connect(fc, sim_profile(request_timeout=0.1))
        with pytest.raises(MSPTimeoutError):
            await conn.request(MSPCommand.MSP_ATTITUDE)
        fc.silent.clear()
        await conn.request(MSPCommand.MSP_API_VERSION)
        loop = asyncio.get_running_loop()
        started = loop.time()
        attitude = await conn.request(MSPCommand.MSP_ATTITUDE)
        elapsed = loop.time() - started
        stats = conn.client.stats
        await conn.close()
        return attitude, elapsed, stats

    attitude, elapsed, stats = asyncio.run(scenario())
    assert attitude == struct.pack("<hhh", 0, 0, 0)
    assert elapsed < 0.09
    assert stats.discarded == 0


def test_transport_close_fails_pending_and_later_requests(connect):
    fc = SimulatedFC(silent={MSPCommand.MSP_API_VERSION})

    async def scenario():
        conn, transport = await connect(fc)
        task = asyncio.ensure_future(conn.request(MSPCommand.MSP_API_VERSION, timeout=5.0))
        await asyncio.sleep(0.01)
        transport.drop()
        with pytest.raises(TransportClosedError):
            await task
        writes = len(transport.writes)
        with pytest.raises(TransportClosedError):
            await conn.request(MSPCommand.MSP_STATUS)
        assert len(transport.writes) == writes
        log = [entry.message for entry in conn.context.recent_log()]
        await conn.close()
        return log

    log = asyncio.run(scenario())
    assert "Connection closed" in log


def test_error_reply_marks_command_unsupported(connect):
    fc = SimulatedFC(unsupported={MSPCommand.MSP_MODE_RANGES})

    async def scenario():
        conn, _ = await connect(fc)
        with pytest.raises(NotSupportedError):
            await conn.request(MSPCommand.MSP_MODE_RANGES)
        marked = conn.context.unsupported.is_unsupported(MSPCommand.MSP_MODE_RANGES)
        rejected = conn.client.stats.rejected
        await conn.close()
        return marked, rejected

    marked, rejected = asyncio.run(scenario())
    assert marked is True
    assert rejected == 1


def test_cli_block_is_not_an_unsupported_command(connect):
    async def scenario():
        conn, transport = await connect()
        conn.context.cli_session.active = True
        with pytest.raises(CliModeActiveError, match="MSP blocked - CLI mode active"):
            await conn.request(MSPCommand.MSP_MODE_RANGES)
        marked = conn.context.unsupported.is_unsupported(MSPCommand.MSP_MODE_RANGES)
        conn.context.cli_session.reset()
        await conn.close()
        return marked, transport.writes

    marked, writes = asyncio.run(scenario())
    assert marked is False
    assert writes == []


def test_entering_cli_fails_the_pending_request(connect):
    fc = SimulatedFC(silent={MSPCommand.MSP_STATUS})

    async def scenario():
        conn, _ = await connect(fc)
        task = asyncio.ensure_future(conn.request(MSPCommand.MSP_STATUS, timeout=5.0))
        await asyncio.sleep(0.01)
        await conn.cli.enter()
        with pytest.raises(CliModeActiveError):
            await task
        await conn.cli.exit()
        status = await conn.request(MSPCommand.MSP_API_VERSION)
        await conn.close()
        return status

    assert asyncio.run(scenario()) == bytes([0, 2, 5])


def test_recorder_captures_both_directions(connect, tmp_path):
    path = tmp_path / "trace.msp.zst"

    async def scenario():
        recorder = MSPRecorder(str(path))
        conn, _ = await connect(recorder=recorder)
        await conn.request(MSPCommand.MSP_API_VERSION)
        await conn.close()

    asyncio.run(scenario())
    events = read_recording(str(path))
    assert [(e["dir"], e["cmd"]) for e in events] == [("out", 1), ("in", 1)]
    assert events[1]["payload_hex"] == "000205"
    assert events[0]["port"] == "sim://fc"

from __future__ import annotations

from dataclasses import replace

import pytest

from msp_config.core.config import load_profiles, resolve_profile
from msp_config.core.connection import MSPConnection
from msp_config.io.simulator import SimulatedFC, SimulatedTransport


@pytest.fixture
def sim_profile():
    """Factory for the fast ``sim`` profile with optional overrides.

    ``cli`` accepts a mapping of CLI timing overrides.
    """

    def _make(cli=None, **overrides):
        profile = resolve_profile("sim", load_profiles())
        if cli:
            overrides["cli"] = replace(profile.cli, **cli)
        return profile.with_overrides(**overrides)

    return _make


@pytest.fixture
def connect(sim_profile):
    """Factory opening an :class:`MSPConnection` to a simulated board."""

    async def _connect(fc=None, profile=None, **kwargs):
        transport = SimulatedTransport(fc or SimulatedFC())
        await transport.open()
        conn = MSPConnection(transport, profile or sim_profile(), port="sim://fc", **kwargs)
        return conn, transport

    return _connect

"""FastAPI application exposing the configuration services over HTTP."""

from __future__ import annotations

import asyncio
import logging
import platform
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.config import ProfileError, load_profiles, resolve_profile
from ..core.connection import MSPConnection
from ..core.msp import (
    CliModeActiveError,
    MSPError,
    MSPTimeoutError,
    NotSupportedError,
    TransportClosedError,
    VerificationMismatchError,
)
from ..core.parsers import FeatureConfig, ModeRange, MotorMixerRule, ServoMixerRule, build_box_mapping
from ..core.runtime import open_connection
from ..core.telemetry import TelemetryPoller
from ..io.ports import SIMULATED_PORT, PortFilterConfig, list_port_strings, list_ports
from ..io.simulator import SimulatedFC
from ..services import eeprom, features, info, mixer, modes, motor_mixer
from .models import (
    ConnectRequest,
    ConnectResponse,
    FeaturesRequest,
    FeaturesResponse,
    InfoResponse,
    LogResponse,
    MixerResponse,
    ModeRangeModel,
    ModesResponse,
    MotorMixerResponse,
    MotorRuleModel,
    OkResponse,
    PlatformRequest,
    PortsResponse,
    ServoMixerResponse,
    ServoRuleModel,
    TelemetryResponse,
)

log = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the single flight controller connection served by the API."""

    def __init__(self) -> None:
        self.conn: Optional[MSPConnection] = None
        # state used for sim:// connections; tests replace it
        self.sim_fc: Optional[SimulatedFC] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.conn is not None and self.conn.is_open

    async def connect(self, req: ConnectRequest) -> MSPConnection:
        async with self._lock:
            if self.conn is not None:
                await self._close()
            profiles = load_profiles()
            profile_name = req.profile or ("sim" if req.simulate else None)
            profile = resolve_profile(profile_name, profiles) if profile_name else None
            port = SIMULATED_PORT if req.simulate else req.port
            if not port:
                candidates = list_port_strings()
                if not candidates:
                    raise TransportClosedError("no flight controller found")
                port = candidates[0]
            fc = None
            if req.simulate:
                if self.sim_fc is None:
                    self.sim_fc = SimulatedFC()
                fc = self.sim_fc
            conn = await open_connection(
                port,
                baudrate=req.baud,
                profile=profile,
                record_path=req.record_path,
                telemetry_rates=req.rates,
                fc=fc,
            )
            self.conn = conn
            await info.identify(conn, None if profile is not None else profiles)
            if req.telemetry:
                conn.context.telemetry.start()
            return conn

    async def disconnect(self) -> None:
        async with self._lock:
            await self._close()

    async def _close(self) -> None:
        conn, self.conn = self.conn, None
        if conn is not None:
            await conn.close()

    def require(self) -> MSPConnection:
        if self.conn is None:
            raise TransportClosedError("not connected")
        return self.conn


manager = ConnectionManager()


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await manager.disconnect()


app = FastAPI(title="msp-config", version=__version__, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = [
    (CliModeActiveError, 409),
    (TransportClosedError, 503),
    (VerificationMismatchError, 422),
    (MSPTimeoutError, 502),
    (NotSupportedError, 502),
]


def status_for(exc: MSPError) -> int:
    for exc_type, status in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status
    return 500


@app.exception_handler(MSPError)
async def msp_error_handler(request: Request, exc: MSPError) -> JSONResponse:
    status = status_for(exc)
    log.warning("%s %s -> %d: %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/v1/info", response_model=InfoResponse)
def get_info() -> InfoResponse:
    ports = [port.to_dict() for port in list_ports(PortFilterConfig(include_simulated=True))]
    return InfoResponse(version=__version__, os=platform.platform(), ports=ports, connected=manager.connected)


@app.get("/v1/ports", response_model=PortsResponse)
def get_ports(include_sim: bool = False, enforce_whitelist: bool = True) -> PortsResponse:
    config = PortFilterConfig(enforce_whitelist=enforce_whitelist, include_simulated=include_sim)
    return PortsResponse(ports=[port.to_dict() for port in list_ports(config)])


@app.post("/v1/connect", response_model=ConnectResponse)
async def connect(req: ConnectRequest) -> ConnectResponse:
    try:
        conn = await manager.connect(req)
    except ProfileError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ConnectResponse(port=conn.context.port, profile=conn.profile.name, firmware=conn.context.firmware.to_dict())


@app.post("/v1/disconnect", response_model=OkResponse)
async def disconnect() -> OkResponse:
    await manager.disconnect()
    return OkResponse(ok=True)


@app.get("/v1/firmware")
async def get_firmware():
    conn = manager.require()
    data = conn.context.firmware.to_dict()
    data["profile"] = conn.profile.name
    data["status"] = await info.get_status(conn)
    return data


@app.get("/v1/modes", response_model=ModesResponse)
async def get_modes() -> ModesResponse:
    conn = manager.require()
    ranges = await modes.get_mode_ranges(conn)
    names = await modes.get_box_names(conn) or []
    ids = await modes.get_box_ids(conn) or []
    return ModesResponse(
        ranges=None if ranges is None else [mode.to_dict() for mode in ranges],
        boxes=build_box_mapping(names, ids),
    )


@app.put("/v1/modes/{index}", response_model=OkResponse)
async def put_mode(index: int, body: ModeRangeModel) -> OkResponse:
    conn = manager.require()
    mode = ModeRange(index, body.box_id, body.aux_channel, body.range_start, body.range_end)
    ok = await modes.set_mode_range(conn, mode)
    return OkResponse(ok=ok, detail="save pending" if conn.cli.active else None)


@app.get("/v1/features", response_model=FeaturesResponse)
async def get_features() -> FeaturesResponse:
    conn = manager.require()
    mask = await features.get_features(conn)
    if mask is None:
        return FeaturesResponse()
    return FeaturesResponse(**FeatureConfig(mask).to_dict())


@app.put("/v1/features", response_model=OkResponse)
async def put_features(body: FeaturesRequest) -> OkResponse:
    conn = manager.require()
    ok = await features.set_features(conn, body.features)
    return OkResponse(ok=ok)


@app.get("/v1/mixer", response_model=MixerResponse)
async def get_mixer() -> MixerResponse:
    conn = manager.require()
    config = await mixer.get_inav_mixer_config(conn)
    return MixerResponse(
        config=None if config is None else config.to_dict(),
        vehicle=await mixer.get_vehicle_type(conn),
        pending_mixer_type=conn.context.pending_mixer_type,
    )


@app.put("/v1/platform", response_model=OkResponse)
async def put_platform(body: PlatformRequest) -> OkResponse:
    conn = manager.require()
    ok = await mixer.set_platform_type(conn, body.platform, body.mixer_type)
    detail = "reconnect to verify" if not conn.is_open else None
    return OkResponse(ok=ok, detail=detail)


@app.get("/v1/motor-mixer", response_model=MotorMixerResponse)
async def get_motor_mixer() -> MotorMixerResponse:
    conn = manager.require()
    rules = await motor_mixer.get_motor_mixer(conn)
    return MotorMixerResponse(rules=None if rules is None else [rule.to_dict() for rule in rules])


@app.put("/v1/motor-mixer", response_model=OkResponse)
async def put_motor_mixer(rules: List[MotorRuleModel]) -> OkResponse:
    conn = manager.require()
    ok = await motor_mixer.set_motor_mixer(
        conn, [MotorMixerRule(r.throttle, r.roll, r.pitch, r.yaw) for r in rules]
    )
    return OkResponse(ok=ok)


@app.get("/v1/servo-mixer", response_model=ServoMixerResponse)
async def get_servo_mixer() -> ServoMixerResponse:
    conn = manager.require()
    rules = await motor_mixer.get_servo_mixer(conn)
    return ServoMixerResponse(rules=None if rules is None else [rule.to_dict() for rule in rules])


@app.put("/v1/servo-mixer", response_model=OkResponse)
async def put_servo_mixer(rules: List[ServoRuleModel]) -> OkResponse:
    conn = manager.require()
    ok = await motor_mixer.set_servo_mixer(conn, [ServoMixerRule(**rule.model_dump()) for rule in rules])
    return OkResponse(ok=ok)


@app.post("/v1/save", response_model=OkResponse)
async def save() -> OkResponse:
    conn = manager.require()
    ok = await eeprom.save_eeprom(conn)
    return OkResponse(ok=ok, detail=None if conn.is_open else "board rebooting")


@app.post("/v1/reboot", response_model=OkResponse)
async def reboot() -> OkResponse:
    conn = manager.require()
    return OkResponse(ok=await eeprom.reboot(conn))


@app.get("/v1/telemetry", response_model=TelemetryResponse)
def get_telemetry() -> TelemetryResponse:
    conn = manager.require()
    poller = conn.context.telemetry
    if not isinstance(poller, TelemetryPoller):
        return TelemetryResponse(running=False)
    return TelemetryResponse(running=poller.running, latest=poller.latest)


@app.get("/v1/log", response_model=LogResponse)
def get_log(limit: int = 50) -> LogResponse:
    conn = manager.require()
    return LogResponse(entries=[entry.to_dict() for entry in conn.context.recent_log(limit)])

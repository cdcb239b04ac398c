"""Pydantic models for FastAPI endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PortInfo(BaseModel):
    device: str
    description: Optional[str] = None
    hwid: Optional[str] = None
    vid: Optional[int] = None
    pid: Optional[int] = None
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[str] = None
    simulated: bool = False


class InfoResponse(BaseModel):
    version: str
    os: str
    ports: List[PortInfo]
    connected: bool = False


class PortsResponse(BaseModel):
    ports: List[PortInfo]


class ConnectRequest(BaseModel):
    port: Optional[str] = None
    baud: int = 115200
    simulate: bool = False
    profile: Optional[str] = None
    record_path: Optional[str] = None
    telemetry: bool = False
    rates: Dict[str, float] = Field(default_factory=dict)


class ConnectResponse(BaseModel):
    port: str
    profile: str
    firmware: Dict[str, Any]


class OkResponse(BaseModel):
    ok: bool
    detail: Optional[str] = None


class ModeRangeModel(BaseModel):
    index: Optional[int] = Field(None, ge=0, le=39)
    box_id: int = Field(..., ge=0, le=255)
    aux_channel: int = Field(..., ge=0, le=255)
    range_start: int = Field(900, ge=900)
    range_end: int = Field(900, ge=900)


class BoxInfo(BaseModel):
    slot: int
    permanent_id: int
    name: str


class ModesResponse(BaseModel):
    ranges: Optional[List[ModeRangeModel]] = None
    boxes: List[BoxInfo] = Field(default_factory=list)


class FeaturesRequest(BaseModel):
    features: int = Field(..., ge=0, le=0xFFFFFFFF)


class FeaturesResponse(BaseModel):
    features: Optional[int] = None
    hex: Optional[str] = None
    names: List[str] = Field(default_factory=list)


class PlatformRequest(BaseModel):
    platform: int = Field(..., ge=0, le=5)
    mixer_type: Optional[int] = Field(None, ge=0, le=255)


class MixerResponse(BaseModel):
    config: Optional[Dict[str, Any]] = None
    vehicle: Optional[str] = None
    pending_mixer_type: Optional[int] = None


class MotorRuleModel(BaseModel):
    throttle: float = Field(..., ge=0.0, le=2.0)
    roll: float = Field(..., ge=-2.0, le=2.0)
    pitch: float = Field(..., ge=-2.0, le=2.0)
    yaw: float = Field(..., ge=-2.0, le=2.0)


class ServoRuleModel(BaseModel):
    target_channel: int = Field(..., ge=0, le=255)
    input_source: int = Field(..., ge=0, le=255)
    rate: int = Field(..., ge=-1000, le=1000)
    speed: int = Field(0, ge=0, le=255)
    min: int = 0
    max: int = 100
    box: int = 0


class MotorMixerResponse(BaseModel):
    rules: Optional[List[MotorRuleModel]] = None


class ServoMixerResponse(BaseModel):
    rules: Optional[List[ServoRuleModel]] = None


class LogEntryModel(BaseModel):
    id: int
    timestamp: float
    level: str
    message: str
    detail: Optional[str] = None


class LogResponse(BaseModel):
    entries: List[LogEntryModel]


class TelemetryResponse(BaseModel):
    running: bool
    latest: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

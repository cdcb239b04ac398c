"""Helpers for loading connection timing profiles."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Mapping

from ruamel.yaml import YAML


class ProfileError(RuntimeError):
    """Raised when the configuration file or requested profile is invalid."""


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

_yaml = YAML(typ="safe")


def load_profiles(path: Path | None = None) -> Dict[str, Mapping[str, object]]:
    """Return the profile mapping stored in ``config.yaml``.

    Parameters
    ----------
    path:
        Optional path to a YAML configuration file. When omitted the built-in
        ``config.yaml`` packaged alongside :mod:`msp_config` is used.
    """

    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise ProfileError(f"configuration file not found: {config_path}")
    data = _yaml.load(config_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or "profiles" not in data:
        raise ProfileError("config file must contain a 'profiles' mapping")
    profiles = data["profiles"]
    if not isinstance(profiles, dict):
        raise ProfileError("'profiles' must be a mapping")
    normalized: Dict[str, Mapping[str, object]] = {}
    for name, profile in profiles.items():
        if not isinstance(profile, Mapping):
            raise ProfileError(f"profile '{name}' must be a mapping")
        normalized[name] = profile
    return normalized


@dataclass(frozen=True)
class CliTimings:
    """Named wait durations of the CLI bridge, in seconds."""

    enter_settle: float = 0.5
    prompt_wait: float = 1.0
    prompt_retry_wait: float = 0.8
    line_delay: float = 0.3
    capture_wait: float = 1.5
    exit_delay: float = 0.5
    save_delay: float = 2.0

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, object]) -> "CliTimings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ProfileError(f"profile '{name}' has unknown cli keys: {', '.join(unknown)}")
        try:
            return cls(**{key: float(value) for key, value in data.items()})
        except (TypeError, ValueError) as exc:
            raise ProfileError(f"profile '{name}' cli timings must be numbers") from exc


@dataclass(frozen=True)
class Profile:
    """Timeouts and delays for one firmware family."""

    name: str
    request_timeout: float = 1.0
    mode_ranges_timeout: float = 0.5
    config_timeout: float = 2.0
    eeprom_timeout: float = 5.0
    lock_settle: float = 0.05
    verify_delay: float = 0.05
    cli: CliTimings = CliTimings()

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, object]) -> "Profile":
        required = (
            "request_timeout",
            "mode_ranges_timeout",
            "config_timeout",
            "eeprom_timeout",
        )
        missing = [key for key in required if key not in data]
        if missing:
            raise ProfileError(f"profile '{name}' is missing required keys: {', '.join(missing)}")
        cli = data.get("cli", {})
        if not isinstance(cli, Mapping):
            raise ProfileError(f"profile '{name}' cli must be a mapping")
        return cls(
            name=name,
            request_timeout=float(data["request_timeout"]),
            mode_ranges_timeout=float(data["mode_ranges_timeout"]),
            config_timeout=float(data["config_timeout"]),
            eeprom_timeout=float(data["eeprom_timeout"]),
            lock_settle=float(data.get("lock_settle", cls.lock_settle)),
            verify_delay=float(data.get("verify_delay", cls.verify_delay)),
            cli=CliTimings.from_mapping(name, cli),
        )

    def with_overrides(self, **overrides: object) -> "Profile":
        """Return a copy with every non-``None`` override applied."""

        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


def resolve_profile(name: str, profiles: Mapping[str, Mapping[str, object]]) -> Profile:
    """Resolve *name* from *profiles* and return a :class:`Profile`."""

    if name not in profiles:
        available = ", ".join(sorted(profiles)) or "<none>"
        raise ProfileError(f"unknown profile '{name}'. available: {available}")
    return Profile.from_mapping(name, profiles[name])

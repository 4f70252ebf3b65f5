"""Miralis configuration.

The configuration is read from a TOML file and turned into the environment
variables that configure the Miralis build.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Environment variable names consumed by the build.
LOG_LEVEL_ENV = "MIRALIS_LOG_LEVEL"
LOG_COLOR_ENV = "MIRALIS_LOG_COLOR"
LOG_ERROR_ENV = "MIRALIS_LOG_ERROR"
LOG_WARN_ENV = "MIRALIS_LOG_WARN"
LOG_INFO_ENV = "MIRALIS_LOG_INFO"
LOG_DEBUG_ENV = "MIRALIS_LOG_DEBUG"
LOG_TRACE_ENV = "MIRALIS_LOG_TRACE"
MAX_FIRMWARE_EXIT_ENV = "MIRALIS_DEBUG_MAX_FIRMWARE_EXITS"
BENCHMARK_NB_ITER_ENV = "MIRALIS_BENCHMARK_NB_ITER"
VCPU_MAX_PMP_ENV = "MIRALIS_VCPU_MAX_PMP"
DELEGATE_PERF_COUNTER_ENV = "MIRALIS_DELEGATE_PERF_COUNTER"
PLATFORM_NAME_ENV = "MIRALIS_PLATFORM_NAME"
PLATFORM_NB_HARTS_ENV = "MIRALIS_PLATFORM_NB_HARTS"
PLATFORM_BOOT_HART_ID_ENV = "MIRALIS_PLATFORM_BOOT_HART_ID"
TARGET_START_ADDRESS_ENV = "MIRALIS_TARGET_START_ADDRESS"
TARGET_STACK_SIZE_ENV = "MIRALIS_TARGET_STACK_SIZE"
TARGET_FIRMWARE_ADDRESS_ENV = "MIRALIS_TARGET_FIRMWARE_ADDRESS"
TARGET_FIRMWARE_STACK_SIZE_ENV = "MIRALIS_TARGET_FIRMWARE_STACK_SIZE"
TARGET_PAYLOAD_ADDRESS_ENV = "MIRALIS_TARGET_PAYLOAD_ADDRESS"
TARGET_PAYLOAD_STACK_SIZE_ENV = "MIRALIS_TARGET_PAYLOAD_STACK_SIZE"
MODULES_ENV = "MIRALIS_MODULES"

DEFAULT_MIRALIS_START = 0x80000000
DEFAULT_FIRMWARE_START = 0x80200000
DEFAULT_PAYLOAD_START = 0x80400000
DEFAULT_STACK_SIZE = 0x8000

CONFIG_FILE_NAME = "config.toml"


class ConfigError(Exception):
    """Raised when a configuration cannot be read or is not valid."""


class Platform(StrEnum):
    QEMU_VIRT = "qemu_virt"
    SPIKE = "spike"
    VISIONFIVE2 = "visionfive2"
    PREMIERP550 = "premierp550"


class ModuleName(StrEnum):
    KEYSTONE = "keystone"
    PROTECT_PAYLOAD = "protect_payload"
    OFFLOAD = "offload"
    BOOT_COUNTER = "boot_counter"
    EXIT_COUNTER_PER_CAUSE = "exit_counter_per_cause"
    EXIT_COUNTER = "exit_counter"


class Profile(StrEnum):
    """Build profile; the value is the cargo profile name."""

    DEBUG = "dev"
    RELEASE = "release"

    @property
    def dir_name(self) -> str:
        """Name of the output directory for this profile."""
        return "debug" if self is Profile.DEBUG else "release"


# ——————————————————————————— Parsing helpers ———————————————————————————— #


def _table(data: Any, where: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a table")
    return data


def _reject_unknown(data: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown field(s): {', '.join(unknown)}")


def _opt_str(data: dict[str, Any], key: str, where: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigError(f"{where}.{key}: expected a string")
    return value


def _opt_bool(data: dict[str, Any], key: str, where: str) -> bool | None:
    value = data.get(key)
    if value is not None and not isinstance(value, bool):
        raise ConfigError(f"{where}.{key}: expected a boolean")
    return value


def _opt_uint(data: dict[str, Any], key: str, where: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{where}.{key}: expected a non-negative integer")
    return value


def _opt_str_list(data: dict[str, Any], key: str, where: str) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}.{key}: expected a list of strings")
    return list(value)


def _enum_value(enum_cls: type[StrEnum], value: Any, where: str) -> Any:
    if not isinstance(value, str):
        raise ConfigError(f"{where}: expected a string")
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigError(
            f"{where}: unknown variant '{value}', expected one of {choices}"
        ) from None


def _opt_enum(data: dict[str, Any], key: str, enum_cls: type[StrEnum], where: str) -> Any:
    value = data.get(key)
    if value is None:
        return None
    return _enum_value(enum_cls, value, f"{where}.{key}")


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _put(envs: dict[str, str], name: str, value: Any) -> None:
    if value is not None:
        envs[name] = _format(value)


def _put_list(envs: dict[str, str], name: str, values: list[str] | None) -> None:
    if values is not None:
        envs[name] = ",".join(values)


# ——————————————————————————— Config sections ———————————————————————————— #


@dataclass
class LogConfig:
    level: str | None = None
    color: bool | None = None
    error: list[str] | None = None
    warn: list[str] | None = None
    info: list[str] | None = None
    debug: list[str] | None = None
    trace: list[str] | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str = "log") -> LogConfig:
        data = _table(data, where)
        lists = ("error", "warn", "info", "debug", "trace")
        _reject_unknown(data, {"level", "color", *lists}, where)
        return cls(
            level=_opt_str(data, "level", where),
            color=_opt_bool(data, "color", where),
            **{name: _opt_str_list(data, name, where) for name in lists},
        )

    def _envs(self) -> dict[str, str]:
        envs: dict[str, str] = {}
        _put(envs, LOG_LEVEL_ENV, self.level)
        _put(envs, LOG_COLOR_ENV, self.color)
        _put_list(envs, LOG_ERROR_ENV, self.error)
        _put_list(envs, LOG_WARN_ENV, self.warn)
        _put_list(envs, LOG_INFO_ENV, self.info)
        _put_list(envs, LOG_DEBUG_ENV, self.debug)
        _put_list(envs, LOG_TRACE_ENV, self.trace)
        return envs


@dataclass
class DebugConfig:
    max_firmware_exits: int | None = None
    nb_iter: int | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str = "debug") -> DebugConfig:
        data = _table(data, where)
        _reject_unknown(data, {"max_firmware_exits", "nb_iter"}, where)
        return cls(
            max_firmware_exits=_opt_uint(data, "max_firmware_exits", where),
            nb_iter=_opt_uint(data, "nb_iter", where),
        )

    def _envs(self) -> dict[str, str]:
        envs: dict[str, str] = {}
        _put(envs, MAX_FIRMWARE_EXIT_ENV, self.max_firmware_exits)
        _put(envs, BENCHMARK_NB_ITER_ENV, self.nb_iter)
        return envs


@dataclass
class VCpuConfig:
    max_pmp: int | None = None
    delegate_perf_counters: bool | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str = "vcpu") -> VCpuConfig:
        data = _table(data, where)
        _reject_unknown(data, {"max_pmp", "delegate_perf_counters"}, where)
        return cls(
            max_pmp=_opt_uint(data, "max_pmp", where),
            delegate_perf_counters=_opt_bool(data, "delegate_perf_counters", where),
        )

    def _envs(self) -> dict[str, str]:
        envs: dict[str, str] = {}
        _put(envs, VCPU_MAX_PMP_ENV, self.max_pmp)
        _put(envs, DELEGATE_PERF_COUNTER_ENV, self.delegate_perf_counters)
        return envs


@dataclass
class PlatformConfig:
    name: Platform | None = None
    nb_harts: int | None = None
    boot_hart_id: int | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str = "platform") -> PlatformConfig:
        data = _table(data, where)
        _reject_unknown(data, {"name", "nb_harts", "boot_hart_id"}, where)
        return cls(
            name=_opt_enum(data, "name", Platform, where),
            nb_harts=_opt_uint(data, "nb_harts", where),
            boot_hart_id=_opt_uint(data, "boot_hart_id", where),
        )

    def _envs(self) -> dict[str, str]:
        envs: dict[str, str] = {}
        _put(envs, PLATFORM_NAME_ENV, self.name)
        _put(envs, PLATFORM_NB_HARTS_ENV, self.nb_harts)
        _put(envs, PLATFORM_BOOT_HART_ID_ENV, self.boot_hart_id)
        return envs


@dataclass
class QemuConfig:
    machine: str | None = None
    cpu: str | None = None
    memory: str | None = None
    disk: str | None = None
    path: str | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str = "qemu") -> QemuConfig:
        data = _table(data, where)
        keys = ("machine", "cpu", "memory", "disk", "path")
        _reject_unknown(data, set(keys), where)
        return cls(**{key: _opt_str(data, key, where) for key in keys})


@dataclass
class TargetConfig:
    name: str | None = None
    profile: Profile | None = None
    start_address: int | None = None
    stack_size: int | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> TargetConfig:
        data = _table(data, where)
        _reject_unknown(data, {"name", "profile", "start_address", "stack_size"}, where)
        return cls(
            name=_opt_str(data, "name", where),
            profile=_opt_enum(data, "profile", Profile, where),
            start_address=_opt_uint(data, "start_address", where),
            stack_size=_opt_uint(data, "stack_size", where),
        )


def _or_default(value: int | None, default: int) -> int:
    return default if value is None else value


@dataclass
class TargetsConfig:
    miralis: TargetConfig = field(default_factory=TargetConfig)
    firmware: TargetConfig = field(default_factory=TargetConfig)
    payload: TargetConfig | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str = "target") -> TargetsConfig:
        data = _table(data, where)
        _reject_unknown(data, {"miralis", "firmware", "payload"}, where)
        for required in ("miralis", "firmware"):
            if required not in data:
                raise ConfigError(f"{where}: missing field '{required}'")
        payload = data.get("payload")
        return cls(
            miralis=TargetConfig._from_dict(data["miralis"], f"{where}.miralis"),
            firmware=TargetConfig._from_dict(data["firmware"], f"{where}.firmware"),
            payload=(
                None
                if payload is None
                else TargetConfig._from_dict(payload, f"{where}.payload")
            ),
        )

    def _envs(self) -> dict[str, str]:
        envs: dict[str, str] = {}
        _put(envs, TARGET_START_ADDRESS_ENV,
             _or_default(self.miralis.start_address, DEFAULT_MIRALIS_START))
        _put(envs, TARGET_STACK_SIZE_ENV,
             _or_default(self.miralis.stack_size, DEFAULT_STACK_SIZE))
        _put(envs, TARGET_FIRMWARE_ADDRESS_ENV,
             _or_default(self.firmware.start_address, DEFAULT_FIRMWARE_START))
        _put(envs, TARGET_FIRMWARE_STACK_SIZE_ENV,
             _or_default(self.firmware.stack_size, DEFAULT_STACK_SIZE))
        if self.payload is not None:
            _put(envs, TARGET_PAYLOAD_ADDRESS_ENV,
                 _or_default(self.payload.start_address, DEFAULT_PAYLOAD_START))
            _put(envs, TARGET_PAYLOAD_STACK_SIZE_ENV,
                 _or_default(self.payload.stack_size, DEFAULT_STACK_SIZE))
        return envs


@dataclass
class ModulesConfig:
    modules: list[ModuleName] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: Any, where: str = "modules") -> ModulesConfig:
        data = _table(data, where)
        _reject_unknown(data, {"modules"}, where)
        if "modules" not in data:
            raise ConfigError(f"{where}: missing field 'modules'")
        values = data["modules"]
        if not isinstance(values, list):
            raise ConfigError(f"{where}.modules: expected a list")
        return cls([_enum_value(ModuleName, v, f"{where}.modules") for v in values])

    def _envs(self) -> dict[str, str]:
        joined = ",".join(str(module) for module in self.modules)
        return {MODULES_ENV: joined} if joined else {}


# ——————————————————————————————— Config ———————————————————————————————— #

_SECTIONS = {
    "log": LogConfig,
    "debug": DebugConfig,
    "vcpu": VCpuConfig,
    "platform": PlatformConfig,
    "qemu": QemuConfig,
    "target": TargetsConfig,
    "modules": ModulesConfig,
}


@dataclass
class Config:
    """A complete Miralis configuration."""

    log: LogConfig = field(default_factory=LogConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)
    vcpu: VCpuConfig = field(default_factory=VCpuConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    qemu: QemuConfig = field(default_factory=QemuConfig)
    target: TargetsConfig = field(default_factory=TargetsConfig)
    modules: ModulesConfig = field(default_factory=ModulesConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build a configuration from a parsed TOML document."""
        data = _table(data, "config")
        _reject_unknown(data, set(_SECTIONS), "config")
        sections = {
            name: section._from_dict(data[name], name)
            for name, section in _SECTIONS.items()
            if name in data
        }
        return cls(**sections)

    def build_envs(self) -> dict[str, str]:
        """Return the environment variables that configure the build."""
        envs: dict[str, str] = {}
        for section in (self.log, self.debug, self.vcpu, self.platform,
                        self.target, self.modules):
            envs.update(section._envs())
        return envs


def parse_config(text: str) -> Config:
    """Parse a configuration from TOML text."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as err:
        raise ConfigError(f"invalid TOML: {err}") from err
    return Config.from_dict(data)


def read_config(path: str | Path | None = None) -> Config:
    """Read the configuration at ``path``.

    Without a path, ``config.toml`` in the current directory is used. A
    missing file yields the default configuration.
    """
    config_path = Path(path) if path is not None else Path.cwd() / CONFIG_FILE_NAME
    try:
        text = config_path.read_text()
    except OSError:
        logger.warning("No config file found, using default configuration")
        text = ""

    try:
        cfg = parse_config(text)
    except ConfigError as err:
        raise ConfigError(f"Failed to parse configuration:\n{err}") from err

    if cfg.qemu.cpu == "none":
        cfg.qemu.cpu = None
    return cfg


def check_config_file(path: str | Path) -> Config:
    """Validate one configuration file, raising ConfigError if it is invalid."""
    config_path = Path(path)
    try:
        text = config_path.read_text()
    except OSError as err:
        raise ConfigError(f"Could not read config: {err}") from err
    try:
        cfg = parse_config(text)
    except ConfigError as err:
        raise ConfigError(f"Config {config_path} is not valid:\n{err}") from err
    logger.info("Config %s is valid", config_path)
    return cfg


def check_config(path: str | Path) -> list[Path]:
    """Validate a configuration file, or every ``.toml`` file under a directory.

    Returns the paths that were checked.
    """
    root = Path(path)
    if root.is_file():
        check_config_file(root)
        return [root]
    checked = []
    for candidate in sorted(root.rglob("*.toml")):
        if candidate.is_file():
            check_config_file(candidate)
            checked.append(candidate)
    return checked
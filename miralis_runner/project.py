"""Global project configuration: named Miralis configs and integration tests."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ProjectConfigError(Exception):
    """Raised when the project configuration is not valid."""


def _table(data: Any, where: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ProjectConfigError(f"{where}: expected a table")
    return data


def _reject_unknown(data: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ProjectConfigError(f"{where}: unknown field(s): {', '.join(unknown)}")


def _required_str(data: dict[str, Any], key: str, where: str) -> str:
    if key not in data:
        raise ProjectConfigError(f"{where}: missing field '{key}'")
    value = data[key]
    if not isinstance(value, str):
        raise ProjectConfigError(f"{where}.{key}: expected a string")
    return value


def _opt_str(data: dict[str, Any], key: str, where: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ProjectConfigError(f"{where}.{key}: expected a string")
    return value


@dataclass(frozen=True)
class ConfigEntry:
    """A Miralis configuration file referenced by the project."""

    path: Path

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> ConfigEntry:
        data = _table(data, where)
        _reject_unknown(data, {"path"}, where)
        return cls(Path(_required_str(data, "path", where)))


@dataclass(frozen=True)
class TestSpec:
    """An integration test."""

    __test__ = False

    config: str
    description: str | None = None
    firmware: str | None = None
    payload: str | None = None
    #: A string expected in the output of the test.
    expect: str | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> TestSpec:
        data = _table(data, where)
        optional = ("description", "firmware", "payload", "expect")
        _reject_unknown(data, {"config", *optional}, where)
        return cls(
            config=_required_str(data, "config", where),
            **{key: _opt_str(data, key, where) for key in optional},
        )


@dataclass
class ProjectConfig:
    """The project file: configurations and tests, in file order."""

    config: dict[str, ConfigEntry] = field(default_factory=dict)
    test: dict[str, TestSpec] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectConfig:
        """Build the project configuration from a parsed TOML document."""
        data = _table(data, "project")
        _reject_unknown(data, {"config", "test"}, "project")
        configs = _table(data.get("config", {}), "config")
        tests = _table(data.get("test", {}), "test")
        return cls(
            config={
                name: ConfigEntry._from_dict(entry, f"config.{name}")
                for name, entry in configs.items()
            },
            test={
                name: TestSpec._from_dict(entry, f"test.{name}")
                for name, entry in tests.items()
            },
        )


def parse_project_config(text: str) -> ProjectConfig:
    """Parse the project configuration from TOML text."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as err:
        raise ProjectConfigError(f"invalid TOML: {err}") from err
    return ProjectConfig.from_dict(data)


def load_project_config(path: str | Path) -> ProjectConfig:
    """Read and parse the project configuration file at ``path``."""
    config_path = Path(path)
    try:
        text = config_path.read_text()
    except OSError as err:
        raise ProjectConfigError(f"Could not read '{config_path}'") from err
    return parse_project_config(text)
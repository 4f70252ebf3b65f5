"""Artifacts built from sources, downloaded, or found on the local file system."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tomllib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from miralis_runner.config import (
    DEFAULT_FIRMWARE_START,
    DEFAULT_MIRALIS_START,
    DEFAULT_PAYLOAD_START,
    Config,
    Profile,
)
from miralis_runner.path import (
    EXT2_EXTENSION,
    GZ_COMPRESSION,
    IMG_EXTENSION,
    XZ_COMPRESSION,
    ZST_COMPRESSION,
    extract_file_extension,
    extract_file_name,
    get_artifact_manifest_path,
    get_artifacts_path,
    get_target_config_path,
    get_target_dir_path,
    get_workspace_path,
    is_file_present,
    is_older,
    remove_file_extension,
)
from miralis_runner.targets import Target, TargetKind

logger = logging.getLogger(__name__)

#: Extra cargo arguments.
CARGO_ARGS = (
    "-Zbuild-std=core,alloc",
    "-Zbuild-std-features=compiler-builtins-mem",
)

_LINKER_SCRIPT = "misc/linker-script.x"
_DISK_IMAGE_DIR = "artifacts"

_EXTRACTORS = {
    XZ_COMPRESSION: ("xz", "-dk"),
    ZST_COMPRESSION: ("zstd", "-d"),
    GZ_COMPRESSION: ("gunzip", "-d"),
}
_UNCOMPRESSED = {IMG_EXTENSION, EXT2_EXTENSION}


class ArtifactError(Exception):
    """Raised when an artifact cannot be located, built or downloaded."""


# —————————————————————————— Artifact definitions —————————————————————————— #


@dataclass(frozen=True)
class SourceArtifact:
    """A binary built from sources in the workspace."""

    name: str


@dataclass(frozen=True)
class DownloadedArtifact:
    """A binary that can be downloaded."""

    name: str
    url: str


@dataclass(frozen=True)
class BinaryArtifact:
    """A binary available on the local file system."""

    path: Path


BinArtifact = SourceArtifact | DownloadedArtifact | BinaryArtifact


@dataclass(frozen=True)
class DiskArtifact:
    """A disk image that can be downloaded."""

    name: str
    url: str


@dataclass
class AllArtifacts:
    """External artifacts listed in the manifest."""

    bin: dict[str, DownloadedArtifact] = field(default_factory=dict)
    disk: dict[str, DiskArtifact] = field(default_factory=dict)


# ——————————————————————————— Artifact manifest ———————————————————————————— #


@dataclass(frozen=True)
class ManifestEntry:
    """One artifact listed in the manifest."""

    description: str | None = None
    url: str | None = None
    repo: str | None = None

    @classmethod
    def _from_dict(cls, data: Any, where: str) -> ManifestEntry:
        if not isinstance(data, dict):
            raise ArtifactError(f"{where}: expected a table")
        keys = ("description", "url", "repo")
        unknown = sorted(set(data) - set(keys))
        if unknown:
            raise ArtifactError(f"{where}: unknown field(s): {', '.join(unknown)}")
        for key in keys:
            if key in data and not isinstance(data[key], str):
                raise ArtifactError(f"{where}.{key}: expected a string")
        return cls(**{key: data.get(key) for key in keys})


def _entries(data: Any, where: str) -> dict[str, ManifestEntry]:
    if not isinstance(data, dict):
        raise ArtifactError(f"{where}: expected a table")
    return {
        name: ManifestEntry._from_dict(entry, f"{where}.{name}")
        for name, entry in data.items()
    }


@dataclass
class ArtifactManifest:
    """The manifest listing external artifacts."""

    bin: dict[str, ManifestEntry] = field(default_factory=dict)
    disk: dict[str, ManifestEntry] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactManifest:
        """Build the manifest from a parsed TOML document."""
        if not isinstance(data, dict):
            raise ArtifactError("manifest: expected a table")
        unknown = sorted(set(data) - {"bin", "disk"})
        if unknown:
            raise ArtifactError(f"manifest: unknown field(s): {', '.join(unknown)}")
        if "disk" not in data:
            raise ArtifactError("manifest: missing field 'disk'")
        return cls(
            bin=_entries(data.get("bin", {}), "bin"),
            disk=_entries(data["disk"], "disk"),
        )


def parse_artifact_manifest(text: str) -> ArtifactManifest:
    """Parse an artifact manifest from TOML text."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as err:
        raise ArtifactError(f"Failed to parse artifact manifest: {err}") from err
    return ArtifactManifest.from_dict(data)


def read_artifact_manifest(path: str | Path | None = None) -> ArtifactManifest:
    """Read the artifact manifest, by default the one of the workspace."""
    manifest_path = Path(path) if path is not None else get_artifact_manifest_path()
    try:
        text = manifest_path.read_text()
    except OSError:
        logger.warning("Could not find artifact manifest at '%s'", manifest_path)
        text = ""
    return parse_artifact_manifest(text)


def _is_valid_url(url: str) -> bool:
    return url.startswith(("https://", "http://"))


def collect_artifacts(manifest: ArtifactManifest) -> AllArtifacts:
    """Return the downloadable artifacts of ``manifest``; invalid URLs are skipped."""
    artifacts = AllArtifacts()
    for kinds, target, make in (
        (manifest.bin, artifacts.bin, DownloadedArtifact),
        (manifest.disk, artifacts.disk, DiskArtifact),
    ):
        for name, entry in kinds.items():
            if entry.url is None:
                continue
            if _is_valid_url(entry.url):
                target[name] = make(name, entry.url)
            else:
                logger.warning("Invalid artifact url '%s'", entry.url)
    return artifacts


def get_external_artifacts() -> AllArtifacts:
    """Return the downloadable artifacts of the workspace manifest."""
    return collect_artifacts(read_artifact_manifest())


# ———————————————————————————— Locate artifacts ———————————————————————————— #


def find_artifact(directory: str | Path, name: str) -> SourceArtifact | None:
    """Return a source artifact if ``directory`` has an entry called ``name``."""
    for entry in Path(directory).iterdir():
        if entry.name == name:
            return SourceArtifact(name)
    return None


def _source_dir(name: str) -> Path:
    directory = get_workspace_path() / name
    if not directory.is_dir():
        raise ArtifactError(f"Could not find '{name}' directory")
    return directory


def locate_bin_artifact(name: str) -> BinArtifact | None:
    """Find a binary artifact by name.

    Looks in order at Miralis itself, the firmware and payload sources, the
    manifest, and finally the local file system.
    """
    if name == "miralis":
        return SourceArtifact(name)

    for directory in ("firmware", "payload"):
        artifact = find_artifact(_source_dir(directory), name)
        if artifact is not None:
            return artifact

    external = get_external_artifacts().bin.get(name)
    if external is not None:
        return external

    path = Path(name)
    if path.is_file():
        return BinaryArtifact(path)

    logger.error("Artifact %s not found", name)
    return None


def _prepare(name: str, cfg: Config, make_target: Callable[[str], Target]) -> Path | None:
    match locate_bin_artifact(name):
        case SourceArtifact(name=source):
            return build_target(make_target(source), cfg)
        case DownloadedArtifact(name=artifact_name, url=url):
            return download_artifact(artifact_name, url)
        case BinaryArtifact(path=path):
            return path
        case _:
            return None


def prepare_firmware_artifact(name: str, cfg: Config) -> Path | None:
    """Build, download or locate a firmware; return its binary or None if unknown."""
    return _prepare(name, cfg, Target.firmware)


def prepare_payload_artifact(name: str, cfg: Config) -> Path | None:
    """Build, download or locate a payload; return its binary or None if unknown."""
    return _prepare(name, cfg, Target.payload)


# ————————————————————————————————— Build —————————————————————————————————— #


def _target_profile(target: Target, cfg: Config) -> Profile:
    if target.kind is TargetKind.MIRALIS:
        profile = cfg.target.miralis.profile
    elif target.kind is TargetKind.FIRMWARE:
        profile = cfg.target.firmware.profile
    else:
        payload = cfg.target.payload
        profile = payload.profile if payload is not None else None
    return Profile.DEBUG if profile is None else profile


def _linker_args(address: int) -> str:
    return (
        f"-C link-arg=-T{_LINKER_SCRIPT} "
        f"-C link-arg=--defsym=_start_address={address}"
    )


def _or_default(value: int | None, default: int) -> int:
    return default if value is None else value


def build_command(target: Target, cfg: Config) -> tuple[list[str], dict[str, str]]:
    """Return the cargo command line and the extra environment to build ``target``."""
    profile = _target_profile(target, cfg)
    argv = [
        os.environ.get("CARGO", "cargo"),
        "build",
        *CARGO_ARGS,
        "--target",
        str(get_target_config_path(target)),
        "--profile",
        profile.value,
    ]
    env: dict[str, str] = {}

    if target.kind is TargetKind.MIRALIS:
        address = _or_default(cfg.target.miralis.start_address, DEFAULT_MIRALIS_START)
        argv += ["--package", "miralis"]
        env["RUSTFLAGS"] = _linker_args(address)
        env.update(cfg.build_envs())
    elif target.kind is TargetKind.FIRMWARE:
        address = _or_default(cfg.target.firmware.start_address, DEFAULT_FIRMWARE_START)
        env["RUSTFLAGS"] = _linker_args(address)
        env["IS_TARGET_FIRMWARE"] = "true"
        env.update(cfg.build_envs())
        argv += ["--package", str(target.name)]
        if target.name == "miralis":
            env["MIRALIS_PLATFORM_NAME"] = "miralis"
    else:
        payload = cfg.target.payload
        start = payload.start_address if payload is not None else None
        env["RUSTFLAGS"] = _linker_args(_or_default(start, DEFAULT_PAYLOAD_START))
        env["IS_TARGET_FIRMWARE"] = "false"
        env.update(cfg.build_envs())
        argv += ["--package", str(target.name)]

    return argv, env


def _run(argv: Sequence[str], failure: str, **kwargs: Any) -> None:
    try:
        result = subprocess.run(list(argv), check=False, **kwargs)
    except OSError as err:
        raise ArtifactError(f"{failure}: {err}") from err
    if result.returncode != 0:
        raise ArtifactError(failure)


def build_target(target: Target, cfg: Config) -> Path:
    """Build ``target`` with cargo and return the path of the raw binary."""
    argv, env = build_command(target, cfg)
    _run(
        argv,
        f"build failed with command: {shlex.join(argv)}",
        env={**os.environ, **env},
    )
    return objcopy(target, _target_profile(target, cfg))


def objcopy(target: Target, profile: Profile) -> Path:
    """Extract the raw binary from the ELF file, unless it is already up to date."""
    directory = get_target_dir_path(target, profile)
    name = "miralis" if target.kind is TargetKind.MIRALIS else str(target.name)
    elf_path = directory / name
    bin_path = directory / f"{name}.img"

    if is_older(elf_path, bin_path):
        return bin_path

    try:
        result = subprocess.run(
            ["rust-objcopy", "-O", "binary", str(elf_path), str(bin_path)], check=False
        )
    except OSError as err:
        raise ArtifactError("objcopy failed. Is `rust-objcopy` installed?") from err
    if result.returncode != 0:
        raise ArtifactError("objcopy failed")
    return bin_path


# ———————————————————————————————— Download ———————————————————————————————— #


def download_artifact(name: str, url: str) -> Path:
    """Download an artifact unless it is newer than the manifest; return its path."""
    artifacts = get_artifacts_path()
    artifacts.mkdir(parents=True, exist_ok=True)
    artifact = artifacts / name
    if not is_older(get_artifact_manifest_path(), artifact):
        _run(["curl", "-o", str(artifact), "-L", url], "Could not download artifact")
    return artifact


# ————————————————————————————— List artifacts ————————————————————————————— #


def _format_section(title: str, entries: dict[str, ManifestEntry], markdown: bool) -> str:
    parts = [f"## {title}\n\n\n"] if markdown else []
    for name in sorted(entries):
        entry = entries[name]
        if not markdown:
            parts.append(f"{name}\n")
            continue
        parts.append(f"### {name}\n\n")
        if entry.description is not None:
            parts.append(f"{entry.description}\n")
        if entry.url is not None:
            parts.append(f"- [Download link]({entry.url})\n")
        if entry.repo is not None:
            parts.append(f"- [Source repository]({entry.repo})\n")
        parts.append("\n")
    return "".join(parts)


def format_artifact_list(manifest: ArtifactManifest, markdown: bool) -> str:
    """Render the artifacts, as markdown or as one name per line, sorted by name."""
    return _format_section("Binary artifacts", manifest.bin, markdown) + _format_section(
        "Disk artifacts", manifest.disk, markdown
    )


def list_artifacts(markdown: bool = False) -> int:
    """Display the artifacts of the workspace manifest; return the exit code."""
    text = format_artifact_list(read_artifact_manifest(), markdown)
    if markdown:
        print(text, end="")
    else:
        for name in text.splitlines():
            logger.info("%s", name)
    return 0


# ——————————————————————————— Process disk image ——————————————————————————— #


def download_disk_image(name: str, url: str) -> Path:
    """Download and extract a disk image unless it is already present.

    The image ends up at ``artifacts/<name>-miralis.img``, whose path is returned.
    """
    image = Path(_DISK_IMAGE_DIR) / f"{name}-miralis.img"
    if is_file_present(image):
        logger.debug("Disk image already exists.")
        return image

    try:
        file_name = extract_file_name(url)
        compression = extract_file_extension(file_name)
    except ValueError as err:
        raise ArtifactError(str(err)) from err

    extracted = remove_file_extension(file_name)
    if ".tar" in extracted:
        raise ArtifactError(f"Extracting archives of type .tar.* is not supported: '{file_name}'")
    if compression not in _EXTRACTORS and compression not in _UNCOMPRESSED:
        raise ArtifactError(f"Unsupported compression type '{compression}'")

    logger.info("Disk image not found. Fetching the image...")
    _run(["wget", url], "Failed to download disk image")

    logger.info("Extracting the disk image")
    if compression in _EXTRACTORS:
        _run([*_EXTRACTORS[compression], file_name], "Failed to extract disk image")
    else:
        extracted = file_name

    logger.info("Moving and cleaning the download")
    image.parent.mkdir(parents=True, exist_ok=True)
    Path(extracted).replace(image)
    Path(file_name).unlink(missing_ok=True)

    logger.info("Disk image ready to use")
    return image
"""Path helpers for locating the workspace and its build outputs."""

from __future__ import annotations

from pathlib import Path

from miralis_runner.config import Profile
from miralis_runner.targets import Target

#: File marking the root of the project.
PROJECT_CONFIG_FILE = "miralis.toml"

XZ_COMPRESSION = "xz"
ZST_COMPRESSION = "zst"
GZ_COMPRESSION = "gz"
IMG_EXTENSION = "img"
EXT2_EXTENSION = "ext2"


def find_project_root(start: str | Path | None = None) -> Path | None:
    """Walk up from ``start`` (or the current directory) to the project root.

    The root is the first directory holding the project config file; returns
    None if there is none.
    """
    try:
        directory = Path(start) if start is not None else Path.cwd()
        directory = directory.resolve()
    except OSError:
        return None
    for candidate in (directory, *directory.parents):
        if (candidate / PROJECT_CONFIG_FILE).is_file():
            return candidate
    return None


def get_workspace_path() -> Path:
    """Return the root of the workspace, raising FileNotFoundError if not found."""
    root = find_project_root()
    if root is None:
        raise FileNotFoundError(
            f"Could not locate workspace root, missing '{PROJECT_CONFIG_FILE}'"
        )
    return root


def get_project_config_path() -> Path:
    """Return the path to the project config file."""
    return get_workspace_path() / PROJECT_CONFIG_FILE


def make_path_relative_to_root(path: str | Path) -> Path:
    """Resolve a relative path against the workspace root; absolute paths are kept."""
    path = Path(path)
    if path.is_absolute():
        return path
    return get_workspace_path() / path


def get_target_dir_path(target: Target, profile: Profile) -> Path:
    """Return the directory where cargo puts the binaries of ``target``."""
    return get_workspace_path() / "target" / target.triple() / profile.dir_name


def _get_misc_path() -> Path:
    return get_workspace_path() / "misc"


def get_artifact_manifest_path() -> Path:
    """Return the path to the artifact manifest."""
    return _get_misc_path() / "artifacts.toml"


def get_artifacts_path() -> Path:
    """Return the path to the artifacts folder."""
    return get_workspace_path() / "artifacts"


def get_target_config_path(target: Target) -> Path:
    """Return the target triple definition file for ``target``."""
    return _get_misc_path() / f"{target.triple()}.json"


def is_older(a: str | Path, b: str | Path) -> bool:
    """Return True if ``a`` was modified no later than ``b``; False if either is missing."""
    try:
        a_time = Path(a).stat().st_mtime_ns
        b_time = Path(b).stat().st_mtime_ns
    except OSError:
        return False
    return a_time <= b_time


def is_file_present(path: str | Path) -> bool:
    """Return True if something exists at ``path``."""
    return Path(path).exists()


def extract_file_extension(path: str) -> str:
    """Return the last extension of ``path``, without the dot."""
    suffix = Path(path).suffix
    if not suffix:
        raise ValueError(f"'{path}' has no file extension")
    return suffix[1:]


def extract_file_name(path: str) -> str:
    """Return the final component of ``path``."""
    name = Path(path).name
    if not name or name == "..":
        raise ValueError(f"'{path}' has no file name")
    return name


def remove_file_extension(path: str) -> str:
    """Strip the last extension from ``path``, keeping its directory."""
    p = Path(path)
    if not p.name:
        return path
    return str(p.parent / p.stem)
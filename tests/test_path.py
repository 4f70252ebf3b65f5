import os

import pytest

from miralis_runner.config import Profile
from miralis_runner.path import (
    PROJECT_CONFIG_FILE,
    extract_file_extension,
    extract_file_name,
    find_project_root,
    get_artifact_manifest_path,
    get_artifacts_path,
    get_project_config_path,
    get_target_config_path,
    get_target_dir_path,
    get_workspace_path,
    is_file_present,
    is_older,
    make_path_relative_to_root,
    remove_file_extension,
)
from miralis_runner.targets import Target


@pytest.fixture
def root(tmp_path, monkeypatch):
    (tmp_path / PROJECT_CONFIG_FILE).write_text("")
    monkeypatch.chdir(tmp_path)
    return tmp_path.resolve()


def test_find_project_root_from_nested_directory(root):
    nested = root / "a" / "b"
    nested.mkdir(parents=True)
    assert find_project_root(nested) == root


def test_find_project_root_uses_cwd(root):
    assert find_project_root() == root


def test_find_project_root_none_without_marker(tmp_path):
    assert find_project_root(tmp_path) is None


def test_marker_must_be_a_file(tmp_path):
    (tmp_path / PROJECT_CONFIG_FILE).mkdir()
    assert find_project_root(tmp_path) is None


def test_get_workspace_path_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        get_workspace_path()


def test_workspace_paths(root):
    assert get_workspace_path() == root
    assert get_project_config_path() == root / PROJECT_CONFIG_FILE
    assert get_artifact_manifest_path() == root / "misc" / "artifacts.toml"
    assert get_artifacts_path() == root / "artifacts"


def test_target_dir_path(root):
    assert get_target_dir_path(Target.firmware("x"), Profile.RELEASE) == (
        root / "target" / "riscv-unknown-firmware" / "release"
    )
    assert get_target_dir_path(Target.miralis(), Profile.DEBUG) == (
        root / "target" / "riscv-unknown-miralis" / "debug"
    )


def test_target_config_path(root):
    assert get_target_config_path(Target.payload("p")) == (
        root / "misc" / "riscv-unknown-payload.json"
    )


def test_make_path_relative_to_root(root):
    assert make_path_relative_to_root("config/qemu.toml") == root / "config" / "qemu.toml"
    absolute = root / "elsewhere.toml"
    assert make_path_relative_to_root(absolute) == absolute


def test_is_older(tmp_path):
    a, b = tmp_path / "a", tmp_path / "b"
    a.write_text("")
    b.write_text("")
    os.utime(a, (100, 100))
    os.utime(b, (200, 200))
    assert is_older(a, b)
    assert not is_older(b, a)
    assert is_older(a, a)


def test_is_older_missing_file(tmp_path):
    a = tmp_path / "a"
    a.write_text("")
    assert not is_older(a, tmp_path / "missing")
    assert not is_older(tmp_path / "missing", a)


def test_is_file_present(tmp_path):
    f = tmp_path / "f"
    assert not is_file_present(str(f))
    f.write_text("")
    assert is_file_present(str(f))


def test_extract_file_extension():
    assert extract_file_extension("https://example.com/disk.img.xz") == "xz"
    assert extract_file_extension("disk.ext2") == "ext2"
    with pytest.raises(ValueError):
        extract_file_extension("disk")


def test_extract_file_name():
    assert extract_file_name("https://example.com/disk.img.zst") == "disk.img.zst"
    with pytest.raises(ValueError):
        extract_file_name("/")


def test_remove_file_extension():
    assert remove_file_extension("disk.img.xz") == "disk.img"
    assert remove_file_extension(os.path.join("dir", "archive.tar.gz")) == os.path.join(
        "dir", "archive.tar"
    )
    assert remove_file_extension("plain") == "plain"
import subprocess
from pathlib import Path

import pytest

from miralis_runner.config import Config, Platform, PlatformConfig, QemuConfig
from miralis_runner import run as run_mod
from miralis_runner.run import (
    CommandError,
    apply_overrides,
    get_qemu_cmd,
    get_spike_cmd,
    qemu_is_available,
    raw_to_elf,
    run,
    spike_is_available,
)


class FakeRun:
    def __init__(self, codes=None, error=None):
        self.calls = []
        self.codes = codes or {}
        self.error = error

    def __call__(self, argv, *args, **kwargs):
        argv = list(argv)
        self.calls.append((argv, kwargs))
        if self.error is not None:
            raise self.error
        return subprocess.CompletedProcess(argv, self.codes.get(argv[0], 0))


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    (tmp_path / "miralis.toml").write_text("")
    for name in ("firmware", "payload", "misc"):
        (tmp_path / name).mkdir()
    (tmp_path / "misc" / "artifacts.toml").write_text("[disk]\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CARGO", raising=False)
    monkeypatch.delenv("MIRALIS_RUNNER_STRICT", raising=False)
    return tmp_path.resolve()


def test_apply_overrides_sets_values():
    cfg = apply_overrides(Config(), max_exits=10, smp=2, disk="ubuntu")
    assert cfg.debug.max_firmware_exits == 10
    assert cfg.platform.nb_harts == 2
    assert cfg.qemu.disk == "ubuntu"


def test_apply_overrides_keeps_values_when_absent():
    cfg = Config(platform=PlatformConfig(nb_harts=3))
    apply_overrides(cfg)
    assert cfg.platform.nb_harts == 3
    assert cfg.debug.max_firmware_exits is None
    assert cfg.qemu.disk is None


def test_qemu_cmd_default():
    cmd = get_qemu_cmd(Config(), "m.img", "fw.img")
    assert cmd == [
        "qemu-system-riscv64",
        "--no-reboot",
        "-nographic",
        "-machine",
        "virt",
        "-m",
        "2048",
        "-bios",
        "m.img",
        "-device",
        "loader,file=fw.img,addr=0x80200000,force-raw=on",
    ]


def test_qemu_cmd_options():
    cfg = Config(
        qemu=QemuConfig(path="/opt/bin", machine="sifive_u", cpu="rv64", memory="512"),
        platform=PlatformConfig(nb_harts=4),
    )
    cmd = get_qemu_cmd(cfg, "m.img", "fw.img", debug=True, stop=True)
    assert cmd[0] == "/opt/bin/qemu-system-riscv64"
    assert cmd[cmd.index("-cpu") + 1] == "rv64"
    assert cmd[cmd.index("-m") + 1] == "512"
    assert cmd[cmd.index("-smp") + 1] == "4"
    assert cmd[-2:] == ["-s", "-S"]
    machine_values = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-machine"]
    assert machine_values == ["virt", "sifive_u"]


def test_qemu_cmd_rejects_zero_harts():
    cfg = Config(platform=PlatformConfig(nb_harts=0))
    with pytest.raises(ValueError):
        get_qemu_cmd(cfg, "m.img", "fw.img")


def test_qemu_cmd_local_payload(workspace):
    payload = workspace / "payload.bin"
    payload.write_bytes(b"\x00")
    cmd = get_qemu_cmd(Config(), "m.img", "fw.img", payload=str(payload))
    assert cmd[-1] == f"loader,file={payload},addr=0x80400000,force-raw=on"


def test_qemu_cmd_invalid_payload(workspace):
    with pytest.raises(CommandError):
        get_qemu_cmd(Config(), "m.img", "fw.img", payload="does-not-exist")


def test_qemu_cmd_unknown_disk_adds_nothing(workspace):
    cfg = Config(qemu=QemuConfig(disk="unknown"))
    cmd = get_qemu_cmd(cfg, "m.img", "fw.img")
    assert "-drive" not in cmd


def test_qemu_cmd_disk_from_manifest(workspace):
    (workspace / "misc" / "artifacts.toml").write_text(
        '[disk.ubuntu]\nurl = "https://example.com/ubuntu.img.xz"\n'
    )
    (workspace / "artifacts").mkdir()
    (workspace / "artifacts" / "ubuntu-miralis.img").write_bytes(b"")
    cfg = Config(qemu=QemuConfig(disk="ubuntu"))
    cmd = get_qemu_cmd(cfg, "m.img", "fw.img")
    assert cmd[cmd.index("-drive") + 1] == (
        "file=artifacts/ubuntu-miralis.img,format=raw,if=virtio"
    )
    assert "virtio-rng-pci" in cmd


def test_raw_to_elf_strips_img():
    assert raw_to_elf("target/miralis.img") == "target/miralis"


def test_spike_cmd():
    cfg = Config(platform=PlatformConfig(nb_harts=2))
    cmd = get_spike_cmd(cfg, "build/miralis.img", "fw.img")
    assert cmd == ["spike", "-p2", "--kernel", "fw.img", "build/miralis"]


def test_spike_cmd_rejects_zero_harts():
    with pytest.raises(ValueError):
        get_spike_cmd(Config(platform=PlatformConfig(nb_harts=0)), "m.img", "fw.img")


def test_availability_when_missing(monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun(error=FileNotFoundError()))
    assert qemu_is_available() is False
    assert spike_is_available() is False


def test_availability_when_present(monkeypatch):
    fake = FakeRun(codes={"qemu-system-riscv64": 1})
    monkeypatch.setattr(subprocess, "run", fake)
    assert qemu_is_available() is True
    assert fake.calls[0][0] == ["qemu-system-riscv64", "--version"]


def test_run_returns_emulator_exit_code(workspace, monkeypatch):
    (workspace / "firmware" / "fw").mkdir()
    fake = FakeRun(codes={"qemu-system-riscv64": 3})
    monkeypatch.setattr(subprocess, "run", fake)
    assert run(firmware="fw") == 3
    qemu_argv = fake.calls[-1][0]
    assert qemu_argv[0] == "qemu-system-riscv64"
    firmware_img = workspace / "target" / "riscv-unknown-firmware" / "debug" / "fw.img"
    assert f"loader,file={firmware_img},addr=0x80200000,force-raw=on" in qemu_argv


def test_run_success_with_output(workspace, monkeypatch):
    (workspace / "firmware" / "default").mkdir()
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    out = workspace / "out.txt"
    assert run(output=out) == 0
    assert fake.calls[-1][1]["stdout"].name == str(out)
    assert out.exists()


def test_run_unknown_firmware_fails(workspace, monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    assert run(firmware="missing-firmware") == 1
    assert all(argv[0] != "qemu-system-riscv64" for argv, _ in fake.calls)


def test_run_rejects_hardware_platform(workspace, monkeypatch):
    (workspace / "firmware" / "default").mkdir()
    config = workspace / "hw.toml"
    config.write_text('[platform]\nname = "visionfive2"\n')
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    assert run(config=config) == 1
    assert Platform.VISIONFIVE2 == "visionfive2"
    assert all(argv[0] != "qemu-system-riscv64" for argv, _ in fake.calls)


def test_run_spike_platform(workspace, monkeypatch):
    (workspace / "firmware" / "default").mkdir()
    config = workspace / "spike.toml"
    config.write_text('[platform]\nname = "spike"\n')
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    assert run(config=config, smp=2) == 0
    argv = fake.calls[-1][0]
    assert argv[:2] == ["spike", "-p2"]
    assert argv[-1] == str(
        workspace / "target" / "riscv-unknown-miralis" / "debug" / "miralis"
    )
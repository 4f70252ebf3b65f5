"""Run Miralis with a firmware on QEMU or Spike."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from miralis_runner.artifacts import (
    build_target,
    download_disk_image,
    get_external_artifacts,
    prepare_firmware_artifact,
    prepare_payload_artifact,
)
from miralis_runner.config import Config, Platform, read_config
from miralis_runner.targets import Target

logger = logging.getLogger(__name__)

#: The QEMU executable.
QEMU = "qemu-system-riscv64"

#: The Spike executable.
SPIKE = "spike"

QEMU_ARGS = ("--no-reboot", "-nographic", "-machine", "virt")

#: Address at which the firmware is loaded in memory.
FIRMWARE_ADDR = 0x80200000

#: Address at which the payload is loaded in memory.
PAYLOAD_ADDR = 0x80400000

_DEFAULT_MEMORY = "2048"


class CommandError(Exception):
    """Raised when the emulator command cannot be built or started."""


def apply_overrides(
    cfg: Config,
    max_exits: int | None = None,
    smp: int | None = None,
    disk: str | None = None,
) -> Config:
    """Override parts of ``cfg`` with command-line values; return ``cfg``."""
    if max_exits is not None:
        cfg.debug.max_firmware_exits = max_exits
    if smp is not None:
        cfg.platform.nb_harts = smp
    if disk is not None:
        cfg.qemu.disk = disk
    return cfg


def _loader(path: str | Path, address: int) -> str:
    return f"loader,file={path},addr=0x{address:x},force-raw=on"


def _check_harts(nb_harts: int) -> None:
    if nb_harts <= 0:
        raise ValueError("Must use at least one core")


def _resolve_payload(name: str, cfg: Config) -> Path:
    payload = prepare_payload_artifact(name, cfg)
    if payload is not None:
        return payload
    path = Path(name)
    if path.is_file():
        return path
    logger.error("Invalid payload '%s'", name)
    raise CommandError(f"Invalid payload '{name}'")


def get_qemu_cmd(
    cfg: Config,
    miralis: str | Path,
    firmware: str | Path,
    payload: str | None = None,
    debug: bool = False,
    stop: bool = False,
) -> list[str]:
    """Return the command line running Miralis and ``firmware`` on QEMU."""
    qemu = "/".join((cfg.qemu.path, QEMU)) if cfg.qemu.path is not None else QEMU
    cmd = [qemu, *QEMU_ARGS]
    if cfg.qemu.machine is not None:
        cmd += ["-machine", cfg.qemu.machine]
    if cfg.qemu.cpu is not None:
        cmd += ["-cpu", cfg.qemu.cpu]
    cmd += ["-m", cfg.qemu.memory if cfg.qemu.memory is not None else _DEFAULT_MEMORY]
    cmd += ["-bios", str(miralis), "-device", _loader(firmware, FIRMWARE_ADDR)]

    if payload is None and cfg.target.payload is not None:
        payload = cfg.target.payload.name
    if payload is not None:
        cmd += ["-device", _loader(_resolve_payload(payload, cfg), PAYLOAD_ADDR)]

    if cfg.qemu.disk is not None:
        artifact = get_external_artifacts().disk.get(cfg.qemu.disk)
        if artifact is not None:
            download_disk_image(artifact.name, artifact.url)
            cmd += [
                "-device", "virtio-net-device,netdev=eth0",
                "-netdev", "user,id=eth0",
                "-device", "virtio-rng-pci",
                "-drive",
                f"file=artifacts/{artifact.name}-miralis.img,format=raw,if=virtio",
            ]

    if cfg.platform.nb_harts is not None:
        _check_harts(cfg.platform.nb_harts)
        cmd += ["-smp", str(cfg.platform.nb_harts)]
    if debug:
        cmd.append("-s")
    if stop:
        cmd.append("-S")
    return cmd


def raw_to_elf(path: str) -> str:
    """Return the ELF path matching a raw ``.img`` binary path."""
    return path[:-4]


def get_spike_cmd(cfg: Config, miralis: str | Path, firmware: str | Path) -> list[str]:
    """Return the command line running Miralis and ``firmware`` on Spike."""
    cmd = [SPIKE]
    if cfg.platform.nb_harts is not None:
        _check_harts(cfg.platform.nb_harts)
        cmd.append(f"-p{cfg.platform.nb_harts}")
    cmd += ["--kernel", str(firmware), raw_to_elf(str(miralis))]
    return cmd


def _is_available(argv: list[str]) -> bool:
    try:
        subprocess.run(
            argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
        )
    except OSError:
        return False
    return True


def qemu_is_available() -> bool:
    """Return True if QEMU can be started."""
    return _is_available([QEMU, "--version"])


def spike_is_available() -> bool:
    """Return True if Spike can be started."""
    return _is_available([SPIKE, "--help"])


def _exit_code(returncode: int) -> int:
    if returncode == 0:
        return 0
    return returncode % 256 if returncode > 0 else 1


def run(
    config: str | Path | None = None,
    firmware: str | None = None,
    max_exits: int | None = None,
    smp: int | None = None,
    disk: str | None = None,
    debug: bool = False,
    stop: bool = False,
    output: str | Path | None = None,
) -> int:
    """Build Miralis and a firmware, run them on an emulator; return the exit code."""
    cfg = apply_overrides(read_config(config), max_exits, smp, disk)

    miralis = build_target(Target.miralis(), cfg)
    if firmware is not None:
        name = firmware
    elif cfg.target.firmware.name is not None:
        name = cfg.target.firmware.name
    else:
        name = "default"
    logger.info("Running Miralis with '%s' firmware", name)
    firmware_path = prepare_firmware_artifact(name, cfg)
    if firmware_path is None:
        return 1

    platform = cfg.platform.name if cfg.platform.name is not None else Platform.QEMU_VIRT
    try:
        if platform is Platform.QEMU_VIRT:
            cmd = get_qemu_cmd(cfg, miralis, firmware_path, None, debug, stop)
        elif platform is Platform.SPIKE:
            cmd = get_spike_cmd(cfg, miralis, firmware_path)
        else:
            logger.error("We can't run real hardware on simulator.")
            return 1
    except CommandError:
        logger.error("Failed to build command")
        return 1

    logger.debug("%s", shlex.join(cmd))

    try:
        if output is not None:
            with open(output, "w") as out:
                result = subprocess.run(cmd, stdout=out, check=False)
        else:
            result = subprocess.run(cmd, check=False)
    except OSError as err:
        raise CommandError(f"Failed to run: {err}") from err

    return _exit_code(result.returncode)
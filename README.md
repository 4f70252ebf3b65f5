# miralis-runner

A Python library for working with a RISC-V firmware monitor project. It
reads and validates the project's TOML configuration, turns it into the
environment variables that drive the build, builds the monitor, firmware
and payload images with cargo, fetches external artifacts, and starts the
images under QEMU or Spike.

## Installation

```
pip install .
```

The library calls external tools when needed: `cargo`, `rust-objcopy`,
`qemu-system-riscv64`, `spike`, `curl`, `wget` and the decompressors `xz`,
`zstd` and `gunzip`.

Functions that need the workspace find it by looking upward from the
current directory for `miralis.toml`; `get_workspace_path()` raises
`FileNotFoundError` when there is none.

## Modules

- `miralis_runner.targets`: `Target` (`Target.miralis()`,
  `Target.firmware(name)`, `Target.payload(name)`) and its `triple()`.
- `miralis_runner.config`: `parse_config`, `read_config`, `Config`
  (`from_dict`, `build_envs`), `check_config_file` and `check_config`.
  Invalid input raises `ConfigError`.
- `miralis_runner.project`: `parse_project_config` and
  `load_project_config` read the project file into a `ProjectConfig` of
  named `ConfigEntry` and `TestSpec` values, kept in file order.
- `miralis_runner.path`: workspace and output paths (`find_project_root`,
  `get_target_dir_path`, `get_artifact_manifest_path`, ...) and small file
  helpers (`is_older`, `extract_file_extension`, `remove_file_extension`).
- `miralis_runner.artifacts`: the artifact manifest
  (`parse_artifact_manifest`, `read_artifact_manifest`,
  `collect_artifacts`), locating artifacts (`locate_bin_artifact`),
  building them (`build_command`, `build_target`, `objcopy`), downloading
  them (`download_artifact`, `download_disk_image`) and listing them
  (`format_artifact_list`, `list_artifacts`). Failures raise
  `ArtifactError`.
- `miralis_runner.run`: emulator command lines (`get_qemu_cmd`,
  `get_spike_cmd`), availability checks (`qemu_is_available`,
  `spike_is_available`) and `run`, which builds everything, starts the
  emulator and returns its exit code.

## Examples

```python
from miralis_runner.config import parse_config

cfg = parse_config('[platform]\nname = "spike"\nnb_harts = 2\n')
envs = cfg.build_envs()
# envs["MIRALIS_PLATFORM_NAME"] == "spike"
# envs["MIRALIS_PLATFORM_NB_HARTS"] == "2"
```

```python
from miralis_runner.config import Config
from miralis_runner.run import get_spike_cmd

cmd = get_spike_cmd(Config(), "target/miralis.img", "firmware.img")
# ["spike", "--kernel", "firmware.img", "target/miralis"]
```

```python
from miralis_runner.run import run

exit_code = run(config="config/example.toml", firmware="default", smp=2)
```

## Configuration

Configuration files are TOML with the sections `log`, `debug`, `vcpu`,
`platform`, `qemu`, `target` and `modules`. Unknown keys are rejected.
`read_config()` without a path reads `config.toml` in the current
directory, and a missing file gives the default configuration: QEMU `virt`
platform, development profile, and the monitor, firmware and payload loaded
at `0x80000000`, `0x80200000` and `0x80400000`. A `qemu.cpu` of `"none"` is
treated as unset.

## What this package does not do

- It has no command-line program; everything is used from Python.
- It parses the integration tests listed in `miralis.toml` but has no
  function that runs them.
- It does not start a GDB session, and it does not drive model checking.
- It does not set up its own log output; it logs through the standard
  `logging` module and leaves configuration to the caller.
"""Build targets: Miralis itself, a firmware, or a payload."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

#: Target triple used to build the monitor.
MIRALIS_TARGET = "riscv-unknown-miralis"

#: Target triple used to build the firmware.
FIRMWARE_TARGET = "riscv-unknown-firmware"

#: Target triple used to build the payload.
PAYLOAD_TARGET = "riscv-unknown-payload"


class TargetKind(Enum):
    """The kind of binary being built."""

    MIRALIS = "miralis"
    FIRMWARE = "firmware"
    PAYLOAD = "payload"


_TRIPLES = {
    TargetKind.MIRALIS: MIRALIS_TARGET,
    TargetKind.FIRMWARE: FIRMWARE_TARGET,
    TargetKind.PAYLOAD: PAYLOAD_TARGET,
}


@dataclass(frozen=True)
class Target:
    """A build target; firmware and payload targets carry a package name."""

    kind: TargetKind
    name: str | None = None

    @classmethod
    def miralis(cls) -> Target:
        """The Miralis monitor itself."""
        return cls(TargetKind.MIRALIS)

    @classmethod
    def firmware(cls, name: str) -> Target:
        """A firmware package built from source."""
        return cls(TargetKind.FIRMWARE, name)

    @classmethod
    def payload(cls, name: str) -> Target:
        """A payload package built from source."""
        return cls(TargetKind.PAYLOAD, name)

    def triple(self) -> str:
        """Return the target triple used to build this target."""
        return _TRIPLES[self.kind]
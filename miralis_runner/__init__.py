"""Configure, build and run a RISC-V firmware monitor and its firmware and payload images."""

__version__ = "0.1.0"
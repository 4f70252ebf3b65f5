[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "miralis-runner"
version = "0.1.0"
description = "Configure, build and run a RISC-V firmware monitor and its firmware and payload images"
requires-python = ">=3.11"
dependencies = []
keywords = ["risc-v", "firmware", "qemu", "spike", "build", "runner"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["miralis_runner"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cia402drive"
version = "0.1.0"
description = "CiA 402 drive profile state machine, operation modes and motor layer over an object dictionary"
requires-python = ">=3.10"
dependencies = []
keywords = ["canopen", "cia402", "ds402", "motor", "drive", "state machine", "homing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN) :: CANopen",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cia402drive"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lidarkit"
version = "0.1.0"
description = "Host-side toolkit for lidar units: configuration parsing and checks, device log capture, and firmware upgrade orchestration"
requires-python = ">=3.10"
dependencies = []
keywords = ["lidar", "firmware", "upgrade", "logging", "configuration"]
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
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lidarkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

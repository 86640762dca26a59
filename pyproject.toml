[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nriadapt"
version = "0.1.0"
description = "Runtime-side adaptation layer for Node Resource Interface plugins: discovery, event relay and conflict-checked merging of container adjustments."
requires-python = ">=3.10"
dependencies = []
keywords = ["containers", "nri", "runtime", "plugins", "cgroups", "kubernetes"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nriadapt"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

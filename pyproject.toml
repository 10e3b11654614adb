[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "colocmem"
version = "0.1.0"
description = "Kubernetes device plugin that exposes spare node memory as colocation memory blocks"
requires-python = ">=3.10"
keywords = ["kubernetes", "device-plugin", "memory", "colocation", "numa", "cgroups"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "grpcio",
    "protobuf",
    "requests",
    "pyyaml",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
colocmem = "colocmem.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["colocmem"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

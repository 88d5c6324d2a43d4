[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mctp"
version = "0.1.0"
description = "MCTP endpoint core, control messages and ASPEED LPC, PCIe and I3C bindings"
requires-python = ">=3.10"
dependencies = []
keywords = ["mctp", "dmtf", "bmc", "pcie", "vdm", "kcs", "lpc", "i3c"]
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
    "Topic :: System :: Networking",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mctp"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

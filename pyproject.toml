[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "devplugins"
version = "0.19.0"
description = "Device plugin building blocks plus FPGA bitstream readers and sysfs/ioctl helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["fpga", "device-plugin", "bitstream", "gbs", "aocx", "sysfs", "pci", "ioctl"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["devplugins"]

[tool.pytest.ini_options]
addopts = "-ra"

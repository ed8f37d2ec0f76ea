"""Opening FPGA devices of any supported driver and listing them."""

from __future__ import annotations

import os

from devplugins.fpga.dfl import new_dfl_fme, new_dfl_port
from devplugins.fpga.intel import new_intel_fpga_fme, new_intel_fpga_port
from devplugins.fpga.interfaces import (
    DFL_FPGA_FME_PREFIX,
    DFL_FPGA_PORT_PREFIX,
    FME,
    INTEL_FPGA_FME_PREFIX,
    INTEL_FPGA_PORT_PREFIX,
    Port,
    is_fpga_fme,
    is_fpga_port,
)
from devplugins.fpga.sysfs import FpgaError, clean_basename

PLATFORM_DEVICES_DIR = "/sys/bus/platform/devices"


def _device_path(fname: str) -> str:
    return fname if "/" in fname else os.path.join("/dev", fname)


def new_port(fname: str) -> Port:
    """Open the port device node ``fname``; bare names are looked up in /dev."""
    fname = _device_path(fname)
    dev_name = clean_basename(fname)
    if dev_name.startswith(DFL_FPGA_PORT_PREFIX):
        return new_dfl_port(fname)
    if dev_name.startswith(INTEL_FPGA_PORT_PREFIX):
        return new_intel_fpga_port(fname)
    raise FpgaError(f"unknown type of FPGA port {fname}")


def new_fme(fname: str) -> FME:
    """Open the FME device node ``fname``; bare names are looked up in /dev."""
    fname = _device_path(fname)
    dev_name = clean_basename(fname)
    if dev_name.startswith(DFL_FPGA_FME_PREFIX):
        return new_dfl_fme(fname)
    if dev_name.startswith(INTEL_FPGA_FME_PREFIX):
        return new_intel_fpga_fme(fname)
    raise FpgaError(f"unknown type of FPGA FME {fname}")


def list_fpga_devices(
    platform_dir: str = PLATFORM_DEVICES_DIR,
) -> tuple[list[str], list[str]]:
    """Return the names of FME devices and of port devices, sorted by name.

    Both lists are empty if the platform device directory cannot be read.
    """
    fmes: list[str] = []
    ports: list[str] = []
    try:
        names = sorted(os.listdir(platform_dir))
    except OSError:
        return fmes, ports
    for name in names:
        if is_fpga_fme(name):
            fmes.append(name)
        elif is_fpga_port(name):
            ports.append(name)
    return fmes, ports
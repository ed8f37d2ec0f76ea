"""Helpers for discovering FPGA devices through sysfs."""

from __future__ import annotations

import glob
import os
import re
import stat
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

PCI_DEVICES_PREFIX = "/sys/devices/pci"
SYSFS_DEV_ROOT = "/sys/dev"
FPGA_CLASS = "0x120000"

_PCI_ADDRESS_RE = re.compile(
    r"([0-9A-Fa-f]{4}):([0-9A-Fa-f]{2}):([0-9A-Fa-f]{2})\.([0-9A-Fa-f])"
)
_GLOB_CHARS = "?*["
_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1

_PCI_FILES = {
    "vendor": "vendor",
    "device": "device",
    "class": "pci_class",
    "local_cpulist": "cpus",
    "numa_node": "numa",
    "sriov_numvfs": "vfs",
    "sriov_totalvfs": "total_vfs",
}


class FpgaError(Exception):
    """Raised when an FPGA device or its sysfs entries cannot be used."""


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return os.path.basename(stripped)


@dataclass
class PCIDevice:
    """The most useful sysfs attributes of a PCI device."""

    sysfs_path: str
    bdf: str
    vendor: str = ""
    device: str = ""
    pci_class: str = ""
    cpus: str = ""
    numa: str = ""
    vfs: str = ""
    total_vfs: str = ""
    driver: str = ""
    phys_fn: PCIDevice | None = None

    def num_vfs(self) -> int:
        """Return the number of configured VFs, or -1 if unknown."""
        if _INT_RE.fullmatch(self.vfs):
            value = int(self.vfs)
            if _INT32_MIN <= value <= _INT32_MAX:
                return value
        return -1

    def get_vfs(self) -> list[PCIDevice]:
        """Return the PCI devices of the configured virtual functions."""
        if self.num_vfs() <= 0:
            return []
        entries = sorted(glob.glob(os.path.join(self.sysfs_path, "virtfn*")))
        return [new_pci_device(entry) for entry in entries]


def read_files_in_directory(
    file_map: Mapping[str, str], directory: str
) -> dict[str, str]:
    """Read small sysfs files under ``directory``.

    ``file_map`` maps a relative path, which may hold glob patterns, to the
    key its stripped contents are returned under. Missing files and patterns
    that do not match exactly one file are skipped.
    """
    values: dict[str, str] = {}
    for relative, key in file_map.items():
        fname = os.path.join(directory, relative)
        if any(char in fname for char in _GLOB_CHARS):
            matches = glob.glob(fname)
            if len(matches) != 1:
                continue
            fname = matches[0]
        try:
            with open(fname, "rb") as handle:
                content = handle.read()
        except FileNotFoundError:
            continue
        except OSError as err:
            raise FpgaError(f"{directory}: unable to read file {relative!r}: {err}") from err
        values[key] = content.decode("utf-8", errors="replace").strip()
    return values


def new_pci_device(dev_path: str) -> PCIDevice:
    """Return the PCI device that the sysfs entry ``dev_path`` belongs to."""
    try:
        real_path = os.path.realpath(dev_path, strict=True)
    except OSError as err:
        raise FpgaError(f"failed get realpath for {dev_path}: {err}") from err

    sysfs_path = bdf = ""
    path = real_path
    while path.startswith(PCI_DEVICES_PREFIX):
        match = _PCI_ADDRESS_RE.fullmatch(os.path.basename(path))
        if match:
            sysfs_path, bdf = path, match.group(0)
            break
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    if not sysfs_path:
        raise FpgaError(f"can't find PCI device address for sysfs entry {real_path}")

    pci = PCIDevice(sysfs_path, bdf, **read_files_in_directory(_PCI_FILES, sysfs_path))
    if not pci.vendor or not pci.device:
        raise FpgaError(
            f"{pci.sysfs_path} vendor or device id can't be empty "
            f"({pci.vendor!r}/{pci.device!r})"
        )
    try:
        pci.phys_fn = new_pci_device(os.path.join(sysfs_path, "physfn"))
    except FpgaError:
        pass
    try:
        pci.driver = _base(os.path.realpath(os.path.join(sysfs_path, "driver"), strict=True))
    except OSError:
        pass
    return pci


def find_sysfs_device(dev: str) -> str:
    """Return the sysfs entry of a device node, or of the device holding a file.

    Returns an empty string if ``dev`` does not exist; raises for virtual devices.
    """
    try:
        info = os.stat(dev)
    except FileNotFoundError:
        return ""
    except OSError as err:
        raise FpgaError(f"unable to get stat for {dev}: {err}") from err

    dev_type = "block"
    rdev = info.st_dev
    if stat.S_ISCHR(info.st_mode) or stat.S_ISBLK(info.st_mode):
        rdev = info.st_rdev
        if stat.S_ISCHR(info.st_mode):
            dev_type = "char"

    major, minor = os.major(rdev), os.minor(rdev)
    if major == 0:
        raise FpgaError(f"{dev} is a virtual device node")
    dev_path = f"{SYSFS_DEV_ROOT}/{dev_type}/{major}:{minor}"
    try:
        return os.path.realpath(dev_path, strict=True)
    except OSError as err:
        raise FpgaError(f"failed get realpath for {dev_path}: {err}") from err


def clean_basename(name: str) -> str:
    """Return the file name of ``name`` after resolving symlinks."""
    try:
        real_path = os.path.realpath(name, strict=True)
    except OSError:
        real_path = name
    return _base(real_path)


class _HasPCIDevice(Protocol):
    def get_pci_device(self) -> PCIDevice: ...


def check_pci_device_type(dev: _HasPCIDevice) -> None:
    """Raise FpgaError unless ``dev`` is a PCI device of the FPGA class."""
    pci = dev.get_pci_device()
    if pci.pci_class != FPGA_CLASS:
        raise FpgaError(
            f"unsupported PCI class device {pci.bdf}  VID={pci.vendor} "
            f"PID={pci.device} Class={pci.pci_class}"
        )
"""FME and port devices driven by the upstream DFL FPGA kernel driver."""

from __future__ import annotations

import array
import os
import re
from dataclasses import dataclass, field

from devplugins.bitstream.gbs import BitstreamFile
from devplugins.fpga.interfaces import FME, Port, PortInfo, PortRegionInfo, generic_port_pr
from devplugins.fpga.ioctl import (
    DFL_FPGA_CHECK_EXTENSION,
    DFL_FPGA_FME_PORT_ASSIGN,
    DFL_FPGA_FME_PORT_PR,
    DFL_FPGA_FME_PORT_PR_STRUCT,
    DFL_FPGA_FME_PORT_RELEASE,
    DFL_FPGA_GET_API_VERSION,
    DFL_FPGA_PORT_GET_INFO,
    DFL_FPGA_PORT_GET_REGION_INFO,
    DFL_FPGA_PORT_INFO_STRUCT,
    DFL_FPGA_PORT_REGION_INFO_STRUCT,
    DFL_FPGA_PORT_RESET,
    ioctl_dev,
    pack_struct,
    unpack_struct,
)
from devplugins.fpga.sysfs import (
    FpgaError,
    PCIDevice,
    check_pci_device_type,
    find_sysfs_device,
    new_pci_device,
    read_files_in_directory,
)

DFL_FPGA_FME_GLOB_PCI = "fpga_region/region*/dfl-fme.*"
DEV_CHAR_DIR = "/dev/char"

_PORT_ID_STRUCT = (("port_id", "I"),)
_UINT_RE = re.compile(r"[0-9]+")
_UINT32_MAX = 2**32 - 1

_FME_FILES = {
    "bitstream_id": "bitstream_id",
    "bitstream_metadata": "bitstream_metadata",
    "dev": "dev",
    "ports_num": "ports_num",
    "socket_id": "socket_id",
    "dfl-fme-region.*/fpga_region/region*/compat_id": "compat_id",
}

_PORT_FILES = {
    "afu_id": "afu_id",
    "dev": "dev",
    "id": "id",
}


def _parse_uint32(value: str) -> int:
    if not _UINT_RE.fullmatch(value):
        raise FpgaError(f"invalid unsigned integer {value!r}")
    number = int(value)
    if number > _UINT32_MAX:
        raise FpgaError(f"value {value!r} out of range")
    return number


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    return os.path.basename(stripped) if stripped else "/"


def _lookup_sysfs(dev_path: str) -> str:
    try:
        return find_sysfs_device(dev_path)
    except FpgaError:
        return ""


def _api_version(dev: str) -> int:
    return int(ioctl_dev(dev, DFL_FPGA_GET_API_VERSION, 0))


def _check_extension(dev: str) -> int:
    return int(ioctl_dev(dev, DFL_FPGA_CHECK_EXTENSION, 0))


@dataclass(eq=False)
class DflFME(FME):
    """FPGA management engine exposed by the DFL driver."""

    dev_path: str
    sysfs_path: str = ""
    name: str = ""
    pci_device: PCIDevice | None = None
    socket_id: str = ""
    dev: str = ""
    compat_id: str = ""
    bitstream_id: str = ""
    bitstream_metadata: str = ""
    ports_num: str = ""

    def close(self) -> None:
        """Nothing is held open between operations."""

    def get_api_version(self) -> int:
        return _api_version(self.dev_path)

    def check_extension(self) -> int:
        return _check_extension(self.dev_path)

    def port_pr(self, port: int, bitstream: bytes) -> None:
        """Partially reconfigure ``port``; the driver reports HW errors as EIO."""
        if not bitstream:
            raise ValueError("bitstream is empty")
        buffer = array.array("B", bitstream)
        address, length = buffer.buffer_info()
        arg = pack_struct(
            DFL_FPGA_FME_PORT_PR_STRUCT,
            {"port_id": port, "buffer_size": length, "buffer_address": address},
        )
        ioctl_dev(self.dev_path, DFL_FPGA_FME_PORT_PR, arg)
        del buffer

    def port_release(self, port: int) -> None:
        arg = pack_struct(_PORT_ID_STRUCT, {"port_id": port})
        ioctl_dev(self.dev_path, DFL_FPGA_FME_PORT_RELEASE, arg)

    def port_assign(self, port: int) -> None:
        arg = pack_struct(_PORT_ID_STRUCT, {"port_id": port})
        ioctl_dev(self.dev_path, DFL_FPGA_FME_PORT_ASSIGN, arg)

    def get_dev_path(self) -> str:
        return self.dev_path

    def get_sysfs_path(self) -> str:
        if not self.sysfs_path:
            self.sysfs_path = _lookup_sysfs(self.dev_path)
        return self.sysfs_path

    def get_name(self) -> str:
        if not self.name:
            self.name = _base(self.get_sysfs_path())
        return self.name

    def get_pci_device(self) -> PCIDevice:
        if self.pci_device is None:
            self.pci_device = new_pci_device(self.get_sysfs_path())
        return self.pci_device

    def get_ports_num(self) -> int:
        if not self.ports_num:
            try:
                self._update_properties()
            except FpgaError:
                return -1
        try:
            return _parse_uint32(self.ports_num)
        except FpgaError:
            return -1

    def get_interface_uuid(self) -> str:
        if not self.compat_id:
            try:
                self._update_properties()
            except FpgaError:
                return ""
        return self.compat_id

    def get_socket_id(self) -> int:
        """Return the physical socket number, for when NUMA enumeration fails."""
        if not self.socket_id:
            raise FpgaError("n/a")
        return _parse_uint32(self.socket_id)

    def get_bitstream_id(self) -> str:
        return self.bitstream_id

    def get_bitstream_metadata(self) -> str:
        return self.bitstream_metadata

    def _update_properties(self) -> None:
        pci = self.get_pci_device()
        values = read_files_in_directory(
            _FME_FILES, os.path.join(pci.sysfs_path, DFL_FPGA_FME_GLOB_PCI)
        )
        for attribute, value in values.items():
            setattr(self, attribute, value)


def new_dfl_fme(dev: str) -> DflFME:
    """Open the DFL FME device node ``dev``."""
    fme = DflFME(dev_path=dev)
    check_pci_device_type(fme)
    fme._update_properties()
    return fme


@dataclass(eq=False)
class DflPort(Port):
    """FPGA port exposed by the DFL driver."""

    dev_path: str
    sysfs_path: str = ""
    name: str = ""
    pci_device: PCIDevice | None = None
    dev: str = ""
    afu_id: str = ""
    id: str = ""
    fme: FME | None = field(default=None, repr=False)

    def close(self) -> None:
        if self.fme is not None:
            self.fme.close()

    def get_api_version(self) -> int:
        return _api_version(self.dev_path)

    def check_extension(self) -> int:
        return _check_extension(self.dev_path)

    def port_reset(self) -> None:
        ioctl_dev(self.dev_path, DFL_FPGA_PORT_RESET, 0)

    def port_get_info(self) -> PortInfo:
        arg = pack_struct(DFL_FPGA_PORT_INFO_STRUCT, {})
        ioctl_dev(self.dev_path, DFL_FPGA_PORT_GET_INFO, arg)
        value = unpack_struct(DFL_FPGA_PORT_INFO_STRUCT, arg)
        return PortInfo(flags=value["flags"], regions=value["regions"], umsgs=value["umsgs"])

    def port_get_region_info(self, index: int) -> PortRegionInfo:
        arg = pack_struct(DFL_FPGA_PORT_REGION_INFO_STRUCT, {"index": index})
        ioctl_dev(self.dev_path, DFL_FPGA_PORT_GET_REGION_INFO, arg)
        value = unpack_struct(DFL_FPGA_PORT_REGION_INFO_STRUCT, arg)
        return PortRegionInfo(
            flags=value["flags"],
            index=value["index"],
            size=value["size"],
            offset=value["offset"],
        )

    def get_dev_path(self) -> str:
        return self.dev_path

    def get_sysfs_path(self) -> str:
        if not self.sysfs_path:
            self.sysfs_path = _lookup_sysfs(self.dev_path)
        return self.sysfs_path

    def get_name(self) -> str:
        if not self.name:
            self.name = _base(self.get_sysfs_path())
        return self.name

    def get_pci_device(self) -> PCIDevice:
        if self.pci_device is None:
            self.pci_device = new_pci_device(self.get_sysfs_path())
        return self.pci_device

    def get_fme(self) -> FME:
        if self.fme is not None:
            return self.fme
        pci = self.get_pci_device()
        if pci.phys_fn is not None:
            pci = pci.phys_fn
        values = read_files_in_directory(
            {"dev": "dev"}, os.path.join(pci.sysfs_path, DFL_FPGA_FME_GLOB_PCI)
        )
        char_path = os.path.join(DEV_CHAR_DIR, values.get("dev", ""))
        try:
            real_dev = os.path.realpath(char_path, strict=True)
        except OSError as err:
            raise FpgaError(f"failed get realpath for {char_path}: {err}") from err
        self.fme = new_dfl_fme(real_dev)
        return self.fme

    def get_port_id(self) -> int:
        if not self.id:
            self._update_properties()
        return _parse_uint32(self.id)

    def get_accelerator_type_uuid(self) -> str:
        try:
            self._update_properties()
        except FpgaError:
            return ""
        return self.afu_id

    def get_interface_uuid(self) -> str:
        try:
            fme = self.get_fme()
        except FpgaError:
            return ""
        try:
            return fme.get_interface_uuid()
        finally:
            fme.close()

    def pr(self, bs: BitstreamFile, dry_run: bool) -> None:
        generic_port_pr(self, bs, dry_run)

    def _update_properties(self) -> None:
        values = read_files_in_directory(_PORT_FILES, self.get_sysfs_path())
        for attribute, value in values.items():
            setattr(self, attribute, value)


def new_dfl_port(dev: str) -> DflPort:
    """Open the DFL port device node ``dev``."""
    port = DflPort(dev_path=dev)
    check_pci_device_type(port)
    port._update_properties()
    return port
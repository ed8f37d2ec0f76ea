"""Common interfaces of FPGA management engines (FMEs) and ports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from devplugins.bitstream.gbs import BitstreamFile
from devplugins.fpga.sysfs import FpgaError, PCIDevice, clean_basename

DFL_FPGA_FME_PREFIX = "dfl-fme."
DFL_FPGA_PORT_PREFIX = "dfl-port."
INTEL_FPGA_FME_PREFIX = "intel-fpga-fme."
INTEL_FPGA_PORT_PREFIX = "intel-fpga-port."


@dataclass(frozen=True)
class PortInfo:
    """Port information shared by all drivers."""

    flags: int = 0
    regions: int = 0
    umsgs: int = 0


@dataclass(frozen=True)
class PortRegionInfo:
    """Port memory region information shared by all drivers."""

    flags: int = 0
    index: int = 0
    size: int = 0
    offset: int = 0


class _FpgaDevice(ABC):
    """Operations provided by both FMEs and ports."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the device."""

    @abstractmethod
    def get_api_version(self) -> int:
        """Return the version of the driver API."""

    @abstractmethod
    def check_extension(self) -> int:
        """Return 0 if an extension is unsupported, non-zero otherwise."""

    @abstractmethod
    def get_dev_path(self) -> str:
        """Return the path of the device node."""

    @abstractmethod
    def get_sysfs_path(self) -> str:
        """Return the sysfs entry of the device."""

    @abstractmethod
    def get_name(self) -> str:
        """Return the simple device name derived from its sysfs entry."""

    @abstractmethod
    def get_pci_device(self) -> PCIDevice:
        """Return the PCI device this FPGA device belongs to."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FME(_FpgaDevice):
    """Management interface of an FPGA."""

    @abstractmethod
    def port_pr(self, port: int, bitstream: bytes) -> None:
        """Partially reconfigure ``port`` with the given bitstream image."""

    @abstractmethod
    def port_release(self, port: int) -> None:
        """Release the port with the given id."""

    @abstractmethod
    def port_assign(self, port: int) -> None:
        """Assign the port with the given id back."""

    @abstractmethod
    def get_ports_num(self) -> int:
        """Return the number of ports of this FME, or -1 if unknown."""

    @abstractmethod
    def get_interface_uuid(self) -> str:
        """Return the interface UUID of the FME."""

    @abstractmethod
    def get_socket_id(self) -> int:
        """Return the physical socket number."""

    @abstractmethod
    def get_bitstream_id(self) -> str:
        """Return the FME bitstream id."""

    @abstractmethod
    def get_bitstream_metadata(self) -> str:
        """Return the FME bitstream metadata."""


class Port(_FpgaDevice):
    """AFU port of an FPGA."""

    @abstractmethod
    def port_reset(self) -> None:
        """Reset the port and its AFU."""

    @abstractmethod
    def port_get_info(self) -> PortInfo:
        """Return information about the port."""

    @abstractmethod
    def port_get_region_info(self, index: int) -> PortRegionInfo:
        """Return information about the port's memory region ``index``."""

    @abstractmethod
    def get_fme(self) -> FME:
        """Return the FME this port belongs to."""

    @abstractmethod
    def get_port_id(self) -> int:
        """Return the id of the port within its physical device."""

    @abstractmethod
    def get_accelerator_type_uuid(self) -> str:
        """Return the AFU UUID of the port."""

    @abstractmethod
    def get_interface_uuid(self) -> str:
        """Return the interface UUID of the port's FME."""

    @abstractmethod
    def pr(self, bs: BitstreamFile, dry_run: bool) -> None:
        """Program ``bs`` into the port."""


def is_fpga_fme(name: str) -> bool:
    """Return True if ``name`` looks like a supported FME device."""
    dev_name = clean_basename(name)
    return dev_name.startswith((DFL_FPGA_FME_PREFIX, INTEL_FPGA_FME_PREFIX))


def is_fpga_port(name: str) -> bool:
    """Return True if ``name`` looks like a supported port device."""
    dev_name = clean_basename(name)
    return dev_name.startswith((DFL_FPGA_PORT_PREFIX, INTEL_FPGA_PORT_PREFIX))


def canonize_id(id_: str) -> str:
    """Return an interface or AFU id trimmed, without dashes, in lower case."""
    return id_.strip().replace("-", "").lower()


def generic_port_pr(port: Port, bs: BitstreamFile, dry_run: bool) -> None:
    """Program ``bs`` into ``port`` through its FME after checking compatibility."""
    fme = port.get_fme()
    if_id = fme.get_interface_uuid()
    bs_id = bs.interface_uuid()
    if if_id != bs_id:
        raise FpgaError(
            f"FME interface UUID {if_id!r} is not compatible with bitstream UUID {bs_id!r} "
        )
    port_id = port.get_port_id()
    raw = bs.raw_bitstream_data()
    if dry_run:
        return
    fme.port_pr(port_id, raw)
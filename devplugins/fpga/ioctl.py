"""Kernel FPGA driver ioctl numbers, argument layouts and the ioctl call."""

from __future__ import annotations

import fcntl
import os
import struct
from collections.abc import Mapping

# A layout is an ordered tuple of (field name, struct format code) pairs.
_Layout = tuple[tuple[str, str], ...]

# Upstream DFL kernel driver ioctls.
DFL_FPGA_GET_API_VERSION = 0xB600
DFL_FPGA_CHECK_EXTENSION = 0xB601
DFL_FPGA_PORT_RESET = 0xB640
DFL_FPGA_PORT_GET_INFO = 0xB641
DFL_FPGA_PORT_GET_REGION_INFO = 0xB642
DFL_FPGA_PORT_DMA_MAP = 0xB643
DFL_FPGA_PORT_DMA_UNMAP = 0xB644
DFL_FPGA_FME_PORT_PR = 0xB680
DFL_FPGA_FME_PORT_RELEASE = 0x4004B681
DFL_FPGA_FME_PORT_ASSIGN = 0x4004B682

# Flags in DFL port region info.
DFL_PORT_REGION_READ = 0x1
DFL_PORT_REGION_WRITE = 0x2
DFL_PORT_REGION_MMAP = 0x4

# Indexes in DFL port region info.
DFL_PORT_REGION_INDEX_AFU = 0x0
DFL_PORT_REGION_INDEX_STP = 0x1

# Out-of-tree Intel FPGA kernel driver ioctls.
FPGA_GET_API_VERSION = 0xB500
FPGA_CHECK_EXTENSION = 0xB501
FPGA_PORT_RESET = 0xB540
FPGA_PORT_GET_INFO = 0xB541
FPGA_PORT_GET_REGION_INFO = 0xB542
FPGA_PORT_DMA_MAP = 0xB543
FPGA_PORT_DMA_UNMAP = 0xB544
FPGA_PORT_UMSG_ENABLE = 0xB545
FPGA_PORT_UMSG_DISABLE = 0xB546
FPGA_PORT_UMSG_SET_MODE = 0xB547
FPGA_PORT_UMSG_SET_BASE_ADDR = 0xB548
FPGA_PORT_ERR_SET_IRQ = 0xB549
FPGA_PORT_UAFU_SET_IRQ = 0xB54A
FPGA_FME_PORT_PR = 0xB580
FPGA_FME_PORT_RELEASE = 0xB581
FPGA_FME_PORT_ASSIGN = 0xB582
FPGA_FME_GET_INFO = 0xB583
FPGA_FME_ERR_SET_IRQ = 0xB584

# Capabilities in Intel FPGA port info.
FPGA_PORT_CAP_ERR_IRQ = 0x1
FPGA_PORT_CAP_UAFU_IRQ = 0x2

# Flags in Intel FPGA port region info.
FPGA_REGION_READ = 0x1
FPGA_REGION_WRITE = 0x2
FPGA_REGION_MMAP = 0x4

# Indexes in Intel FPGA port region info.
FPGA_PORT_INDEX_UAFU = 0x0
FPGA_PORT_INDEX_STP = 0x1

# Flags in Intel FPGA port DMA map.
FPGA_DMA_TO_DEV = 0x1
FPGA_DMA_FROM_DEV = 0x2

# Capabilities in Intel FPGA FME info.
FPGA_FME_CAP_ERR_IRQ = 0x1

# Argument layouts of the DFL driver.
DFL_FPGA_PORT_INFO_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("regions", "I"), ("umsgs", "I"),
)
DFL_FPGA_PORT_REGION_INFO_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("index", "I"), ("padding", "I"),
    ("size", "Q"), ("offset", "Q"),
)
DFL_FPGA_PORT_DMA_MAP_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("addr", "Q"), ("length", "Q"), ("iova", "Q"),
)
DFL_FPGA_PORT_DMA_UNMAP_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("iova", "Q"),
)
DFL_FPGA_FME_PORT_PR_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("port_id", "I"), ("buffer_size", "I"),
    ("buffer_address", "Q"),
)

# Argument layouts of the Intel FPGA driver.
INTEL_FPGA_PORT_INFO_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("capability", "I"), ("regions", "I"),
    ("umsgs", "I"), ("uafu_irqs", "I"),
)
INTEL_FPGA_PORT_REGION_INFO_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("index", "I"), ("padding", "I"),
    ("size", "Q"), ("offset", "Q"),
)
INTEL_FPGA_PORT_DMA_MAP_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("addr", "Q"), ("length", "Q"), ("iova", "Q"),
)
INTEL_FPGA_PORT_DMA_UNMAP_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("iova", "Q"),
)
INTEL_FPGA_PORT_UMSG_CFG_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("bitmap", "I"),
)
INTEL_FPGA_PORT_UMSG_BASE_ADDR_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("iova", "Q"),
)
INTEL_FPGA_PORT_ERR_IRQ_SET_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("evtfd", "i"),
)
INTEL_FPGA_PORT_UAFU_IRQ_SET_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("start", "I"), ("count", "I"),
)
INTEL_FPGA_FME_PORT_PR_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("port_id", "I"), ("buffer_size", "I"),
    ("buffer_address", "Q"), ("status", "Q"),
)
INTEL_FPGA_FME_PORT_RELEASE_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("id", "I"),
)
INTEL_FPGA_FME_PORT_ASSIGN_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("id", "I"),
)
INTEL_FPGA_FME_INFO_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("capability", "I"),
)
INTEL_FPGA_FME_ERR_IRQ_SET_STRUCT: _Layout = (
    ("argsz", "I"), ("flags", "I"), ("evtfd", "i"),
)


def _compile(layout: _Layout) -> struct.Struct:
    # Every layout above is naturally aligned, so native byte order with
    # standard sizes gives the kernel's in-memory representation.
    return struct.Struct("=" + "".join(code for _, code in layout))


def pack_struct(layout: _Layout, values: Mapping[str, int]) -> bytearray:
    """Pack ``values`` into a mutable buffer laid out as ``layout``.

    Fields not given are zero; ``argsz`` defaults to the size of the struct.
    """
    names = [name for name, _ in layout]
    unknown = set(values) - set(names)
    if unknown:
        raise ValueError(f"unknown struct fields: {', '.join(sorted(unknown))}")
    packer = _compile(layout)
    defaults = {"argsz": packer.size} if "argsz" in names else {}
    merged = {**defaults, **values}
    try:
        return bytearray(packer.pack(*(merged.get(name, 0) for name in names)))
    except struct.error as err:
        raise ValueError(f"cannot pack struct: {err}") from err


def unpack_struct(layout: _Layout, data: bytes | bytearray) -> dict[str, int]:
    """Unpack a buffer laid out as ``layout`` into a field name -> value dict."""
    packer = _compile(layout)
    if len(data) < packer.size:
        raise ValueError(
            f"buffer of {len(data)} bytes is shorter than the struct ({packer.size} bytes)"
        )
    fields = packer.unpack_from(data)
    return {name: value for (name, _), value in zip(layout, fields)}


def ioctl_dev(dev: str, request: int, arg: int | bytearray = 0) -> int | bytes:
    """Open ``dev`` for a single ioctl ``request`` and return its result.

    An integer ``arg`` is passed by value; a bytearray is passed by reference
    and updated in place with what the driver writes back. Failures raise
    OSError carrying the errno reported by the kernel.
    """
    fd = os.open(dev, os.O_RDWR)
    try:
        return fcntl.ioctl(fd, request, arg)
    finally:
        os.close(fd)
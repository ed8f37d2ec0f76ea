"""Reader for AOCX (OpenCL) FPGA bitstream files."""

from __future__ import annotations

import gzip
import io
import os
import struct
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO

from devplugins.bitstream.gbs import BitstreamError, BitstreamFile, FileGBS, parse_gbs

OPENCL_UUID = "18b79ffa2ee54aa096ef4230dafacb5f"
"""AFU UUID shared by all OpenCL BSP based FPGA bitstreams."""

FILE_EXTENSION_AOCX = ".aocx"

_FPGA_BIN_SECTION = ".acl.fpga.bin"
_GBS_GZ_SECTION = ".acl.gbs.gz"

_SECTION_FIELDS = {
    ".acl.autodiscovery": "auto_discovery",
    ".acl.autodiscovery.xml": "auto_discovery_xml",
    ".acl.board": "board",
    ".acl.board_package": "board_package",
    ".acl.board_spec.xml": "board_spec_xml",
    ".acl.compilation_env": "compilation_environment",
    ".acl.rand_hash": "hash",
    ".acl.kernel_arg_info.xml": "kernel_arg_info_xml",
    ".acl.quartus_input_hash": "quartus_input_hash",
    ".acl.quartus_report": "quartus_report",
    ".acl.target": "target",
    ".acl.version": "version",
}

_ELF_MAGIC = b"\x7fELF"
_SHT_NOBITS = 8
_SHN_XINDEX = 0xFFFF
_ELF_LAYOUTS = {
    1: ("HHIIIIIHHHHHH", "IIIIIIIIII"),
    2: ("HHIQQQIHHHHHH", "IIQQQQIIQQ"),
}
_BYTE_ORDERS = {1: "<", 2: ">"}


@dataclass(frozen=True)
class _ElfSection:
    name: str
    kind: int
    offset: int
    size: int
    blob: bytes = field(repr=False)

    def data(self) -> bytes:
        if self.kind == _SHT_NOBITS:
            raise BitstreamError(f"{self.name}: unexpected read from SHT_NOBITS section")
        end = self.offset + self.size
        if end > len(self.blob):
            raise BitstreamError(f"{self.name}: section data lies outside the file")
        return self.blob[self.offset:end]


def _parse_elf(blob: bytes) -> list[_ElfSection]:
    """Return the sections of an ELF image held in ``blob``."""
    if len(blob) < 16 or blob[:4] != _ELF_MAGIC:
        raise BitstreamError("bad magic number")
    elf_class, encoding, version = blob[4], blob[5], blob[6]
    if elf_class not in _ELF_LAYOUTS:
        raise BitstreamError(f"unknown ELF class {elf_class}")
    if encoding not in _BYTE_ORDERS:
        raise BitstreamError(f"unknown ELF data encoding {encoding}")
    if version != 1:
        raise BitstreamError(f"unknown ELF version {version}")

    order = _BYTE_ORDERS[encoding]
    ehdr_format, shdr_format = _ELF_LAYOUTS[elf_class]
    shdr = struct.Struct(order + shdr_format)
    try:
        ehdr = struct.unpack_from(order + ehdr_format, blob, 16)
    except struct.error as err:
        raise BitstreamError(f"truncated ELF header: {err}") from err
    shoff, shentsize, shnum, shstrndx = ehdr[5], ehdr[10], ehdr[11], ehdr[12]

    def header_at(index: int) -> tuple[int, ...]:
        try:
            return shdr.unpack_from(blob, shoff + index * shentsize)
        except struct.error as err:
            raise BitstreamError(f"invalid section header {index}: {err}") from err

    if shoff == 0 and shnum == 0:
        return []
    if shentsize < shdr.size:
        raise BitstreamError(f"invalid section header size {shentsize}")
    if shnum == 0:
        first = header_at(0)
        shnum = first[5]
        if shstrndx == _SHN_XINDEX:
            shstrndx = first[6]
    if shstrndx >= shnum:
        raise BitstreamError(f"invalid section name table index {shstrndx}")

    headers = [header_at(index) for index in range(shnum)]
    strtab_header = headers[shstrndx]
    names = _ElfSection("", strtab_header[1], strtab_header[4], strtab_header[5], blob).data()

    def name_at(offset: int) -> str:
        if offset > len(names):
            raise BitstreamError(f"invalid section name offset {offset}")
        end = names.find(b"\0", offset)
        raw = names[offset:] if end < 0 else names[offset:end]
        return raw.decode("utf-8", errors="replace")

    return [
        _ElfSection(name_at(header[0]), header[1], header[4], header[5], blob)
        for header in headers
    ]


def _parse_fpga_bin(data: bytes) -> FileGBS:
    try:
        sections = _parse_elf(data)
    except BitstreamError as err:
        raise BitstreamError(f"unable to open file: {err}") from err
    compressed = next((s for s in sections if s.name == _GBS_GZ_SECTION), None)
    if compressed is None:
        raise BitstreamError("no .acl.gbs.gz section in .acl.fgpa.bin")
    payload = compressed.data()
    if not payload.startswith(b"\x1f\x8b"):
        raise BitstreamError("unable to open gzip reader for .acl.gbs.gz")
    try:
        image = gzip.decompress(payload)
    except (OSError, EOFError, zlib.error) as err:
        raise BitstreamError(f"unable to uncompress .acl.gbs.gz: {err}") from err
    gbs = parse_gbs(io.BytesIO(image))
    afu_uuid = gbs.accelerator_type_uuid()
    if afu_uuid != OPENCL_UUID:
        gbs.close()
        raise BitstreamError(f"incorrect OpenCL BSP AFU UUID ({afu_uuid})")
    return gbs


@dataclass(eq=False)
class FileAOCX(BitstreamFile):
    """An opened AOCX file: metadata sections and the embedded GBS image."""

    auto_discovery: str = ""
    auto_discovery_xml: str = ""
    board: str = ""
    board_package: str = ""
    board_spec_xml: str = ""
    compilation_environment: str = ""
    hash: str = ""
    kernel_arg_info_xml: str = ""
    quartus_input_hash: str = ""
    quartus_report: str = ""
    target: str = ""
    version: str = ""
    gbs: FileGBS | None = None
    _closer: BinaryIO | None = field(default=None, repr=False)

    def close(self) -> None:
        """Close the file if it was opened by :func:`open_aocx`."""
        if self._closer is not None:
            closer, self._closer = self._closer, None
            closer.close()

    def raw_bitstream_reader(self) -> io.RawIOBase | None:
        if self.gbs is None:
            return None
        return self.gbs.bitstream.open()

    def raw_bitstream_data(self) -> bytes:
        if self.gbs is None:
            raise BitstreamError("GBS section not found")
        return self.gbs.bitstream.data()

    def unique_uuid(self) -> str:
        """For AOCX the unique identifier is the random hash in the header."""
        return self.hash

    def interface_uuid(self) -> str:
        return self.gbs.interface_uuid() if self.gbs is not None else ""

    def accelerator_type_uuid(self) -> str:
        return self.gbs.accelerator_type_uuid() if self.gbs is not None else ""

    def install_path(self, root: str) -> str:
        interface_id = self.interface_uuid()
        unique_id = self.unique_uuid()
        if not interface_id or not unique_id:
            return ""
        return os.path.join(root, interface_id, unique_id + FILE_EXTENSION_AOCX)

    def extra_metadata(self) -> dict[str, str]:
        if self.gbs is None:
            raise BitstreamError("GBS section not found")
        return {
            "Board": self.board,
            "Target": self.target,
            "Hash": self.hash,
            "Version": self.version,
            "Size": str(self.gbs.bitstream.size),
        }

    def _set_section(self, section: _ElfSection) -> None:
        if section.name == _FPGA_BIN_SECTION:
            try:
                data = section.data()
            except BitstreamError as err:
                raise BitstreamError(f"unable to read .acl.fpga.bin: {err}") from err
            try:
                self.gbs = _parse_fpga_bin(data)
            except BitstreamError as err:
                raise BitstreamError(f"unable to parse gbs: {err}") from err
            return
        attribute = _SECTION_FIELDS.get(section.name)
        if attribute is None:
            return
        try:
            data = section.data()
        except BitstreamError as err:
            raise BitstreamError(
                f"{section.name}: unable to get section data: {err}"
            ) from err
        setattr(self, attribute, data.decode("utf-8", errors="replace").strip())


def parse_aocx(stream: BinaryIO) -> FileAOCX:
    """Parse an AOCX (ELF) image from a seekable binary stream starting at 0."""
    try:
        stream.seek(0)
        blob = stream.read()
    except (OSError, ValueError) as err:
        raise BitstreamError(f"unable to read header: {err}") from err
    try:
        sections = _parse_elf(blob)
    except BitstreamError as err:
        raise BitstreamError(f"unable to read header: {err}") from err
    aocx = FileAOCX()
    for section in sections:
        aocx._set_section(section)
    return aocx


def open_aocx(name: str | os.PathLike[str]) -> FileAOCX:
    """Open the named file and parse it as AOCX; close it with ``close()``."""
    path = os.fspath(name)
    try:
        handle = open(path, "rb")
    except OSError as err:
        raise BitstreamError(f"unable to open {path}: {err}") from err
    try:
        aocx = parse_aocx(handle)
    except BaseException:
        handle.close()
        raise
    aocx._closer = handle
    return aocx
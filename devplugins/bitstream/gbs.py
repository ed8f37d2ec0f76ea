"""Reader for GBS FPGA bitstream files and the common bitstream file interface."""

from __future__ import annotations

import io
import json
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, BinaryIO

BITSTREAM_GUID1 = 0x414750466E6F6558
BITSTREAM_GUID2 = 0x31303076534247B7
FILE_HEADER_LENGTH = 20
MAX_METADATA_LENGTH = 4096
FILE_EXTENSION_GBS = ".gbs"

_HEADER = struct.Struct("<QQI")


class BitstreamError(Exception):
    """Raised when a bitstream file cannot be opened, parsed or read."""


class BitstreamFile(ABC):
    """Operations common to every supported bitstream file format."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying file, if any."""

    @abstractmethod
    def raw_bitstream_reader(self) -> io.RawIOBase | None:
        """Return a seekable reader over the raw bitstream data."""

    @abstractmethod
    def raw_bitstream_data(self) -> bytes:
        """Return the raw bitstream bytes."""

    @abstractmethod
    def interface_uuid(self) -> str:
        """Return the bitstream's interface UUID."""

    @abstractmethod
    def accelerator_type_uuid(self) -> str:
        """Return the bitstream's AFU UUID."""

    @abstractmethod
    def unique_uuid(self) -> str:
        """Return the UUID that uniquely identifies the bitstream."""

    @abstractmethod
    def install_path(self, root: str) -> str:
        """Return a unique file name for the bitstream under ``root``."""

    @abstractmethod
    def extra_metadata(self) -> dict[str, str]:
        """Return additional metadata detected from the bitstream."""

    def __enter__(self) -> BitstreamFile:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(frozen=True)
class GbsHeader:
    """Fixed-size header at the start of a GBS file."""

    guid1: int
    guid2: int
    metadata_length: int


class _SectionReader(io.RawIOBase):
    """Read-only, seekable view of a byte range of another stream."""

    def __init__(self, source: BinaryIO, offset: int, size: int) -> None:
        super().__init__()
        self._source = source
        self._offset = offset
        self._size = size
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            base = 0
        elif whence == io.SEEK_CUR:
            base = self._pos
        elif whence == io.SEEK_END:
            base = self._size
        else:
            raise ValueError(f"invalid whence {whence}")
        position = base + offset
        if position < 0:
            raise ValueError("negative seek position")
        self._pos = position
        return position

    def readinto(self, buffer: Any) -> int:
        remaining = self._size - self._pos
        if remaining <= 0:
            return 0
        view = memoryview(buffer).cast("B")
        wanted = min(len(view), remaining)
        self._source.seek(self._offset + self._pos)
        chunk = self._source.read(wanted)
        count = len(chunk)
        view[:count] = chunk
        self._pos += count
        return count


class Bitstream:
    """The raw bitstream (RBF) payload that follows the GBS metadata."""

    def __init__(self, source: BinaryIO, offset: int, size: int) -> None:
        self._source = source
        self.offset = offset
        self.size = size

    def open(self) -> _SectionReader:
        """Return a fresh seekable reader over the bitstream body."""
        return _SectionReader(self._source, self.offset, self.size)

    def data(self) -> bytes:
        """Read and return the whole bitstream body."""
        content = self.open().read(self.size) or b""
        if len(content) < self.size:
            raise BitstreamError(
                f"unexpected end of bitstream: read {len(content)} of {self.size} bytes"
            )
        return content


def _normalize_uuid(value: str) -> str:
    return value.replace("-", "").lower()


def _decode_metadata(raw: bytes) -> dict[str, Any]:
    text = raw.decode("utf-8", errors="replace").lstrip()
    try:
        metadata, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as err:
        raise BitstreamError(f"unable to parse GBS metadata: {err}") from err
    if not isinstance(metadata, dict):
        raise BitstreamError("unable to parse GBS metadata: not a JSON object")

    afu_image = metadata.get("afu-image") or {}
    if not isinstance(afu_image, dict):
        raise BitstreamError("unable to parse GBS metadata: afu-image is not an object")
    interface = afu_image.get("interface-uuid")
    if interface is not None and not isinstance(interface, str):
        raise BitstreamError("unable to parse GBS metadata: interface-uuid is not a string")
    clusters = afu_image.get("accelerator-clusters") or []
    if not isinstance(clusters, list):
        raise BitstreamError(
            "unable to parse GBS metadata: accelerator-clusters is not a list"
        )
    for cluster in clusters:
        if cluster is None:
            continue
        if not isinstance(cluster, dict):
            raise BitstreamError(
                "unable to parse GBS metadata: accelerator cluster is not an object"
            )
        afu = cluster.get("accelerator-type-uuid")
        if afu is not None and not isinstance(afu, str):
            raise BitstreamError(
                "unable to parse GBS metadata: accelerator-type-uuid is not a string"
            )
    return metadata


def _clusters(metadata: dict[str, Any]) -> list[Any]:
    afu_image = metadata.get("afu-image") or {}
    return afu_image.get("accelerator-clusters") or []


class FileGBS(BitstreamFile):
    """An opened GBS file: header, parsed JSON metadata and bitstream body."""

    def __init__(
        self,
        header: GbsHeader,
        metadata: dict[str, Any],
        bitstream: Bitstream,
        closer: BinaryIO | None = None,
    ) -> None:
        self.header = header
        self.metadata = metadata
        self.bitstream = bitstream
        self._closer = closer

    def close(self) -> None:
        """Close the file if it was opened by :func:`open_gbs`."""
        if self._closer is not None:
            closer, self._closer = self._closer, None
            closer.close()

    def interface_uuid(self) -> str:
        afu_image = self.metadata.get("afu-image") or {}
        return _normalize_uuid(afu_image.get("interface-uuid") or "")

    def accelerator_type_uuid(self) -> str:
        clusters = _clusters(self.metadata)
        if len(clusters) != 1:
            return ""
        cluster = clusters[0] or {}
        return _normalize_uuid(cluster.get("accelerator-type-uuid") or "")

    def raw_bitstream_reader(self) -> _SectionReader:
        return self.bitstream.open()

    def raw_bitstream_data(self) -> bytes:
        return self.bitstream.data()

    def unique_uuid(self) -> str:
        """For GBS the unique identifier is the AFU UUID."""
        return self.accelerator_type_uuid()

    def install_path(self, root: str) -> str:
        interface_id = self.interface_uuid()
        unique_id = self.unique_uuid()
        if not interface_id or not unique_id:
            return ""
        return os.path.join(root, interface_id, unique_id + FILE_EXTENSION_GBS)

    def extra_metadata(self) -> dict[str, str]:
        return {"Size": str(self.bitstream.size)}


def parse_gbs(stream: BinaryIO) -> FileGBS:
    """Parse a GBS image from a seekable binary stream starting at offset 0."""
    try:
        stream.seek(0)
    except (OSError, ValueError) as err:
        raise BitstreamError(f"unable to seek: {err}") from err

    raw_header = stream.read(FILE_HEADER_LENGTH)
    if len(raw_header) < FILE_HEADER_LENGTH:
        raise BitstreamError("unable to read header: unexpected end of file")
    header = GbsHeader(*_HEADER.unpack(raw_header))

    if header.guid1 != BITSTREAM_GUID1 or header.guid2 != BITSTREAM_GUID2:
        raise BitstreamError(
            f"wrong magic in GBS file: {header.guid1:#x} {header.guid2:#x} "
            f"Expected {BITSTREAM_GUID1:#x} {BITSTREAM_GUID2:#x}"
        )
    if header.metadata_length == 0 or header.metadata_length >= MAX_METADATA_LENGTH:
        raise BitstreamError(
            f"incorrect length of GBS metadata {header.metadata_length}"
        )

    stream.seek(FILE_HEADER_LENGTH)
    metadata = _decode_metadata(stream.read(header.metadata_length))
    afus = len(_clusters(metadata))
    if afus != 1:
        raise BitstreamError(
            f"incorrect length of AcceleratorClusters in GBS metadata: {afus}"
        )

    try:
        end = stream.seek(0, io.SEEK_END)
    except (OSError, ValueError) as err:
        raise BitstreamError(f"unable to determine file size: {err}") from err
    body_offset = FILE_HEADER_LENGTH + header.metadata_length
    size = end - body_offset
    if size < 0:
        raise BitstreamError("GBS file is shorter than its declared metadata")
    return FileGBS(header, metadata, Bitstream(stream, body_offset, size))


def open_gbs(name: str | os.PathLike[str]) -> FileGBS:
    """Open the named file and parse it as GBS; close it with ``close()``."""
    path = os.path.normpath(os.fspath(name))
    try:
        handle = open(path, "rb")
    except OSError as err:
        raise BitstreamError(f"unable to open {path}: {err}") from err
    try:
        gbs = parse_gbs(handle)
    except BaseException:
        handle.close()
        raise
    gbs._closer = handle
    return gbs
"""Lookup and opening of bitstream files by type."""

from __future__ import annotations

import os
from collections.abc import Callable

from devplugins.bitstream.aocx import open_aocx
from devplugins.bitstream.gbs import BitstreamError, BitstreamFile, open_gbs

_OPENERS: dict[str, Callable[[str], BitstreamFile]] = {
    ".gbs": open_gbs,
    ".aocx": open_aocx,
}


def _extension(fname: str) -> str:
    base = fname.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def get_fpga_bitstream(bitstream_dir: str, region: str, afu: str) -> BitstreamFile:
    """Return the first bitstream found for ``region`` and ``afu`` in the store."""
    for ext in _OPENERS:
        path = os.path.join(bitstream_dir, region, afu + ext)
        try:
            os.stat(path)
        except FileNotFoundError:
            continue
        except OSError as err:
            raise BitstreamError(f"{path}: stat error: {err}") from err
        return open_bitstream(path)
    raise BitstreamError(f"{region}/{afu}: bitstream not found")


def open_bitstream(fname: str) -> BitstreamFile:
    """Open a bitstream file, choosing its format from the file name extension."""
    opener = _OPENERS.get(_extension(os.fspath(fname)))
    if opener is None:
        raise BitstreamError(f"unsupported file format {fname}")
    return opener(fname)
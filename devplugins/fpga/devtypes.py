"""Extended resource names for FPGA accelerator functions."""

from __future__ import annotations

import base64
import binascii


def get_afu_dev_type(interface_id: str, afu_id: str) -> str:
    """Return the extended resource name (without namespace) for an AFU.

    Unix socket addresses are limited to 108 characters and resource names
    to 63, so the identifiers are packed into URL-safe base64.
    """
    try:
        raw = binascii.unhexlify(interface_id + afu_id)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"failed to decode {interface_id!r} and {afu_id!r}: {err}") from err
    if len(interface_id) < 3 or len(afu_id) < 3:
        raise ValueError(f"identifiers {interface_id!r} and {afu_id!r} are too short")
    encoded = base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return f"af-{interface_id[:3]}.{afu_id[:3]}.{encoded}"
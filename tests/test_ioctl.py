import pytest

from devplugins.fpga.ioctl import (
    DFL_FPGA_FME_PORT_PR_STRUCT,
    DFL_FPGA_GET_API_VERSION,
    DFL_FPGA_PORT_REGION_INFO_STRUCT,
    INTEL_FPGA_FME_PORT_PR_STRUCT,
    INTEL_FPGA_FME_PORT_RELEASE_STRUCT,
    INTEL_FPGA_PORT_ERR_IRQ_SET_STRUCT,
    ioctl_dev,
    pack_struct,
    unpack_struct,
)


def test_round_trip_fme_port_pr():
    packed = pack_struct(
        DFL_FPGA_FME_PORT_PR_STRUCT,
        {"port_id": 3, "buffer_size": 10, "buffer_address": 0x1000},
    )
    values = unpack_struct(DFL_FPGA_FME_PORT_PR_STRUCT, packed)
    assert values == {
        "argsz": len(packed),
        "flags": 0,
        "port_id": 3,
        "buffer_size": 10,
        "buffer_address": 0x1000,
    }


def test_struct_sizes_match_kernel_layout():
    assert len(pack_struct(DFL_FPGA_FME_PORT_PR_STRUCT, {})) == 24
    assert len(pack_struct(INTEL_FPGA_FME_PORT_PR_STRUCT, {})) == 32


def test_argsz_defaults_to_struct_size():
    packed = pack_struct(DFL_FPGA_PORT_REGION_INFO_STRUCT, {"index": 1})
    values = unpack_struct(DFL_FPGA_PORT_REGION_INFO_STRUCT, packed)
    assert values["argsz"] == len(packed)
    assert values["index"] == 1
    assert values["size"] == 0


def test_explicit_argsz_is_kept():
    packed = pack_struct(INTEL_FPGA_FME_PORT_RELEASE_STRUCT, {"argsz": 7, "id": 2})
    values = unpack_struct(INTEL_FPGA_FME_PORT_RELEASE_STRUCT, packed)
    assert values["argsz"] == 7
    assert values["id"] == 2


def test_signed_field_round_trip():
    packed = pack_struct(INTEL_FPGA_PORT_ERR_IRQ_SET_STRUCT, {"evtfd": -1})
    assert unpack_struct(INTEL_FPGA_PORT_ERR_IRQ_SET_STRUCT, packed)["evtfd"] == -1


def test_unknown_field_rejected():
    with pytest.raises(ValueError):
        pack_struct(INTEL_FPGA_FME_PORT_RELEASE_STRUCT, {"nonsense": 1})


def test_out_of_range_value_rejected():
    with pytest.raises(ValueError):
        pack_struct(INTEL_FPGA_FME_PORT_RELEASE_STRUCT, {"id": -1})


def test_short_buffer_rejected():
    with pytest.raises(ValueError):
        unpack_struct(DFL_FPGA_FME_PORT_PR_STRUCT, b"\x00" * 4)


def test_ioctl_on_missing_device(tmp_path):
    with pytest.raises(FileNotFoundError):
        ioctl_dev(str(tmp_path / "missing"), DFL_FPGA_GET_API_VERSION, 0)


def test_ioctl_on_regular_file_fails(tmp_path):
    regular = tmp_path / "regular"
    regular.write_bytes(b"data")
    with pytest.raises(OSError):
        ioctl_dev(str(regular), DFL_FPGA_GET_API_VERSION, 0)
import pytest

from devplugins.fpga.discovery import list_fpga_devices, new_fme, new_port
from devplugins.fpga.sysfs import FpgaError


def test_list_fpga_devices(tmp_path):
    for name in (
        "intel-fpga-port.0",
        "dfl-fme.1",
        "intel-fpga-fme.0",
        "dfl-port.1",
        "serial8250",
    ):
        (tmp_path / name).mkdir()
    fmes, ports = list_fpga_devices(str(tmp_path))
    assert fmes == ["dfl-fme.1", "intel-fpga-fme.0"]
    assert ports == ["dfl-port.1", "intel-fpga-port.0"]


def test_list_fpga_devices_missing_dir(tmp_path):
    assert list_fpga_devices(str(tmp_path / "missing")) == ([], [])


def test_new_port_unknown_type():
    with pytest.raises(FpgaError, match="unknown type of FPGA port /dev/unknown-dev"):
        new_port("unknown-dev")


def test_new_fme_unknown_type():
    with pytest.raises(FpgaError, match="unknown type of FPGA FME /dev/unknown-dev"):
        new_fme("unknown-dev")


@pytest.mark.parametrize("name", ["dfl-port.0", "intel-fpga-port.0"])
def test_new_port_dispatches_to_driver(tmp_path, name):
    with pytest.raises(FpgaError) as excinfo:
        new_port(str(tmp_path / name))
    assert "unknown type" not in str(excinfo.value)


@pytest.mark.parametrize("name", ["dfl-fme.0", "intel-fpga-fme.0"])
def test_new_fme_dispatches_to_driver(tmp_path, name):
    with pytest.raises(FpgaError) as excinfo:
        new_fme(str(tmp_path / name))
    assert "unknown type" not in str(excinfo.value)


def test_symlinked_name_uses_target(tmp_path):
    target = tmp_path / "something-else"
    target.mkdir()
    link = tmp_path / "dfl-port.0"
    link.symlink_to(target)
    with pytest.raises(FpgaError, match="unknown type of FPGA port"):
        new_port(str(link))
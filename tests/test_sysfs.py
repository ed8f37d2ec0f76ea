import os
import pathlib

import pytest

from devplugins.fpga import sysfs
from devplugins.fpga.sysfs import (
    FpgaError,
    PCIDevice,
    check_pci_device_type,
    clean_basename,
    find_sysfs_device,
    new_pci_device,
    read_files_in_directory,
)


def write_files(directory, **files):
    directory.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        (directory / name).write_text(content)


@pytest.fixture
def pci_tree(tmp_path, monkeypatch):
    root = pathlib.Path(os.path.realpath(tmp_path))
    bus = root / "devices" / "pci0000:00"
    pf = bus / "0000:3b:00.0"
    vf = bus / "0000:3b:00.1"
    write_files(pf, vendor="0x1234\n", device="0xabcd\n", local_cpulist="0-7\n",
                numa_node="0\n", sriov_numvfs="1\n", sriov_totalvfs="2\n")
    (pf / "class").write_text("0x120000\n")
    write_files(vf, vendor="0x1234\n", device="0xabce\n")
    (vf / "class").write_text("0x120000\n")
    (pf / "virtfn0").symlink_to(vf)
    (vf / "physfn").symlink_to(pf)
    driver = root / "bus" / "drivers" / "fake-pci"
    driver.mkdir(parents=True)
    (pf / "driver").symlink_to(driver)
    child = pf / "fpga_region" / "region0"
    child.mkdir(parents=True)
    monkeypatch.setattr(sysfs, "PCI_DEVICES_PREFIX", str(root / "devices" / "pci"))
    return {"root": root, "pf": pf, "vf": vf, "child": child}


def test_new_pci_device_walks_up_to_address(pci_tree):
    pci = new_pci_device(str(pci_tree["child"]))
    assert pci.sysfs_path == str(pci_tree["pf"])
    assert pci.bdf == "0000:3b:00.0"
    assert pci.vendor == "0x1234"
    assert pci.device == "0xabcd"
    assert pci.pci_class == sysfs.FPGA_CLASS
    assert pci.cpus == "0-7"
    assert pci.total_vfs == "2"
    assert pci.driver == "fake-pci"
    assert pci.phys_fn is None
    assert pci.num_vfs() == 1


def test_get_vfs_links_back_to_physical_function(pci_tree):
    vfs = new_pci_device(str(pci_tree["pf"])).get_vfs()
    assert [vf.bdf for vf in vfs] == ["0000:3b:00.1"]
    assert vfs[0].phys_fn.sysfs_path == str(pci_tree["pf"])
    assert vfs[0].num_vfs() == -1
    assert vfs[0].get_vfs() == []


def test_address_not_found_outside_prefix(pci_tree):
    with pytest.raises(FpgaError, match="can't find PCI device address"):
        new_pci_device(str(pci_tree["root"] / "bus"))


def test_missing_path_raises(pci_tree):
    with pytest.raises(FpgaError, match="failed get realpath"):
        new_pci_device(str(pci_tree["root"] / "nothing"))


def test_empty_vendor_raises(pci_tree):
    (pci_tree["pf"] / "vendor").write_text("\n")
    with pytest.raises(FpgaError, match="vendor or device id can't be empty"):
        new_pci_device(str(pci_tree["pf"]))


@pytest.mark.parametrize(
    "vfs, expected",
    [("3", 3), ("+2", 2), ("", -1), ("abc", -1), (" 1", -1), ("2147483648", -1)],
)
def test_num_vfs(vfs, expected):
    assert PCIDevice(sysfs_path="", bdf="", vfs=vfs).num_vfs() == expected


def test_read_files_in_directory(tmp_path):
    write_files(tmp_path, dev="  240:0 \n", id="0\n")
    write_files(tmp_path / "region0", compat_id="abc\n")
    write_files(tmp_path / "multi1", x="1")
    write_files(tmp_path / "multi2", x="2")
    values = read_files_in_directory(
        {"dev": "dev", "id": "port", "missing": "missing",
         "region*/compat_id": "compat", "multi*/x": "multi"},
        str(tmp_path),
    )
    assert values == {"dev": "240:0", "port": "0", "compat": "abc"}


def test_read_directory_as_file_raises(tmp_path):
    (tmp_path / "sub").mkdir()
    with pytest.raises(FpgaError, match="unable to read file"):
        read_files_in_directory({"sub": "sub"}, str(tmp_path))


def test_clean_basename_resolves_symlinks(tmp_path):
    target = tmp_path / "intel-fpga-port.0"
    target.write_text("")
    link = tmp_path / "link"
    link.symlink_to(target)
    assert clean_basename(str(link)) == "intel-fpga-port.0"
    assert clean_basename("/nonexistent/dfl-port.1") == "dfl-port.1"


class _Stub:
    def __init__(self, pci):
        self._pci = pci

    def get_pci_device(self):
        if isinstance(self._pci, Exception):
            raise self._pci
        return self._pci


def test_check_pci_device_type():
    fpga = PCIDevice(sysfs_path="", bdf="0000:3b:00.0", pci_class=sysfs.FPGA_CLASS)
    assert check_pci_device_type(_Stub(fpga)) is None
    other = PCIDevice(sysfs_path="", bdf="0000:3b:00.0", pci_class="0x030000")
    with pytest.raises(FpgaError, match="unsupported PCI class device"):
        check_pci_device_type(_Stub(other))
    with pytest.raises(FpgaError, match="boom"):
        check_pci_device_type(_Stub(FpgaError("boom")))


def test_find_sysfs_device_missing_returns_empty(tmp_path):
    assert find_sysfs_device(str(tmp_path / "missing")) == ""


def test_find_sysfs_device_char_device(tmp_path, monkeypatch):
    rdev = os.stat("/dev/null").st_rdev
    entry = tmp_path / "char"
    entry.mkdir()
    target = tmp_path / "devices" / "virtual" / "mem" / "null"
    target.mkdir(parents=True)
    (entry / f"{os.major(rdev)}:{os.minor(rdev)}").symlink_to(target)
    monkeypatch.setattr(sysfs, "SYSFS_DEV_ROOT", str(tmp_path))
    assert find_sysfs_device("/dev/null") == os.path.realpath(target)


def test_find_sysfs_device_without_sysfs_entry(tmp_path, monkeypatch):
    monkeypatch.setattr(sysfs, "SYSFS_DEV_ROOT", str(tmp_path))
    with pytest.raises(FpgaError, match="failed get realpath"):
        find_sysfs_device("/dev/null")
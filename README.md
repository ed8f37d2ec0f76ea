# devplugins

Building blocks for device plugins that advertise accelerator hardware
(FPGAs and similar devices) to a container orchestrator, plus readers for
FPGA bitstream files and helpers for inspecting and driving FPGA devices
through sysfs and ioctls. The package is a library; it installs no commands.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

The package has no runtime dependencies. Device access (`devplugins.fpga.ioctl`
and the FME/port classes) needs Linux, the FPGA kernel drivers and the right
permissions.

## `devplugins.bitstream`

- `gbs.open_gbs(name)` / `gbs.parse_gbs(stream)` read a GBS file and return a
  `FileGBS` holding its `header` (`GbsHeader`), parsed JSON `metadata` and the
  raw `bitstream` (`Bitstream`, with `open()` and `data()`).
- `aocx.open_aocx(name)` / `aocx.parse_aocx(stream)` read an OpenCL AOCX
  (ELF) file into a `FileAOCX`, including the GBS image embedded in its
  `.acl.fpga.bin` section. The embedded image must carry the OpenCL AFU UUID
  `aocx.OPENCL_UUID`.
- `files.open_bitstream(fname)` picks the reader from the `.gbs` or `.aocx`
  extension; `files.get_fpga_bitstream(bitstream_dir, region, afu)` looks for
  `<dir>/<region>/<afu>.gbs`, then `.aocx`.

Both file kinds implement `gbs.BitstreamFile`: `interface_uuid()`,
`accelerator_type_uuid()`, `unique_uuid()`, `install_path(root)`,
`extra_metadata()`, `raw_bitstream_data()`, `raw_bitstream_reader()` and
`close()`; they can also be used as context managers. Failures raise
`gbs.BitstreamError`.

```python
from devplugins.bitstream.files import open_bitstream

with open_bitstream("store/69528db6eb31577a8c3668f9faa081f6/d8424dc4a4a3c413f89e433683f9040b.gbs") as bs:
    print(bs.interface_uuid(), bs.accelerator_type_uuid())
    print(bs.install_path("/srv/fpga"))
    print(bs.extra_metadata())  # {"Size": "..."}
```

## `devplugins.fpga`

- `devtypes.get_afu_dev_type(interface_id, afu_id)` builds the compact
  resource name for an AFU, e.g.
  `af-ce4.d84.zkiWk5jwXzOUbVYHCL4QithCTcSko8QT-J5DNoP5BAs`; it raises
  `ValueError` for ids that are not hex.
- `sysfs`: `new_pci_device(dev_path)` returns the `PCIDevice` behind a sysfs
  entry (with `num_vfs()` and `get_vfs()`), `find_sysfs_device(dev)` maps a
  device node to its sysfs entry, `read_files_in_directory(file_map, directory)`
  reads small attribute files (glob patterns allowed), `clean_basename(name)`
  and `check_pci_device_type(dev)`. Errors raise `sysfs.FpgaError`.
- `ioctl`: the DFL and out-of-tree driver ioctl numbers and argument layouts,
  `pack_struct(layout, values)`, `unpack_struct(layout, data)` and
  `ioctl_dev(dev, request, arg)`.
- `interfaces`: the abstract `FME` and `Port` classes, `PortInfo`,
  `PortRegionInfo`, `canonize_id`, `is_fpga_fme`, `is_fpga_port` and
  `generic_port_pr(port, bs, dry_run)`, which checks the FME's interface UUID
  against the bitstream before partial reconfiguration.
- `dfl.DflFME` / `dfl.DflPort` (opened with `new_dfl_fme` / `new_dfl_port`) and
  `intel.IntelFpgaFME` / `intel.IntelFpgaPort` (opened with
  `new_intel_fpga_fme` / `new_intel_fpga_port`) implement those interfaces for
  the upstream DFL driver and the out-of-tree driver.
- `discovery.new_fme(fname)` and `discovery.new_port(fname)` choose the driver
  class from the device name (bare names are looked up in `/dev`);
  `discovery.list_fpga_devices(platform_dir)` returns the sorted FME and port
  names found in `/sys/bus/platform/devices` or the given directory.

## `devplugins.deviceplugin`

- `api`: `DeviceSpec`, `Mount`, `TopologyInfo`, `DeviceInfo`, and
  `DeviceTree`, a dict of device type → device id → `DeviceInfo` with
  `add_device(dev_type, device_id, info)`. `new_device_info(state, nodes,
  mounts, envs, topology)` builds a `DeviceInfo`; `topology`, if given, is a
  callable that receives the nodes' host paths. `Scanner` and `Notifier` are
  the abstract interfaces a device scanner works against.
- `manager.Manager(namespace, device_plugin, create_server=None, registrar=None)`
  runs the scanner in a thread and, through a `TreeNotifier` that diffs
  successive trees into `UpdateInfo` (added, updated, removed), starts, updates
  and stops one server per device type. If the scanner object has
  `post_allocate`, `pre_start_container` or `get_preferred_allocation` methods,
  they are handed to each server. `run()` returns when the scan ends and raises
  `server.DevicePluginError` if the scan or a server fails.
- `server.Server` answers `allocate(container_requests)` (one iterable of
  device ids per container), streams device lists to any object with a
  `send(devices)` method through `list_and_watch(stream)`, takes new device
  sets through `update(devices)`, and with `serve(namespace)` listens on
  `<plugin dir>/<namespace>-<dev type>.sock`, registers, and recreates the
  socket whenever it is removed until `stop()` is called.
  `watch_file(file, poll_interval)` blocks until a file is removed or replaced.

```python
from devplugins.deviceplugin.api import DeviceSpec, DeviceTree, new_device_info

tree = DeviceTree()
tree.add_device(
    "region-a",
    "intel-fpga-port.0",
    new_device_info(
        "Healthy",
        [DeviceSpec("/dev/intel-fpga-port.0", "/dev/intel-fpga-port.0", "rw")],
        [],
        {},
        None,
    ),
)
```

## What this package does not do

- It does not speak the kubelet's gRPC protocol. `Server.serve` registers by
  calling the `registrar` callable it was given (and raises
  `DevicePluginError` if there is none), and hands each accepted connection to
  the optional `connection_handler`; with no handler, connections are closed.
  Wiring these to a real kubelet is left to the caller.
- It ships no ready-made device scanners, no command-line programs and no
  cluster controllers; it provides the pieces such programs are built from.
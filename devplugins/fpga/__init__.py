"""FPGA device discovery, sysfs inspection, ioctls and driver classes."""
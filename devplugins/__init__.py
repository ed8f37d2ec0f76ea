"""Device plugin building blocks with FPGA bitstream and device helpers."""

__version__ = "0.19.0"
"""Readers for GBS and AOCX FPGA bitstream files."""
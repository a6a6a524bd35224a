"""
bpf_compiler — compile BPF datapath programs with clang.

Selects the BPF ISA level from kernel capabilities, builds the clang
command line, runs the compiler and orchestrates debug / production
build sessions for the endpoint, host-endpoint, network and overlay
programs.
"""

__version__ = "0.1.0"
PACKAGE_NAME = "bpf_compiler"
SCHEMA_VERSION = "0.1"
COMPILER = "clang"

"""Simulated microkernel pieces: slab allocator, protocol headers, network stack and shell."""

__version__ = "1.0.0"
__all__ = ["slab", "inet", "netstack", "shell"]
"""MCTP endpoint core, control messages and ASPEED LPC, PCIe and I3C bindings."""

__version__ = "0.1.0"
__all__ = ["log", "packet", "cmds", "core", "astlpc", "asti3c", "astpcie"]
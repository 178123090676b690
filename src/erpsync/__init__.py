"""ERP synchronization core for the manufacturing planning board."""

__version__ = "0.1.0"

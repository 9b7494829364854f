"""Azure virtual machine scale set fleet operator."""

__version__ = "0.1.0"

"""plrsync - metadata sync between a local PLR file library and a hosted authority."""

__version__ = "0.1.0"

"""
blobferry: concurrent peer-to-peer transfer sessions around an external
ticket-based transfer binary.
"""

__version__ = "0.1.0"

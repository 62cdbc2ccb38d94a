"""Firmware containers (FLS, ftab), ASR streaming, FDR proxying and download helpers for device restores."""

__version__ = "1.0.1"
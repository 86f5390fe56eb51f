"""jobspine - lease-based distributed job scheduling for core-banking backends."""

__version__ = "0.1.0"

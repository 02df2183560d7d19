"""Read BitLocker (FVE) volume metadata, datums and keys, and access encrypted sectors."""

__version__ = "0.1.0"

__all__ = [
    "clock",
    "datum_format",
    "datums",
    "guid",
    "keys",
    "metadata",
    "sectors",
    "volume",
]
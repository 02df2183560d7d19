"""GUID helpers for BitLocker volumes."""

from __future__ import annotations

GUID_SIZE = 16

#: GUID found in the volume header of a regular BitLocker volume.
INFORMATION_OFFSET_GUID = bytes(
    [
        0x3B, 0xD6, 0x67, 0x49, 0x29, 0x2E, 0xD8, 0x4A,
        0x83, 0x99, 0xF6, 0xA3, 0x39, 0xE3, 0xD0, 0x01,
    ]
)

#: GUID found in the volume header of a volume using Encrypt-On-Write.
EOW_INFORMATION_OFFSET_GUID = bytes(
    [
        0x3B, 0x4D, 0xA8, 0x92, 0x80, 0xDD, 0x0E, 0x4D,
        0x9E, 0x4E, 0xB1, 0xE3, 0x28, 0x4E, 0xAE, 0xD8,
    ]
)


def _check(raw: bytes) -> bytes:
    raw = bytes(raw)
    if len(raw) < GUID_SIZE:
        raise ValueError(f"a GUID needs {GUID_SIZE} bytes, got {len(raw)}")
    return raw[:GUID_SIZE]


def format_guid(raw: bytes) -> str:
    """Render raw on-disk GUID bytes in the usual upper-case textual form."""
    raw = _check(raw)
    parts = (
        raw[3::-1],
        raw[5:3:-1],
        raw[7:5:-1],
        raw[8:10],
        raw[10:16],
    )
    return "-".join(part.hex().upper() for part in parts)


def guids_match(first: bytes, second: bytes) -> bool:
    """Tell whether two raw GUIDs are identical."""
    return _check(first) == _check(second)
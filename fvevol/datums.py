"""Datums: the typed records stored inside a BitLocker metadata dataset."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Iterator, Optional, Tuple

_HEADER = struct.Struct("<HHHH")
_DATASET_BOUNDS = struct.Struct("<I4xI")


class DatumError(ValueError):
    """Raised when a datum is malformed or does not hold what is asked for."""


class ValueType(IntEnum):
    ERASED = 0
    KEY = 1
    UNICODE = 2
    STRETCH_KEY = 3
    USE_KEY = 4
    AES_CCM = 5
    TPM_ENCODED = 6
    VALIDATION = 7
    VMK = 8
    EXTERNAL_KEY = 9
    UPDATE = 10
    ERROR = 11
    ASYM_ENC = 12
    EXPORTED_KEY = 13
    PUBLIC_KEY = 14
    VIRTUALIZATION_INFO = 15
    SIMPLE_1 = 16
    SIMPLE_2 = 17
    CONCAT_HASH_KEY = 18
    SIMPLE_3 = 19


class EntryType(IntEnum):
    UNKNOWN_1 = 0
    UNKNOWN_2 = 1
    VMK = 2
    FVEK = 3
    FVEK_2 = 11


class Cipher(IntEnum):
    STRETCH_KEY = 0x1000
    AES_CCM_256_0 = 0x2000
    AES_CCM_256_1 = 0x2001
    EXTERN_KEY = 0x2002
    VMK = 0x2003
    AES_CCM_256_2 = 0x2004
    HASH_256 = 0x2005
    AES_128_DIFFUSER = 0x8000
    AES_256_DIFFUSER = 0x8001
    AES_128_NO_DIFFUSER = 0x8002
    AES_256_NO_DIFFUSER = 0x8003
    AES_XTS_128 = 0x8004
    AES_XTS_256 = 0x8005


_VALUE_TYPE_NAMES = (
    "ERASED",
    "KEY",
    "UNICODE",
    "STRETCH KEY",
    "USE",
    "AES-CCM",
    "TPM_ENCODED",
    "VALIDATION",
    "VMK",
    "EXTERNAL KEY",
    "UPDATE",
    "ERROR",
    "ASYM ENC",
    "EXPORTED KEY",
    "PUBLIC KEY",
    "VIRTUALIZATION INFO",
    "SIMPLE 1",
    "SIMPLE 2",
    "CONCAT HASH KEY",
    "SIMPLE 3",
)

_ENTRY_TYPE_NAMES = (
    "ENTRY TYPE UNKNOWN 1",
    "ENTRY TYPE UNKNOWN 2",
    "ENTRY TYPE VMK",
    "ENTRY TYPE FVEK (FveDatasetVmkGetFvek)",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE UNKNOWN",
    "ENTRY TYPE FVEK (TryObtainKey)",
)

# (fixed header size, holds nested datums) for each value type
_PROPERTIES = (
    (8, False),   # ERASED
    (12, False),  # KEY
    (8, False),   # UNICODE
    (28, True),   # STRETCH_KEY
    (12, True),   # USE_KEY
    (36, False),  # AES_CCM
    (12, False),  # TPM_ENCODED
    (8, False),   # VALIDATION
    (36, True),   # VMK
    (32, True),   # EXTERNAL_KEY
    (8, False),   # UPDATE
    (8, False),   # ERROR
    (8, False),   # ASYM_ENC
    (8, False),   # EXPORTED_KEY
    (8, False),   # PUBLIC_KEY
    (24, False),  # VIRTUALIZATION_INFO
    (8, False),   # SIMPLE_1
    (8, False),   # SIMPLE_2
    (8, False),   # CONCAT_HASH_KEY
    (8, False),   # SIMPLE_3
)

_CIPHER_NAMES = {
    0: "NULL",
    Cipher.STRETCH_KEY: "STRETCH KEY",
    Cipher.AES_CCM_256_0: "AES-CCM-256",
    Cipher.AES_CCM_256_1: "AES-CCM-256",
    Cipher.AES_CCM_256_2: "AES-CCM-256",
    Cipher.EXTERN_KEY: "EXTERN KEY",
    Cipher.VMK: "VMK",
    Cipher.HASH_256: "VALIDATION HASH 256",
    Cipher.AES_128_DIFFUSER: "AES-128-DIFFUSER",
    Cipher.AES_256_DIFFUSER: "AES-256-DIFFUSER",
    Cipher.AES_128_NO_DIFFUSER: "AES-128-NODIFFUSER",
    Cipher.AES_256_NO_DIFFUSER: "AES-256-NODIFFUSER",
    Cipher.AES_XTS_128: "AES-XTS-128",
    Cipher.AES_XTS_256: "AES-XTS-256",
}


@dataclass(frozen=True)
class DatumHeader:
    """The 8-byte header every datum starts with."""

    datum_size: int
    entry_type: int
    value_type: int
    error_status: int

    SIZE: ClassVar[int] = _HEADER.size

    def pack(self) -> bytes:
        return _HEADER.pack(self.datum_size, self.entry_type, self.value_type, self.error_status)


def parse_header(data: bytes, offset: int = 0) -> DatumHeader:
    """Read and validate the datum header found at ``offset``."""
    if offset < 0 or len(data) - offset < DatumHeader.SIZE:
        raise DatumError("not enough bytes for a datum header")
    header = DatumHeader(*_HEADER.unpack_from(data, offset))
    if header.datum_size < DatumHeader.SIZE:
        raise DatumError(f"datum size {header.datum_size:#x} is smaller than its header")
    return header


def cipher_name(code: int) -> str:
    """Human-readable name of an algorithm code."""
    return _CIPHER_NAMES.get(code, "UNKNOWN CIPHER!")


def value_type_name(value_type: int) -> Optional[str]:
    """Name of a datum value type, or None when it is out of range."""
    if 0 <= value_type < len(_VALUE_TYPE_NAMES):
        return _VALUE_TYPE_NAMES[value_type]
    return None


def entry_type_name(entry_type: int) -> Optional[str]:
    """Name of a datum entry type, or None when it is out of range."""
    if 0 <= entry_type < len(_ENTRY_TYPE_NAMES):
        return _ENTRY_TYPE_NAMES[entry_type]
    return None


def _properties(value_type: int) -> Tuple[int, bool]:
    if not 0 <= value_type < len(_PROPERTIES):
        raise DatumError(f"unknown datum value type {value_type}")
    return _PROPERTIES[value_type]


def header_size(value_type: int) -> int:
    """Size of the fixed part of a datum of this value type."""
    return _properties(value_type)[0]


def has_nested_datum(value_type: int) -> bool:
    """Whether a datum of this value type carries nested datums."""
    return _properties(value_type)[1]


def get_payload(datum: bytes) -> bytes:
    """Return what follows the fixed part of a datum."""
    header = parse_header(datum)
    size = header_size(header.value_type)
    if header.datum_size <= size:
        raise DatumError("datum has no payload")
    if len(datum) < header.datum_size:
        raise DatumError("datum is truncated")
    return bytes(datum[size:header.datum_size])


def _datum_at(container: bytes, offset: int) -> bytes:
    header = parse_header(container, offset)
    end = offset + header.datum_size
    if end > len(container):
        raise DatumError("nested datum is truncated")
    return bytes(container[offset:end])


def get_nested_datum(datum: bytes) -> bytes:
    """Return the first datum nested into ``datum``."""
    header = parse_header(datum)
    size, nested = _properties(header.value_type)
    if not nested:
        raise DatumError(f"value type {header.value_type} holds no nested datum")
    return _datum_at(datum, size)


def get_nested_datum_of_type(datum: bytes, value_type: int) -> bytes:
    """Return the first nested datum of ``datum`` having the given value type."""
    header = parse_header(datum)
    size, nested = _properties(header.value_type)
    if not nested:
        raise DatumError(f"value type {header.value_type} holds no nested datum")
    position = size
    nested_header = parse_header(datum, position)
    while nested_header.value_type != value_type:
        position += nested_header.datum_size
        if position >= header.datum_size:
            raise DatumError(f"no nested datum of value type {value_type}")
        nested_header = parse_header(datum, position)
    return _datum_at(datum, position)


def value_type_is(datum: bytes, value_type: int) -> bool:
    """Whether ``datum`` has a valid header with the given value type."""
    try:
        return parse_header(datum).value_type == value_type
    except DatumError:
        return False


def _dataset_bounds(dataset: bytes) -> Tuple[int, int]:
    if len(dataset) < _DATASET_BOUNDS.size:
        raise DatumError("not enough bytes for a dataset header")
    size, first = _DATASET_BOUNDS.unpack_from(dataset)
    return min(size, len(dataset)), first


def iter_datums(dataset: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yield ``(offset, datum)`` for every whole datum of a dataset.

    ``dataset`` starts with the dataset header; offsets are relative to it.
    """
    limit, position = _dataset_bounds(dataset)
    while position < limit:
        try:
            header = parse_header(dataset[:limit], position)
        except DatumError:
            return
        end = position + header.datum_size
        if end > limit:
            return
        yield position, bytes(dataset[position:end])
        position = end


def find_next_datum(
    dataset: bytes,
    entry_type: Optional[int] = None,
    value_type: Optional[int] = None,
    after: Optional[int] = None,
) -> Optional[int]:
    """Offset of the next datum matching the given types, or None.

    A type given as None matches anything. The search starts right after the
    datum at offset ``after``, or at the first datum when it is None.
    """
    limit, position = _dataset_bounds(dataset)
    if after is not None:
        try:
            (size,) = struct.unpack_from("<H", dataset, after)
        except struct.error as exc:
            raise DatumError(f"no datum at offset {after:#x}") from exc
        position = after + size

    while position + DatumHeader.SIZE < limit:
        try:
            header = parse_header(dataset, position)
        except DatumError:
            return None
        if (entry_type is None or entry_type == header.entry_type) and (
            value_type is None or value_type == header.value_type
        ):
            return position
        position += header.datum_size
    return None
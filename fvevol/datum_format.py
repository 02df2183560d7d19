"""Human-readable rendering of datums and of the Windows 8 extended info."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from typing import Callable, ClassVar, Dict

from .clock import ntfs_to_unix
from .datums import (
    DatumError,
    DatumHeader,
    ValueType,
    cipher_name,
    entry_type_name,
    header_size,
    parse_header,
    value_type_name,
)
from .guid import format_guid

_EXTENDED_INFO = struct.Struct("<HHIQQIII")

NONCE_SIZE = 12
MAC_SIZE = 16


@dataclass(frozen=True)
class ExtendedInfo:
    """Extended information found after a virtualization datum (Windows 8+)."""

    unknown1: int
    size: int
    unknown2: int
    flags: int
    convertlog_addr: int
    convertlog_size: int
    sector_size1: int
    sector_size2: int

    SIZE: ClassVar[int] = _EXTENDED_INFO.size

    def pack(self) -> bytes:
        return _EXTENDED_INFO.pack(
            self.unknown1,
            self.size,
            self.unknown2,
            self.flags,
            self.convertlog_addr,
            self.convertlog_size,
            self.sector_size1,
            self.sector_size2,
        )


def parse_extended_info(data: bytes) -> ExtendedInfo:
    """Decode an extended info structure from the start of ``data``."""
    if len(data) < ExtendedInfo.SIZE:
        raise DatumError(
            f"extended info needs {ExtendedInfo.SIZE} bytes, got {len(data)}"
        )
    return ExtendedInfo(*_EXTENDED_INFO.unpack_from(data))


def _alt_hex(value: int) -> str:
    """Hexadecimal the way printf's "%#x" writes it."""
    return "0" if value == 0 else f"{value:#x}"


def _signed16(value: int) -> int:
    value &= 0xFFFF
    return value - 0x10000 if value >= 0x8000 else value


def _hexdump(data: bytes) -> str:
    lines = []
    for offset in range(0, len(data), 16):
        chunk = data[offset:offset + 16]
        cells = "".join(
            f"{byte:02x}{'-' if index == 7 else ' '}" for index, byte in enumerate(chunk)
        )
        lines.append(f"0x{offset:08x} {cells}\n")
    return "".join(lines)


def format_extended_info(info: ExtendedInfo) -> str:
    """Render an extended info structure, one field per line."""
    return (
        f"Unknown: 0x{info.unknown1:04x}\n"
        f"Size: 0x{info.size:04x} ({info.size})\n"
        f"Unknown: 0x{info.unknown2:08x}\n"
        f"Flags: 0x{info.flags:x} ({info.flags})\n"
        f"Convert Log offset: 0x{info.convertlog_addr:016x}\n"
        f"Convert Log size:   0x{info.convertlog_size:08x} ({info.convertlog_size})\n"
        f"Sector size (1): 0x{info.sector_size1:x} ({info.sector_size1})\n"
        f"Sector size (2): 0x{info.sector_size2:x} ({info.sector_size2})\n"
    )


def _format_bytes(data: bytes, count: int, what: str) -> str:
    if len(data) < count:
        raise ValueError(f"a {what} needs {count} bytes, got {len(data)}")
    return "".join(f"{byte:02x} " for byte in data[:count]) + "\n"


def format_nonce(nonce: bytes) -> str:
    """Render the 12 bytes of a nonce as spaced hexadecimal."""
    return _format_bytes(nonce, NONCE_SIZE, "nonce")


def format_mac(mac: bytes) -> str:
    """Render the 16 bytes of a MAC as spaced hexadecimal."""
    return _format_bytes(mac, MAC_SIZE, "MAC")


def format_header(header: DatumHeader) -> str:
    """Render the common header of a datum."""
    entry = entry_type_name(header.entry_type) or "UNKNOWN"
    value = value_type_name(header.value_type) or "UNKNOWN"
    return (
        f"Total size: 0x{header.datum_size:04x} ({_signed16(header.datum_size)}) bytes\n"
        f"Entry type: {entry} ({header.entry_type})\n"
        f"Value type: {value} ({header.value_type})\n"
        f"Status    : {_alt_hex(header.error_status)}\n"
    )


def _nested_blocks(datum: bytes, start: int, opening: str, closing: str) -> str:
    out = []
    position = start
    while position < len(datum):
        try:
            nested = parse_header(datum, position)
        except DatumError:
            break
        end = position + nested.datum_size
        out.append(opening)
        out.append(format_datum(datum[position:end]))
        out.append(closing)
        position = end
    return "".join(out)


def _format_generic(datum: bytes) -> str:
    return "Generic datum: " + _hexdump(datum[DatumHeader.SIZE:])


def _format_erased(datum: bytes) -> str:
    return "This datum is of ERASED type and should thus be nullified"


def _format_key(datum: bytes) -> str:
    algo, padd = struct.unpack_from("<HH", datum, 8)
    return (
        f"Unknown: 0x{padd:04x}\n"
        f"Algo: {cipher_name(algo)} ({_alt_hex(algo)})\n"
        "Key:\n" + _hexdump(datum[header_size(ValueType.KEY):])
    )


def _format_unicode(datum: bytes) -> str:
    raw = datum[header_size(ValueType.UNICODE):]
    raw = raw[: len(raw) - len(raw) % 2]
    text = raw.decode("utf-16-le", errors="replace").split("\x00", 1)[0]
    return f"UTF-16 string: '{text}'\n"


def _format_stretch_key(datum: bytes) -> str:
    algo, padd = struct.unpack_from("<HH", datum, 8)
    salt = datum[12:28]
    return (
        f"Unknown: 0x{padd:04x}\n"
        f"Algo: {_alt_hex(algo)}\n"
        "Salt: \n" + format_mac(salt)
        + "   ------ Nested datum ------\n"
        + _nested_blocks(datum[: header_size(ValueType.STRETCH_KEY)] and datum,
                         header_size(ValueType.STRETCH_KEY), "", "")
        + "   ---------------------------\n"
    )


def _format_use_key(datum: bytes) -> str:
    algo, padd = struct.unpack_from("<HH", datum, 8)
    return (
        f"Algo: {_alt_hex(algo)}\n"
        f"Unknown: 0x{padd:04x}\n"
        "   ------ Nested datum ------\n"
        + _nested_blocks(datum, header_size(ValueType.USE_KEY), "", "")
        + "   ---------------------------\n"
    )


def _format_aes_ccm(datum: bytes) -> str:
    nonce = datum[8:20]
    mac = datum[20:36]
    return (
        "Nonce:\n" + format_nonce(nonce)
        + "MAC:\n" + format_mac(mac)
        + "Payload:\n" + _hexdump(datum[header_size(ValueType.AES_CCM):])
    )


def _format_tpm_encoded(datum: bytes) -> str:
    (unknown,) = struct.unpack_from("<I", datum, 8)
    return (
        f"Unknown: {_alt_hex(unknown)}\n"
        "Payload:\n" + _hexdump(datum[header_size(ValueType.TPM_ENCODED):])
    )


def _format_vmk(datum: bytes) -> str:
    guid = datum[8:24]
    nonce = datum[24:36]
    return (
        f"Recovery Key GUID: '{format_guid(guid)}'\n"
        "Nonce: \n" + format_nonce(nonce)
        + _nested_blocks(
            datum,
            header_size(ValueType.VMK),
            "   ------ Nested datum(s) ------\n",
            "   ------------------------------\n",
        )
    )


def _format_external(datum: bytes) -> str:
    guid = datum[8:24]
    (timestamp,) = struct.unpack_from("<Q", datum, 24)
    seconds = ntfs_to_unix(timestamp)
    try:
        date = time.asctime(time.gmtime(seconds))
    except (OverflowError, OSError, ValueError):
        date = "(unrepresentable date)"
    return (
        f"Recovery Key GUID: '{format_guid(guid)}'\n"
        f"Epoch Timestamp: {seconds & 0xFFFFFFFF} sec, being {date}\n"
        + _nested_blocks(
            datum,
            header_size(ValueType.EXTERNAL_KEY),
            "   ------ Nested datum ------\n",
            "   ---------------------------\n",
        )
    )


def _format_virtualization(datum: bytes) -> str:
    boot_sectors, nb_bytes = struct.unpack_from("<QQ", datum, 8)
    out = (
        f"NTFS boot sectors address:  {_alt_hex(boot_sectors)}\n"
        f"Number of backuped bytes: {_alt_hex(nb_bytes)} ({nb_bytes})\n"
    )
    fixed = header_size(ValueType.VIRTUALIZATION_INFO)
    if (len(datum) & 0xFFFF) > fixed:
        out += format_extended_info(parse_extended_info(datum[fixed:]))
    return out


_FORMATTERS: Dict[int, Callable[[bytes], str]] = {
    ValueType.ERASED: _format_erased,
    ValueType.KEY: _format_key,
    ValueType.UNICODE: _format_unicode,
    ValueType.STRETCH_KEY: _format_stretch_key,
    ValueType.USE_KEY: _format_use_key,
    ValueType.AES_CCM: _format_aes_ccm,
    ValueType.TPM_ENCODED: _format_tpm_encoded,
    ValueType.VMK: _format_vmk,
    ValueType.EXTERNAL_KEY: _format_external,
    ValueType.VIRTUALIZATION_INFO: _format_virtualization,
}


def format_datum(datum: bytes) -> str:
    """Render a whole datum: its header, then its type-specific content."""
    datum = bytes(datum)
    header = parse_header(datum)
    if len(datum) < header.datum_size:
        raise DatumError("datum is truncated")
    body = datum[: header.datum_size]
    out = format_header(header)
    if value_type_name(header.value_type) is None:
        return out
    if header.datum_size < header_size(header.value_type):
        raise DatumError(
            f"datum of value type {header.value_type} is smaller than its fixed part"
        )
    formatter = _FORMATTERS.get(header.value_type, _format_generic)
    return out + formatter(body)
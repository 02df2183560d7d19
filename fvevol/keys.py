"""Obtaining the volume master key (VMK) and the full volume encryption key (FVEK)."""

from __future__ import annotations

import logging
import os
import struct
from itertools import takewhile
from typing import Callable, Optional, Tuple, Union

from .datums import (
    Cipher,
    DatumError,
    DatumHeader,
    EntryType,
    ValueType,
    get_nested_datum_of_type,
    get_payload,
    header_size,
    parse_header,
    value_type_is,
)
from .guid import guids_match
from .metadata import Metadata

logger = logging.getLogger(__name__)

#: ``decrypt(payload, mac, nonce, key)`` returns the plaintext, or raises
#: ValueError (or returns nothing) when the authenticated decryption fails.
Decryptor = Callable[[bytes, bytes, bytes, bytes], Optional[bytes]]

#: ``set_key(algorithm, key)`` installs the FVEK; raises ValueError when the
#: algorithm is not supported.
KeySetter = Callable[[int, bytes], object]

PathLike = Union[str, "os.PathLike[str]"]

FVEK_FILE_KEYS_SIZE = 64
FVEK_FILE_SIZE = 2 + FVEK_FILE_KEYS_SIZE
VMK_FILE_SIZE = 32

_VMK_FIXED_SIZE = 36
_VMK_GUID = slice(8, 24)
_VMK_PRIORITY = slice(34, 36)
_AES_CCM_NONCE = slice(8, 20)
_AES_CCM_MAC = slice(20, 36)
_KEY_ALGO = struct.Struct("<HH")
_MAX_KEY_BYTES = 0xFFFFFFFF // 8


class KeyAccessError(Exception):
    """Raised when a key cannot be found, read or decrypted."""


def _iter_vmk_datums(metadata: Metadata, after: Optional[int]):
    while True:
        found = metadata.find_datum(EntryType.VMK, ValueType.VMK, after)
        if found is None:
            return
        after, datum = found
        if len(datum) >= _VMK_FIXED_SIZE:
            yield found


def find_vmk_by_guid(metadata: Metadata, guid: bytes) -> Optional[Tuple[int, bytes]]:
    """The VMK datum protected by the key of the given GUID, as ``(offset, datum)``."""
    for offset, datum in _iter_vmk_datums(metadata, None):
        if guids_match(datum[_VMK_GUID], guid):
            return offset, datum
    return None


def find_vmk_by_range(
    metadata: Metadata,
    min_range: int,
    max_range: int,
    previous: Optional[int] = None,
) -> Optional[Tuple[int, bytes]]:
    """The next VMK datum whose priority lies in ``[min_range, max_range]``.

    The priority is held by the last two bytes of the datum's nonce. The search
    starts after the datum at offset ``previous`` when it is given.
    """
    for offset, datum in _iter_vmk_datums(metadata, previous):
        (priority,) = struct.unpack("<H", datum[_VMK_PRIORITY])
        if min_range <= priority <= max_range:
            return offset, datum
    return None


def has_clear_key(metadata: Metadata) -> bool:
    """Whether the VMK is stored protected by a clear key."""
    return find_vmk_by_range(metadata, 0x00, 0xFF) is not None


def _unseal(sealed: bytes, key: bytes, decrypt: Decryptor, what: str) -> bytes:
    sealed = bytes(sealed)
    try:
        header = parse_header(sealed)
        fixed = header_size(header.value_type)
    except DatumError as exc:
        raise KeyAccessError(f"invalid encrypted {what} datum") from exc
    if header.datum_size < fixed or len(sealed) < header.datum_size:
        raise KeyAccessError(f"encrypted {what} datum is truncated")
    if len(key) > _MAX_KEY_BYTES:
        raise KeyAccessError(f"key size too big, unsupported: {len(key):#x}")

    payload = sealed[fixed:header.datum_size]
    try:
        plain = decrypt(payload, sealed[_AES_CCM_MAC], sealed[_AES_CCM_NONCE], bytes(key))
    except ValueError as exc:
        raise KeyAccessError(f"can't decrypt correctly the {what}") from exc
    if not plain:
        raise KeyAccessError(f"can't decrypt the {what}")
    return bytes(plain)


def decrypt_vmk(aes_ccm_datum: bytes, key: bytes, decrypt: Decryptor) -> bytes:
    """Decrypt the AES-CCM datum holding the VMK with ``key``; return the VMK datum."""
    if not aes_ccm_datum or not key:
        raise KeyAccessError("an encrypted VMK datum and a key are needed")
    vmk = _unseal(aes_ccm_datum, key, decrypt, "VMK")
    logger.debug("VMK decrypted (%d bytes)", len(vmk))
    return vmk


def vmk_from_clear_key(metadata: Metadata, decrypt: Decryptor) -> bytes:
    """Obtain the VMK datum using the clear key stored in the metadata."""
    found = find_vmk_by_range(metadata, 0x00, 0xFF)
    if found is None:
        raise KeyAccessError("no clear key found, use a different method")
    _, vmk_datum = found

    try:
        key_datum = get_nested_datum_of_type(vmk_datum, ValueType.KEY)
    except DatumError as exc:
        raise KeyAccessError(
            f"error looking for the nested datum type {int(ValueType.KEY)} (KEY) in the VMK one"
        ) from exc
    try:
        clear_key = get_payload(key_datum)
    except DatumError as exc:
        raise KeyAccessError("error getting the key to decrypt the VMK") from exc
    try:
        sealed = get_nested_datum_of_type(vmk_datum, ValueType.AES_CCM)
    except DatumError as exc:
        raise KeyAccessError("error in finding the AES-CCM datum including the VMK") from exc

    return decrypt_vmk(sealed, clear_key, decrypt)


def fvek_from_vmk(metadata: Metadata, vmk_datum: bytes, decrypt: Decryptor) -> bytes:
    """Decrypt the FVEK datum of the metadata with the VMK held in ``vmk_datum``."""
    found = metadata.find_datum(EntryType.FVEK, ValueType.AES_CCM)
    if found is None:
        raise KeyAccessError("error in finding the AES-CCM datum including the FVEK")
    _, sealed = found

    if not value_type_is(vmk_datum, ValueType.KEY):
        raise KeyAccessError("the provided VMK datum's type is incorrect")
    try:
        vmk_key = get_payload(vmk_datum)
    except DatumError as exc:
        raise KeyAccessError("error getting the key included into the VMK key structure") from exc

    fvek = _unseal(sealed, vmk_key, decrypt, "FVEK")
    logger.debug("FVEK decrypted (%d bytes)", len(fvek))
    return fvek


def _key_datum(algorithm: int, keys: bytes) -> bytes:
    header = DatumHeader(
        datum_size=header_size(ValueType.KEY) + len(keys),
        entry_type=EntryType.FVEK,
        value_type=ValueType.KEY,
        error_status=1,
    )
    return header.pack() + _KEY_ALGO.pack(algorithm, 0) + keys


def _read_key_file(path: PathLike, expected: int, what: str) -> bytes:
    try:
        with open(path, "rb") as handle:
            data = handle.read(expected + 1)
    except OSError as exc:
        raise KeyAccessError(f"cannot open {what} file ({os.fspath(path)})") from exc
    if len(data) != expected:
        raise KeyAccessError(f"wrong {what} file size, expected {expected} but has {len(data)}")
    return data


def build_fvek_from_file(path: PathLike) -> bytes:
    """Build an FVEK KEY datum from a file: 2 bytes of algorithm, then 64 bytes of keys."""
    data = _read_key_file(path, FVEK_FILE_SIZE, "FVEK")
    (algorithm,) = struct.unpack_from("<H", data)
    return _key_datum(algorithm, data[2:])


def vmk_from_file(path: PathLike) -> bytes:
    """Build a VMK KEY datum from a file holding the 32 bytes of the VMK."""
    data = _read_key_file(path, VMK_FILE_SIZE, "VMK")
    return _key_datum(Cipher.AES_256_DIFFUSER, data)


def init_keys(dataset_algorithm: int, fvek_datum: bytes, set_key: KeySetter) -> int:
    """Install the FVEK with the dataset's algorithm, or else the FVEK datum's one.

    Returns the algorithm that was accepted.
    """
    fvek_datum = bytes(fvek_datum)
    try:
        fvek = get_payload(fvek_datum)
    except DatumError as exc:
        raise KeyAccessError("can't get the FVEK datum payload") from exc
    if len(fvek_datum) < DatumHeader.SIZE + 2:
        raise KeyAccessError("FVEK datum holds no algorithm")
    (fvek_algorithm,) = struct.unpack_from("<H", fvek_datum, DatumHeader.SIZE)

    for algorithm in takewhile(bool, (dataset_algorithm, fvek_algorithm)):
        try:
            set_key(algorithm, fvek)
        except ValueError:
            continue
        return algorithm

    raise KeyAccessError(
        f"dataset's and FVEK's algorithms not supported: "
        f"{dataset_algorithm:#x} and {fvek_algorithm:#x}"
    )
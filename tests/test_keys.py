import io
import struct
from itertools import cycle

import pytest

from fvevol.datums import Cipher, EntryType, ValueType, get_payload, parse_header
from fvevol.keys import (
    KeyAccessError,
    build_fvek_from_file,
    decrypt_vmk,
    find_vmk_by_guid,
    find_vmk_by_range,
    fvek_from_vmk,
    has_clear_key,
    init_keys,
    vmk_from_clear_key,
    vmk_from_file,
)
from fvevol.metadata import Metadata, MetadataConfig
from fvevol.volume import Dataset, Information, Version

GUID_A = bytes(range(16))
GUID_B = bytes(range(16, 32))
NONCE = bytes(range(40, 52))
MAC = bytes(range(60, 76))


def _header(size, entry, value):
    return struct.pack("<HHHH", size, entry, value, 1)


def key_datum(key, algo=Cipher.AES_256_DIFFUSER, entry=0):
    return _header(12 + len(key), entry, ValueType.KEY) + struct.pack("<HH", algo, 0) + key


def aes_ccm_datum(payload, entry=0):
    return _header(36 + len(payload), entry, ValueType.AES_CCM) + NONCE + MAC + payload


def vmk_datum(guid, priority, nested=b""):
    nonce = bytes(10) + struct.pack("<H", priority)
    return _header(36 + len(nested), EntryType.VMK, ValueType.VMK) + guid + nonce + nested


def xor(data, key):
    return bytes(a ^ b for a, b in zip(data, cycle(key)))


def fake_decrypt(payload, mac, nonce, key):
    return xor(payload, key)


def make_metadata(*datums):
    body = b"".join(datums)
    size = Dataset.SIZE + len(body)
    dataset = Dataset(size=size, unknown1=1, header_size=Dataset.SIZE, copy_size=size)
    info = Information(size=(Information.SIZE + len(body)) >> 4, version=Version.SEVEN, dataset=dataset)
    meta = Metadata(MetadataConfig(stream=io.BytesIO()))
    meta.information = info
    meta.raw = info.pack() + body
    return meta


def test_find_vmk_by_guid_returns_matching_datum():
    first = vmk_datum(GUID_A, 0x2000)
    second = vmk_datum(GUID_B, 0x2000)
    meta = make_metadata(first, second)
    offset, datum = find_vmk_by_guid(meta, GUID_B)
    assert datum == second
    assert offset == Dataset.SIZE + len(first)


def test_find_vmk_by_guid_missing_is_none():
    meta = make_metadata(vmk_datum(GUID_A, 0x2000))
    assert find_vmk_by_guid(meta, GUID_B) is None


def test_find_vmk_by_range_and_previous():
    high = vmk_datum(GUID_A, 0x2000)
    low1 = vmk_datum(GUID_B, 0x0010)
    low2 = vmk_datum(GUID_A, 0x0020)
    meta = make_metadata(high, low1, low2)
    offset, datum = find_vmk_by_range(meta, 0, 0xFF)
    assert datum == low1
    offset2, datum2 = find_vmk_by_range(meta, 0, 0xFF, offset)
    assert datum2 == low2
    assert offset2 > offset
    assert find_vmk_by_range(meta, 0, 0xFF, offset2) is None


def test_has_clear_key():
    assert has_clear_key(make_metadata(vmk_datum(GUID_A, 0x0000))) is True
    assert has_clear_key(make_metadata(vmk_datum(GUID_A, 0x2000))) is False


def test_decrypt_vmk_passes_nonce_and_mac():
    calls = []

    def recording(payload, mac, nonce, key):
        calls.append((mac, nonce, key))
        return xor(payload, key)

    plain = key_datum(bytes(range(32)))
    key = b"\x5a" * 32
    result = decrypt_vmk(aes_ccm_datum(xor(plain, key)), key, recording)
    assert result == plain
    assert calls == [(MAC, NONCE, key)]


def test_decrypt_vmk_empty_key():
    with pytest.raises(KeyAccessError):
        decrypt_vmk(aes_ccm_datum(b"\x01" * 16), b"", fake_decrypt)


def test_decrypt_vmk_failure_is_wrapped():
    def failing(payload, mac, nonce, key):
        raise ValueError("bad MAC")

    with pytest.raises(KeyAccessError):
        decrypt_vmk(aes_ccm_datum(b"\x01" * 16), b"k" * 32, failing)


def test_decrypt_vmk_empty_result():
    with pytest.raises(KeyAccessError):
        decrypt_vmk(aes_ccm_datum(b"\x01" * 16), b"k" * 32, lambda *args: b"")


def test_vmk_from_clear_key():
    clear_key = bytes(range(32))
    vmk_plain = key_datum(bytes(range(100, 132)))
    sealed = aes_ccm_datum(xor(vmk_plain, clear_key))
    meta = make_metadata(
        vmk_datum(GUID_B, 0x2000),
        vmk_datum(GUID_A, 0x0000, key_datum(clear_key) + sealed),
    )
    assert vmk_from_clear_key(meta, fake_decrypt) == vmk_plain


def test_vmk_from_clear_key_without_clear_key():
    meta = make_metadata(vmk_datum(GUID_A, 0x2000, key_datum(b"k" * 32)))
    with pytest.raises(KeyAccessError):
        vmk_from_clear_key(meta, fake_decrypt)


def test_vmk_from_clear_key_without_encrypted_vmk():
    meta = make_metadata(vmk_datum(GUID_A, 0x0000, key_datum(b"k" * 32)))
    with pytest.raises(KeyAccessError):
        vmk_from_clear_key(meta, fake_decrypt)


def test_fvek_from_vmk():
    vmk_key = bytes(range(32))
    fvek_plain = key_datum(bytes(range(64)), algo=Cipher.AES_128_DIFFUSER, entry=EntryType.FVEK)
    sealed = aes_ccm_datum(xor(fvek_plain, vmk_key), entry=EntryType.FVEK)
    meta = make_metadata(vmk_datum(GUID_A, 0x2000), sealed)
    assert fvek_from_vmk(meta, key_datum(vmk_key), fake_decrypt) == fvek_plain


def test_fvek_from_vmk_rejects_non_key_vmk():
    sealed = aes_ccm_datum(b"\x00" * 32, entry=EntryType.FVEK)
    meta = make_metadata(sealed)
    with pytest.raises(KeyAccessError):
        fvek_from_vmk(meta, aes_ccm_datum(b"\x00" * 32), fake_decrypt)


def test_fvek_from_vmk_without_fvek_datum():
    meta = make_metadata(vmk_datum(GUID_A, 0x2000))
    with pytest.raises(KeyAccessError):
        fvek_from_vmk(meta, key_datum(b"k" * 32), fake_decrypt)


def test_build_fvek_from_file(tmp_path):
    keys = bytes(range(64))
    path = tmp_path / "fvek"
    path.write_bytes(struct.pack("<H", Cipher.AES_128_NO_DIFFUSER) + keys)
    datum = build_fvek_from_file(path)
    header = parse_header(datum)
    assert header.datum_size == len(datum)
    assert header.entry_type == 3
    assert header.value_type == ValueType.KEY
    assert header.error_status == 1
    assert struct.unpack_from("<HH", datum, 8) == (Cipher.AES_128_NO_DIFFUSER, 0)
    assert get_payload(datum) == keys


def test_build_fvek_from_file_wrong_size(tmp_path):
    path = tmp_path / "fvek"
    path.write_bytes(b"\x00" * 65)
    with pytest.raises(KeyAccessError):
        build_fvek_from_file(path)


def test_build_fvek_from_missing_file(tmp_path):
    with pytest.raises(KeyAccessError):
        build_fvek_from_file(tmp_path / "absent")


def test_vmk_from_file(tmp_path):
    keys = bytes(range(32))
    path = tmp_path / "vmk"
    path.write_bytes(keys)
    datum = vmk_from_file(path)
    header = parse_header(datum)
    assert header.datum_size == len(datum)
    assert header.value_type == ValueType.KEY
    assert struct.unpack_from("<H", datum, 8)[0] == Cipher.AES_256_DIFFUSER
    assert get_payload(datum) == keys


def test_vmk_from_file_wrong_size(tmp_path):
    path = tmp_path / "vmk"
    path.write_bytes(b"\x00" * 33)
    with pytest.raises(KeyAccessError):
        vmk_from_file(path)


def test_init_keys_uses_dataset_algorithm():
    calls = []
    keys = bytes(range(64))
    datum = key_datum(keys, algo=Cipher.AES_128_DIFFUSER)
    result = init_keys(Cipher.AES_256_DIFFUSER, datum, lambda algo, key: calls.append((algo, key)))
    assert result == Cipher.AES_256_DIFFUSER
    assert calls == [(Cipher.AES_256_DIFFUSER, keys)]


def test_init_keys_falls_back_to_fvek_algorithm():
    tried = []

    def set_key(algo, key):
        tried.append(algo)
        if algo != Cipher.AES_XTS_128:
            raise ValueError("unsupported")

    datum = key_datum(bytes(64), algo=Cipher.AES_XTS_128)
    assert init_keys(0x1234, datum, set_key) == Cipher.AES_XTS_128
    assert tried == [0x1234, Cipher.AES_XTS_128]


def test_init_keys_nothing_supported():
    def set_key(algo, key):
        raise ValueError("unsupported")

    with pytest.raises(KeyAccessError):
        init_keys(Cipher.AES_128_DIFFUSER, key_datum(bytes(64)), set_key)


def test_init_keys_zero_dataset_algorithm_tries_nothing():
    tried = []
    with pytest.raises(KeyAccessError):
        init_keys(0, key_datum(bytes(64)), lambda algo, key: tried.append(algo))
    assert tried == []


def test_init_keys_bad_datum():
    with pytest.raises(KeyAccessError):
        init_keys(Cipher.AES_128_DIFFUSER, _header(12, 3, ValueType.KEY) + bytes(4), lambda a, k: None)
# fvevol

`fvevol` reads the on-disk structures of BitLocker-encrypted (FVE) volumes.
It is a library and uses only the standard library.

It covers:

- the volume boot record, including the BitLocker To Go and Vista layouts
- the three copies of the FVE metadata, which are checked by CRC32, and the
  dataset they hold
- Encrypt-On-Write (EOW) information. Volumes that use it are accepted only
  when opened read-only.
- datums, the typed records that make up the dataset, and readable dumps of them
- finding and unwrapping the VMK and FVEK datums
- reading and decrypting sectors, and encrypting and writing them, with the
  special cases for Vista and Windows 7+ volumes

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `fvevol.guid` | `format_guid`, `guids_match`, `INFORMATION_OFFSET_GUID`, `EOW_INFORMATION_OFFSET_GUID` |
| `fvevol.clock` | `ntfs_to_unix`, which converts an NTFS timestamp to Unix seconds |
| `fvevol.datums` | `DatumHeader`, `ValueType`, `EntryType`, `Cipher`, `DatumError`, `parse_header`, `get_payload`, `get_nested_datum`, `get_nested_datum_of_type`, `value_type_is`, `iter_datums`, `find_next_datum`, and name lookups |
| `fvevol.datum_format` | `format_datum`, `format_header`, `format_nonce`, `format_mac`, `ExtendedInfo`, `parse_extended_info`, `format_extended_info` |
| `fvevol.volume` | `VolumeHeader`, `Information`, `Dataset`, `EowInformation`, `Version`, `MetadataState`, their parsers, `volume_size_from_vbr`, and the Vista boot-sector conversions |
| `fvevol.metadata` | `MetadataConfig`, `Metadata`, `Region`, `MetadataError`, `read_information`, `read_eow_information` |
| `fvevol.keys` | `find_vmk_by_guid`, `find_vmk_by_range`, `has_clear_key`, `decrypt_vmk`, `vmk_from_clear_key`, `fvek_from_vmk`, `vmk_from_file`, `build_fvek_from_file`, `init_keys`, `KeyAccessError` |
| `fvevol.sectors` | `IOData`, `prepare_io`, `SectorCipher`, `SectorIOError` |

## Reading the metadata

```python
from fvevol.metadata import Metadata, MetadataConfig
from fvevol.datum_format import format_datum
from fvevol.datums import iter_datums

with open("volume.img", "rb") as stream:
    meta = Metadata(MetadataConfig(stream=stream, offset=0, readonly=True))
    meta.initialize()           # raises MetadataError on failure
    if not meta.check_state():  # False while encryption is switching
        print("volume is in an unstable state")
    print(meta.version, meta.volume_size_from_vbr())
    for offset, datum in iter_datums(meta.dataset_bytes):
        print(format_datum(datum))
```

`MetadataConfig.force_block`, which may be 1, 2 or 3, reads that metadata
copy without checking it. The default, 0, takes the first copy whose CRC32
matches.

## Keys and sectors

The package has no AES implementation. Steps that need one take it from the
caller:

- The key functions take a `decrypt(payload, mac, nonce, key)` callable. It
  returns the plaintext, or raises `ValueError` when the AES-CCM check fails.
- `init_keys` takes a `set_key(algorithm, key)` callable. It raises
  `ValueError` for an algorithm it does not support.
- `prepare_io` takes an object with `decrypt_sector(data, offset)` and
  `encrypt_sector(data, offset)` methods (`SectorCipher`).

```python
from fvevol import keys, sectors

vmk = keys.vmk_from_clear_key(meta, decrypt)       # or keys.vmk_from_file(path)
fvek = keys.fvek_from_vmk(meta, vmk, decrypt)      # or keys.build_fvek_from_file(path)
keys.init_keys(meta.dataset.algorithm, fvek, set_key)

io = sectors.prepare_io(meta, stream, cipher)
clear = io.read_decrypt_sectors(8, meta.sector_size, 0)
```

`read_decrypt_sectors` returns zeroes for the areas the metadata occupies.
`encrypt_write_sectors(data, sector_size, start)` writes back through the
same rules, so the stream must be opened for writing (`"r+b"`).

Failures raise exceptions, not return codes: `DatumError`, `MetadataError`,
`KeyAccessError` and `SectorIOError`. Progress and diagnostics go to
standard `logging` loggers named after each module.

## What it does not do

- There is no command-line tool, and nothing mounts or exposes the decrypted
  volume as a file system. The package offers only the functions above.
- It does not derive keys from a user password, a recovery password or a
  `.bek` file. A VMK comes only from the clear key stored in the metadata, or
  from a raw 32-byte VMK file. An FVEK comes only from a VMK or from a
  66-byte FVEK file.
- It does not implement the ciphers. AES-CCM and the sector ciphers must be
  supplied as described above.
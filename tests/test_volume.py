import dataclasses
import io
import struct

import pytest

from fvevol.volume import (
    BITLOCKER_SIGNATURE,
    BITLOCKER_TO_GO_SIGNATURE,
    NTFS_SIGNATURE,
    Dataset,
    EowInformation,
    Information,
    MetadataState,
    Version,
    VolumeHeader,
    parse_dataset,
    parse_eow_information,
    parse_information,
    parse_volume_header,
    read_volume_header,
    vista_vbr_fve_to_ntfs,
    vista_vbr_ntfs_to_fve,
    volume_header_version,
    volume_size_from_vbr,
)


def _header(**kwargs):
    base = dict(
        signature=BITLOCKER_SIGNATURE,
        sector_size=512,
        sectors_per_cluster=8,
        guid=bytes(range(16)),
        information_off=(0x2100000, 0x3100000, 0x4100000),
        eow_information_off=(0x111, 0x222),
        bltg_guid=bytes(range(16, 32)),
        bltg_header=(7, 8, 9),
        boot_partition_identifier=0xAA55,
    )
    base.update(kwargs)
    return VolumeHeader(**base)


def test_volume_header_round_trip():
    header = _header(nb_sectors_64b=123456, mft_start_cluster=4, metadata_lcn=9)
    raw = header.pack()
    assert len(raw) == 512
    assert parse_volume_header(raw) == header


def test_volume_header_wire_layout():
    raw = _header().pack()
    assert raw[3:11] == b"-FVE-FS-"
    assert struct.unpack_from("<H", raw, 0x0B)[0] == 512
    assert raw[0x0D] == 8
    assert raw[0xA0:0xB0] == bytes(range(16))
    assert struct.unpack_from("<Q", raw, 0xB0)[0] == 0x2100000
    assert raw[0x1FE:0x200] == b"\x55\xaa"


def test_parse_volume_header_too_short():
    with pytest.raises(ValueError):
        parse_volume_header(b"\x00" * 100)


def test_read_volume_header_at_offset():
    header = _header()
    stream = io.BytesIO(b"\xff" * 1024 + header.pack())
    assert read_volume_header(stream, 1024) == header


def test_read_volume_header_short_stream():
    with pytest.raises(ValueError):
        read_volume_header(io.BytesIO(b"\x00" * 600), 200)


def test_version_from_volume_header():
    assert volume_header_version(_header(metadata_lcn=0)) is Version.SEVEN
    assert volume_header_version(_header(metadata_lcn=3)) is Version.VISTA
    assert volume_header_version(_header(signature=BITLOCKER_TO_GO_SIGNATURE)) is None


def test_volume_guid_depends_on_signature():
    assert _header().volume_guid == bytes(range(16))
    assert _header(signature=BITLOCKER_TO_GO_SIGNATURE).volume_guid == bytes(range(16, 32))
    assert _header(signature=NTFS_SIGNATURE).volume_guid is None


def test_volume_size_zero_without_counts():
    assert volume_size_from_vbr(_header()) == 0


def test_volume_size_prefers_16_bit_count():
    header = _header(nb_sectors_16b=100, nb_sectors_32b=5000, nb_sectors_64b=70000)
    only_16 = dataclasses.replace(header, nb_sectors_32b=0, nb_sectors_64b=0)
    assert volume_size_from_vbr(header) == volume_size_from_vbr(only_16)
    assert volume_size_from_vbr(header) % header.sector_size == 0


def test_volume_size_falls_back_to_64_bit_count():
    header = _header(nb_sectors_64b=70000)
    bigger = dataclasses.replace(header, nb_sectors_64b=140000)
    assert volume_size_from_vbr(bigger) == 2 * volume_size_from_vbr(header)


def test_vista_vbr_round_trip():
    original = _header(metadata_lcn=5).pack()
    ntfs = vista_vbr_fve_to_ntfs(original, 0x1234)
    parsed = parse_volume_header(ntfs)
    assert parsed.signature == NTFS_SIGNATURE
    assert parsed.mft_mirror == 0x1234
    back = vista_vbr_ntfs_to_fve(ntfs, 4096 * 5)
    assert back == original


def test_vista_vbr_null_cluster_size():
    sector = _header(sectors_per_cluster=0).pack()
    with pytest.raises(ValueError):
        vista_vbr_ntfs_to_fve(sector, 4096)


def test_vista_vbr_too_short():
    with pytest.raises(ValueError):
        vista_vbr_fve_to_ntfs(b"\x00" * 16, 1)


def _dataset(**kwargs):
    base = dict(
        size=0x200,
        unknown1=1,
        header_size=0x30,
        copy_size=0x200,
        guid=bytes(range(16)),
        next_counter=3,
        algorithm=0x8000,
        timestamp=132000000000000000,
    )
    base.update(kwargs)
    return Dataset(**base)


def test_dataset_round_trip():
    dataset = _dataset()
    raw = dataset.pack()
    assert len(raw) == 0x30
    assert parse_dataset(raw) == dataset


@pytest.mark.parametrize(
    "changes",
    [
        dict(copy_size=0x20),
        dict(size=0x300),
        dict(copy_size=0x34, size=0x34),
    ],
)
def test_dataset_invalid_sizes(changes):
    dataset = _dataset(**changes)
    assert dataset.valid is False
    with pytest.raises(ValueError):
        parse_dataset(dataset.pack())


def test_information_round_trip_and_size():
    info = Information(
        size=0x100,
        version=Version.SEVEN,
        curr_state=MetadataState.ENCRYPTED,
        next_state=MetadataState.ENCRYPTED,
        encrypted_volume_size=1 << 30,
        nb_backup_sectors=16,
        information_off=(0x2100000, 0x3100000, 0x4100000),
        boot_sectors_backup=0x5000,
        dataset=_dataset(),
    )
    raw = info.pack()
    assert len(raw) == Information.SIZE
    assert raw[:8] == b"-FVE-FS-"
    parsed = parse_information(raw)
    assert parsed == info
    assert parsed.metadata_size == info.size << 4
    vista = dataclasses.replace(info, version=Version.VISTA)
    assert vista.metadata_size == info.size
    assert parsed.mftmirror_backup == parsed.boot_sectors_backup


def test_information_keeps_invalid_dataset():
    info = Information(dataset=_dataset(copy_size=0))
    assert parse_information(info.pack()).dataset.valid is False


def test_information_too_short():
    with pytest.raises(ValueError):
        parse_information(b"\x00" * 0x40)


def test_eow_round_trip():
    eow = EowInformation(
        signature=b"FVE-EOW\x00",
        header_size=0x38,
        infos_size=0x48,
        sector_size1=512,
        sector_size2=512,
        nb_regions=2,
        crc32=0xDEADBEEF,
        disk_offsets=0x1000,
    )
    raw = eow.pack()
    assert len(raw) == EowInformation.SIZE
    assert struct.unpack_from("<I", raw, EowInformation.CRC32_OFFSET)[0] == eow.crc32
    assert parse_eow_information(raw + b"\x00" * 16) == eow


def test_eow_too_short():
    with pytest.raises(ValueError):
        parse_eow_information(b"\x00" * 8)
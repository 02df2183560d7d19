"""On-disk structures of a BitLocker volume: boot record, information block, dataset, EOW."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, ClassVar, Optional, Tuple

BITLOCKER_SIGNATURE = b"-FVE-FS-"
BITLOCKER_TO_GO_SIGNATURE = b"MSWIN4.1"
NTFS_SIGNATURE = b"NTFS    "

VOLUME_HEADER_SIZE = 512

_UINT64_MASK = (1 << 64) - 1

# Boot parameter block, offsets 0x00 - 0x24
_BPB = struct.Struct("<3s8sHBHBHHBHHHII")
# NTFS-like extension, offsets 0x24 - 0x40
_NTFS_EXT = struct.Struct("<4sQQQ")
_NTFS_EXT_OFFSET = 0x24
_METADATA_LCN_OFFSET = 0x38
# BitLocker fields, offsets 0xa0 - 0xd8
_BITLOCKER = struct.Struct("<16s3Q2Q")
_BITLOCKER_OFFSET = 0xA0
# BitLocker To Go fields, offsets 0x1a8 - 0x1d0
_BLTG = struct.Struct("<16s3Q")
_BLTG_OFFSET = 0x1A8
_BOOT_ID = struct.Struct("<H")
_BOOT_ID_OFFSET = 0x1FE
_SIGNATURE_OFFSET = 3
_SECTOR_SIZE_OFFSET = 0x0B
_SECTORS_PER_CLUSTER_OFFSET = 0x0D

_INFORMATION = struct.Struct("<8sHHHHQII3QQ")
_DATASET = struct.Struct("<IIII16sIHHQ")
_EOW = struct.Struct("<8sHHIIIIIIIQ")


class Version(IntEnum):
    VISTA = 1
    SEVEN = 2


class MetadataState(IntEnum):
    NULL = 0
    DECRYPTED = 1
    SWITCHING_ENCRYPTION = 2
    EOW_ACTIVATED = 3
    ENCRYPTED = 4
    SWITCH_ENCRYPTION_PAUSED = 5


def _need(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise ValueError(f"{what} needs {size} bytes, got {len(data)}")


@dataclass(frozen=True)
class VolumeHeader:
    """The first sector of a BitLocker (or NTFS) volume."""

    jump: bytes = b"\x00\x00\x00"
    signature: bytes = b"\x00" * 8
    sector_size: int = 0
    sectors_per_cluster: int = 0
    reserved_clusters: int = 0
    fat_count: int = 0
    root_entries: int = 0
    nb_sectors_16b: int = 0
    media_descriptor: int = 0
    sectors_per_fat: int = 0
    sectors_per_track: int = 0
    nb_of_heads: int = 0
    hidden_sectors: int = 0
    nb_sectors_32b: int = 0
    nb_sectors_64b: int = 0
    mft_start_cluster: int = 0
    metadata_lcn: int = 0
    guid: bytes = b"\x00" * 16
    information_off: Tuple[int, int, int] = (0, 0, 0)
    eow_information_off: Tuple[int, int] = (0, 0)
    bltg_guid: bytes = b"\x00" * 16
    bltg_header: Tuple[int, int, int] = (0, 0, 0)
    boot_partition_identifier: int = 0
    raw: bytes = field(default=b"\x00" * VOLUME_HEADER_SIZE, compare=False, repr=False)

    SIZE: ClassVar[int] = VOLUME_HEADER_SIZE

    @property
    def mft_mirror(self) -> int:
        """The field holding the metadata LCN on Vista holds the MFT mirror on NTFS."""
        return self.metadata_lcn

    @property
    def is_bitlocker(self) -> bool:
        return self.signature == BITLOCKER_SIGNATURE

    @property
    def is_bitlocker_to_go(self) -> bool:
        return self.signature == BITLOCKER_TO_GO_SIGNATURE

    @property
    def volume_guid(self) -> Optional[bytes]:
        """The GUID identifying the volume, depending on its signature."""
        if self.is_bitlocker:
            return self.guid
        if self.is_bitlocker_to_go:
            return self.bltg_guid
        return None

    def pack(self) -> bytes:
        buf = bytearray(bytes(self.raw).ljust(VOLUME_HEADER_SIZE, b"\x00")[:VOLUME_HEADER_SIZE])
        _BPB.pack_into(
            buf,
            0,
            self.jump,
            self.signature,
            self.sector_size,
            self.sectors_per_cluster,
            self.reserved_clusters,
            self.fat_count,
            self.root_entries,
            self.nb_sectors_16b,
            self.media_descriptor,
            self.sectors_per_fat,
            self.sectors_per_track,
            self.nb_of_heads,
            self.hidden_sectors,
            self.nb_sectors_32b,
        )
        unknown2 = bytes(buf[_NTFS_EXT_OFFSET:_NTFS_EXT_OFFSET + 4])
        _NTFS_EXT.pack_into(
            buf,
            _NTFS_EXT_OFFSET,
            unknown2,
            self.nb_sectors_64b,
            self.mft_start_cluster,
            self.metadata_lcn,
        )
        _BITLOCKER.pack_into(
            buf, _BITLOCKER_OFFSET, self.guid, *self.information_off, *self.eow_information_off
        )
        _BLTG.pack_into(buf, _BLTG_OFFSET, self.bltg_guid, *self.bltg_header)
        _BOOT_ID.pack_into(buf, _BOOT_ID_OFFSET, self.boot_partition_identifier)
        return bytes(buf)


def parse_volume_header(data: bytes) -> VolumeHeader:
    """Decode the 512-byte boot record at the start of ``data``."""
    data = bytes(data)
    _need(data, VOLUME_HEADER_SIZE, "a volume header")
    raw = data[:VOLUME_HEADER_SIZE]
    bpb = _BPB.unpack_from(raw, 0)
    _, nb64, mft_start, lcn = _NTFS_EXT.unpack_from(raw, _NTFS_EXT_OFFSET)
    bl = _BITLOCKER.unpack_from(raw, _BITLOCKER_OFFSET)
    bltg = _BLTG.unpack_from(raw, _BLTG_OFFSET)
    (boot_id,) = _BOOT_ID.unpack_from(raw, _BOOT_ID_OFFSET)
    return VolumeHeader(
        *bpb,
        nb_sectors_64b=nb64,
        mft_start_cluster=mft_start,
        metadata_lcn=lcn,
        guid=bl[0],
        information_off=tuple(bl[1:4]),
        eow_information_off=tuple(bl[4:6]),
        bltg_guid=bltg[0],
        bltg_header=tuple(bltg[1:4]),
        boot_partition_identifier=boot_id,
        raw=raw,
    )


def read_volume_header(stream: BinaryIO, offset: int = 0) -> VolumeHeader:
    """Read the boot record of the volume starting at ``offset`` in ``stream``."""
    stream.seek(offset)
    data = stream.read(VOLUME_HEADER_SIZE)
    if len(data) != VOLUME_HEADER_SIZE:
        raise ValueError("not enough bytes read for the volume header")
    return parse_volume_header(data)


def volume_header_version(header: VolumeHeader) -> Optional[Version]:
    """BitLocker version told by the boot record, or None when not recognised."""
    if header.is_bitlocker:
        return Version.SEVEN if header.metadata_lcn == 0 else Version.VISTA
    return None


def volume_size_from_vbr(header: VolumeHeader) -> int:
    """Volume size in bytes given by the boot record, or 0 when it holds none."""
    for count in (header.nb_sectors_16b, header.nb_sectors_32b, header.nb_sectors_64b):
        if count:
            return (header.sector_size * count) & _UINT64_MASK
    return 0


def vista_vbr_fve_to_ntfs(sector: bytes, mft_mirror: int) -> bytes:
    """Turn a Vista BitLocker boot sector into the NTFS one it stands for."""
    buf = bytearray(sector)
    _need(buf, _METADATA_LCN_OFFSET + 8, "a boot sector")
    buf[_SIGNATURE_OFFSET:_SIGNATURE_OFFSET + 8] = NTFS_SIGNATURE
    struct.pack_into("<Q", buf, _METADATA_LCN_OFFSET, mft_mirror & _UINT64_MASK)
    return bytes(buf)


def vista_vbr_ntfs_to_fve(sector: bytes, information_offset: int) -> bytes:
    """Turn an NTFS boot sector back into the Vista BitLocker one."""
    buf = bytearray(sector)
    _need(buf, _METADATA_LCN_OFFSET + 8, "a boot sector")
    (sector_size,) = struct.unpack_from("<H", buf, _SECTOR_SIZE_OFFSET)
    cluster_size = buf[_SECTORS_PER_CLUSTER_OFFSET] * sector_size
    if cluster_size == 0:
        raise ValueError("boot sector has a null cluster size")
    buf[_SIGNATURE_OFFSET:_SIGNATURE_OFFSET + 8] = BITLOCKER_SIGNATURE
    lcn = (information_offset // cluster_size) & _UINT64_MASK
    struct.pack_into("<Q", buf, _METADATA_LCN_OFFSET, lcn)
    return bytes(buf)


@dataclass(frozen=True)
class Dataset:
    """Header of the dataset holding the datums."""

    size: int = 0
    unknown1: int = 0
    header_size: int = 0
    copy_size: int = 0
    guid: bytes = b"\x00" * 16
    next_counter: int = 0
    algorithm: int = 0
    trash: int = 0
    timestamp: int = 0

    SIZE: ClassVar[int] = _DATASET.size

    @property
    def valid(self) -> bool:
        """Whether the sizes hold together."""
        return not (
            self.copy_size < self.header_size
            or self.size > self.copy_size
            or self.copy_size - self.header_size < 8
        )

    def pack(self) -> bytes:
        return _DATASET.pack(
            self.size,
            self.unknown1,
            self.header_size,
            self.copy_size,
            self.guid,
            self.next_counter,
            self.algorithm,
            self.trash,
            self.timestamp,
        )


def _unpack_dataset(data: bytes, offset: int = 0) -> Dataset:
    return Dataset(*_DATASET.unpack_from(data, offset))


def parse_dataset(data: bytes) -> Dataset:
    """Decode and validate a dataset header."""
    data = bytes(data)
    _need(data, Dataset.SIZE, "a dataset header")
    dataset = _unpack_dataset(data)
    if not dataset.valid:
        raise ValueError(
            f"invalid dataset: size={dataset.size:#x}, copy_size={dataset.copy_size:#x}, "
            f"header_size={dataset.header_size:#x}"
        )
    return dataset


@dataclass(frozen=True)
class Information:
    """The BitLocker information block that opens every metadata copy."""

    signature: bytes = BITLOCKER_SIGNATURE
    size: int = 0
    version: int = 0
    curr_state: int = 0
    next_state: int = 0
    encrypted_volume_size: int = 0
    convert_size: int = 0
    nb_backup_sectors: int = 0
    information_off: Tuple[int, int, int] = (0, 0, 0)
    boot_sectors_backup: int = 0
    dataset: Dataset = field(default_factory=Dataset)

    SIZE: ClassVar[int] = _INFORMATION.size + _DATASET.size
    DATASET_OFFSET: ClassVar[int] = _INFORMATION.size

    @property
    def mftmirror_backup(self) -> int:
        """On Vista, the field of the boot sectors backup holds the MFT mirror."""
        return self.boot_sectors_backup

    @property
    def metadata_size(self) -> int:
        """Total size of the metadata block in bytes."""
        return self.size << 4 if self.version == Version.SEVEN else self.size

    def pack(self) -> bytes:
        return (
            _INFORMATION.pack(
                self.signature,
                self.size,
                self.version,
                self.curr_state,
                self.next_state,
                self.encrypted_volume_size,
                self.convert_size,
                self.nb_backup_sectors,
                *self.information_off,
                self.boot_sectors_backup,
            )
            + self.dataset.pack()
        )


def parse_information(data: bytes) -> Information:
    """Decode an information block together with its dataset header."""
    data = bytes(data)
    _need(data, Information.SIZE, "an information block")
    fields = _INFORMATION.unpack_from(data, 0)
    return Information(
        *fields[:8],
        information_off=tuple(fields[8:11]),
        boot_sectors_backup=fields[11],
        dataset=_unpack_dataset(data, Information.DATASET_OFFSET),
    )


@dataclass(frozen=True)
class EowInformation:
    """Header of the Encrypt-On-Write information."""

    signature: bytes = b"\x00" * 8
    header_size: int = 0
    infos_size: int = 0
    sector_size1: int = 0
    sector_size2: int = 0
    unknown_14: int = 0
    convlog_size: int = 0
    unknown_1c: int = 0
    nb_regions: int = 0
    crc32: int = 0
    disk_offsets: int = 0

    SIZE: ClassVar[int] = _EOW.size
    CRC32_OFFSET: ClassVar[int] = 0x24

    def pack(self) -> bytes:
        return _EOW.pack(
            self.signature,
            self.header_size,
            self.infos_size,
            self.sector_size1,
            self.sector_size2,
            self.unknown_14,
            self.convlog_size,
            self.unknown_1c,
            self.nb_regions,
            self.crc32,
            self.disk_offsets,
        )


def parse_eow_information(data: bytes) -> EowInformation:
    """Decode an EOW information header."""
    data = bytes(data)
    _need(data, EowInformation.SIZE, "an EOW information header")
    return EowInformation(*_EOW.unpack_from(data, 0))
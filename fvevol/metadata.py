"""Locating, reading and validating the BitLocker metadata of a volume."""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass, field, replace
from typing import BinaryIO, List, Optional, Tuple

from .datum_format import ExtendedInfo, parse_extended_info
from .datums import DatumError, ValueType, find_next_datum, header_size, parse_header
from .guid import EOW_INFORMATION_OFFSET_GUID, INFORMATION_OFFSET_GUID, guids_match
from .volume import (
    Dataset,
    EowInformation,
    Information,
    MetadataState,
    Version,
    VolumeHeader,
    parse_dataset,
    parse_eow_information,
    parse_information,
    read_volume_header,
    vista_vbr_fve_to_ntfs,
    vista_vbr_ntfs_to_fve,
    volume_header_version,
    volume_size_from_vbr,
)

logger = logging.getLogger(__name__)

#: Block device ioctl asking for the logical sector size.
BLKSSZGET = 0x1268
DEFAULT_SECTOR_SIZE = 512

_VALIDATIONS = struct.Struct("<HHI")
_UINT64_MASK = (1 << 64) - 1


class MetadataError(Exception):
    """Raised when the BitLocker metadata cannot be found or trusted."""


@dataclass
class Region:
    """An area of the volume that BitLocker reports as filled with zeroes."""

    addr: int = 0
    size: int = 0


@dataclass
class MetadataConfig:
    """Where and how to read the metadata."""

    stream: BinaryIO
    offset: int = 0
    force_block: int = 0
    readonly: bool = False

    def __post_init__(self) -> None:
        if self.force_block not in (0, 1, 2, 3):
            raise ValueError(f"force_block must be 0 to 3, not {self.force_block}")


def read_information(stream: BinaryIO, offset: int) -> Tuple[Information, bytes]:
    """Read a whole metadata block starting at ``offset``.

    Returns the decoded information block and the raw bytes of the block.
    """
    if not offset:
        raise MetadataError("no metadata at offset 0")
    stream.seek(offset)
    head = stream.read(Information.SIZE)
    if len(head) != Information.SIZE:
        raise MetadataError(
            f"not all bytes read: {len(head)}, {Information.SIZE} expected"
        )
    information = parse_information(head)
    size = information.metadata_size
    if size <= Information.SIZE:
        raise MetadataError("metadata size is lesser than the size of the metadata header")
    rest = stream.read(size - Information.SIZE)
    if len(rest) != size - Information.SIZE:
        raise MetadataError(
            f"not all bytes read: {len(rest)}, {size - Information.SIZE} expected"
        )
    return information, head + rest


def read_eow_information(stream: BinaryIO, offset: int) -> Tuple[EowInformation, bytes]:
    """Read a whole EOW information structure starting at ``offset``."""
    if not offset:
        raise MetadataError("no EOW information at offset 0")
    stream.seek(offset)
    head = stream.read(EowInformation.SIZE)
    if len(head) != EowInformation.SIZE:
        raise MetadataError(
            f"not all bytes read: {len(head)}, {EowInformation.SIZE} expected"
        )
    eow = parse_eow_information(head)
    size = eow.infos_size
    if size <= EowInformation.SIZE:
        raise MetadataError("EOW information size is lesser than the size of the header")
    rest = stream.read(size - EowInformation.SIZE)
    if len(rest) != size - EowInformation.SIZE:
        raise MetadataError(
            f"not all bytes read: {len(rest)}, {size - EowInformation.SIZE} expected"
        )
    return eow, head + rest


def _eow_is_valid(eow: EowInformation, raw: bytes) -> bool:
    if eow.infos_size <= eow.header_size:
        return False
    payload_size = eow.infos_size - eow.header_size
    if payload_size & 7 or eow.nb_regions != payload_size >> 3:
        return False
    buf = bytearray(raw[: eow.infos_size])
    buf[EowInformation.CRC32_OFFSET:EowInformation.CRC32_OFFSET + 4] = bytes(4)
    computed = zlib.crc32(bytes(buf))
    logger.debug("Looking if %#x == %#x for EOW information validation", computed, eow.crc32)
    return computed == eow.crc32


class Metadata:
    """The metadata of one BitLocker volume."""

    def __init__(self, config: MetadataConfig) -> None:
        self.config = config
        self.volume_header: Optional[VolumeHeader] = None
        self.information: Optional[Information] = None
        self.raw = b""
        self.regions: List[Region] = []
        self.virtualized_size = 0
        self.xinfo: Optional[ExtendedInfo] = None
        self.eow_information: Optional[EowInformation] = None

    # -- accessors -------------------------------------------------------

    def _require_information(self) -> Information:
        if self.information is None:
            raise MetadataError("metadata not initialized")
        return self.information

    def _require_header(self) -> VolumeHeader:
        if self.volume_header is None:
            raise MetadataError("metadata not initialized")
        return self.volume_header

    @property
    def dataset(self) -> Dataset:
        return self._require_information().dataset

    @property
    def dataset_bytes(self) -> bytes:
        """The dataset, header included, with all its datums."""
        self._require_information()
        return self.raw[Information.DATASET_OFFSET:]

    @property
    def sector_size(self) -> int:
        return self._require_header().sector_size

    @property
    def version(self) -> int:
        return self._require_information().version

    @property
    def encrypted_volume_size(self) -> int:
        return self._require_information().encrypted_volume_size

    @property
    def ntfs_sectors_address(self) -> int:
        return self._require_information().boot_sectors_backup

    @property
    def mftmirror(self) -> int:
        return self._require_information().mftmirror_backup

    @property
    def backup_sectors_count(self) -> int:
        return self._require_information().nb_backup_sectors

    @property
    def is_decrypted_state(self) -> bool:
        return self._require_information().curr_state == MetadataState.DECRYPTED

    # -- initialization --------------------------------------------------

    def initialize(self) -> None:
        """Read the boot record and the metadata, and check them."""
        cfg = self.config
        try:
            header = read_volume_header(cfg.stream, cfg.offset)
        except ValueError as exc:
            raise MetadataError("error during reading the volume: not enough bytes read") from exc

        if header.sector_size == 0:
            header = replace(header, sector_size=self._device_sector_size())
        self.volume_header = header

        self._check_volume_header()
        self.regions = self._begin_compute_regions()

        information, raw = self._read_checked_metadata()
        if information.version > Version.SEVEN:
            raise MetadataError(
                "only BitLocker version 2 and less are supported, "
                f"the version here is {information.version}"
            )
        logger.info("BitLocker metadata found and parsed.")

        try:
            parse_dataset(raw[Information.DATASET_OFFSET:])
        except ValueError as exc:
            raise MetadataError("unable to find a valid dataset") from exc

        self.information = information
        self.raw = raw
        self._end_compute_regions()

    def _device_sector_size(self) -> int:
        try:
            import fcntl

            fd = self.config.stream.fileno()
            result = fcntl.ioctl(fd, BLKSSZGET, bytes(8))
            size = struct.unpack("=Q", result)[0]
        except (ImportError, OSError, ValueError, AttributeError):
            size = 0
        return (size & 0xFFFF) or DEFAULT_SECTOR_SIZE

    def _check_volume_header(self) -> None:
        header = self._require_header()
        if header.sector_size == 0:
            raise MetadataError("the sector size found is null")

        guid = header.volume_guid
        if guid is None:
            raise MetadataError(
                f"the signature of the volume ({header.signature!r}) doesn't match "
                "the BitLocker's ones (-FVE-FS- or MSWIN4.1)"
            )

        # Volumes encrypted by Vista carry no GUID in their boot record
        if volume_header_version(header) == Version.VISTA:
            return

        if guids_match(guid, INFORMATION_OFFSET_GUID):
            logger.info("Volume GUID (INFORMATION OFFSET) supported")
            return

        if guids_match(guid, EOW_INFORMATION_OFFSET_GUID):
            logger.info("Volume has EOW_INFORMATION_OFFSET_GUID.")
            self._load_eow_information()
            if not self.config.readonly:
                raise MetadataError("EOW volume GUID not supported for writing")
            return

        raise MetadataError("unknown volume GUID, not supported")

    def _load_eow_information(self) -> None:
        header = self._require_header()
        source = header.eow_information_off[0]
        try:
            first, _ = read_eow_information(self.config.stream, source)
        except MetadataError as exc:
            logger.error("Getting EOW information at offset %#x failed: %s", source, exc)
            return
        logger.debug("EOW information: %r", first)

        self.eow_information = self._validated_eow()
        if self.eow_information is None:
            logger.error("EOW information at offset %#x failed to pass the tests", source)
        else:
            logger.info("EOW information at offset %#x passed the tests", source)

    def _validated_eow(self) -> Optional[EowInformation]:
        header = self._require_header()
        for number, address in enumerate(header.eow_information_off, 1):
            try:
                eow, raw = read_eow_information(
                    self.config.stream, address + self.config.offset
                )
            except MetadataError as exc:
                logger.error("Can't get EOW information (n°%d): %s", number, exc)
                return None
            if _eow_is_valid(eow, raw):
                logger.debug("We have a winner (n°%d)!", number)
                return eow
        return None

    def _begin_compute_regions(self) -> List[Region]:
        header = self._require_header()
        if header.is_bitlocker:
            if volume_header_version(header) == Version.SEVEN:
                return [Region(addr) for addr in header.information_off]

            first = (
                header.metadata_lcn * header.sectors_per_cluster * header.sector_size
            ) & _UINT64_MASK
            logger.debug(
                "Changing first metadata offset from %#x to %#x",
                header.information_off[0],
                first,
            )
            try:
                information, _ = read_information(
                    self.config.stream, first + self.config.offset
                )
            except MetadataError as exc:
                raise MetadataError("can't compute regions from volume header") from exc
            return [
                Region(first),
                Region(information.information_off[1]),
                Region(information.information_off[2]),
            ]

        if header.is_bitlocker_to_go:
            return [Region(addr) for addr in header.bltg_header]

        raise MetadataError("unknown volume signature not supported")

    def _read_checked_metadata(self) -> Tuple[Information, bytes]:
        cfg = self.config
        if cfg.force_block:
            logger.info("Obtaining block n°%d, forced by user...", cfg.force_block)
            region = self.regions[cfg.force_block - 1]
            try:
                return read_information(cfg.stream, region.addr + cfg.offset)
            except MetadataError as exc:
                raise MetadataError(
                    f"can't get metadata (n°{cfg.force_block}, forced by user)"
                ) from exc

        for number, region in enumerate(self.regions[:3], 1):
            try:
                information, raw = read_information(cfg.stream, region.addr + cfg.offset)
            except MetadataError as exc:
                logger.debug("Can't get metadata (n°%d): %s", number, exc)
                continue

            validations_offset = region.addr + information.metadata_size
            logger.debug("Reading validations data at offset %#x.", validations_offset)
            cfg.stream.seek(validations_offset + cfg.offset)
            data = cfg.stream.read(_VALIDATIONS.size)
            if len(data) != _VALIDATIONS.size:
                continue
            _, _, expected = _VALIDATIONS.unpack(data)
            computed = zlib.crc32(raw)
            logger.debug("Looking if %#x == %#x for metadata validation", computed, expected)
            if computed == expected:
                logger.debug("We have a winner (n°%d)!", number)
                return information, raw

        raise MetadataError("can't find a valid set of metadata on the disk")

    def _end_compute_regions(self) -> None:
        information = self._require_information()
        header = self._require_header()
        sector_size = header.sector_size

        if information.version == Version.VISTA:
            cluster_size = sector_size * header.sectors_per_cluster
            metafiles_size = ((cluster_size + 0x3FFF) & ~(cluster_size - 1)) & 0xFFFFFFFF
        elif information.version == Version.SEVEN:
            metafiles_size = (sector_size + 0xFFFF) & ~(sector_size - 1)
        else:
            raise MetadataError(f"unsupported BitLocker version ({information.version})")

        logger.debug("Metadata files size: %#x", metafiles_size)
        for region in self.regions[:3]:
            region.size = metafiles_size

        if information.version != Version.SEVEN:
            return

        found = self.find_datum(None, ValueType.VIRTUALIZATION_INFO)
        if found is None:
            raise MetadataError(
                f"error looking for the VIRTUALIZATION datum type "
                f"{int(ValueType.VIRTUALIZATION_INFO)} (VIRTUALIZATION INFO)"
            )
        _, datum = found
        fixed = header_size(ValueType.VIRTUALIZATION_INFO)
        if len(datum) < fixed:
            raise MetadataError("VIRTUALIZATION datum is too small")
        _, nb_bytes = struct.unpack_from("<QQ", datum, 8)

        self.regions.append(Region(information.boot_sectors_backup, nb_bytes))
        if information.curr_state == MetadataState.SWITCHING_ENCRYPTION:
            self.regions.append(
                Region(information.encrypted_volume_size, information.convert_size)
            )

        self.virtualized_size = nb_bytes
        logger.debug("Virtualized info size: %#x", nb_bytes)

        if (len(datum) & 0xFFFF) > fixed:
            try:
                self.xinfo = parse_extended_info(datum[fixed:])
                logger.debug("Got extended info")
            except DatumError as exc:
                logger.debug("Extended info unreadable: %s", exc)

    # -- queries ---------------------------------------------------------

    def is_overwritten(self, offset: int, size: int) -> bool:
        """Whether the area starting at ``offset`` touches a metadata region."""
        for region in self.regions:
            if region.size == 0:
                continue
            if region.addr <= offset < region.addr + region.size:
                logger.debug("In metadata file (1:%#x)", offset)
                return True
            if offset < region.addr < offset + size:
                logger.debug("In metadata file (2:%#x + %#x)", offset, size)
                return True
        return False

    def check_state(self) -> bool:
        """Whether the volume is in a state where it is safe to use."""
        information = self._require_information()

        if information.next_state == MetadataState.DECRYPTED:
            next_state = "dec"
        elif information.next_state == MetadataState.ENCRYPTED:
            next_state = "enc"
        else:
            next_state = "unknown-"
            logger.warning(
                "The next state of the volume (%d) is currently unknown.",
                information.next_state,
            )

        if information.curr_state == MetadataState.SWITCHING_ENCRYPTION:
            logger.error(
                "The volume is currently being %srypted, which is an unstable state. "
                "Using it may result in data corruption.",
                next_state,
            )
            return False
        if information.curr_state == MetadataState.SWITCH_ENCRYPTION_PAUSED:
            logger.warning(
                "The volume is currently in a secure state, but don't resume the "
                "%sryption while using it, the volume would become instable.",
                next_state,
            )
        elif information.curr_state == MetadataState.DECRYPTED:
            logger.warning(
                "The disk is about to get encrypted. Using it while encrypting "
                "in parallel may corrupt your data."
            )
        return True

    def find_datum(
        self,
        entry_type: Optional[int] = None,
        value_type: Optional[int] = None,
        after: Optional[int] = None,
    ) -> Optional[Tuple[int, bytes]]:
        """Find the next datum of the dataset matching the given types.

        Returns its offset in the dataset and its bytes, or None.
        """
        dataset = self.dataset_bytes
        position = find_next_datum(dataset, entry_type, value_type, after)
        if position is None:
            return None
        header = parse_header(dataset, position)
        return position, dataset[position:position + header.datum_size]

    def volume_size_from_vbr(self) -> int:
        """Volume size given by the boot record, 0 when it holds none."""
        return volume_size_from_vbr(self._require_header())

    def vista_vbr_fve_to_ntfs(self, sector: bytes) -> bytes:
        """Turn the Vista BitLocker boot sector into the NTFS one."""
        return vista_vbr_fve_to_ntfs(sector, self._require_information().mftmirror_backup)

    def vista_vbr_ntfs_to_fve(self, sector: bytes) -> bytes:
        """Turn the NTFS boot sector back into the Vista BitLocker one."""
        return vista_vbr_ntfs_to_fve(sector, self._require_information().information_off[0])
"""Reading and writing sectors of a BitLocker volume through its cipher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Optional, Protocol

from .metadata import Metadata
from .volume import Version, parse_volume_header, volume_size_from_vbr

logger = logging.getLogger(__name__)

#: On Vista, the first sectors of the volume are stored unencrypted.
_VISTA_CLEAR_SECTORS = 16


class SectorIOError(Exception):
    """Raised when sectors cannot be read from or written to the volume."""


class SectorCipher(Protocol):
    """What the sector layer needs from the volume's cipher.

    Both methods get the bytes of one sector and its offset in the volume, and
    return the transformed sector. They raise ValueError when they fail.
    """

    def decrypt_sector(self, data: bytes, offset: int) -> bytes:
        """Decrypt the sector found at ``offset`` of the volume."""

    def encrypt_sector(self, data: bytes, offset: int) -> bytes:
        """Encrypt the sector to be written at ``offset`` of the volume."""


@dataclass
class IOData:
    """Everything needed to translate between the volume and its clear view."""

    metadata: Metadata
    stream: BinaryIO
    cipher: SectorCipher
    part_off: int = 0
    sector_size: int = 0
    encrypted_volume_size: int = 0
    backup_sectors_addr: int = 0
    nb_backup_sectors: int = 0
    volume_size: int = 0

    # -- raw access ------------------------------------------------------

    def _pread(self, offset: int, size: int) -> bytes:
        if size <= 0:
            return b""
        try:
            self.stream.seek(offset)
            return self.stream.read(size) or b""
        except (OSError, ValueError):
            return b""

    def _pwrite(self, offset: int, data: bytes) -> int:
        if not data:
            return 0
        try:
            self.stream.seek(offset)
            written = self.stream.write(data)
        except (OSError, ValueError):
            return 0
        return len(data) if written is None else written

    # -- cipher calls ----------------------------------------------------

    @staticmethod
    def _checked(result: Optional[bytes], sector_size: int) -> Optional[bytes]:
        if result is None or len(result) != sector_size:
            return None
        return bytes(result)

    def _decrypt(self, sector: bytes, offset: int) -> bytes:
        try:
            plain = self._checked(self.cipher.decrypt_sector(sector, offset), len(sector))
        except ValueError:
            plain = None
        if plain is None:
            logger.critical("Decryption of sector %#x failed!", offset)
            return bytes(len(sector))
        return plain

    def _encrypt(self, sector: bytes, offset: int) -> bytes:
        try:
            sealed = self._checked(self.cipher.encrypt_sector(sector, offset), len(sector))
        except ValueError:
            sealed = None
        if sealed is None:
            logger.critical("Encryption of sector %#x failed!", offset)
            return bytes(len(sector))
        return sealed

    # -- per-sector rules ------------------------------------------------

    @staticmethod
    def _is_vista_special(sector_offset: int, total_sectors: int) -> bool:
        return sector_offset < _VISTA_CLEAR_SECTORS or sector_offset + 1 == total_sectors

    @staticmethod
    def _is_vista_boot(sector_offset: int, total_sectors: int) -> bool:
        return sector_offset < 1 or sector_offset + 1 == total_sectors

    def _fix_read_sector_seven(self, offset: int, sector_size: int) -> bytes:
        """Read a first sector of a Seven volume from where it is backed up."""
        target = offset + self.backup_sectors_addr
        logger.debug("  Fixing sector (7): from %#x to %#x", offset, target)
        data = self._pread(target + self.part_off, sector_size)
        if not data:
            logger.error(
                "Unable to read %#x bytes from %#x", sector_size, target + self.part_off
            )
            return bytes(sector_size)
        data = data.ljust(sector_size, b"\x00")
        if target >= self.encrypted_volume_size:
            return data
        return self._decrypt(data, target)

    def _read_one(
        self,
        version: int,
        sector_offset: int,
        offset: int,
        sector: bytes,
        total_sectors: int,
    ) -> bytes:
        size = len(sector)
        if self.metadata.is_overwritten(offset, size):
            return bytes(size)

        if version == Version.SEVEN and sector_offset < self.nb_backup_sectors:
            return self._fix_read_sector_seven(offset, size)

        if version == Version.SEVEN and offset >= self.encrypted_volume_size:
            logger.debug("  > Copying sector from %#x (%#x bytes)", offset, size)
            return sector

        if version == Version.VISTA and self._is_vista_special(sector_offset, total_sectors):
            if self._is_vista_boot(sector_offset, total_sectors):
                return self.metadata.vista_vbr_fve_to_ntfs(sector)
            logger.debug("  > Copying sector from %#x (%#x bytes)", offset, size)
            return sector

        return self._decrypt(sector, offset)

    def _write_one(
        self,
        version: int,
        sector_offset: int,
        offset: int,
        sector: bytes,
        total_sectors: int,
    ) -> bytes:
        if version == Version.VISTA and self._is_vista_special(sector_offset, total_sectors):
            if self._is_vista_boot(sector_offset, total_sectors):
                return self.metadata.vista_vbr_ntfs_to_fve(sector)
            return sector

        if version == Version.SEVEN and offset >= self.encrypted_volume_size:
            return sector

        return self._encrypt(sector, offset)

    # -- public operations -----------------------------------------------

    def read_decrypt_sectors(self, count: int, sector_size: int, start: int) -> bytes:
        """Read ``count`` sectors from offset ``start`` and return their clear content.

        ``start`` has to be aligned on ``sector_size``. Sectors past the end of
        what could be read come back filled with zeroes.
        """
        if sector_size <= 0:
            raise ValueError(f"invalid sector size {sector_size}")
        size = count * sector_size
        position = start + self.part_off
        data = self._pread(position, size)
        if not data:
            raise SectorIOError(f"unable to read {size:#x} bytes from {position:#x}")

        output = bytearray(size)
        version = self.metadata.version
        total_sectors = self.encrypted_volume_size // sector_size
        first_sector = start // sector_size

        for index in range(len(data) // sector_size):
            begin = index * sector_size
            sector = data[begin:begin + sector_size]
            output[begin:begin + sector_size] = self._read_one(
                version,
                first_sector + index,
                start + begin,
                sector,
                total_sectors,
            )
        return bytes(output)

    def encrypt_write_sectors(self, data: bytes, sector_size: int, start: int) -> None:
        """Encrypt the clear sectors in ``data`` and write them at offset ``start``."""
        if sector_size <= 0:
            raise ValueError(f"invalid sector size {sector_size}")
        data = bytes(data)
        if len(data) % sector_size:
            raise ValueError(
                f"data length {len(data)} is not a multiple of the sector size {sector_size}"
            )

        output = bytearray(len(data))
        version = self.metadata.version
        total_sectors = self.encrypted_volume_size // sector_size
        first_sector = start // sector_size

        for index in range(len(data) // sector_size):
            begin = index * sector_size
            sector = data[begin:begin + sector_size]
            output[begin:begin + sector_size] = self._write_one(
                version,
                first_sector + index,
                start + begin,
                sector,
                total_sectors,
            )

        position = start + self.part_off
        if self._pwrite(position, bytes(output)) <= 0:
            raise SectorIOError(f"unable to write {len(output):#x} bytes at {position:#x}")

    def compute_volume_size(self) -> int:
        """The volume's size in bytes, or 0 when it cannot be determined."""
        if self.volume_size:
            return self.volume_size

        size = self.metadata.volume_size_from_vbr()
        if not size and self.metadata.version == Version.SEVEN:
            # Partially encrypted Seven volumes: look at the NTFS boot record
            sector_size = self.sector_size or self.metadata.sector_size
            try:
                sector = self.read_decrypt_sectors(1, sector_size, 0)
            except SectorIOError:
                logger.error("Unable to read the NTFS header to get the volume's size")
                return 0
            try:
                size = volume_size_from_vbr(parse_volume_header(sector))
            except ValueError:
                return 0
        return size


def prepare_io(
    metadata: Metadata,
    stream: BinaryIO,
    cipher: SectorCipher,
    offset: Optional[int] = None,
) -> IOData:
    """Gather what sector translation needs from initialized metadata.

    ``offset`` is where the volume starts in ``stream``; it defaults to the
    offset the metadata was read with.
    """
    if offset is None:
        offset = metadata.config.offset

    sector_size = metadata.sector_size
    encrypted_volume_size = metadata.encrypted_volume_size
    if metadata.version == Version.VISTA:
        # The Vista volume size includes the boot record's backup
        encrypted_volume_size = metadata.volume_size_from_vbr() + sector_size

    io_data = IOData(
        metadata=metadata,
        stream=stream,
        cipher=cipher,
        part_off=offset,
        sector_size=sector_size,
        encrypted_volume_size=encrypted_volume_size,
        backup_sectors_addr=metadata.ntfs_sectors_address,
        nb_backup_sectors=metadata.backup_sectors_count,
        volume_size=encrypted_volume_size,
    )

    if io_data.volume_size == 0 and not metadata.is_decrypted_state:
        raise SectorIOError("can't initialize the volume's size")

    logger.info(
        "Found volume's size: %#x (%d) bytes", io_data.volume_size, io_data.volume_size
    )
    return io_data
"""
RKV Archive Reader.

Parses TY game archives (RKV1 and RKV2 containers) and provides
case-insensitive access to the files stored inside them.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from .diagnostics import Diagnostics
from .errors import ArchiveIOError, NotFoundError, TruncatedDataError, UnknownFormatError
from .reader import cstring_at
from .structs import (
    RKV1_FOLDER_SIZE, RKV1_RECORD_SIZE, RKV2_ENTRY_SIZE, RKV2_MAGIC, RKV2_NAME_MAX,
    Rkv1Record, Rkv1Trailer, Rkv2Entry, Rkv2Header, parse_at,
)

logger = logging.getLogger(__name__)

STAGE = "archive"

RKV1 = "RKV1"
RKV2 = "RKV2"


@dataclass(frozen=True)
class ArchiveRecord:
    """One file stored in an archive. folder and date are RKV1 only."""
    name: str
    offset: int
    size: int
    folder: int = 0
    date: int = 0

    @property
    def key(self) -> str:
        return self.name.lower()

    @property
    def extension(self) -> str:
        _, ext = os.path.splitext(self.name)
        return ext[1:].lower()


class Archive:
    """Parser for RKV archive files.

    The record table is read once at construction; file contents are read
    on demand by reopening the container, so one instance can serve several
    threads at the same time.

    Attributes:
        path: Source file path
        version: RKV1 or RKV2
        files: Mapping of lower-cased name to ArchiveRecord
    """

    def __init__(self, path: str, diagnostics: Optional[Diagnostics] = None):
        """Open and index an archive.

        Args:
            path: Path to the .rkv file
            diagnostics: channel receiving skipped or replaced entries

        Raises:
            ArchiveIOError: file missing, unreadable or empty
            UnknownFormatError: the record table cannot be located
        """
        self.path = path
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.files: Dict[str, ArchiveRecord] = {}
        self.version: Optional[str] = None

        try:
            self.size = os.path.getsize(path)
        except OSError as e:
            raise ArchiveIOError(f"Failed to open archive file: {path} ({e})") from e

        if self.size == 0:
            raise ArchiveIOError(f"Archive file is empty: {path}")

        self._identify()

        if self.version == RKV2:
            logger.info("Identified archive as RKV2 format")
            self._load_rkv2()
        else:
            logger.info("Identified archive as RKV1 format")
            self._load_rkv1()

        logger.info(f"Loaded {len(self.files)} files from {self.version} archive")

    @classmethod
    def open(cls, path: str, diagnostics: Optional[Diagnostics] = None) -> "Archive":
        return cls(path, diagnostics)

    def _read_range(self, offset: int, size: int) -> bytes:
        if offset < 0 or size < 0 or offset + size > self.size:
            raise ArchiveIOError(
                f"Range {offset}+{size} exceeds archive size {self.size}: {self.path}"
            )
        try:
            with open(self.path, "rb") as f:
                f.seek(offset)
                data = f.read(size)
        except OSError as e:
            raise ArchiveIOError(f"Failed to read archive file: {self.path} ({e})") from e
        if len(data) != size:
            raise ArchiveIOError(
                f"Short read from {self.path}: wanted {size} bytes at {offset}, got {len(data)}"
            )
        return data

    def _identify(self):
        """Pick the container version from the first four bytes.

        RKV1 has no magic of its own, so anything that is not RKV2 is
        treated as RKV1.
        """
        magic = self._read_range(0, min(4, self.size))
        self.version = RKV2 if magic == RKV2_MAGIC else RKV1

    def _add(self, record: ArchiveRecord):
        if record.key in self.files:
            self.diagnostics.warning(STAGE, f"Duplicate archive entry replaced: {record.name}")
        self.files[record.key] = record

    def _load_rkv1(self):
        """Parse the RKV1 table anchored at the end of the file."""
        if self.size < Rkv1Trailer.sizeof():
            raise UnknownFormatError(f"File too small for RKV1 trailer: {self.path}")

        trailer = Rkv1Trailer.parse(self._read_range(self.size - 8, 8))
        table_size = trailer.folder_count * RKV1_FOLDER_SIZE + trailer.file_count * RKV1_RECORD_SIZE
        table_start = self.size - 8 - table_size
        if table_start < 0:
            raise UnknownFormatError(
                f"File isn't a recognized TY archive format: {self.path} "
                f"(files={trailer.file_count}, folders={trailer.folder_count})"
            )

        table = self._read_range(table_start, trailer.file_count * RKV1_RECORD_SIZE)
        for i in range(trailer.file_count):
            entry = parse_at(Rkv1Record, table, i * RKV1_RECORD_SIZE, "RKV1 record")
            name = entry.name.split(b"\x00", 1)[0].decode("latin-1", errors="replace")
            self._add(ArchiveRecord(
                name=name,
                offset=entry.offset,
                size=entry.size,
                folder=entry.folder,
                date=entry.date,
            ))

    def _load_rkv2(self):
        """Parse the RKV2 header, entry list and name blob."""
        try:
            header = parse_at(Rkv2Header, self._read_range(0, min(self.size, Rkv2Header.sizeof())), 0, "RKV2 header")
        except TruncatedDataError as e:
            raise UnknownFormatError(f"Truncated RKV2 header: {self.path}") from e

        entries_size = header.file_count * RKV2_ENTRY_SIZE
        if header.info_offset + entries_size > self.size:
            raise UnknownFormatError(
                f"RKV2 entry table runs past end of file: {self.path} "
                f"(files={header.file_count}, info_offset={header.info_offset})"
            )

        entries = self._read_range(header.info_offset, entries_size)
        name_off = header.info_offset + entries_size
        name_blob = self._read_range(name_off, min(header.name_blob_size, self.size - name_off))

        # Entries are walked with a sequential cursor from info_offset
        cursor = 0
        for i in range(header.file_count):
            entry = parse_at(Rkv2Entry, entries, cursor, "RKV2 entry")
            cursor += RKV2_ENTRY_SIZE

            try:
                name = cstring_at(name_blob, entry.name_offset, RKV2_NAME_MAX)
            except TruncatedDataError:
                self.diagnostics.warning(
                    STAGE, f"RKV2 entry {i} has name offset {entry.name_offset} outside name blob"
                )
                continue

            self._add(ArchiveRecord(name=name, offset=entry.offset, size=entry.size))

    def get_file(self, name: str) -> Optional[ArchiveRecord]:
        """Look up a record by name (case-insensitive)."""
        return self.files.get(name.lower())

    def get_file_data(self, name: str) -> bytes:
        """Read a file's bytes.

        Raises:
            NotFoundError: no such file
            ArchiveIOError: the declared range runs past the end of the file
        """
        record = self.get_file(name)
        if record is None:
            raise NotFoundError(f"File not found in archive: {name}")
        return self._read_range(record.offset, record.size)

    def list_files(self) -> List[str]:
        return [record.name for record in self.files.values()]

    def list_by_extension(self, ext: str) -> List[str]:
        """Names of all files with the given extension (case-insensitive)."""
        ext = ext.lower().lstrip(".")
        return [record.name for record in self.files.values() if record.extension == ext]

    def __contains__(self, name: str) -> bool:
        return name.lower() in self.files

    def __len__(self) -> int:
        return len(self.files)

    def dump_info(self):
        """Log archive summary information."""
        logger.info(f"Archive: {self.path}")
        logger.info(f"  Version: {self.version}")
        logger.info(f"  Files: {len(self.files)}")


def open_archive(path: str, diagnostics: Optional[Diagnostics] = None) -> Archive:
    """Open an archive, identifying its container version."""
    return Archive(path, diagnostics)

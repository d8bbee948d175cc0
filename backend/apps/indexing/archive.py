"""
Zip archive expansion for uploads that carry many documents.
"""
import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import List, Optional

from django.conf import settings

from apps.indexing.errors import InputError
from apps.indexing.extractor import file_extension, is_supported

logger = logging.getLogger(__name__)

DEFAULT_MAX_ARCHIVE_ENTRIES = 2000


class ArchiveError(InputError):
    """The archive is corrupt or holds no usable documents."""
    pass


@dataclass
class ArchiveEntry:
    path: str
    data: bytes

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name


def normalize_entry_path(path: str) -> str:
    return path.replace('\\', '/').lstrip('/')


def _is_hidden(path: str) -> bool:
    parts = PurePosixPath(path).parts
    return any(part.startswith('.') or part == '__MACOSX' for part in parts)


def expand_archive(data: bytes, max_entries: Optional[int] = None) -> List[ArchiveEntry]:
    """
    Read the supported documents out of a zip archive.

    Entries are returned sorted by path. At most `max_entries` file entries
    are considered; anything past that is dropped with a warning.

    Raises:
        ArchiveError: If the payload is not a zip, or holds no supported files
    """
    limit = max_entries or int(getattr(settings, 'MAX_ARCHIVE_ENTRIES', DEFAULT_MAX_ARCHIVE_ENTRIES))

    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Corrupt archive: {e}") from e

    with archive:
        infos = [info for info in archive.infolist() if not info.is_dir()]
        if not infos:
            raise ArchiveError("Archive is empty")

        if len(infos) > limit:
            logger.warning(f"Archive has {len(infos)} entries; keeping the first {limit}")
            infos = infos[:limit]

        entries = []
        for info in infos:
            path = normalize_entry_path(info.filename)
            if _is_hidden(path) or not is_supported(path):
                logger.debug(f"Skipping archive entry {path}")
                continue
            try:
                entries.append(ArchiveEntry(path=path, data=archive.read(info)))
            except (zipfile.BadZipFile, OSError) as e:
                raise ArchiveError(f"Cannot read archive entry {path}: {e}") from e

    if not entries:
        raise ArchiveError("Archive contains no supported documents")

    entries.sort(key=lambda e: e.path)
    logger.info(f"Expanded archive into {len(entries)} document(s)")
    return entries


def looks_like_archive(filename: str, data: bytes) -> bool:
    """A .zip upload, or an unrecognized file that parses as one (.docx is a zip too)."""
    if file_extension(filename) == '.zip':
        return True
    if is_supported(filename):
        return False
    return zipfile.is_zipfile(io.BytesIO(data))

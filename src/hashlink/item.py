import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from types import TracebackType

logger = logging.getLogger(__name__)

OPEN_FLAGS: int = os.O_RDONLY | os.O_NONBLOCK | os.O_NOCTTY


class FileType(Enum):
    REGULAR = "regular"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"

    @staticmethod
    def from_mode(mode: int) -> "FileType":
        if stat.S_ISREG(mode):
            return FileType.REGULAR
        if stat.S_ISDIR(mode):
            return FileType.DIRECTORY
        if stat.S_ISLNK(mode):
            return FileType.SYMLINK
        return FileType.OTHER


def unix_time(st: os.stat_result) -> int:
    return st.st_mtime_ns // 1_000_000_000


@dataclass(slots=True, eq=False)
class Item:
    """
    An open filesystem entry.

    The Item owns `fd` until `close()` is called. The stat fields are a
    snapshot taken when the entry was opened and are never refreshed.
    """

    path: str
    fd: int | None
    file_type: FileType
    size: int
    time: int
    dev: int
    ino: int
    nlink: int
    priority: int = 0
    is_symlink: bool = False

    @staticmethod
    def open(path: str) -> "Item | None":
        """Open `path` and snapshot its metadata. Logs and returns None on failure."""
        path = os.path.normpath(path)

        try:
            fd: int = os.open(path, OPEN_FLAGS)
        except OSError as e:
            logger.error(f"failed to open file: path={path!r}: {e}")
            return None

        try:
            st: os.stat_result = os.fstat(fd)
        except OSError as e:
            logger.error(f"failed to stat file: path={path!r}: {e}")
            os.close(fd)
            return None

        return Item(
            path=path,
            fd=fd,
            file_type=FileType.from_mode(st.st_mode),
            size=st.st_size,
            time=unix_time(st),
            dev=st.st_dev,
            ino=st.st_ino,
            nlink=st.st_nlink,
        )

    @property
    def is_open(self) -> bool:
        return self.fd is not None

    def same_file(self, other: "Item") -> bool:
        return self.dev == other.dev and self.ino == other.ino

    def close(self) -> None:
        fd: int | None = self.fd
        self.fd = None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError as e:
            logger.error(f"failed to close file: path={self.path!r}: {e}")

    def __enter__(self) -> "Item":
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None
    ) -> None:
        self.close()

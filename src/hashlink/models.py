from dataclasses import dataclass


@dataclass(frozen=True, slots=True, order=True)
class DedupKey:
    # Ordering is digest bytewise, then device, then inode.
    digest: bytes
    dev: int = 0
    ino: int = 0

    def content_only(self) -> "DedupKey":
        return DedupKey(digest=self.digest)


@dataclass(frozen=True, slots=True)
class HashJob:
    path: str
    dev: int
    ino: int
    size: int
    time: int


@dataclass(slots=True)
class ScanStats:
    dirs: int = 0
    files: int = 0
    skipped: int = 0
    cached: int = 0
    hashed: int = 0
    failed: int = 0

import logging
import os
import stat
from collections.abc import Iterable, Iterator
from concurrent.futures import Future, ProcessPoolExecutor, as_completed

from .config import AppConfig
from .item import FileType, Item
from .metadata import Metadata
from .models import DedupKey, HashJob, ScanStats
from .rules import RuleList
from .stack import ItemStack
from .xattrs import AttrNames

logger = logging.getLogger(__name__)


def refresh_metadata(
    item: Item, names: AttrNames, *, rescan: bool = False, rewrite: bool = False
) -> tuple[Metadata, bool] | None:
    """
    Return trustworthy metadata for an open regular file.

    The cached attributes are used when they are complete and match the
    item's size and mtime; otherwise the content is hashed and the cache
    rewritten. Returns the metadata and whether it was recomputed, or None
    when the file could not be hashed.
    """
    assert item.fd is not None

    meta: Metadata = Metadata()
    loaded: bool = False
    if not rescan:
        loaded = meta.load(item.fd, names, item.path)

    dirty: bool = False
    if not loaded or not meta.check(item.size, item.time):
        if not meta.compute(item.fd, item.size, item.time, item.path):
            return None
        dirty = True

    if dirty or rewrite:
        meta.save(item.fd, names, item.path)

    return meta, dirty


def refresh_job(job: HashJob, names: AttrNames, rescan: bool, rewrite: bool) -> bytes | None:
    """Worker entry point: reopen `job.path` and refresh its metadata."""
    item: Item | None = Item.open(job.path)
    if item is None:
        return None

    with item:
        snapshot: tuple[int, int, int, int] = (item.dev, item.ino, item.size, item.time)
        if snapshot != (job.dev, job.ino, job.size, job.time):
            logger.warning(f"file changed between scan and hash: path={job.path!r}")
            return None

        result: tuple[Metadata, bool] | None = refresh_metadata(item, names, rescan=rescan, rewrite=rewrite)

    return None if result is None else result[0].sha256


def hash_files_parallel_bounded(
    jobs: Iterable[HashJob],
    names: AttrNames,
    *,
    rescan: bool,
    rewrite: bool,
    max_workers: int,
    max_in_flight: int,
) -> Iterator[tuple[HashJob, bytes | None]]:
    if max_in_flight <= 0:
        raise ValueError("max_in_flight must be > 0")
    if max_workers <= 0:
        raise ValueError("max_workers must be > 0")

    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        in_flight: dict[Future[bytes | None], HashJob] = {}

        def submit(job: HashJob) -> None:
            future: Future[bytes | None] = executor.submit(refresh_job, job, names, rescan, rewrite)
            in_flight[future] = job

        for job in jobs:
            # Apply backpressure
            while len(in_flight) >= max_in_flight:
                done: Future[bytes | None] = next(as_completed(in_flight))
                yield in_flight.pop(done), done.result()

            submit(job)

        # Drain remaining futures
        for future in as_completed(in_flight):
            yield in_flight[future], future.result()


class Scanner:
    """
    Walk root paths and group regular files by content.

    Directories are walked with an explicit stack. Each admitted file is
    keyed by its SHA256 digest plus device and inode, so hardlinks to one
    inode share a key.
    """

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg: AppConfig = cfg
        self.names: AttrNames = cfg.attr_names
        self.rules: RuleList = RuleList.from_rules(cfg.rules)
        self.stats: ScanStats = ScanStats()

        self._seen: dict[DedupKey, list[str]] = {}
        self._pending: dict[tuple[int, int], HashJob] = {}
        self._pending_paths: dict[tuple[int, int], list[str]] = {}

    @property
    def parallel(self) -> bool:
        return self.cfg.max_workers > 1

    def scan(self, roots: Iterable[str]) -> dict[DedupKey, list[str]]:
        self.stats = ScanStats()
        self._seen = {}
        self._pending = {}
        self._pending_paths = {}

        with ItemStack() as stack:
            for root in roots:
                item: Item | None = Item.open(root)
                if item is None:
                    continue

                logger.info(f"Scanning: {item.path}")
                if item.file_type is FileType.DIRECTORY:
                    stack.push(item)
                elif item.file_type is FileType.REGULAR:
                    self._scan_file(item)
                else:
                    logger.warning(f"skipping root that is neither a file nor a directory: {item.path!r}")
                    item.close()

            while not stack.is_empty():
                self._scan_dir(stack, stack.pop())

        if self._pending:
            self._hash_pending()

        logger.info(
            f"Scan finished: dirs={self.stats.dirs} files={self.stats.files} "
            f"cached={self.stats.cached} hashed={self.stats.hashed} "
            f"skipped={self.stats.skipped} failed={self.stats.failed}"
        )
        return self._seen

    def _scan_dir(self, stack: ItemStack, item: Item) -> None:
        with item:
            self.stats.dirs += 1
            assert item.fd is not None

            try:
                with os.scandir(item.fd) as it:
                    entries: list[os.DirEntry[str]] = list(it)
            except OSError as e:
                logger.error(f"failed to read directory: path={item.path!r}: {e}")
                return

            for entry in entries:
                if entry.name in (".", ".."):
                    continue

                child: Item | None = self._open_child(item, entry)
                if child is None:
                    continue

                # Rules apply to files only; an include rule may still
                # admit files below a directory a later rule excludes.
                if child.file_type is FileType.DIRECTORY:
                    stack.push(child)
                else:
                    self._scan_file(child)

    def _open_child(self, parent: Item, entry: os.DirEntry[str]) -> Item | None:
        """
        Open a directory entry, using its type hint only as a filter.

        Symlinks are followed only when they point at a regular file.
        """
        path: str = os.path.join(parent.path, entry.name)
        is_symlink: bool = False

        try:
            if entry.is_symlink():
                try:
                    st: os.stat_result = os.stat(path)
                except OSError as e:
                    logger.warning(f"failed to resolve symlink: path={path!r}: {e}")
                    return None
                if not stat.S_ISREG(st.st_mode):
                    return None
                hint: FileType = FileType.REGULAR
                is_symlink = True
            elif entry.is_dir(follow_symlinks=False):
                hint = FileType.DIRECTORY
            elif entry.is_file(follow_symlinks=False):
                hint = FileType.REGULAR
            else:
                return None
        except OSError as e:
            logger.warning(f"failed to read directory entry type: path={path!r}: {e}")
            return None

        child: Item | None = Item.open(path)
        if child is None:
            return None
        child.is_symlink = is_symlink

        if child.dev != parent.dev:
            if not self.cfg.cross_device:
                logger.debug(f"skipping entry on another device: {path!r}")
                child.close()
                return None
            if child.file_type is not hint:
                logger.warning(
                    f"file type mismatch on another device: path={path!r} "
                    f"entry={hint.value} stat={child.file_type.value}"
                )
                child.close()
                return None
        elif child.file_type is not hint:
            logger.error(
                f"file type mismatch: directory entry said {hint.value}, "
                f"but stat said {child.file_type.value}: path={path!r}"
            )
            child.close()
            return None

        return child

    def _scan_file(self, item: Item) -> None:
        with item:
            self.stats.files += 1

            if item.size < self.cfg.min_size:
                self.stats.skipped += 1
                return
            if self.rules.is_excluded(item, self.names.exclude):
                logger.debug(f"excluded file: {item.path!r}")
                self.stats.skipped += 1
                return

            if self.parallel:
                self._scan_file_deferred(item)
                return

            result: tuple[Metadata, bool] | None = refresh_metadata(
                item, self.names, rescan=self.cfg.rescan, rewrite=self.cfg.rewrite
            )
            if result is None:
                self.stats.failed += 1
                return

            meta, hashed = result
            if hashed:
                self.stats.hashed += 1
            else:
                self.stats.cached += 1
            self._record(DedupKey(digest=meta.sha256, dev=item.dev, ino=item.ino), item.path)

    def _scan_file_deferred(self, item: Item) -> None:
        """Record a cached file now; queue a stale one for the worker pool."""
        assert item.fd is not None
        inode: tuple[int, int] = (item.dev, item.ino)

        if inode in self._pending:
            self._pending_paths[inode].append(item.path)
            return

        if not self.cfg.rescan:
            meta: Metadata = Metadata()
            if meta.load(item.fd, self.names, item.path) and meta.check(item.size, item.time):
                if self.cfg.rewrite:
                    meta.save(item.fd, self.names, item.path)
                self.stats.cached += 1
                self._record(DedupKey(digest=meta.sha256, dev=item.dev, ino=item.ino), item.path)
                return

        self._pending[inode] = HashJob(
            path=item.path,
            dev=item.dev,
            ino=item.ino,
            size=item.size,
            time=item.time,
        )
        self._pending_paths[inode] = [item.path]

    def _hash_pending(self) -> None:
        logger.info(f"Hashing {len(self._pending)} files with {self.cfg.max_workers} workers")

        for job, digest in hash_files_parallel_bounded(
            self._pending.values(),
            self.names,
            rescan=self.cfg.rescan,
            rewrite=self.cfg.rewrite,
            max_workers=self.cfg.max_workers,
            max_in_flight=self.cfg.max_inflight,
        ):
            paths: list[str] = self._pending_paths[(job.dev, job.ino)]
            if digest is None:
                self.stats.failed += len(paths)
                continue

            self.stats.hashed += len(paths)
            key: DedupKey = DedupKey(digest=digest, dev=job.dev, ino=job.ino)
            for path in paths:
                self._record(key, path)

    def _record(self, key: DedupKey, path: str) -> None:
        self._seen.setdefault(key, []).append(path)


def duplicate_groups(seen: dict[DedupKey, list[str]], *, collapse_links: bool = True) -> list[list[str]]:
    """
    Reduce a scan result to groups of paths with identical content.

    With `collapse_links`, every inode is first reduced to its smallest
    path, so files that are already hardlinked together are reported
    once. Groups of fewer than two paths are dropped. Paths appear in
    key order (digest, device, inode), sorted within each inode.
    """
    by_content: dict[DedupKey, list[str]] = {}
    for key in sorted(seen):
        paths: list[str] = sorted(seen[key])
        if collapse_links:
            paths = paths[:1]
        by_content.setdefault(key.content_only(), []).extend(paths)

    return [paths for _, paths in sorted(by_content.items()) if len(paths) > 1]

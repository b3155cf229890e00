import errno
import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager

from .config import AppConfig
from .item import FileType, Item
from .rules import RuleList

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX: str = ".incoming."


class ReplacementError(RuntimeError):
    """Neither a hardlink nor a symlink could replace a duplicate."""


def survivor_order(item: Item) -> tuple[int, int, int, str]:
    # Preferred pattern, then most links, then oldest, then path.
    return (item.priority, -item.nlink, item.time, item.path)


def select_survivor(items: Sequence[Item]) -> Item | None:
    """Best-ranked item that is not a symlink, or None."""
    for item in sorted(items, key=survivor_order):
        if not item.is_symlink:
            return item
    return None


@contextmanager
def temp_dir(dst_dir: str) -> Generator[str, None, None]:
    """Create a scratch directory next to the destination; always removed."""
    path: str = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=dst_dir)
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.error(f"failed to delete temporary directory: path={path!r}: {e}")


def _rename_over(temp_path: str, dst_path: str) -> bool:
    try:
        os.remove(dst_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"failed to remove destination before rename: path={dst_path!r}: {e}")

    try:
        os.rename(temp_path, dst_path)
    except OSError as e:
        logger.error(f"failed to rename temporary file to final name: path={temp_path!r} target={dst_path!r}: {e}")
        return False
    return True


def try_link(src_path: str, dst_path: str) -> bool:
    """
    Replace `dst_path` with a hardlink to `src_path`.

    Returns False without logging an error when the two paths are on
    different devices, so the caller can fall back to a symlink.
    """
    dst_dir, dst_name = os.path.split(dst_path)

    try:
        with temp_dir(dst_dir or ".") as tmp:
            temp_path: str = os.path.join(tmp, dst_name)
            try:
                os.link(src_path, temp_path)
            except OSError as e:
                if e.errno == errno.EXDEV:
                    return False
                logger.error(f"failed to create link: path={temp_path!r} target={src_path!r}: {e}")
                return False

            return _rename_over(temp_path, dst_path)
    except OSError as e:
        logger.error(f"failed to create temporary directory: dir={dst_dir!r}: {e}")
        return False


def try_symlink(src_path: str, dst_path: str, *, relative: bool = False) -> bool:
    """Replace `dst_path` with a symlink to `src_path`."""
    src_abs: str = os.path.abspath(src_path)
    dst_dir, dst_name = os.path.split(os.path.abspath(dst_path))

    link_target: str = src_abs
    if relative:
        try:
            link_target = os.path.relpath(src_abs, start=dst_dir)
        except ValueError as e:
            logger.error(
                f"failed to make target path relative to destination directory: "
                f"base={dst_dir!r} target={src_abs!r}: {e}"
            )
            return False

    try:
        with temp_dir(dst_dir) as tmp:
            temp_path: str = os.path.join(tmp, dst_name)
            try:
                os.symlink(link_target, temp_path)
            except OSError as e:
                logger.error(f"failed to create symlink: path={temp_path!r} target={link_target!r}: {e}")
                return False

            return _rename_over(temp_path, dst_path)
    except OSError as e:
        logger.error(f"failed to create temporary directory: dir={dst_dir!r}: {e}")
        return False


class Replacer:
    """Turn each group of identical files into links to a single survivor."""

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg: AppConfig = cfg
        self.preferences: RuleList = RuleList.from_globs(cfg.prefer)
        self.replaced: int = 0

    def open_candidate(self, path: str) -> Item | None:
        item: Item | None = Item.open(path)
        if item is None:
            return None

        if item.file_type is not FileType.REGULAR:
            logger.warning(f"not a regular file: {item.path!r}")
            item.close()
            return None

        item.priority = self.preferences.priority(item.path)

        # Only a failed lstat leaves the item marked as a symlink.
        item.is_symlink = True
        try:
            st: os.stat_result = os.lstat(item.path)
        except OSError as e:
            logger.warning(f"lstat failed: path={item.path!r}: {e}")
            return item
        item.is_symlink = stat.S_ISLNK(st.st_mode)
        return item

    def process(self, groups: Iterable[Sequence[str]]) -> None:
        for paths in groups:
            self.process_group(paths)

    def process_group(self, paths: Sequence[str]) -> None:
        if len(paths) <= 1:
            return

        items: list[Item] = []
        try:
            for path in paths:
                item: Item | None = self.open_candidate(path)
                if item is not None:
                    items.append(item)

            if len(items) <= 1:
                return

            best: Item | None = select_survivor(items)
            if best is None:
                logger.warning(f"no usable survivor in group: {list(paths)!r}")
                return

            for item in items:
                if item is best:
                    continue
                if item.same_file(best) and not item.is_symlink:
                    continue

                self._replace(best.path, item.path)
        finally:
            for item in items:
                item.close()

    def _replace(self, src_path: str, dst_path: str) -> None:
        logger.debug(f"replacing duplicate file with link: src={src_path!r} dst={dst_path!r}")

        if try_link(src_path, dst_path):
            self.replaced += 1
            return
        if try_symlink(src_path, dst_path, relative=self.cfg.relative_symlinks):
            self.replaced += 1
            return

        raise ReplacementError(f"failed to replace {dst_path!r} with a link to {src_path!r}")

import errno
import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE: str = "user.dedupe."

# ENOATTR is the BSD spelling; Linux reports ENODATA
_MISSING_ERRNOS: frozenset[int] = frozenset(
    code for code in (errno.ENODATA, getattr(errno, "ENOATTR", None)) if code is not None
)


@dataclass(frozen=True, slots=True)
class AttrNames:
    stamp: str
    size: str
    time: str
    md5: str
    sha1: str
    sha256: str
    exclude: str

    @staticmethod
    def for_namespace(namespace: str = DEFAULT_NAMESPACE) -> "AttrNames":
        return AttrNames(
            stamp=f"{namespace}stamp",
            size=f"{namespace}size",
            time=f"{namespace}mtime",
            md5=f"{namespace}md5",
            sha1=f"{namespace}sha1",
            sha256=f"{namespace}sha256",
            exclude=f"{namespace}exclude",
        )

    @staticmethod
    def legacy(namespace: str = DEFAULT_NAMESPACE) -> "AttrNames":
        """
        Attribute names written by older releases.

        The per-field names are shared with other checksum-in-xattr tools,
        which is why they live outside the namespace.
        """
        return AttrNames(
            stamp=f"{namespace}stamp",
            size="user.size",
            time="user.mtime",
            md5="user.md5sum",
            sha1="user.sha1sum",
            sha256="user.sha256sum",
            exclude=f"{namespace}exclude",
        )


def is_missing(err: OSError) -> bool:
    return err.errno in _MISSING_ERRNOS


def maybe_fget(fd: int, name: str, path: str = "") -> bytes | None:
    """
    Read one extended attribute from an open file.

    Returns None when the attribute does not exist. Any other failure,
    including filesystems without xattr support, is logged and also
    reported as None.
    """
    try:
        value: bytes = os.getxattr(fd, name)
    except OSError as e:
        if is_missing(e):
            return None
        if e.errno == errno.ENOTSUP:
            logger.debug(f"xattrs not supported: path={path!r}: {e}")
            return None
        logger.error(f"fgetxattr failed: path={path!r} name={name!r}: {e}")
        return None

    logger.debug(f"fgetxattr: path={path!r} name={name!r} value={value!r}")
    return value


def maybe_fset(fd: int, name: str, value: bytes, path: str = "") -> bool:
    """
    Write one extended attribute unless it already holds `value`.

    Returns True when the attribute holds `value` afterwards.
    """
    try:
        existing: bytes | None = os.getxattr(fd, name)
    except OSError as e:
        if not is_missing(e):
            logger.debug(f"skipping fsetxattr: path={path!r} name={name!r}: {e}")
            return False
        existing = None

    if existing == value:
        return True

    try:
        os.setxattr(fd, name, value)
    except OSError as e:
        logger.error(f"fsetxattr failed: path={path!r} name={name!r} value={value!r}: {e}")
        return False

    logger.debug(f"fsetxattr: path={path!r} name={name!r} value={value!r}")
    return True

import base64
import binascii
import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from enum import IntFlag

from .xattrs import AttrNames, maybe_fget, maybe_fset

logger = logging.getLogger(__name__)

CHUNK_SIZE: int = 1 << 16

MD5_SIZE: int = 16
SHA1_SIZE: int = 20
SHA256_SIZE: int = 32

KEY_SIZE: str = "size"
KEY_MOD_TIME: str = "modTime"
KEY_MD5: str = "md5"
KEY_SHA1: str = "sha1"
KEY_SHA256: str = "sha256"

_RE_INT = re.compile(rb"[+-]?[0-9]+")
_RE_HEX = re.compile(rb"(?:[0-9A-Fa-f]{2})*")
_RE_B64_STD = re.compile(rb"(?:[0-9A-Za-z+/]{4})*(?:[0-9A-Za-z+/]{3}=|[0-9A-Za-z+/]{2}==)?")
_RE_B64_URL = re.compile(rb"(?:[0-9A-Za-z_-]{4})*(?:[0-9A-Za-z_-]{3}=|[0-9A-Za-z_-]{2}==)?")

_INT64_MIN: int = -(1 << 63)
_INT64_MAX: int = (1 << 63) - 1


class Bits(IntFlag):
    SIZE = 1 << 0
    TIME = 1 << 1
    MD5 = 1 << 2
    SHA1 = 1 << 3
    SHA256 = 1 << 4

    ALL = SIZE | TIME | MD5 | SHA1 | SHA256

    def has_all(self, other: "Bits") -> bool:
        return (self & other) == other

    def __str__(self) -> str:
        if not self:
            return "0"
        names: list[str] = [
            name
            for bit, name in (
                (Bits.SIZE, "size"),
                (Bits.TIME, "time"),
                (Bits.MD5, "md5"),
                (Bits.SHA1, "sha1"),
                (Bits.SHA256, "sha256"),
            )
            if self & bit
        ]
        return "|".join(names)


def decode_int(raw: bytes) -> int | None:
    """
    Decode a cached integer.

    Current releases store base-10 ASCII. Early releases stored the value
    as 8 raw bytes, big-endian.
    """
    if _RE_INT.fullmatch(raw):
        value: int = int(raw)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    if len(raw) == 8:
        return int.from_bytes(raw, byteorder="big", signed=True)
    return None


def decode_hash(raw: bytes, width: int) -> bytes | None:
    """
    Decode a cached digest of `width` bytes.

    Candidates are tried in order: raw bytes, hex, standard base64 and
    URL-safe base64. A candidate is only considered when the input length
    matches the encoded length of a `width`-byte digest.
    """
    if len(raw) == width:
        return bytes(raw)

    if len(raw) == 2 * width and _RE_HEX.fullmatch(raw):
        return bytes.fromhex(raw.decode("ascii"))

    if len(raw) == 4 * ((width + 2) // 3):
        decoded: bytes | None = None
        if _RE_B64_STD.fullmatch(raw):
            decoded = _b64decode(raw, altchars=None)
        if (decoded is None or len(decoded) != width) and _RE_B64_URL.fullmatch(raw):
            decoded = _b64decode(raw, altchars=b"-_")
        if decoded is not None and len(decoded) == width:
            return decoded

    return None


def _b64decode(raw: bytes, altchars: bytes | None) -> bytes | None:
    try:
        return base64.b64decode(raw, altchars=altchars, validate=True)
    except binascii.Error:
        return None


def encode_int(value: int) -> bytes:
    return str(value).encode("ascii")


def encode_hash_b64(digest: bytes) -> bytes:
    return base64.b64encode(digest)


def encode_hash_hex(digest: bytes) -> bytes:
    return digest.hex().encode("ascii")


@dataclass(slots=True)
class Metadata:
    """
    Cached content identity of a single file.

    `bits` records which of the other fields hold a value. A Metadata is
    scoped to one file and is never shared.
    """

    bits: Bits = Bits(0)
    size: int = 0
    time: int = 0
    md5: bytes = field(default=bytes(MD5_SIZE))
    sha1: bytes = field(default=bytes(SHA1_SIZE))
    sha256: bytes = field(default=bytes(SHA256_SIZE))

    @property
    def complete(self) -> bool:
        return self.bits.has_all(Bits.ALL)

    def reset(self) -> None:
        self.bits = Bits(0)
        self.size = 0
        self.time = 0
        self.md5 = bytes(MD5_SIZE)
        self.sha1 = bytes(SHA1_SIZE)
        self.sha256 = bytes(SHA256_SIZE)

    def check(self, size: int, time: int) -> bool:
        if not self.bits.has_all(Bits.SIZE | Bits.TIME):
            return False
        return self.size == size and self.time == time

    # --- decoding ---

    def decode(self, raw: bytes) -> bool:
        """Decode a combined stamp. Returns whether every field is now set."""
        for pair in raw.split(b","):
            key, found, value = pair.partition(b":")
            if not found:
                continue

            name: str = key.decode("ascii", errors="replace").lower()
            if name == KEY_SIZE:
                self._decode_size(value)
            elif name == KEY_MOD_TIME.lower():
                self._decode_time(value)
            elif name == KEY_MD5:
                self._decode_md5(value)
            elif name == KEY_SHA1:
                self._decode_sha1(value)
            elif name == KEY_SHA256:
                self._decode_sha256(value)

        return self.complete

    def _decode_size(self, raw: bytes) -> None:
        value: int | None = decode_int(raw)
        if value is None:
            logger.warning(f"failed to decode size: {raw!r}")
            return
        self.size = value
        self.bits |= Bits.SIZE

    def _decode_time(self, raw: bytes) -> None:
        value: int | None = decode_int(raw)
        if value is None:
            logger.warning(f"failed to decode last modified time: {raw!r}")
            return
        self.time = value
        self.bits |= Bits.TIME

    def _decode_md5(self, raw: bytes) -> None:
        digest: bytes | None = decode_hash(raw, MD5_SIZE)
        if digest is None:
            logger.warning(f"failed to decode MD5 hash: {raw!r}")
            return
        self.md5 = digest
        self.bits |= Bits.MD5

    def _decode_sha1(self, raw: bytes) -> None:
        digest: bytes | None = decode_hash(raw, SHA1_SIZE)
        if digest is None:
            logger.warning(f"failed to decode SHA1 hash: {raw!r}")
            return
        self.sha1 = digest
        self.bits |= Bits.SHA1

    def _decode_sha256(self, raw: bytes) -> None:
        digest: bytes | None = decode_hash(raw, SHA256_SIZE)
        if digest is None:
            logger.warning(f"failed to decode SHA256 hash: {raw!r}")
            return
        self.sha256 = digest
        self.bits |= Bits.SHA256

    def load(self, fd: int, names: AttrNames, path: str = "") -> bool:
        """
        Populate from extended attributes.

        The combined stamp is read first; any field it did not provide is
        then looked up in its own attribute. Returns whether all fields
        are set.
        """
        raw: bytes | None = maybe_fget(fd, names.stamp, path)
        if raw is not None:
            self.decode(raw)

        fallbacks = (
            (Bits.SIZE, names.size, self._decode_size),
            (Bits.TIME, names.time, self._decode_time),
            (Bits.MD5, names.md5, self._decode_md5),
            (Bits.SHA1, names.sha1, self._decode_sha1),
            (Bits.SHA256, names.sha256, self._decode_sha256),
        )
        for bit, name, decode in fallbacks:
            if self.bits & bit:
                continue
            raw = maybe_fget(fd, name, path)
            if raw is not None:
                decode(raw)

        return self.complete

    # --- hashing ---

    def compute(self, fd: int, size: int, time: int, path: str = "") -> bool:
        """
        Hash the file content and replace every field.

        Fails when the file cannot be read or when the number of bytes read
        differs from `size`, which means the file changed after it was
        stat'ed.
        """
        try:
            os.lseek(fd, 0, os.SEEK_SET)
        except OSError as e:
            logger.error(f"failed to rewind file to start: path={path!r}: {e}")
            return False

        computed_size: int = 0
        md5 = hashlib.md5()
        sha1 = hashlib.sha1()
        sha256 = hashlib.sha256()

        while True:
            try:
                chunk: bytes = os.read(fd, CHUNK_SIZE)
            except OSError as e:
                logger.error(f"I/O error while reading file: path={path!r} offset={computed_size}: {e}")
                return False
            if not chunk:
                break
            computed_size += len(chunk)
            md5.update(chunk)
            sha1.update(chunk)
            sha256.update(chunk)

        if computed_size != size:
            logger.warning(
                f"file size changed while computing hash: path={path!r} "
                f"expected_size={size} computed_size={computed_size}"
            )
            return False

        self.reset()
        self.bits = Bits.ALL
        self.size = size
        self.time = time
        self.md5 = md5.digest()
        self.sha1 = sha1.digest()
        self.sha256 = sha256.digest()
        return True

    # --- encoding ---

    def encode(self) -> bytes:
        """Render the combined stamp; digests are standard base64."""
        pairs: list[bytes] = [
            KEY_SIZE.encode() + b":" + encode_int(self.size),
            KEY_MOD_TIME.encode() + b":" + encode_int(self.time),
            KEY_MD5.encode() + b":" + encode_hash_b64(self.md5),
            KEY_SHA1.encode() + b":" + encode_hash_b64(self.sha1),
            KEY_SHA256.encode() + b":" + encode_hash_b64(self.sha256),
        ]
        return b",".join(pairs)

    def save(self, fd: int, names: AttrNames, path: str = "") -> None:
        # The per-field digests are hex, unlike the stamp.
        _ = maybe_fset(fd, names.stamp, self.encode(), path)
        _ = maybe_fset(fd, names.size, encode_int(self.size), path)
        _ = maybe_fset(fd, names.time, encode_int(self.time), path)
        _ = maybe_fset(fd, names.md5, encode_hash_hex(self.md5), path)
        _ = maybe_fset(fd, names.sha1, encode_hash_hex(self.sha1), path)
        _ = maybe_fset(fd, names.sha256, encode_hash_hex(self.sha256), path)

    def __str__(self) -> str:
        return self.encode().decode("ascii")

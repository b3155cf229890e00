"""
Shared fixtures for hashlink tests.
Creates isolated directory trees with controlled duplicate files.
"""
import os
from pathlib import Path
from typing import Dict

import pytest

CONTENT_A = b"A" * 1024
CONTENT_B = b"B" * 2048


@pytest.fixture
def xattrs_supported(tmp_path):
    """Skip the test when the temporary filesystem refuses user xattrs."""
    probe = tmp_path / ".xattr-probe"
    probe.write_bytes(b"x")
    try:
        os.setxattr(probe, "user.hashlink.probe", b"1")
    except OSError as e:
        pytest.skip(f"user xattrs not supported under {tmp_path}: {e}")
    finally:
        probe.unlink()


@pytest.fixture
def tree(tmp_path) -> Dict[str, Path]:
    """
    Directory tree for scan scenarios:
    - a.txt, b.txt and sub/c.txt share content A
    - unique.txt has its own content
    - empty.txt is zero bytes (below the default min size)
    """
    root = tmp_path / "tree"
    sub = root / "sub"
    sub.mkdir(parents=True)

    files = {"root": root, "sub": sub}

    files["a"] = root / "a.txt"
    files["b"] = root / "b.txt"
    files["c"] = sub / "c.txt"
    for key in ("a", "b", "c"):
        files[key].write_bytes(CONTENT_A)

    files["unique"] = root / "unique.txt"
    files["unique"].write_bytes(CONTENT_B)

    files["empty"] = root / "empty.txt"
    files["empty"].write_bytes(b"")

    return files

"""
Tests for the tree scan engine and duplicate grouping.
"""
import base64
import hashlib
import os

from hashlink.config import AppConfig
from hashlink.item import FileType, Item
from hashlink.models import DedupKey
from hashlink.scan import Scanner, duplicate_groups

from tests.conftest import CONTENT_A
from tests.utils import count_open_fds


def find_groups(roots, cfg=None):
    cfg = cfg or AppConfig()
    seen = Scanner(cfg).scan(str(root) for root in roots)
    return duplicate_groups(seen, collapse_links=cfg.collapse_links)


def as_sets(groups):
    return [set(group) for group in groups]


class FakeEntry:
    """Stand-in for os.DirEntry with a scripted type hint."""

    def __init__(self, name, kind):
        self.name = name
        self.kind = kind

    def is_symlink(self):
        return self.kind == "symlink"

    def is_dir(self, follow_symlinks=True):
        return self.kind == "dir"

    def is_file(self, follow_symlinks=True):
        return self.kind == "file"


class TestScanner:
    def test_groups_identical_files(self, tree):
        groups = find_groups([tree["root"]])
        assert as_sets(groups) == [{str(tree["a"]), str(tree["b"]), str(tree["c"])}]

    def test_stats(self, tree):
        scanner = Scanner(AppConfig())
        scanner.scan([str(tree["root"])])
        assert scanner.stats.dirs == 2
        assert scanner.stats.files == 5
        assert scanner.stats.skipped == 1  # empty.txt
        assert scanner.stats.failed == 0
        assert scanner.stats.cached + scanner.stats.hashed == 4

    def test_keys_carry_digest_device_and_inode(self, tree):
        seen = Scanner(AppConfig()).scan([str(tree["root"])])
        st = os.stat(tree["a"])
        key = DedupKey(digest=hashlib.sha256(CONTENT_A).digest(), dev=st.st_dev, ino=st.st_ino)
        assert seen[key] == [str(tree["a"])]

    def test_min_size(self, tree):
        assert find_groups([tree["root"]], AppConfig(min_size=2000)) == []

    def test_zero_min_size_groups_empty_files(self, tree):
        (tree["sub"] / "empty2.txt").write_bytes(b"")
        groups = as_sets(find_groups([tree["root"]], AppConfig(min_size=0)))
        assert {str(tree["empty"]), str(tree["sub"] / "empty2.txt")} in groups

    def test_exclude_rule(self, tree):
        groups = find_groups([tree["root"]], AppConfig(rules=("exclude:**/sub/**",)))
        assert as_sets(groups) == [{str(tree["a"]), str(tree["b"])}]

    def test_first_matching_rule_wins(self, tree):
        cfg = AppConfig(rules=("include:**/a.txt", "exclude:**/b.txt", "exclude:**/a.txt"))
        groups = find_groups([tree["root"]], cfg)
        assert as_sets(groups) == [{str(tree["a"]), str(tree["c"])}]

    def test_rules_do_not_prune_directories(self, tree):
        scanner = Scanner(AppConfig(rules=("exclude:**/sub",)))
        seen = scanner.scan([str(tree["root"])])
        assert as_sets(duplicate_groups(seen)) == [{str(tree["a"]), str(tree["b"]), str(tree["c"])}]
        assert scanner.stats.dirs == 2

    def test_include_rule_before_catch_all_exclude(self, tmp_path):
        photos = tmp_path / "photos"
        photos.mkdir()
        (photos / "a.jpg").write_bytes(CONTENT_A)
        (photos / "b.jpg").write_bytes(CONTENT_A)
        (photos / "c.txt").write_bytes(CONTENT_A)

        scanner = Scanner(AppConfig(rules=("include:**/*.jpg", "exclude:**")))
        seen = scanner.scan([str(tmp_path)])

        assert scanner.stats.dirs == 2
        assert as_sets(duplicate_groups(seen)) == [{str(photos / "a.jpg"), str(photos / "b.jpg")}]

    def test_exclude_attribute_overrides_rules(self, tree, xattrs_supported):
        os.setxattr(tree["b"], "user.dedupe.exclude", b"yes")
        os.setxattr(tree["c"], "user.dedupe.exclude", b"no")

        groups = find_groups([tree["root"]], AppConfig(rules=("exclude:**/sub/**",)))
        assert as_sets(groups) == [{str(tree["a"]), str(tree["c"])}]

    def test_file_roots(self, tree):
        groups = find_groups([tree["a"], tree["b"], tree["unique"]])
        assert as_sets(groups) == [{str(tree["a"]), str(tree["b"])}]

    def test_missing_root_is_skipped(self, tree):
        groups = find_groups([tree["root"] / "missing", tree["root"]])
        assert len(groups) == 1

    def test_hardlinks_are_reported_once(self, tmp_path):
        a = tmp_path / "a"
        b = tmp_path / "b"
        c = tmp_path / "c"
        a.write_bytes(CONTENT_A)
        os.link(a, b)
        c.write_bytes(CONTENT_A)

        groups = find_groups([tmp_path])
        assert len(groups) == 1
        assert len(groups[0]) == 2
        assert str(c) in groups[0]
        assert str(a) in groups[0]  # smallest path of the linked pair

    def test_all_links_reports_every_path(self, tmp_path):
        a = tmp_path / "a"
        a.write_bytes(CONTENT_A)
        os.link(a, tmp_path / "b")
        (tmp_path / "c").write_bytes(CONTENT_A)

        groups = find_groups([tmp_path], AppConfig(collapse_links=False))
        assert as_sets(groups) == [{str(a), str(tmp_path / "b"), str(tmp_path / "c")}]

    def test_hardlinks_alone_are_not_duplicates(self, tmp_path):
        a = tmp_path / "a"
        a.write_bytes(CONTENT_A)
        os.link(a, tmp_path / "b")
        assert find_groups([tmp_path]) == []

    def test_symlink_to_file_is_followed(self, tree):
        link = tree["root"] / "link.txt"
        os.symlink(tree["unique"], link)

        groups = find_groups([tree["root"]], AppConfig(collapse_links=False))
        assert {str(tree["unique"]), str(link)} in as_sets(groups)

    def test_symlink_to_directory_is_not_followed(self, tree):
        os.symlink(tree["sub"], tree["root"] / "sub-link")
        scanner = Scanner(AppConfig(collapse_links=False))
        seen = scanner.scan([str(tree["root"])])
        assert scanner.stats.dirs == 2
        assert as_sets(duplicate_groups(seen)) == [{str(tree["a"]), str(tree["b"]), str(tree["c"])}]

    def test_dangling_symlink_is_skipped(self, tree):
        os.symlink(tree["root"] / "nowhere", tree["root"] / "dangling")
        assert len(find_groups([tree["root"]])) == 1

    def test_unreadable_directory_abandons_only_that_subtree(self, tree, monkeypatch):
        real_scandir = os.scandir
        calls = []

        def failing_scandir(target):
            calls.append(target)
            if len(calls) == 2:
                raise PermissionError(13, "Permission denied")
            return real_scandir(target)

        monkeypatch.setattr(os, "scandir", failing_scandir)
        groups = find_groups([tree["root"]])

        assert len(calls) == 2
        assert as_sets(groups) == [{str(tree["a"]), str(tree["b"])}]

    def test_no_descriptors_leak(self, tree):
        before = count_open_fds()
        find_groups([tree["root"]])
        assert count_open_fds() == before

    def test_size_change_while_hashing_skips_file(self, tree, monkeypatch):
        real_open = Item.open

        def shrinking_open(path):
            item = real_open(path)
            if item is not None and path.endswith("b.txt"):
                item.size += 1
            return item

        monkeypatch.setattr(Item, "open", staticmethod(shrinking_open))
        scanner = Scanner(AppConfig(rescan=True))
        seen = scanner.scan([str(tree["root"])])

        assert scanner.stats.failed == 1
        assert as_sets(duplicate_groups(seen)) == [{str(tree["a"]), str(tree["c"])}]


class TestOpenChild:
    def parent_of(self, path, dev=None):
        st = os.stat(path)
        return Item(
            path=str(path),
            fd=None,
            file_type=FileType.DIRECTORY,
            size=0,
            time=0,
            dev=st.st_dev if dev is None else dev,
            ino=st.st_ino,
            nlink=1,
        )

    def test_other_device_is_skipped_by_default(self, tree):
        parent = self.parent_of(tree["root"], dev=-1)
        assert Scanner(AppConfig())._open_child(parent, FakeEntry("a.txt", "file")) is None

    def test_other_device_is_opened_with_cross_device(self, tree):
        parent = self.parent_of(tree["root"], dev=-1)
        child = Scanner(AppConfig(cross_device=True))._open_child(parent, FakeEntry("a.txt", "file"))
        assert child is not None
        with child:
            assert child.file_type is FileType.REGULAR

    def test_type_mismatch_on_other_device_is_skipped(self, tree):
        parent = self.parent_of(tree["root"], dev=-1)
        scanner = Scanner(AppConfig(cross_device=True))
        assert scanner._open_child(parent, FakeEntry("sub", "file")) is None

    def test_type_mismatch_on_same_device_is_skipped(self, tree):
        parent = self.parent_of(tree["root"])
        scanner = Scanner(AppConfig())
        assert scanner._open_child(parent, FakeEntry("a.txt", "dir")) is None
        assert scanner._open_child(parent, FakeEntry("sub", "file")) is None

    def test_other_entry_types_are_ignored(self, tree):
        parent = self.parent_of(tree["root"])
        assert Scanner(AppConfig())._open_child(parent, FakeEntry("a.txt", "fifo")) is None

    def test_symlink_entry_is_marked(self, tree):
        os.symlink(tree["a"], tree["root"] / "link")
        parent = self.parent_of(tree["root"])
        child = Scanner(AppConfig())._open_child(parent, FakeEntry("link", "symlink"))
        assert child is not None
        with child:
            assert child.is_symlink is True
            assert child.file_type is FileType.REGULAR


class TestMetadataCache:
    def test_second_scan_uses_cache(self, tree, xattrs_supported):
        first = Scanner(AppConfig())
        first.scan([str(tree["root"])])
        assert first.stats.hashed == 4

        second = Scanner(AppConfig())
        second.scan([str(tree["root"])])
        assert second.stats.cached == 4
        assert second.stats.hashed == 0

    def test_rescan_ignores_cache(self, tree, xattrs_supported):
        Scanner(AppConfig()).scan([str(tree["root"])])
        scanner = Scanner(AppConfig(rescan=True))
        scanner.scan([str(tree["root"])])
        assert scanner.stats.hashed == 4

    def test_writes_namespace_attributes(self, tree, xattrs_supported):
        Scanner(AppConfig(namespace="user.hashlink-test.")).scan([str(tree["a"])])
        digest = hashlib.sha256(CONTENT_A).digest()
        assert os.getxattr(tree["a"], "user.hashlink-test.sha256") == digest.hex().encode()
        assert b"sha256:" + base64.b64encode(digest) in os.getxattr(tree["a"], "user.hashlink-test.stamp")

    def test_trusted_cache_is_not_rehashed(self, tree, xattrs_supported):
        # A cache entry that matches size and mtime is believed, even if wrong.
        st = os.stat(tree["unique"])
        fake = hashlib.sha256(CONTENT_A).digest()
        os.setxattr(tree["unique"], "user.dedupe.stamp", b"size:%d,modTime:%d" % (st.st_size, int(st.st_mtime)))
        os.setxattr(tree["unique"], "user.dedupe.md5", b"0" * 32)
        os.setxattr(tree["unique"], "user.dedupe.sha1", b"0" * 40)
        os.setxattr(tree["unique"], "user.dedupe.sha256", fake.hex().encode())

        groups = find_groups([tree["root"]])
        assert str(tree["unique"]) in groups[0]

    def test_stale_cache_is_rehashed(self, tree, xattrs_supported):
        Scanner(AppConfig()).scan([str(tree["root"])])
        tree["b"].write_bytes(b"Z" * len(CONTENT_A))
        os.utime(tree["b"], (1_000_000_000, 1_000_000_000))

        groups = find_groups([tree["root"]])
        assert as_sets(groups) == [{str(tree["a"]), str(tree["c"])}]


class TestParallelScan:
    def test_matches_sequential_result(self, tree):
        os.link(tree["a"], tree["root"] / "a-link.txt")
        (tree["sub"] / "unique-copy.txt").write_bytes(tree["unique"].read_bytes())

        sequential = Scanner(AppConfig()).scan([str(tree["root"])])
        parallel_scanner = Scanner(AppConfig(max_workers=2, max_inflight=2, rescan=True))
        parallel = parallel_scanner.scan([str(tree["root"])])

        assert {k: sorted(v) for k, v in parallel.items()} == {k: sorted(v) for k, v in sequential.items()}
        for collapse in (True, False):
            assert duplicate_groups(parallel, collapse_links=collapse) == duplicate_groups(
                sequential, collapse_links=collapse
            )

    def test_hashes_each_inode_once(self, tree):
        os.link(tree["a"], tree["root"] / "a-link.txt")
        scanner = Scanner(AppConfig(max_workers=2, rescan=True))
        seen = scanner.scan([str(tree["root"])])

        assert len(scanner._pending) == 4
        st = os.stat(tree["a"])
        key = DedupKey(digest=hashlib.sha256(CONTENT_A).digest(), dev=st.st_dev, ino=st.st_ino)
        assert sorted(seen[key]) == sorted([str(tree["a"]), str(tree["root"] / "a-link.txt")])


class TestDuplicateGroups:
    SEEN = {
        DedupKey(b"\x02" * 32, 1, 1): ["/z"],
        DedupKey(b"\x01" * 32, 1, 5): ["/b", "/a"],
        DedupKey(b"\x01" * 32, 1, 3): ["/c"],
        DedupKey(b"\x03" * 32, 1, 1): ["/only"],
        DedupKey(b"\x00" * 32, 2, 1): ["/y"],
        DedupKey(b"\x00" * 32, 1, 9): ["/x"],
    }

    def test_collapses_links_then_regroups_by_digest(self):
        assert duplicate_groups(self.SEEN) == [["/x", "/y"], ["/c", "/a"]]

    def test_content_only(self):
        assert duplicate_groups(self.SEEN, collapse_links=False) == [["/x", "/y"], ["/c", "/a", "/b"]]

    def test_key_ordering(self):
        keys = sorted(self.SEEN)
        assert keys[0] == DedupKey(b"\x00" * 32, 1, 9)
        assert keys[1] == DedupKey(b"\x00" * 32, 2, 1)
        assert keys[2] == DedupKey(b"\x01" * 32, 1, 3)

"""
Tests for the YAML config file.
"""
import dataclasses

import pytest

from hashlink.config import AppConfig, parse_size


class TestParseSize:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("0", 0),
            ("512", 512),
            ("4k", 4096),
            (" 2M ", 2 * 1024 * 1024),
            ("1G", 1024**3),
        ],
    )
    def test_valid(self, text, expected):
        assert parse_size(text) == expected

    @pytest.mark.parametrize("text", ["", "K", "1T", "-1", "1.5M"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_size(text)


class TestAppConfig:
    def test_defaults(self):
        cfg = AppConfig()
        assert cfg.namespace == "user.dedupe."
        assert cfg.min_size == 1
        assert cfg.collapse_links is True
        assert cfg.attr_names.sha256 == "user.dedupe.sha256"

    def test_legacy_attr_names(self):
        names = AppConfig(legacy_names=True).attr_names
        assert names.stamp == "user.dedupe.stamp"
        assert names.md5 == "user.md5sum"
        assert names.exclude == "user.dedupe.exclude"

    def test_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            AppConfig().min_size = 5  # type: ignore[misc]

    @pytest.mark.parametrize("field", ["min_size", "max_workers", "max_inflight"])
    def test_rejects_out_of_range_numbers(self, field):
        with pytest.raises(ValueError):
            AppConfig(**{field: -1})

    def test_save_load_round_trip(self, tmp_path):
        path = tmp_path / "hashlink.yaml"
        cfg = AppConfig(
            namespace="user.test.",
            rules=("exclude:**/.git/**", "include:**"),
            prefer=("/data/keep/**",),
            min_size=4096,
            relative_symlinks=True,
            max_workers=4,
        )
        cfg.save(path)
        assert AppConfig.load(path) == cfg

    def test_size_strings_in_yaml(self, tmp_path):
        path = tmp_path / "hashlink.yaml"
        path.write_text("config:\n  min_size: 64K\n  rules:\n    - exclude:*.tmp\n", encoding="utf-8")

        cfg = AppConfig.load(path)
        assert cfg.min_size == 64 * 1024
        assert cfg.rules == ("exclude:*.tmp",)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "hashlink.yaml"
        path.write_text("config:\n  colour: blue\n", encoding="utf-8")
        with pytest.raises(ValueError, match="colour"):
            AppConfig.load(path)

    @pytest.mark.parametrize(
        "body",
        [
            "config:\n  rescan: 'yes'\n",
            "config:\n  min_size: true\n",
            "config:\n  rules: exclude:*.tmp\n",
            "config:\n  namespace: 5\n",
            "config: []\n",
            "- config\n",
        ],
    )
    def test_wrong_types(self, tmp_path, body):
        path = tmp_path / "hashlink.yaml"
        path.write_text(body, encoding="utf-8")
        with pytest.raises(TypeError):
            AppConfig.load(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            AppConfig.load(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "hashlink.yaml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ValueError):
            AppConfig.load(path)

    def test_load_or_default(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert AppConfig.load_or_default(None) == AppConfig()

        AppConfig(min_size=10).save(tmp_path / "hashlink.yaml")
        assert AppConfig.load_or_default(None).min_size == 10

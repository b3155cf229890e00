from dataclasses import dataclass, fields
from pathlib import Path
from typing import NoReturn, TypedDict, cast

import yaml

from .xattrs import DEFAULT_NAMESPACE, AttrNames


class RawAppConfig(TypedDict, total=False):
    namespace: str
    legacy_names: bool
    rules: list[str]
    prefer: list[str]
    min_size: int
    cross_device: bool
    rescan: bool
    rewrite: bool
    collapse_links: bool
    relative_symlinks: bool
    max_workers: int
    max_inflight: int


class RawConfigFile(TypedDict):
    config: RawAppConfig


CONFIG_FILENAME: Path = Path("hashlink.yaml")


def type_error(key: str, value: object) -> NoReturn:
    raise TypeError(f"Unexpected value of wrong type for {key!r}: {value!r}")


def parse_size(value: str) -> int:
    # Normalize
    text: str = value.strip().upper()
    if not text:
        raise ValueError("Size is empty.")

    last_char: str = text[-1]
    # Match "[number][optional suffix]"
    if last_char in {"K", "M", "G"}:
        number: str = text[:-1]
        suffix: str | None = last_char
    else:
        number = text
        suffix = None

    try:
        base: int = int(number)
    except ValueError:
        raise ValueError(f"Size {value!r} is not a number. Only K, M and G are allowed suffixes.")

    if base < 0:
        raise ValueError(f"Size {value!r} must not be negative.")

    if suffix == "K":
        return base * 1024
    elif suffix == "M":
        return base * 1024 * 1024
    elif suffix == "G":
        return base * 1024 * 1024 * 1024
    else:
        return base


@dataclass(frozen=True, slots=True)
class AppConfig:
    namespace: str = DEFAULT_NAMESPACE
    legacy_names: bool = False
    rules: tuple[str, ...] = ()
    prefer: tuple[str, ...] = ()
    min_size: int = 1
    cross_device: bool = False
    rescan: bool = False
    rewrite: bool = False
    collapse_links: bool = True
    relative_symlinks: bool = False
    max_workers: int = 1
    max_inflight: int = 200

    def __post_init__(self) -> None:
        if self.min_size < 0:
            raise ValueError("min_size must be >= 0")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if self.max_inflight <= 0:
            raise ValueError("max_inflight must be > 0")

    @property
    def attr_names(self) -> AttrNames:
        if self.legacy_names:
            return AttrNames.legacy(self.namespace)
        return AttrNames.for_namespace(self.namespace)

    @staticmethod
    def load(path: Path = CONFIG_FILENAME) -> "AppConfig":
        if not path.exists():
            raise FileNotFoundError(f"Missing config file {path}. Run hashlink init first.")

        with path.open("r", encoding="UTF-8") as f:
            raw_loaded_obj: object | None = cast(object, yaml.safe_load(f))

        if not raw_loaded_obj:
            raise ValueError("Config file is empty or invalid YAML.")

        if not isinstance(raw_loaded_obj, dict):
            type_error("<root>", raw_loaded_obj)

        raw_dict: dict[str, object] = cast(dict[str, object], raw_loaded_obj)

        cfg_raw: object | None = raw_dict.get("config")
        if not isinstance(cfg_raw, dict):
            type_error("config", cfg_raw)

        return AppConfig.from_raw(cast(dict[str, object], cfg_raw))

    @staticmethod
    def load_or_default(path: Path | None) -> "AppConfig":
        """Load `path` if given, else the default file if present, else defaults."""
        if path is not None:
            return AppConfig.load(path)
        if CONFIG_FILENAME.exists():
            return AppConfig.load(CONFIG_FILENAME)
        return AppConfig()

    @staticmethod
    def from_raw(cfg: dict[str, object]) -> "AppConfig":
        known: dict[str, object] = {f.name: f.default for f in fields(AppConfig)}
        values: dict[str, object] = {}

        for key, value in cfg.items():
            if key not in known:
                raise ValueError(f"Unknown config key {key!r}.")

            default: object = known[key]
            if isinstance(default, tuple):
                if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                    type_error(key, value)
                values[key] = tuple(cast(list[str], value))
            elif isinstance(default, bool):
                if not isinstance(value, bool):
                    type_error(key, value)
                values[key] = value
            elif isinstance(default, int):
                if isinstance(value, str):
                    values[key] = parse_size(value)
                elif isinstance(value, int) and not isinstance(value, bool):
                    values[key] = value
                else:
                    type_error(key, value)
            else:
                if not isinstance(value, str):
                    type_error(key, value)
                values[key] = value

        return AppConfig(**values)  # type: ignore[arg-type]

    def save(self, path: Path = CONFIG_FILENAME) -> None:
        raw: RawConfigFile = {"config": self.to_raw()}
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(raw, f, sort_keys=False)

    def to_raw(self) -> RawAppConfig:
        return {
            "namespace": self.namespace,
            "legacy_names": self.legacy_names,
            "rules": list(self.rules),
            "prefer": list(self.prefer),
            "min_size": self.min_size,
            "cross_device": self.cross_device,
            "rescan": self.rescan,
            "rewrite": self.rewrite,
            "collapse_links": self.collapse_links,
            "relative_symlinks": self.relative_symlinks,
            "max_workers": self.max_workers,
            "max_inflight": self.max_inflight,
        }

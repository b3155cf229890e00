import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from .item import Item
from .pattern import compile_pattern, normalize_path
from .xattrs import maybe_fget

logger = logging.getLogger(__name__)

EXCLUDE_PREFIX: str = "exclude:"
INCLUDE_PREFIX: str = "include:"

# Values of the per-file exclude attribute that force exclusion.
EXCLUDE_VALUES: frozenset[bytes] = frozenset({b"", b"1", b"y", b"yes", b"t", b"true"})


@dataclass(frozen=True, slots=True)
class Rule:
    source: str
    pattern: re.Pattern[str]
    exclude: bool = False

    def matches(self, path: str) -> bool:
        return self.pattern.search(path) is not None


def parse_rule(text: str) -> Rule:
    """
    Parse a rule of the form ``exclude:<glob>`` or ``include:<glob>``.

    A glob without a prefix is an exclusion.
    """
    if text.startswith(EXCLUDE_PREFIX):
        glob: str = text[len(EXCLUDE_PREFIX) :]
        exclude: bool = True
    elif text.startswith(INCLUDE_PREFIX):
        glob = text[len(INCLUDE_PREFIX) :]
        exclude = False
    else:
        glob = text
        exclude = True

    return Rule(source=text, pattern=compile_pattern(glob), exclude=exclude)


@dataclass(frozen=True, slots=True)
class RuleList:
    """Ordered rules; the first rule whose pattern matches decides."""

    rules: tuple[Rule, ...] = ()

    @staticmethod
    def from_rules(texts: Iterable[str]) -> "RuleList":
        return RuleList(rules=tuple(parse_rule(text) for text in texts))

    @staticmethod
    def from_globs(globs: Iterable[str]) -> "RuleList":
        return RuleList(rules=tuple(Rule(source=glob, pattern=compile_pattern(glob)) for glob in globs))

    def __len__(self) -> int:
        return len(self.rules)

    def first_match(self, path: str) -> int | None:
        normalized: str = normalize_path(path)
        for index, rule in enumerate(self.rules):
            if rule.matches(normalized):
                return index
        return None

    def priority(self, path: str) -> int:
        """Index of the first matching rule; lower wins. No match ranks last."""
        index: int | None = self.first_match(path)
        return len(self.rules) if index is None else index

    def is_excluded(self, item: Item, exclude_attr: str) -> bool:
        """
        Decide whether a scanned entry is excluded.

        The per-file ``exclude`` attribute, when present, wins over the rule
        list in both directions.
        """
        if item.fd is not None:
            raw: bytes | None = maybe_fget(item.fd, exclude_attr, item.path)
            if raw is not None:
                excluded: bool = raw in EXCLUDE_VALUES
                logger.debug(f"exclude attribute: path={item.path!r} value={raw!r} excluded={excluded}")
                return excluded

        index: int | None = self.first_match(item.path)
        if index is None:
            return False
        return self.rules[index].exclude

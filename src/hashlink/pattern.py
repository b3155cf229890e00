import os
import re
import unicodedata
from enum import Enum, auto

RX_SLASH: str = "/+"
RX_QUESTION: str = "[^/]"
RX_STAR: str = "[^/]*"
RX_STAR_STAR: str = ".*"


class PatternError(ValueError):
    """Raised when a glob pattern cannot be compiled."""


class State(Enum):
    DONE = auto()
    READY = auto()
    SLASH = auto()
    OPEN_BRACKET = auto()
    QUESTION = auto()
    STAR = auto()
    OPEN_BRACE = auto()
    COMMA = auto()
    CLOSE_BRACE = auto()


class PatternCompiler:
    """
    Translate a glob pattern into an anchored regular expression.

    The compiler is a small state machine. `READY` inspects one code point
    of lookahead and selects the state that knows how to consume it; every
    other state consumes its token, appends the translated fragment to the
    output and returns to `READY`. Compilation ends in `DONE`, either after
    a clean end of input or after the first error.

    Supported syntax
    ----------------
    ``/``        one or more slashes, matched as a single separator
    ``?``        exactly one non-separator character
    ``*``        zero or more non-separator characters
    ``**``       zero or more characters of any kind
    ``[...]``    character class, ``[^...]`` negated
    ``{a,b}``    alternation, may nest
    """

    def __init__(self, text: str) -> None:
        self.input: str = text
        self.pos: int = 0
        self.output: list[str] = ["^"]
        self.depth: int = 0
        self.state: State = State.READY
        self.error: PatternError | None = None

        self._handlers = {
            State.READY: self._on_ready,
            State.SLASH: self._on_slash,
            State.OPEN_BRACKET: self._on_bracket,
            State.QUESTION: self._on_question,
            State.STAR: self._on_star,
            State.OPEN_BRACE: self._on_open_brace,
            State.COMMA: self._on_comma,
            State.CLOSE_BRACE: self._on_close_brace,
        }

    def _peek(self) -> str | None:
        if self.pos < len(self.input):
            return self.input[self.pos]
        return None

    def _consume(self, expect: str) -> None:
        ch: str | None = self._peek()
        if ch != expect:
            raise AssertionError(f"BUG: expected {expect!r}; got {ch!r}")
        self.pos += 1

    def _fail(self, message: str) -> None:
        self.error = PatternError(f"{message} in pattern {self.input!r}")
        self.state = State.DONE

    def _finish(self) -> None:
        if self.depth > 0:
            self._fail(f"expected depth=0; got depth={self.depth}")
            return
        self.output.append(r"\Z")
        self.state = State.DONE

    def _on_ready(self) -> None:
        ch: str | None = self._peek()
        if ch is None:
            self._finish()
        elif ch == "\\":
            self._fail("unexpected character '\\'")
        elif ch == "/":
            self.state = State.SLASH
        elif ch == "*":
            self.state = State.STAR
        elif ch == "?":
            self.state = State.QUESTION
        elif ch == "[":
            self.state = State.OPEN_BRACKET
        elif ch == "{":
            self.state = State.OPEN_BRACE
        elif ch == "," and self.depth > 0:
            self.state = State.COMMA
        elif ch == "}" and self.depth > 0:
            self.state = State.CLOSE_BRACE
        else:
            self._consume(ch)
            self.output.append(re.escape(ch))

    def _on_slash(self) -> None:
        self._consume("/")
        while self._peek() == "/":
            self._consume("/")
        self.output.append(RX_SLASH)
        self.state = State.READY

    def _on_bracket(self) -> None:
        self._consume("[")
        fragment: list[str] = ["["]

        if self._peek() == "^":
            self._consume("^")
            fragment.append("^")

        in_escape: bool = False
        while True:
            ch: str | None = self._peek()
            if ch is None:
                self._fail("unterminated character class [ab...]")
                return

            self._consume(ch)
            if in_escape:
                fragment.append("\\" + ch)
                in_escape = False
            elif ch == "\\":
                in_escape = True
            elif ch == "]":
                fragment.append("]")
                break
            elif ch == "[":
                # Python reserves "[[" for nested set syntax
                fragment.append("\\[")
            else:
                fragment.append(ch)

        self.output.append("".join(fragment))
        self.state = State.READY

    def _on_question(self) -> None:
        self._consume("?")
        self.output.append(RX_QUESTION)
        self.state = State.READY

    def _on_star(self) -> None:
        self._consume("*")
        fragment: str = RX_STAR
        if self._peek() == "*":
            self._consume("*")
            fragment = RX_STAR_STAR
        self.output.append(fragment)
        self.state = State.READY

    def _on_open_brace(self) -> None:
        self._consume("{")
        self.output.append("(?:")
        self.depth += 1
        self.state = State.READY

    def _on_comma(self) -> None:
        self._consume(",")
        self.output.append("|")
        self.state = State.READY

    def _on_close_brace(self) -> None:
        self._consume("}")
        self.output.append(")")
        self.depth -= 1
        self.state = State.READY

    def step(self) -> bool:
        if self.state is State.DONE:
            return False
        self._handlers[self.state]()
        return True

    def run(self) -> str:
        while self.step():
            pass
        if self.error is not None:
            raise self.error
        return "".join(self.output)


def compile_pattern(text: str) -> re.Pattern[str]:
    """
    Compile a glob pattern (or a raw ``^``-anchored regex) for matching
    against paths produced by `normalize_path`.
    """
    text = unicodedata.normalize("NFD", text)

    # Raw expressions keep the default meaning of "."; only "**" must
    # cross newlines in file names.
    if text.startswith("^"):
        source: str = text
        flags: int = 0
    else:
        source = PatternCompiler(text).run()
        flags = re.DOTALL

    try:
        return re.compile(source, flags)
    except re.error as e:
        raise PatternError(f"invalid pattern {text!r}: {e}") from e


def normalize_path(path: str) -> str:
    path = os.path.normpath(path)
    if os.sep != "/":
        path = path.replace(os.sep, "/")
    return unicodedata.normalize("NFD", path)

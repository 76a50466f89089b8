# Copyright 2025 Xdynix
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""Label selector parsing.

This module turns a compact selector expression such as
``env=prod, tier in (frontend,backend), !debug`` into an ordered list of structured
requirements. It contains a character-level lexer that reads from any text stream,
and a recursive-descent parser that pulls tokens from it one at a time.

Supported clauses are presence (``key``, ``!key``), comparison (``=``, ``==``,
``!=``, ``<``, ``<=``, ``>``, ``>=``) and set membership (``in``, ``not in``).
Values are always kept as text, no numeric coercion happens here.

Example:
    >>> selector = parse_string("env=prod, tier in (frontend,backend), !debug")
    >>> [str(requirement.operation) for requirement in selector]
    ['Equals', 'In', 'NotExists']
    >>> selector.requirements[1].values
    ('frontend', 'backend')

    >>> try:
    ...     parse_string("env=prod, tier in (frontend")
    ... except SelectorSyntaxError as e:
    ...     print(f"{e} / {e.kind} / {len(e.selector)}")
    unexpected token in value list () / MalformedSet / 1
"""

__all__ = (
    "ErrorKind",
    "LabelSelector",
    "Lexer",
    "Operation",
    "Parser",
    "Requirement",
    "SelectorSyntaxError",
    "Token",
    "TokenKind",
    "build_requirement",
    "lex",
    "parse",
    "parse_string",
)

import io
import logging
import string
from collections.abc import Iterator
from enum import Enum, StrEnum, auto
from typing import Annotated, Any, ClassVar, Literal, NamedTuple, Protocol, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    GetCoreSchemaHandler,
    RootModel,
    TypeAdapter,
)
from pydantic_core import CoreSchema, core_schema

logger = logging.getLogger(__name__)

# ==== Label Selector ====


class Operation(StrEnum):
    """Enumeration of supported requirement operations."""

    # Presence Operation
    EXISTS = "Exists"
    NOT_EXISTS = "NotExists"

    # Comparison Operation
    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    LOWER_THAN = "LowerThan"
    LOWER_THAN_EQUAL = "LowerThanEqual"
    GREATER_THAN = "GreaterThan"
    GREATER_THAN_EQUAL = "GreaterThanEqual"

    # Set Operation
    IN = "In"
    NOT_IN = "NotIn"


class BaseRequirement(BaseModel):
    """Abstract representation of a single selector requirement.

    Exactly one of ``value`` and ``values`` carries the operand(s), depending on the
    operation. The other one is left at ``None`` or ``()`` respectively.

    Attributes:
        key (str): The label key the requirement applies to.
        operation (Operation): The operation defining how the key is tested.
        value (str | None): The operand of a comparison operation.
        values (tuple[str, ...]): The operands of a set operation, in source order.
    """

    key: str
    operation: Operation
    value: str | None = None
    values: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class ComparisonRequirement(BaseRequirement):
    """Represents a comparison of a label value against a single operand."""

    operation: Literal[
        Operation.EQUALS,
        Operation.NOT_EQUALS,
        Operation.LOWER_THAN,
        Operation.LOWER_THAN_EQUAL,
        Operation.GREATER_THAN,
        Operation.GREATER_THAN_EQUAL,
    ]
    value: str
    values: Annotated[tuple[str, ...], Field(default_factory=tuple, max_length=0)]


class SetRequirement(BaseRequirement):
    """Represents a requirement for the membership of a label value in a set."""

    operation: Literal[Operation.IN, Operation.NOT_IN]
    value: None = None
    values: tuple[str, ...]


class PresenceRequirement(BaseRequirement):
    """Represents a requirement for the presence of a label."""

    operation: Literal[Operation.EXISTS, Operation.NOT_EXISTS]
    value: None = None
    values: Annotated[tuple[str, ...], Field(default_factory=tuple, max_length=0)]


Requirement = Annotated[
    ComparisonRequirement | SetRequirement | PresenceRequirement,
    Field(discriminator="operation"),
]

_NOT_SET = object()
_requirement_adapter = TypeAdapter[Requirement](Requirement)


def build_requirement(
    key: str,
    operation: str,
    *,
    value: Any = _NOT_SET,
    values: Any = _NOT_SET,
) -> Requirement:
    """Shortcut for creating a selector requirement."""
    obj: dict[str, Any] = {"key": key, "operation": operation}
    if value is not _NOT_SET:
        obj["value"] = value
    if values is not _NOT_SET:
        obj["values"] = values
    return _requirement_adapter.validate_python(obj)


class LabelSelector(RootModel[tuple[Requirement, ...]]):
    """Ordered sequence of selector requirements.

    Requirements keep the order in which they appear in the selector text, and
    duplicates are preserved.

    Attributes:
        requirements (tuple[Requirement, ...]): The requirements.

    Example:
        >>> # The selector can be created using the Pydantic style.
        >>> selector = LabelSelector.model_validate([
        ...     {"key": "environment", "operation": "Equals", "value": "production"},
        ...     {"key": "tier", "operation": "In", "values": ["frontend", "backend"]},
        ...     {"key": "enabled", "operation": "Exists"},
        ... ])
        >>> len(selector)
        3

        >>> # Or with a string representation.
        >>> s = "environment=production, tier in (frontend,backend), enabled"
        >>> LabelSelector.model_validate(s) == selector
        True
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        frozen=True,
        json_schema_extra={"description": "An ordered list of selector requirements."},
    )

    def __iter__(self) -> Iterator[Requirement]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    @property
    def requirements(self) -> tuple[Requirement, ...]:
        return self.root

    @classmethod
    def from_str(cls, s: str) -> Self:
        """Create a LabelSelector from a string representation.

        See :func:`parse` for the accepted syntax.

        Args:
            s: The selector string to parse.

        Returns:
            A new LabelSelector instance.

        Raises:
            SelectorSyntaxError: If the selector string is invalid.

        Example:
            >>> LabelSelector.from_str("env=prod, tier in (frontend,backend)")
            LabelSelector(...)
            >>> LabelSelector.from_str("!experimental, ready")
            LabelSelector(...)
            >>> LabelSelector.from_str("version >= 2, environment=staging")
            LabelSelector(...)
        """
        return cls(parse_string(s).root)

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: "GetCoreSchemaHandler",
    ) -> "CoreSchema":
        default_schema = handler(source_type)
        from_str_schema = core_schema.chain_schema(
            [
                core_schema.str_schema(),
                core_schema.no_info_plain_validator_function(cls.from_str),
                default_schema,
            ]
        )
        return core_schema.union_schema([default_schema, from_str_schema])


# ==== Errors ====


class ErrorKind(StrEnum):
    """Categories of selector syntax errors."""

    # A character that starts no token.
    ILLEGAL_TOKEN = "IllegalToken"
    # A clause that starts with, or continues into, a token that fits no clause.
    UNEXPECTED_TOKEN = "UnexpectedToken"
    # A comparison operator without an identifier after it.
    MISSING_OPERAND = "MissingOperand"
    # A `!` without an identifier after it.
    MISSING_NOT_EXISTS_OPERAND = "MissingNotExistsOperand"
    # `in` without `(`, or a bad token inside the value list.
    MALFORMED_SET = "MalformedSet"
    # `not` without `in`.
    MALFORMED_NOT_IN = "MalformedNotIn"


class SelectorSyntaxError(ValueError):
    """Raised when a selector expression violates the grammar.

    Attributes:
        kind (ErrorKind): The category of the error.
        selector (LabelSelector | None): The requirements parsed before the failure.
            For diagnostics only, it must not be used as a valid selector.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        selector: LabelSelector | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.selector = selector


# ==== Lexer ====


class TokenKind(Enum):
    # Misc
    ILLEGAL = auto()
    END_OF_INPUT = auto()
    WHITESPACE = auto()
    IDENTIFIER = auto()
    # Delimiter
    COMMA = auto()
    OPENING_BRACKET = auto()
    CLOSING_BRACKET = auto()
    # Presence Operator
    EXCLAMATION_MARK = auto()
    # Set Operator
    IN = auto()
    NOT = auto()
    # Comparison Operator
    EQUAL = auto()
    NOT_EQUAL = auto()
    LOWER_THAN = auto()
    LOWER_THAN_EQUAL = auto()
    GREATER_THAN = auto()
    GREATER_THAN_EQUAL = auto()


class Token(NamedTuple):
    kind: TokenKind
    literal: str


class TextReader(Protocol):
    def read(self, size: int = -1, /) -> str: ...


WHITESPACE = frozenset(" \t\n")
IDENTIFIER_CHARS = frozenset(string.ascii_letters + string.digits + "_-./")
QUOTE = '"'
ESCAPE = "\\"

# Keywords are matched case-insensitively against the upper-cased identifier.
KEYWORDS = {
    "NOT": TokenKind.NOT,
    "IN": TokenKind.IN,
}

DELIMITERS = {
    ",": TokenKind.COMMA,
    "(": TokenKind.OPENING_BRACKET,
    ")": TokenKind.CLOSING_BRACKET,
}

# Operator characters mapped to (alone, followed by "=").
OPERATORS = {
    "!": (TokenKind.EXCLAMATION_MARK, TokenKind.NOT_EQUAL),
    "=": (TokenKind.EQUAL, TokenKind.EQUAL),
    "<": (TokenKind.LOWER_THAN, TokenKind.LOWER_THAN_EQUAL),
    ">": (TokenKind.GREATER_THAN, TokenKind.GREATER_THAN_EQUAL),
}


class Lexer:
    """Tokenizes a selector expression read from a text stream.

    Characters are read one at a time. A single pushback slot holds a character that
    ended the previous token so the next call can start with it. Whitespace is emitted
    as tokens rather than dropped. Once the stream reports end of input it is never
    read again, and every further call returns an ``END_OF_INPUT`` token.

    Iterating over a lexer yields tokens up to and including the first
    ``END_OF_INPUT``.
    """

    def __init__(self, stream: TextReader) -> None:
        self.stream = stream
        self.peeked: str | None = None
        self.exhausted = False

    def __iter__(self) -> Iterator[Token]:
        while True:
            token = self.next_token()
            yield token
            if token.kind == TokenKind.END_OF_INPUT:
                return

    def read(self) -> str:
        """Read the next character, or an empty string at the end of input."""
        if self.peeked is not None:
            ch, self.peeked = self.peeked, None
            return ch
        if self.exhausted:
            return ""
        ch = self.stream.read(1)
        if not ch:
            self.exhausted = True
        return ch

    def unread(self, ch: str) -> None:
        """Push a character back so the next read returns it."""
        if ch:
            self.peeked = ch

    def next_token(self) -> Token:
        """Scan and return the next token."""
        ch = self.read()
        if not ch:
            return Token(TokenKind.END_OF_INPUT, "")

        if ch in WHITESPACE:
            return Token(TokenKind.WHITESPACE, self.scan_while(ch, WHITESPACE))

        if ch in IDENTIFIER_CHARS:
            literal = self.scan_while(ch, IDENTIFIER_CHARS)
            return Token(KEYWORDS.get(literal.upper(), TokenKind.IDENTIFIER), literal)

        if ch == QUOTE:
            return Token(TokenKind.IDENTIFIER, self.scan_quoted())

        if ch in OPERATORS:
            single, double = OPERATORS[ch]
            following = self.read()
            if following == "=":
                return Token(double, ch + following)
            self.unread(following)
            return Token(single, ch)

        if ch in DELIMITERS:
            return Token(DELIMITERS[ch], ch)

        return Token(TokenKind.ILLEGAL, ch)

    def scan_while(self, first: str, charset: frozenset[str]) -> str:
        buffer = [first]
        while (ch := self.read()) in charset:
            buffer.append(ch)
        self.unread(ch)
        return "".join(buffer)

    def scan_quoted(self) -> str:
        # The opening quote is already consumed. Escapes are not unescaped, `\"` only
        # keeps the quote from closing the literal.
        buffer: list[str] = []
        last = ""
        while (ch := self.read()) and not (ch == QUOTE and last != ESCAPE):
            buffer.append(ch)
            last = ch
        return "".join(buffer)


def lex(s: str) -> Iterator[Token]:
    """Tokenizes a selector string into a sequence of tokens."""
    yield from Lexer(io.StringIO(s))


# ==== Parser ====

# Comparison operator tokens mapped to (operation, name used in error messages).
COMPARISON_OPERATORS = {
    TokenKind.EQUAL: (Operation.EQUALS, "equal"),
    TokenKind.NOT_EQUAL: (Operation.NOT_EQUALS, "not-equal"),
    TokenKind.LOWER_THAN: (Operation.LOWER_THAN, "<"),
    TokenKind.LOWER_THAN_EQUAL: (Operation.LOWER_THAN_EQUAL, "<="),
    TokenKind.GREATER_THAN: (Operation.GREATER_THAN, ">"),
    TokenKind.GREATER_THAN_EQUAL: (Operation.GREATER_THAN_EQUAL, ">="),
}


# Selector string syntax is defined as following:
#
# <selector>    ::= [ <requirement> { "," <requirement> } ] END
# <requirement> ::= "!" KEY
#                 | KEY [ <comparison> | <set> ]
# <comparison>  ::= ( "=" | "==" | "!=" | "<" | "<=" | ">" | ">=" ) VALUE
# <set>         ::= [ "not" ] "in" "(" [ VALUE { "," VALUE } ] ")"
#
# Notes:
# - KEY and VALUE are identifiers: runs of ASCII letters, digits, `_`, `-`, `.`, `/`,
#   or any text enclosed in double quotes.
# - `in` and `not` are keywords in any letter case and cannot be used as identifiers
#   unless quoted.
# - Whitespace between tokens is ignored. Empty clauses between commas are skipped,
#   and so are extra commas inside a value list.


class Parser:
    """Recursive-descent parser over the tokens of a :class:`Lexer`.

    A parser is bound to one stream and is meant to be used for a single parse.
    """

    def __init__(self, stream: TextReader) -> None:
        self.lexer = Lexer(stream)

    def next_token(self) -> Token:
        """Return the next token that is not whitespace."""
        token = self.lexer.next_token()
        while token.kind == TokenKind.WHITESPACE:
            token = self.lexer.next_token()
        return token

    def parse(self) -> LabelSelector:
        """Parse the whole stream into a selector.

        Raises:
            SelectorSyntaxError: On the first grammar violation. The requirements
                parsed before it are attached as ``selector``.
        """
        requirements: list[Requirement] = []
        try:
            while True:
                kind, literal = self.next_token()
                match kind:
                    case TokenKind.COMMA:
                        continue
                    case TokenKind.END_OF_INPUT:
                        break
                    case TokenKind.ILLEGAL:
                        raise SelectorSyntaxError(
                            "illegal token", ErrorKind.ILLEGAL_TOKEN
                        )
                    case TokenKind.EXCLAMATION_MARK:
                        requirements.append(self.parse_not_exists())
                    case TokenKind.IDENTIFIER:
                        requirements.append(self.parse_requirement(literal))
                    case _:
                        raise SelectorSyntaxError(
                            f"unexpected token '{literal}'", ErrorKind.UNEXPECTED_TOKEN
                        )
        except SelectorSyntaxError as e:
            e.selector = LabelSelector(tuple(requirements))
            logger.debug("Selector parsing failed: %s", e)
            raise

        logger.debug("Parsed selector with %d requirement(s)", len(requirements))
        return LabelSelector(tuple(requirements))

    def parse_requirement(self, key: str) -> Requirement:
        kind, literal = self.next_token()
        match kind:
            case TokenKind.COMMA | TokenKind.END_OF_INPUT:
                return build_requirement(key, Operation.EXISTS)
            case TokenKind.IN:
                return self.parse_set(key, Operation.IN)
            case TokenKind.NOT:
                return self.parse_not_in(key)
            case _ if kind in COMPARISON_OPERATORS:
                operation, name = COMPARISON_OPERATORS[kind]
                return self.parse_comparison(key, operation, name)
            case _:
                raise SelectorSyntaxError(
                    f"unexpected token '{literal}'", ErrorKind.UNEXPECTED_TOKEN
                )

    def parse_not_exists(self) -> Requirement:
        kind, literal = self.next_token()
        if kind != TokenKind.IDENTIFIER:
            raise SelectorSyntaxError(
                "expect identifier after exclamation mark",
                ErrorKind.MISSING_NOT_EXISTS_OPERAND,
            )
        return build_requirement(literal, Operation.NOT_EXISTS)

    def parse_comparison(self, key: str, operation: Operation, name: str) -> Requirement:
        kind, literal = self.next_token()
        if kind != TokenKind.IDENTIFIER:
            raise SelectorSyntaxError(
                f"expect identifier after {name} operator", ErrorKind.MISSING_OPERAND
            )
        return build_requirement(key, operation, value=literal)

    def parse_not_in(self, key: str) -> Requirement:
        kind, literal = self.next_token()
        if kind != TokenKind.IN:
            raise SelectorSyntaxError(
                f"require 'IN' after 'NOT' got '{literal}'", ErrorKind.MALFORMED_NOT_IN
            )
        return self.parse_set(key, Operation.NOT_IN)

    def parse_set(self, key: str, operation: Operation) -> Requirement:
        kind, _ = self.next_token()
        if kind != TokenKind.OPENING_BRACKET:
            raise SelectorSyntaxError(
                "expect opening bracket after in operator", ErrorKind.MALFORMED_SET
            )
        return build_requirement(key, operation, values=self.parse_values())

    def parse_values(self) -> list[str]:
        values: list[str] = []
        while True:
            kind, literal = self.next_token()
            match kind:
                case TokenKind.CLOSING_BRACKET:
                    return values
                case TokenKind.COMMA:
                    continue
                case TokenKind.IDENTIFIER:
                    values.append(literal)
                case _:
                    raise SelectorSyntaxError(
                        f"unexpected token in value list ({literal})",
                        ErrorKind.MALFORMED_SET,
                    )


def parse(stream: TextReader) -> LabelSelector:
    """Parses a selector expression read from a text stream.

    Args:
        stream: Any object with a text ``read(size)`` method, e.g. an open file or
            ``io.StringIO``.

    Returns:
        The parsed selector.

    Raises:
        SelectorSyntaxError: If the expression is invalid.
    """
    return Parser(stream).parse()


def parse_string(s: str) -> LabelSelector:
    """Parses a selector expression string."""
    return parse(io.StringIO(s))

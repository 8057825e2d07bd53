#!/usr/bin/env python3

from abc import ABC, abstractmethod
from argparse import ArgumentParser
from dataclasses import dataclass, field
from pathlib import Path
from string import digits, whitespace
from types import ModuleType
from typing import (
    Callable,
    Iterator,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
    final,
)
import code
import enum
import getpass
import logging
import os
import re
import sys

readline: Optional[ModuleType]
try:
    # REPL readline support.
    import readline
except ImportError:
    readline = None


def escape(text: str) -> str:
    MAPPING = {
        "\t": "\\t",
        "\n": "\\n",
        "\r": "\\r",
        '"': '\\"',
        "\\": "\\\\",
    }
    return "".join([MAPPING.get(c, c) for c in text])


def quote(item: object) -> str:
    text = str(item)
    return f"`{text}`" if "`" not in text else f'"{text}"'


def wrap_i64(value: int) -> int:
    """
    Wrap an arbitrary precision Python integer into the signed 64-bit range
    using two's complement overflow semantics.
    """
    return ((value + Integer.MIN_VALUE) % (1 << 64)) + Integer.MIN_VALUE


ValueType = TypeVar("ValueType", bound="Value")


class Value(ABC):
    @staticmethod
    @abstractmethod
    def typename() -> str:
        raise NotImplementedError()

    @abstractmethod
    def __hash__(self):
        raise NotImplementedError()

    @abstractmethod
    def __eq__(self, other):
        raise NotImplementedError()

    @abstractmethod
    def __str__(self):
        raise NotImplementedError()

    def hashable(self) -> bool:
        # Only values with value-based equality may be used as hash keys.
        return False


@final
class Null(Value):
    @staticmethod
    def typename() -> str:
        return "NULL"

    @staticmethod
    def new() -> "Null":
        return NULL

    def __hash__(self):
        return 0

    def __eq__(self, other):
        return type(self) is type(other)

    def __str__(self):
        return "null"

    def __repr__(self):
        return "Null()"


@final
@dataclass
class Boolean(Value):
    data: bool

    @staticmethod
    def typename() -> str:
        return "BOOLEAN"

    @staticmethod
    def new(data: bool) -> "Boolean":
        return TRUE if data else FALSE

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return "true" if self.data else "false"

    def hashable(self) -> bool:
        return True


@final
@dataclass
class Integer(Value):
    MIN_VALUE = -(1 << 63)
    MAX_VALUE = (1 << 63) - 1

    data: int

    @staticmethod
    def typename() -> str:
        return "INTEGER"

    @staticmethod
    def new(data: int) -> "Integer":
        return Integer(wrap_i64(data))

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __int__(self) -> int:
        return self.data

    def __str__(self):
        return str(self.data)

    def hashable(self) -> bool:
        return True


@final
@dataclass
class String(Value):
    data: str

    @staticmethod
    def typename() -> str:
        return "STRING"

    @staticmethod
    def new(data: str) -> "String":
        return String(data)

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return self.data

    def hashable(self) -> bool:
        return True


@final
@dataclass
class Array(Value):
    data: list[Value]

    @staticmethod
    def typename() -> str:
        return "ARRAY"

    @staticmethod
    def new(data: Optional[list[Value]] = None) -> "Array":
        return Array(data if data is not None else list())

    def __hash__(self):
        return id(self)

    def __eq__(self, other):
        return self is other

    def __str__(self):
        return "[" + ", ".join([str(x) for x in self.data]) + "]"


@final
@dataclass
class Hash(Value):
    data: dict[Value, Value]

    @staticmethod
    def typename() -> str:
        return "HASH"

    @staticmethod
    def new(data: Optional[dict[Value, Value]] = None) -> "Hash":
        return Hash(data if data is not None else dict())

    def __hash__(self):
        return id(self)

    def __eq__(self, other):
        return self is other

    def __str__(self):
        elements = [f"{k}: {v}" for k, v in self.data.items()]
        return "{" + ", ".join(elements) + "}"


@final
@dataclass
class Function(Value):
    ast: "AstExpressionFunction"
    env: "Environment"

    @staticmethod
    def typename() -> str:
        return "FUNCTION"

    @staticmethod
    def new(ast: "AstExpressionFunction", env: "Environment") -> "Function":
        return Function(ast, env)

    @property
    def parameters(self) -> list["AstIdentifier"]:
        return self.ast.parameters

    @property
    def body(self) -> "AstBlock":
        return self.ast.body

    def __hash__(self):
        return id(self)

    def __eq__(self, other):
        return self is other

    def __str__(self):
        if self.ast.location is not None:
            return f"fn@[{self.ast.location}]"
        return "fn"

    def __repr__(self):
        return f"Function({self.ast})"


class Builtin(Value):
    @property
    @abstractmethod
    def name(self) -> str:
        """
        Name associated with the builtin.
        Builtin subclasses should add the builtin name as a class property.
        """
        raise NotImplementedError()

    @staticmethod
    def typename() -> str:
        return "BUILTIN"

    def __hash__(self):
        return hash(self.name)

    def __eq__(self, other):
        return type(self) is type(other)

    def __str__(self):
        return f"{self.name}@builtin"

    def __repr__(self):
        return f"Builtin({self.name})"

    def call(self, arguments: list[Value]) -> Value:
        try:
            result = self.function(arguments)
            if isinstance(result, Value):
                return result
            # A builtin that falls off the end without returning a value,
            # likely due to a missing return statement, produces null.
            return Null.new()
        except Exception as e:
            message = f"{e}"
            if len(message) == 0:
                message = f"encountered exception {type(e).__name__}"
            return Error(message)

    def expect_argument_count(self, arguments: list[Value], count: int) -> None:
        if len(arguments) != count:
            raise TypeError(
                f"wrong number of arguments. got={len(arguments)}, want={count}"
            )

    def typed_argument(
        self, arguments: list[Value], index: int, ty: Type[ValueType]
    ) -> ValueType:
        argument = arguments[index]
        if not isinstance(argument, ty):
            raise TypeError(
                f"argument to {quote(self.name)} must be {ty.typename()}, got {argument.typename()}"
            )
        return argument

    @abstractmethod
    def function(self, arguments: list[Value]) -> Value:
        raise NotImplementedError()


@final
@dataclass
class ReturnValue(Value):
    data: Value

    @staticmethod
    def typename() -> str:
        return "RETURN_VALUE"

    def __hash__(self):
        return hash(self.data)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return self.data == other.data

    def __str__(self):
        return str(self.data)


@final
@dataclass
class Error(Value):
    @dataclass
    class TraceElement:
        location: Optional["SourceLocation"]
        function: Union[Function, Builtin]

    message: str
    location: Optional["SourceLocation"] = None
    trace: list[TraceElement] = field(default_factory=list)

    @staticmethod
    def typename() -> str:
        return "ERROR"

    def __hash__(self):
        return hash(self.message)

    def __eq__(self, other):
        # Locations and traces are diagnostics, not part of the error's value.
        if type(self) is not type(other):
            return False
        return self.message == other.message

    def __str__(self):
        return f"ERROR: {self.message}"


NULL = Null()
TRUE = Boolean(True)
FALSE = Boolean(False)


def is_truthy(value: Value) -> bool:
    if isinstance(value, Null):
        return False
    if isinstance(value, Boolean):
        return value.data
    return True


def is_control_flow(value: Optional[Value]) -> bool:
    return isinstance(value, (ReturnValue, Error))


def to_display_string(value: Value) -> str:
    """
    Render a runtime value the way it is presented to the user, e.g. by the
    REPL or the `puts` builtin. Strings are rendered without quotes and errors
    are rendered with an `ERROR:` marker.
    """
    return str(value)


class Environment:
    def __init__(self, outer: Optional["Environment"] = None):
        self.outer: Optional["Environment"] = outer
        self.store: dict[str, Value] = dict()

    def define(self, name: str, value: Value) -> None:
        assert not is_control_flow(value)
        self.store[name] = value

    def resolve(self, name: str) -> Optional[Value]:
        value = self.store.get(name, None)
        if value is None and self.outer is not None:
            return self.outer.resolve(name)
        return value

    @staticmethod
    def child_for_call(captured: "Environment") -> "Environment":
        # The new scope encloses the environment the function was defined in,
        # not the environment of the call site.
        return Environment(captured)


@dataclass(frozen=True)
class SourceLocation:
    line: int
    column: int

    def __str__(self):
        return f"line {self.line}, column {self.column}"


class TokenKind(enum.Enum):
    # Meta
    ILLEGAL = "ILLEGAL"
    EOF = "EOF"
    # Identifiers and Literals
    IDENT = "IDENT"
    INT = "INT"
    STRING = "STRING"
    # Operators
    ASSIGN = "="
    PLUS = "+"
    MINUS = "-"
    BANG = "!"
    ASTERISK = "*"
    SLASH = "/"
    LT = "<"
    GT = ">"
    EQ = "=="
    NOT_EQ = "!="
    # Delimiters
    COMMA = ","
    SEMICOLON = ";"
    COLON = ":"
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    # Keywords
    FUNCTION = "FUNCTION"
    LET = "LET"
    TRUE = "TRUE"
    FALSE = "FALSE"
    IF = "IF"
    ELSE = "ELSE"
    RETURN = "RETURN"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Token:
    KEYWORDS = {
        # fmt: off
        "fn":     TokenKind.FUNCTION,
        "let":    TokenKind.LET,
        "true":   TokenKind.TRUE,
        "false":  TokenKind.FALSE,
        "if":     TokenKind.IF,
        "else":   TokenKind.ELSE,
        "return": TokenKind.RETURN,
        # fmt: on
    }

    kind: TokenKind
    literal: str
    location: Optional[SourceLocation] = None

    def __str__(self):
        if self.kind == TokenKind.EOF:
            return "end-of-file"
        if self.kind == TokenKind.ILLEGAL:

            def prettyable(c):
                return c.isprintable() and c not in whitespace

            def prettyrepr(c):
                return c if prettyable(c) else f"{ord(c):#04x}"

            return "".join(map(prettyrepr, self.literal))
        if self.kind == TokenKind.STRING:
            return f'"{escape(self.literal)}"'
        return f"{self.literal}"

    @staticmethod
    def lookup_identifier(identifier: str) -> TokenKind:
        return Token.KEYWORDS.get(identifier, TokenKind.IDENT)


class Lexer:
    EOF_LITERAL = ""
    # Identifiers begin with a (Unicode) letter or underscore.
    RE_IDENTIFIER = re.compile(r"[^\W\d]\w*")
    RE_INTEGER = re.compile(r"[0-9]+")
    ESCAPES = {
        "n": "\n",
        "t": "\t",
        "r": "\r",
        '"': '"',
        "\\": "\\",
    }

    def __init__(self, source: str):
        self.source: str = source
        self.position: int = 0
        self.line: int = 1
        self.column: int = 1

    def __iter__(self) -> Iterator[Token]:
        while True:
            token = self.next_token()
            yield token
            if token.kind == TokenKind.EOF:
                return

    @staticmethod
    def _is_letter(ch: str) -> bool:
        return ch.isalpha() or ch == "_"

    def _current_character(self) -> str:
        if self.position >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position]

    def _peek_character(self) -> str:
        if self.position + 1 >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position + 1]

    def _is_eof(self) -> bool:
        return self.position >= len(self.source)

    def _location(self) -> SourceLocation:
        return SourceLocation(self.line, self.column)

    def _advance_character(self) -> None:
        if self._is_eof():
            return
        if self.source[self.position] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.position += 1

    def _advance_characters(self, count: int) -> None:
        for _ in range(count):
            self._advance_character()

    def _skip_whitespace(self) -> None:
        while not self._is_eof() and self._current_character().isspace():
            self._advance_character()

    def _skip_comment(self) -> None:
        if not (self._current_character() == "/" and self._peek_character() == "/"):
            return
        while not self._is_eof() and self._current_character() != "\n":
            self._advance_character()
        self._advance_character()

    def _skip_whitespace_and_comments(self) -> None:
        while not self._is_eof() and (
            self._current_character().isspace()
            or (self._current_character() == "/" and self._peek_character() == "/")
        ):
            self._skip_whitespace()
            self._skip_comment()

    def _lex_keyword_or_identifier(self, location: SourceLocation) -> Token:
        assert Lexer._is_letter(self._current_character())
        match = Lexer.RE_IDENTIFIER.match(self.source, self.position)
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self._advance_characters(len(text))
        return Token(Token.lookup_identifier(text), text, location)

    def _lex_integer(self, location: SourceLocation) -> Token:
        assert self._current_character() in digits
        match = Lexer.RE_INTEGER.match(self.source, self.position)
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self._advance_characters(len(text))
        return Token(TokenKind.INT, text, location)

    def _lex_string(self, location: SourceLocation) -> Token:
        start = self.position
        self._advance_character()  # opening quote
        characters: list[str] = list()
        while not self._is_eof() and self._current_character() != '"':
            if (
                self._current_character() == "\\"
                and self._peek_character() != Lexer.EOF_LITERAL
            ):
                self._advance_character()
                escaped = self._current_character()
                # Unknown escape sequences are kept verbatim.
                characters.append(Lexer.ESCAPES.get(escaped, "\\" + escaped))
                self._advance_character()
                continue
            characters.append(self._current_character())
            self._advance_character()
        if self._is_eof():
            # Unterminated string literals are reported by the parser.
            return Token(TokenKind.ILLEGAL, self.source[start : self.position], location)
        self._advance_character()  # closing quote
        return Token(TokenKind.STRING, "".join(characters), location)

    def next_token(self) -> Token:
        self._skip_whitespace_and_comments()
        location = self._location()

        if self._is_eof():
            return Token(TokenKind.EOF, Lexer.EOF_LITERAL, location)

        # Literals, Identifiers, and Keywords
        if self._current_character() == '"':
            return self._lex_string(location)
        if Lexer._is_letter(self._current_character()):
            return self._lex_keyword_or_identifier(location)
        if self._current_character() in digits:
            return self._lex_integer(location)

        # Operators
        if self._current_character() == "=" and self._peek_character() == "=":
            self._advance_characters(2)
            return Token(TokenKind.EQ, str(TokenKind.EQ), location)
        if self._current_character() == "!" and self._peek_character() == "=":
            self._advance_characters(2)
            return Token(TokenKind.NOT_EQ, str(TokenKind.NOT_EQ), location)
        if self._current_character() == "=":
            self._advance_character()
            return Token(TokenKind.ASSIGN, str(TokenKind.ASSIGN), location)
        if self._current_character() == "!":
            self._advance_character()
            return Token(TokenKind.BANG, str(TokenKind.BANG), location)
        if self._current_character() == "+":
            self._advance_character()
            return Token(TokenKind.PLUS, str(TokenKind.PLUS), location)
        if self._current_character() == "-":
            self._advance_character()
            return Token(TokenKind.MINUS, str(TokenKind.MINUS), location)
        if self._current_character() == "*":
            self._advance_character()
            return Token(TokenKind.ASTERISK, str(TokenKind.ASTERISK), location)
        if self._current_character() == "/":
            self._advance_character()
            return Token(TokenKind.SLASH, str(TokenKind.SLASH), location)
        if self._current_character() == "<":
            self._advance_character()
            return Token(TokenKind.LT, str(TokenKind.LT), location)
        if self._current_character() == ">":
            self._advance_character()
            return Token(TokenKind.GT, str(TokenKind.GT), location)

        # Delimiters
        if self._current_character() == ",":
            self._advance_character()
            return Token(TokenKind.COMMA, str(TokenKind.COMMA), location)
        if self._current_character() == ";":
            self._advance_character()
            return Token(TokenKind.SEMICOLON, str(TokenKind.SEMICOLON), location)
        if self._current_character() == ":":
            self._advance_character()
            return Token(TokenKind.COLON, str(TokenKind.COLON), location)
        if self._current_character() == "(":
            self._advance_character()
            return Token(TokenKind.LPAREN, str(TokenKind.LPAREN), location)
        if self._current_character() == ")":
            self._advance_character()
            return Token(TokenKind.RPAREN, str(TokenKind.RPAREN), location)
        if self._current_character() == "{":
            self._advance_character()
            return Token(TokenKind.LBRACE, str(TokenKind.LBRACE), location)
        if self._current_character() == "}":
            self._advance_character()
            return Token(TokenKind.RBRACE, str(TokenKind.RBRACE), location)
        if self._current_character() == "[":
            self._advance_character()
            return Token(TokenKind.LBRACKET, str(TokenKind.LBRACKET), location)
        if self._current_character() == "]":
            self._advance_character()
            return Token(TokenKind.RBRACKET, str(TokenKind.RBRACKET), location)

        token = Token(TokenKind.ILLEGAL, self._current_character(), location)
        self._advance_character()
        return token


@dataclass
class ParseError(Exception):
    location: Optional[SourceLocation]
    message: str

    def __str__(self):
        if self.location is None:
            return f"{self.message}"
        return f"[{self.location}] {self.message}"


class AstNode(ABC):
    location: Optional[SourceLocation]


class AstExpression(AstNode):
    location: Optional[SourceLocation]

    @abstractmethod
    def eval(self, env: Environment) -> Value:
        raise NotImplementedError()


class AstStatement(AstNode):
    location: Optional[SourceLocation]

    @abstractmethod
    def eval(self, env: Environment) -> Optional[Value]:
        raise NotImplementedError()


@final
@dataclass
class AstProgram(AstNode):
    location: Optional[SourceLocation]
    statements: list[AstStatement]

    def eval(self, env: Environment) -> Optional[Value]:
        result: Optional[Value] = None
        try:
            for statement in self.statements:
                result = statement.eval(env)
                if isinstance(result, ReturnValue):
                    return result.data
                if isinstance(result, Error):
                    return result
        except RecursionError:
            return Error("maximum recursion depth exceeded", self.location)
        return result

    def __str__(self):
        return "\n".join([str(x) for x in self.statements])


@final
@dataclass
class AstIdentifier(AstNode):
    """
    Identifier with no additional behavior attached.
    """

    location: Optional[SourceLocation]
    name: str

    def __str__(self):
        return self.name


@final
@dataclass
class AstBlock(AstNode):
    location: Optional[SourceLocation]
    statements: list[AstStatement]

    def eval(self, env: Environment) -> Optional[Value]:
        # Blocks share the scope of their enclosing program or function.
        result: Optional[Value] = None
        for statement in self.statements:
            result = statement.eval(env)
            if is_control_flow(result):
                return result
        return result

    def __str__(self):
        if len(self.statements) == 0:
            return "{}"
        return "{ " + " ".join([str(x) for x in self.statements]) + " }"


@final
@dataclass
class AstExpressionIdentifier(AstExpression):
    """
    Identifier evaluated as an identifier/symbol expression to produce a value.
    """

    location: Optional[SourceLocation]
    name: str

    def eval(self, env: Environment) -> Value:
        value: Optional[Value] = env.resolve(self.name)
        if value is None:
            value = BUILTINS.get(self.name, None)
        if value is None:
            return Error(f"identifier not found: {self.name}", self.location)
        return value

    def __str__(self):
        return self.name


@final
@dataclass
class AstExpressionInteger(AstExpression):
    location: Optional[SourceLocation]
    data: Integer

    def eval(self, env: Environment) -> Value:
        return self.data

    def __str__(self):
        return str(self.data)


@final
@dataclass
class AstExpressionString(AstExpression):
    location: Optional[SourceLocation]
    data: String

    def eval(self, env: Environment) -> Value:
        return self.data

    def __str__(self):
        return f'"{escape(self.data.data)}"'


@final
@dataclass
class AstExpressionBoolean(AstExpression):
    location: Optional[SourceLocation]
    data: Boolean

    def eval(self, env: Environment) -> Value:
        return self.data

    def __str__(self):
        return str(self.data)


@final
@dataclass
class AstExpressionPrefix(AstExpression):
    location: Optional[SourceLocation]
    operator: str
    operand: AstExpression

    def eval(self, env: Environment) -> Value:
        operand = self.operand.eval(env)
        if is_control_flow(operand):
            return operand
        if self.operator == "!":
            return Boolean.new(not is_truthy(operand))
        if self.operator == "-" and isinstance(operand, Integer):
            return Integer.new(-operand.data)
        return Error(
            f"unknown operator: {self.operator}{operand.typename()}",
            self.location,
        )

    def __str__(self):
        return f"({self.operator}{self.operand})"


@final
@dataclass
class AstExpressionInfix(AstExpression):
    location: Optional[SourceLocation]
    operator: str
    lhs: AstExpression
    rhs: AstExpression

    def eval(self, env: Environment) -> Value:
        lhs = self.lhs.eval(env)
        if is_control_flow(lhs):
            return lhs
        rhs = self.rhs.eval(env)
        if is_control_flow(rhs):
            return rhs
        if isinstance(lhs, Integer) and isinstance(rhs, Integer):
            return self._eval_integers(lhs.data, rhs.data)
        if isinstance(lhs, String) and isinstance(rhs, String):
            if self.operator == "+":
                return String.new(lhs.data + rhs.data)
        if isinstance(lhs, Boolean) and isinstance(rhs, Boolean):
            if self.operator == "==":
                return Boolean.new(lhs.data == rhs.data)
            if self.operator == "!=":
                return Boolean.new(lhs.data != rhs.data)
        if type(lhs) is not type(rhs):
            return Error(
                f"type mismatch: {lhs.typename()} {self.operator} {rhs.typename()}",
                self.location,
            )
        return Error(
            f"unknown operator: {lhs.typename()} {self.operator} {rhs.typename()}",
            self.location,
        )

    def _eval_integers(self, lhs: int, rhs: int) -> Value:
        match self.operator:
            case "+":
                return Integer.new(lhs + rhs)
            case "-":
                return Integer.new(lhs - rhs)
            case "*":
                return Integer.new(lhs * rhs)
            case "/":
                if rhs == 0:
                    return Error("division by zero", self.location)
                # Integer division truncates toward zero.
                quotient = abs(lhs) // abs(rhs)
                return Integer.new(quotient if (lhs < 0) == (rhs < 0) else -quotient)
            case "<":
                return Boolean.new(lhs < rhs)
            case ">":
                return Boolean.new(lhs > rhs)
            case "==":
                return Boolean.new(lhs == rhs)
            case "!=":
                return Boolean.new(lhs != rhs)
        return Error(
            f"unknown operator: {Integer.typename()} {self.operator} {Integer.typename()}",
            self.location,
        )

    def __str__(self):
        return f"({self.lhs} {self.operator} {self.rhs})"


@final
@dataclass
class AstExpressionIf(AstExpression):
    location: Optional[SourceLocation]
    condition: AstExpression
    consequence: AstBlock
    alternative: Optional[AstBlock]

    def eval(self, env: Environment) -> Value:
        condition = self.condition.eval(env)
        if is_control_flow(condition):
            return condition
        if is_truthy(condition):
            result = self.consequence.eval(env)
        elif self.alternative is not None:
            result = self.alternative.eval(env)
        else:
            return Null.new()
        return result if result is not None else Null.new()

    def __str__(self):
        if self.alternative is None:
            return f"if {self.condition} {self.consequence}"
        return f"if {self.condition} {self.consequence} else {self.alternative}"


@final
@dataclass
class AstExpressionFunction(AstExpression):
    location: Optional[SourceLocation]
    parameters: list[AstIdentifier]
    body: AstBlock

    def eval(self, env: Environment) -> Value:
        return Function.new(self, env)

    def __str__(self):
        parameters = ", ".join([str(x) for x in self.parameters])
        return f"fn({parameters}) {self.body}"


@final
@dataclass
class AstExpressionCall(AstExpression):
    location: Optional[SourceLocation]
    function: AstExpression
    arguments: list[AstExpression]

    def eval(self, env: Environment) -> Value:
        function = self.function.eval(env)
        if is_control_flow(function):
            return function
        arguments: list[Value] = list()
        for argument in self.arguments:
            result = argument.eval(env)
            if is_control_flow(result):
                return result
            arguments.append(result)
        return call(self.location, function, arguments)

    def __str__(self):
        arguments = ", ".join([str(x) for x in self.arguments])
        return f"{self.function}({arguments})"


@final
@dataclass
class AstExpressionArray(AstExpression):
    location: Optional[SourceLocation]
    elements: list[AstExpression]

    def eval(self, env: Environment) -> Value:
        values: list[Value] = list()
        for x in self.elements:
            result = x.eval(env)
            if is_control_flow(result):
                return result
            values.append(result)
        return Array.new(values)

    def __str__(self):
        return "[" + ", ".join([str(x) for x in self.elements]) + "]"


@final
@dataclass
class AstExpressionHash(AstExpression):
    location: Optional[SourceLocation]
    pairs: list[Tuple[AstExpression, AstExpression]]

    def eval(self, env: Environment) -> Value:
        pairs: dict[Value, Value] = dict()
        for k, v in self.pairs:
            k_result = k.eval(env)
            if is_control_flow(k_result):
                return k_result
            if not k_result.hashable():
                return Error(
                    f"unusable as hash key: {k_result.typename()}", k.location
                )
            v_result = v.eval(env)
            if is_control_flow(v_result):
                return v_result
            pairs[k_result] = v_result
        return Hash.new(pairs)

    def __str__(self):
        return "{" + ", ".join([f"{k}: {v}" for k, v in self.pairs]) + "}"


@final
@dataclass
class AstExpressionIndex(AstExpression):
    location: Optional[SourceLocation]
    collection: AstExpression
    index: AstExpression

    def eval(self, env: Environment) -> Value:
        collection = self.collection.eval(env)
        if is_control_flow(collection):
            return collection
        index = self.index.eval(env)
        if is_control_flow(index):
            return index
        if isinstance(collection, Array) and isinstance(index, Integer):
            # Out of range access produces null rather than an error.
            if 0 <= index.data < len(collection.data):
                return collection.data[index.data]
            return Null.new()
        if isinstance(collection, Hash):
            if not index.hashable():
                return Error(
                    f"unusable as hash key: {index.typename()}", self.location
                )
            return collection.data.get(index, Null.new())
        return Error(
            f"index operator not supported: {collection.typename()}[{index.typename()}]",
            self.location,
        )

    def __str__(self):
        return f"({self.collection}[{self.index}])"


@final
@dataclass
class AstStatementLet(AstStatement):
    location: Optional[SourceLocation]
    identifier: AstIdentifier
    expression: AstExpression

    def eval(self, env: Environment) -> Optional[Value]:
        result = self.expression.eval(env)
        if is_control_flow(result):
            return result
        env.define(self.identifier.name, result)
        return None

    def __str__(self):
        return f"let {self.identifier} = {self.expression};"


@final
@dataclass
class AstStatementReturn(AstStatement):
    location: Optional[SourceLocation]
    expression: AstExpression

    def eval(self, env: Environment) -> Optional[Value]:
        result = self.expression.eval(env)
        if is_control_flow(result):
            return result
        return ReturnValue(result)

    def __str__(self):
        return f"return {self.expression};"


@final
@dataclass
class AstStatementExpression(AstStatement):
    location: Optional[SourceLocation]
    expression: AstExpression

    def eval(self, env: Environment) -> Optional[Value]:
        return self.expression.eval(env)

    def __str__(self):
        return f"{self.expression}"


class Precedence(enum.IntEnum):
    # fmt: off
    LOWEST      = enum.auto()
    EQUALS      = enum.auto()  # == !=
    LESSGREATER = enum.auto()  # < >
    SUM         = enum.auto()  # + -
    PRODUCT     = enum.auto()  # * /
    PREFIX      = enum.auto()  # -x !x
    CALL        = enum.auto()  # foo(bar, 123)
    INDEX       = enum.auto()  # foo[42]
    # fmt: on


class Parser:
    ParseNud = Callable[["Parser"], AstExpression]
    ParseLed = Callable[["Parser", AstExpression], AstExpression]

    PRECEDENCES: dict[TokenKind, Precedence] = {
        # fmt: off
        TokenKind.EQ:       Precedence.EQUALS,
        TokenKind.NOT_EQ:   Precedence.EQUALS,
        TokenKind.LT:       Precedence.LESSGREATER,
        TokenKind.GT:       Precedence.LESSGREATER,
        TokenKind.PLUS:     Precedence.SUM,
        TokenKind.MINUS:    Precedence.SUM,
        TokenKind.ASTERISK: Precedence.PRODUCT,
        TokenKind.SLASH:    Precedence.PRODUCT,
        TokenKind.LPAREN:   Precedence.CALL,
        TokenKind.LBRACKET: Precedence.INDEX,
        # fmt: on
    }

    def __init__(self, lexer: Lexer):
        self.lexer: Lexer = lexer
        self.current_token: Token = Token(TokenKind.ILLEGAL, "DEFAULT CURRENT TOKEN")
        self.errors: list[ParseError] = list()

        self._advance_token()

        self.parse_nud_functions: dict[TokenKind, Parser.ParseNud] = dict()
        self.parse_led_functions: dict[TokenKind, Parser.ParseLed] = dict()

        self._register_nud(TokenKind.IDENT, Parser.parse_expression_identifier)
        self._register_nud(TokenKind.INT, Parser.parse_expression_integer)
        self._register_nud(TokenKind.STRING, Parser.parse_expression_string)
        self._register_nud(TokenKind.TRUE, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.FALSE, Parser.parse_expression_boolean)
        self._register_nud(TokenKind.BANG, Parser.parse_expression_prefix)
        self._register_nud(TokenKind.MINUS, Parser.parse_expression_prefix)
        self._register_nud(TokenKind.LPAREN, Parser.parse_expression_grouped)
        self._register_nud(TokenKind.IF, Parser.parse_expression_if)
        self._register_nud(TokenKind.FUNCTION, Parser.parse_expression_function)
        self._register_nud(TokenKind.LBRACKET, Parser.parse_expression_array)
        self._register_nud(TokenKind.LBRACE, Parser.parse_expression_hash)
        self._register_nud(TokenKind.ILLEGAL, Parser.parse_expression_illegal)

        self._register_led(TokenKind.PLUS, Parser.parse_expression_infix)
        self._register_led(TokenKind.MINUS, Parser.parse_expression_infix)
        self._register_led(TokenKind.ASTERISK, Parser.parse_expression_infix)
        self._register_led(TokenKind.SLASH, Parser.parse_expression_infix)
        self._register_led(TokenKind.EQ, Parser.parse_expression_infix)
        self._register_led(TokenKind.NOT_EQ, Parser.parse_expression_infix)
        self._register_led(TokenKind.LT, Parser.parse_expression_infix)
        self._register_led(TokenKind.GT, Parser.parse_expression_infix)
        self._register_led(TokenKind.LPAREN, Parser.parse_expression_call)
        self._register_led(TokenKind.LBRACKET, Parser.parse_expression_index)

    def _register_nud(self, kind: TokenKind, parse: "Parser.ParseNud") -> None:
        self.parse_nud_functions[kind] = parse

    def _register_led(self, kind: TokenKind, parse: "Parser.ParseLed") -> None:
        self.parse_led_functions[kind] = parse

    def _advance_token(self) -> Token:
        current_token = self.current_token
        self.current_token = self.lexer.next_token()
        return current_token

    def _check_current(self, kind: TokenKind) -> bool:
        return self.current_token.kind == kind

    def _expect_current(self, kind: TokenKind) -> Token:
        current = self.current_token
        if current.kind != kind:
            raise ParseError(
                current.location, f"expected {quote(kind)}, found {quote(current)}"
            )
        self._advance_token()
        return current

    def _skip_semicolon(self) -> None:
        if self._check_current(TokenKind.SEMICOLON):
            self._advance_token()

    def _synchronize(self) -> None:
        # Discard tokens up to and including the next statement terminator.
        logging.debug(f"synchronizing after parse error at {self.current_token.location}")
        while not self._check_current(TokenKind.EOF):
            if self._advance_token().kind == TokenKind.SEMICOLON:
                return

    def parse_program(self) -> AstProgram:
        location = self.current_token.location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.EOF):
            try:
                statements.append(self.parse_statement())
            except ParseError as e:
                self.errors.append(e)
                self._synchronize()
            except RecursionError:
                self.errors.append(
                    ParseError(
                        self.current_token.location, "maximum nesting depth exceeded"
                    )
                )
                self._synchronize()
        return AstProgram(location, statements)

    def parse_identifier(self) -> AstIdentifier:
        token = self._expect_current(TokenKind.IDENT)
        return AstIdentifier(token.location, token.literal)

    def parse_expression(
        self, precedence: Precedence = Precedence.LOWEST
    ) -> AstExpression:
        def get_precedence(kind: TokenKind) -> Precedence:
            return Parser.PRECEDENCES.get(kind, Precedence.LOWEST)

        parse_nud = self.parse_nud_functions.get(self.current_token.kind)
        if parse_nud is None:
            raise ParseError(
                self.current_token.location,
                f"expected expression, found {quote(self.current_token)}",
            )
        expression = parse_nud(self)
        while precedence < get_precedence(self.current_token.kind):
            parse_led = self.parse_led_functions.get(self.current_token.kind, None)
            if parse_led is None:
                return expression
            expression = parse_led(self, expression)
        return expression

    def parse_expression_identifier(self) -> AstExpressionIdentifier:
        token = self._expect_current(TokenKind.IDENT)
        return AstExpressionIdentifier(token.location, token.literal)

    def parse_expression_integer(self) -> AstExpressionInteger:
        token = self._expect_current(TokenKind.INT)
        significant = token.literal.lstrip("0")
        # Over-long literals are rejected before reaching the host int parser.
        if len(significant) > len(str(Integer.MAX_VALUE)):
            raise ParseError(
                token.location, f"could not parse {token.literal} as integer"
            )
        value = int(significant) if len(significant) != 0 else 0
        if value > Integer.MAX_VALUE:
            raise ParseError(
                token.location, f"could not parse {token.literal} as integer"
            )
        return AstExpressionInteger(token.location, Integer.new(value))

    def parse_expression_string(self) -> AstExpressionString:
        token = self._expect_current(TokenKind.STRING)
        return AstExpressionString(token.location, String.new(token.literal))

    def parse_expression_boolean(self) -> AstExpressionBoolean:
        if self._check_current(TokenKind.TRUE):
            location = self._expect_current(TokenKind.TRUE).location
            return AstExpressionBoolean(location, Boolean.new(True))
        if self._check_current(TokenKind.FALSE):
            location = self._expect_current(TokenKind.FALSE).location
            return AstExpressionBoolean(location, Boolean.new(False))
        raise ParseError(
            self.current_token.location,
            f"expected boolean, found {quote(self.current_token)}",
        )

    def parse_expression_illegal(self) -> AstExpression:
        token = self._expect_current(TokenKind.ILLEGAL)
        if token.literal.startswith('"'):
            raise ParseError(token.location, "unterminated string literal")
        raise ParseError(token.location, f"illegal character {quote(token)}")

    def parse_expression_prefix(self) -> AstExpressionPrefix:
        token = self._advance_token()
        operand = self.parse_expression(Precedence.PREFIX)
        return AstExpressionPrefix(token.location, token.literal, operand)

    def parse_expression_infix(self, lhs: AstExpression) -> AstExpressionInfix:
        token = self._advance_token()
        rhs = self.parse_expression(Parser.PRECEDENCES[token.kind])
        return AstExpressionInfix(token.location, token.literal, lhs, rhs)

    def parse_expression_grouped(self) -> AstExpression:
        self._expect_current(TokenKind.LPAREN)
        expression = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        return expression

    def parse_expression_if(self) -> AstExpressionIf:
        location = self._expect_current(TokenKind.IF).location
        self._expect_current(TokenKind.LPAREN)
        condition = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        consequence = self.parse_block()
        alternative: Optional[AstBlock] = None
        if self._check_current(TokenKind.ELSE):
            self._expect_current(TokenKind.ELSE)
            alternative = self.parse_block()
        return AstExpressionIf(location, condition, consequence, alternative)

    def parse_expression_function(self) -> AstExpressionFunction:
        location = self._expect_current(TokenKind.FUNCTION).location
        parameters: list[AstIdentifier] = list()
        self._expect_current(TokenKind.LPAREN)
        while not self._check_current(TokenKind.RPAREN):
            if len(parameters) != 0:
                self._expect_current(TokenKind.COMMA)
            parameters.append(self.parse_identifier())
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_block()
        for i in range(len(parameters)):
            for j in range(i + 1, len(parameters)):
                if parameters[i].name == parameters[j].name:
                    raise ParseError(
                        parameters[j].location,
                        f"duplicate function parameter {quote(parameters[i].name)}",
                    )
        return AstExpressionFunction(location, parameters, body)

    def parse_expression_array(self) -> AstExpressionArray:
        location = self._expect_current(TokenKind.LBRACKET).location
        elements: list[AstExpression] = list()
        while not self._check_current(TokenKind.RBRACKET):
            if len(elements) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACKET):
                break
            elements.append(self.parse_expression())
        self._expect_current(TokenKind.RBRACKET)
        return AstExpressionArray(location, elements)

    def parse_expression_hash(self) -> AstExpressionHash:
        location = self._expect_current(TokenKind.LBRACE).location
        pairs: list[Tuple[AstExpression, AstExpression]] = list()
        while not self._check_current(TokenKind.RBRACE):
            if len(pairs) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RBRACE):
                break
            key = self.parse_expression()
            self._expect_current(TokenKind.COLON)
            pairs.append((key, self.parse_expression()))
        self._expect_current(TokenKind.RBRACE)
        return AstExpressionHash(location, pairs)

    def parse_expression_call(self, lhs: AstExpression) -> AstExpressionCall:
        location = self._expect_current(TokenKind.LPAREN).location
        arguments: list[AstExpression] = list()
        while not self._check_current(TokenKind.RPAREN):
            if len(arguments) != 0:
                self._expect_current(TokenKind.COMMA)
            if self._check_current(TokenKind.RPAREN):
                break
            arguments.append(self.parse_expression())
        self._expect_current(TokenKind.RPAREN)
        return AstExpressionCall(location, lhs, arguments)

    def parse_expression_index(self, lhs: AstExpression) -> AstExpressionIndex:
        location = self._expect_current(TokenKind.LBRACKET).location
        index = self.parse_expression()
        self._expect_current(TokenKind.RBRACKET)
        return AstExpressionIndex(location, lhs, index)

    def parse_block(self) -> AstBlock:
        location = self._expect_current(TokenKind.LBRACE).location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.RBRACE):
            if self._check_current(TokenKind.EOF):
                self._expect_current(TokenKind.RBRACE)
            statements.append(self.parse_statement())
        self._expect_current(TokenKind.RBRACE)
        return AstBlock(location, statements)

    def parse_statement(self) -> AstStatement:
        if self._check_current(TokenKind.LET):
            return self.parse_statement_let()
        if self._check_current(TokenKind.RETURN):
            return self.parse_statement_return()
        return self.parse_statement_expression()

    def parse_statement_let(self) -> AstStatementLet:
        location = self._expect_current(TokenKind.LET).location
        identifier = self.parse_identifier()
        self._expect_current(TokenKind.ASSIGN)
        expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementLet(location, identifier, expression)

    def parse_statement_return(self) -> AstStatementReturn:
        location = self._expect_current(TokenKind.RETURN).location
        expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementReturn(location, expression)

    def parse_statement_expression(self) -> AstStatementExpression:
        expression = self.parse_expression()
        self._skip_semicolon()
        return AstStatementExpression(expression.location, expression)


def call(
    location: Optional[SourceLocation],
    function: Value,
    arguments: list[Value],
) -> Value:
    if isinstance(function, Builtin):
        produced = function.call(arguments)
        if isinstance(produced, Error):
            if produced.location is None:
                produced.location = location
            produced.trace.append(Error.TraceElement(location, function))
        return produced
    if not isinstance(function, Function):
        return Error(f"not a function: {function.typename()}", location)
    if len(arguments) != len(function.parameters):
        return Error(
            f"wrong number of arguments. got={len(arguments)}, want={len(function.parameters)}",
            location,
        )
    env = Environment.child_for_call(function.env)
    for parameter, argument in zip(function.parameters, arguments):
        env.define(parameter.name, argument)
    result = function.body.eval(env)
    if isinstance(result, ReturnValue):
        return result.data
    if isinstance(result, Error):
        result.trace.append(Error.TraceElement(location, function))
        return result
    return result if result is not None else Null.new()


# @builtin("push", [Array, Value])
# def builtin_push(array: Array, value: Value) -> Value: ...
#
# Builtins declared without an argument list are variadic.
def builtin(nameof: str, args: Optional[list[Type[Value]]] = None):
    def decorator(func: Callable[..., Value]) -> Type[Builtin]:
        class GeneratedBuiltin(Builtin):
            name = nameof

            def function(self, arguments: list[Value]) -> Value:
                if args is None:
                    return func(*arguments)
                self.expect_argument_count(arguments, len(args))
                processed_args = [
                    self.typed_argument(arguments, i, arg_type)
                    for i, arg_type in enumerate(args)
                ]
                return func(*processed_args)

        GeneratedBuiltin.__name__ = f"Builtin_{func.__name__}"
        return GeneratedBuiltin

    return decorator


@builtin("len", [Value])
def builtin_len(value: Value) -> Value:
    if isinstance(value, String):
        return Integer.new(len(value.data))
    if isinstance(value, Array):
        return Integer.new(len(value.data))
    return Error(f"argument to {quote('len')} not supported, got {value.typename()}")


@builtin("first", [Array])
def builtin_first(array: Array) -> Value:
    if len(array.data) == 0:
        return Null.new()
    return array.data[0]


@builtin("last", [Array])
def builtin_last(array: Array) -> Value:
    if len(array.data) == 0:
        return Null.new()
    return array.data[-1]


@builtin("rest", [Array])
def builtin_rest(array: Array) -> Value:
    if len(array.data) == 0:
        return Null.new()
    return Array.new(array.data[1:])


@builtin("push", [Array, Value])
def builtin_push(array: Array, value: Value) -> Value:
    # Arrays are shared by reference, so push produces a new array.
    return Array.new(array.data + [value])


@builtin("puts")
def builtin_puts(*values: Value) -> Value:
    for value in values:
        print(to_display_string(value))
    return Null.new()


BUILTINS: dict[str, Builtin] = {
    "len": builtin_len(),
    "first": builtin_first(),
    "last": builtin_last(),
    "rest": builtin_rest(),
    "push": builtin_push(),
    "puts": builtin_puts(),
}


def parse(source: str) -> Tuple[AstProgram, list[ParseError]]:
    parser = Parser(Lexer(source))
    program = parser.parse_program()
    return (program, parser.errors)


def eval_source(source: str, env: Optional[Environment] = None) -> Optional[Value]:
    program, errors = parse(source)
    if len(errors) != 0:
        raise errors[0]
    return program.eval(env if env is not None else Environment())


def eval_file(
    path: Union[str, os.PathLike], env: Optional[Environment] = None
) -> Optional[Value]:
    with open(path, "r", encoding="utf-8") as f:
        source = f.read()
    return eval_source(source, env)


MONKEY_FACE = r'''
           __,__
  .--.  .-"     "-.  .--.
 / .. \/  .-. .-.  \/ .. \
| |  '|  /   Y   \  |'  | |
| \   \  \ 0 | 0 /  /   / |
 \ '- ,\.-"""""""-./, -' /
  ''-' /_   ^ ^   _\ '-''
      |  \._   _./  |
      \   \ '~' /   /
       '._ '-=-' _.'
          '-----'
'''


class Repl(code.InteractiveConsole):
    MODES = ("eval", "tokens", "ast")

    def __init__(self, env: Optional[Environment] = None, mode: str = "eval"):
        super().__init__()
        assert mode in Repl.MODES
        self.env = env if env is not None else Environment()
        self.mode = mode

    def runsource(self, source, filename="<input>", symbol="single"):
        if self.mode == "tokens":
            for token in Lexer(source):
                if token.kind == TokenKind.EOF:
                    break
                print(f"{token.kind.name} {quote(token)} [{token.location}]")
            return False

        program, errors = parse(source)
        if len(errors) != 0:
            if not source.endswith("\n"):
                # Assume the user has not finished entering their program, and
                # wait for an additional newline before producing an error.
                return True
            print(MONKEY_FACE)
            print("Woops! We ran into some monkey business here!")
            print(" parser errors:")
            for error in errors:
                print(f"\t{error}")
            return False
        # If the program is valid, but did not end in a semicolon or additional
        # newline, then assume that there may be additional source to process,
        # e.g. the else clause of an if-else expression.
        if not (source.endswith("\n") or source.rstrip().endswith(";")):
            return True
        if self.mode == "ast":
            print(program)
            return False
        result = program.eval(self.env)
        if result is not None:
            try:
                print(to_display_string(result))
            except RecursionError:
                print("ERROR: maximum recursion depth exceeded while displaying value")
        return False


def _get_log_level() -> int:
    """
    Determine log level from LOGLEVEL environment variable.
    Defaults to WARNING if not set.
    """
    loglevel_env = os.getenv("LOGLEVEL", "").upper()
    if loglevel_env:
        level = getattr(logging, loglevel_env, None)
        if isinstance(level, int):
            return level
    return logging.WARNING


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "friend"


def main() -> None:
    logging.basicConfig(level=_get_log_level(), format="%(message)s", stream=sys.stderr)

    description = "The Monkey Programming Language"
    parser = ArgumentParser(description=description)
    parser.add_argument("file", type=str, nargs="?", default=None)
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--tokens",
        action="store_const",
        dest="mode",
        const="tokens",
        help="print the token stream instead of evaluating",
    )
    mode.add_argument(
        "--ast",
        action="store_const",
        dest="mode",
        const="ast",
        help="print the parsed program instead of evaluating",
    )
    parser.set_defaults(mode="eval")
    args = parser.parse_args()

    if args.file is not None:
        logging.info(f"evaluating {args.file}")
        try:
            with open(args.file, "r", encoding="utf-8") as f:
                source = f.read()
        except OSError as e:
            print(e, file=sys.stderr)
            sys.exit(1)
        if args.mode == "tokens":
            for token in Lexer(source):
                print(f"{token.kind.name} {quote(token)} [{token.location}]")
            return
        program, errors = parse(source)
        logging.debug(f"parsed {len(program.statements)} statement(s)")
        if len(errors) != 0:
            for error in errors:
                if error.location is not None:
                    print(f"[{error.location}] error: {error.message}", file=sys.stderr)
                else:
                    print(f"error: {error.message}", file=sys.stderr)
            sys.exit(1)
        if args.mode == "ast":
            print(program)
            return
        result = program.eval(Environment())
        if isinstance(result, Error):
            if result.location is not None:
                print(f"[{result.location}] error: {result.message}", file=sys.stderr)
            else:
                print(f"error: {result.message}", file=sys.stderr)
            for element in result.trace:
                s = f"...within {element.function}"
                if element.location is not None:
                    s += f" called from {element.location}"
                print(s, file=sys.stderr)
            sys.exit(1)
    else:
        HOME = os.environ.get("MONKEY_HOME", Path.home())
        HISTFILE = Path(HOME) / ".monkey-history"
        HISTFILE_SIZE = 4096
        if readline and os.path.exists(HISTFILE):
            readline.read_history_file(HISTFILE)
        sys.ps1 = ">> "
        sys.ps2 = ".. "
        banner = "\n".join(
            [
                f"Hello {_username()}! This is the Monkey programming language!",
                "Feel free to type in commands",
            ]
        )
        repl = Repl(mode=args.mode)
        repl.interact(banner=banner, exitmsg="")
        if readline:
            readline.set_history_length(HISTFILE_SIZE)
            readline.write_history_file(HISTFILE)


if __name__ == "__main__":
    main()

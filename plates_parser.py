from __future__ import annotations
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from plates_lexer import PlatesParseError, Token


DIALECT_NAMED = "named"
DIALECT_STACK = "stack"
DIALECTS = (DIALECT_NAMED, DIALECT_STACK)

BUILTIN_PREFIX = "__"


class DuplicateFunctionName(PlatesParseError):
    """Raised when a function name is defined more than once."""

    kind = "DuplicateFunctionName"


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


@dataclass
class PushInteger(Statement):
    value: int


@dataclass
class PushFunction(Statement):
    name: str


@dataclass
class PushRandom(Statement):
    pass


@dataclass
class PushDuplicate(Statement):
    pass


@dataclass
class PushArgument(Statement):
    index: int


@dataclass
class CallIf(Statement):
    pass


@dataclass
class Exit(Statement):
    pass


@dataclass(frozen=True)
class FunctionDef:
    name: str
    param_count: int
    body: tuple
    location: SourceLocation


@dataclass
class Program(Node):
    statements: List[Statement]
    functions: Mapping[str, FunctionDef]


def describe(statement: Statement) -> str:
    """Renders a statement back into source form for traces."""
    if isinstance(statement, PushInteger):
        return f"PUSH {statement.value}"
    if isinstance(statement, PushFunction):
        return f"PUSH {statement.name}"
    if isinstance(statement, PushRandom):
        return "PUSH *"
    if isinstance(statement, PushDuplicate):
        return "PUSH ^"
    if isinstance(statement, PushArgument):
        return f"PUSH ${statement.index}"
    if isinstance(statement, CallIf):
        return "CALLIF"
    if isinstance(statement, Exit):
        return "EXIT"
    return statement.__class__.__name__


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
        *,
        dialect: str = DIALECT_NAMED,
    ):
        if dialect not in DIALECTS:
            raise ValueError(f"Unknown dialect '{dialect}'")
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.dialect = dialect
        self.functions: Dict[str, FunctionDef] = {}
        self._pending_param_count = 0
        self.index = 0

    def parse(self) -> Program:
        statements: List[Statement] = self._parse_statements(stop_tokens={"EOF"}, function=None)
        eof_token: Token = self._peek()
        return Program(
            location=self._location_from_token(eof_token),
            statements=statements,
            functions=MappingProxyType(dict(self.functions)),
        )

    def _parse_statements(self, stop_tokens: Iterable[str], function: Optional[Token]) -> List[Statement]:
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            token = self._peek()
            if token.type == "EOF":
                raise self._error(
                    f"Unexpected end of file in body of function '{function.value}'" if function else "Unexpected end of file",
                    token,
                )
            if token.type == "DEFN":
                if function is not None:
                    raise self._error("Nested definitions are not allowed", token)
                self._parse_defn()
                continue
            statements.append(self._parse_statement(function))
        return statements

    def _parse_statement(self, function: Optional[Token]) -> Statement:
        token = self._peek()
        if token.type == "PUSH":
            return self._parse_push(function)
        if token.type == "CALLIF":
            self.index += 1
            return CallIf(location=self._location_from_token(token))
        if token.type == "EXIT":
            self.index += 1
            return Exit(location=self._location_from_token(token))
        if token.type == "RBRACE":
            raise self._error("Unmatched '}'", token)
        raise self._error(f"Unexpected token {token.type}", token)

    def _parse_push(self, function: Optional[Token]) -> Statement:
        keyword = self._consume("PUSH")
        location: SourceLocation = self._location_from_token(keyword)
        operand = self._peek()
        if operand.type == "EOF":
            raise self._error("Unexpected end of file after PUSH", operand)
        self.index += 1
        if operand.type == "NUMBER":
            return PushInteger(location=location, value=int(operand.value))
        if operand.type == "IDENT":
            return PushFunction(location=location, name=operand.value)
        if operand.type == "STAR":
            return PushRandom(location=location)
        if operand.type == "CARET":
            return PushDuplicate(location=location)
        if operand.type == "ARG":
            return self._parse_argument(operand, function, location)
        raise self._error(f"Unexpected token {operand.type} after PUSH", operand)

    def _parse_argument(self, operand: Token, function: Optional[Token], location: SourceLocation) -> PushArgument:
        if self.dialect == DIALECT_STACK:
            raise self._error("Parameter references are not available in the stack dialect", operand)
        if function is None:
            raise self._error("Cannot use parameters outside functions", operand)
        index = int(operand.value)
        param_count = self._pending_param_count
        if index >= param_count:
            raise self._error(
                f"Parameter ${index} is out of range for function '{function.value}' with {param_count} parameters",
                operand,
            )
        return PushArgument(location=location, index=index)

    def _parse_defn(self) -> None:
        keyword = self._consume("DEFN")
        name_token = self._peek()
        if name_token.type == "EOF":
            raise self._error("Unexpected end of file after DEFN", name_token)
        name_token = self._consume("IDENT")
        name = name_token.value
        if name.startswith(BUILTIN_PREFIX):
            raise self._error(
                f"Cannot define function '{name}' because the prefix '{BUILTIN_PREFIX}' is reserved for built-in functions",
                name_token,
            )
        if name in self.functions:
            first = self.functions[name].location
            raise DuplicateFunctionName(
                f"Function '{name}' is already defined at line {first.line}",
                filename=self.filename,
                line=name_token.line,
                column=name_token.column,
            )

        param_count = 0
        if self._match("LPAREN"):
            self._expect_in_signature(name)
            count_token = self._consume("NUMBER")
            param_count = int(count_token.value)
            if param_count and self.dialect == DIALECT_STACK:
                raise self._error("Functions take no named parameters in the stack dialect", count_token)
            self._expect_in_signature(name)
            self._consume("RPAREN")
        self._expect_in_signature(name)
        self._consume("LBRACE")

        self._pending_param_count = param_count
        body: List[Statement] = self._parse_statements(stop_tokens={"RBRACE"}, function=name_token)
        self._consume("RBRACE")
        self.functions[name] = FunctionDef(
            name=name,
            param_count=param_count,
            body=tuple(body),
            location=self._location_from_token(keyword),
        )

    def _expect_in_signature(self, name: str) -> None:
        token = self._peek()
        if token.type == "EOF":
            raise self._error(f"Unexpected end of file in signature of function '{name}'", token)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise self._error(f"Expected token {token_type} but found {token.type}", token)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _error(self, message: str, token: Token) -> PlatesParseError:
        return PlatesParseError(message, filename=self.filename, line=token.line, column=token.column)

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)

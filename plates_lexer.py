from __future__ import annotations
from dataclasses import dataclass
from typing import List


WORD_MAX = 0xFFFFFFFF


class PlatesError(Exception):
    """Base class for interpreter errors."""

    kind = "Error"


class PlatesParseError(PlatesError):
    """Raised when parsing fails."""

    kind = "ParseError"

    def __init__(self, message: str, *, filename: str = "<string>", line: int = 0, column: int = 0) -> None:
        super().__init__(f"{message} at {filename}:{line}:{column}")
        self.message = message
        self.filename = filename
        self.line = line
        self.column = column


class LexError(PlatesParseError):
    """Raised when source text cannot be split into tokens."""

    kind = "LexError"


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


KEYWORDS = {
    "PUSH",
    "DEFN",
    "CALLIF",
    "EXIT",
}

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    "*": "STAR",
    "^": "CARET",
}

RADIX_PREFIXES = {
    "x": (16, "0123456789abcdefABCDEF"),
    "o": (8, "01234567"),
    "b": (2, "01"),
}

CHAR_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "0": "\0",
    "\\": "\\",
    "'": "'",
}


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch.isspace():
                _advance()
                continue
            if text.startswith("//", self.index):
                self._consume_comment()
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch == "$":
                tokens_append(self._consume_argument())
                continue
            if ch == "'":
                tokens_append(self._consume_char())
                continue
            if "0" <= ch <= "9":
                tokens_append(self._consume_number())
                continue
            if self._is_identifier_start(ch):
                tokens_append(self._consume_identifier())
                continue
            raise self._error(f"Unexpected character '{ch}'")
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        base, digits_allowed = 10, "0123456789"
        if self._peek() == "0" and self.index + 1 < len(self.text) and self.text[self.index + 1] in RADIX_PREFIXES:
            base, digits_allowed = RADIX_PREFIXES[self.text[self.index + 1]]
            self._advance()
            self._advance()
        digits = self._consume_while(self._is_identifier_part)
        if digits == "":
            raise self._error("Numeric literal is missing digits after radix prefix", line, col)
        bad = next((d for d in digits if d not in digits_allowed), None)
        if bad is not None:
            raise self._error(f"Malformed numeric literal '{digits}' (unexpected '{bad}')", line, col)
        value = int(digits, base)
        if value > WORD_MAX:
            raise self._error(f"Numeric literal {digits} does not fit in an unsigned 32-bit word", line, col)
        return Token("NUMBER", str(value), line, col)

    def _consume_char(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        if self._eof or self._peek() in "'\n":
            raise self._error("Empty or unterminated character literal", line, col)
        ch = self._peek()
        self._advance()
        if ch == "\\":
            if self._eof:
                raise self._error("Unterminated character literal", line, col)
            escape = self._peek()
            if escape not in CHAR_ESCAPES:
                raise self._error(f"Unknown escape '\\{escape}' in character literal", line, col)
            ch = CHAR_ESCAPES[escape]
            self._advance()
        if self._eof or self._peek() != "'":
            raise self._error("Unterminated character literal", line, col)
        self._advance()  # consume closing quote
        return Token("NUMBER", str(ord(ch)), line, col)

    def _consume_argument(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume '$'
        digits = self._consume_while(self._is_identifier_part)
        if digits == "" or any(d not in "0123456789" for d in digits):
            raise self._error("Expected parameter index after '$'", line, col)
        return Token("ARG", str(int(digits)), line, col)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        value = self._consume_while(self._is_identifier_part)
        token_type: str = value if value in KEYWORDS else "IDENT"
        return Token(token_type, value, line, col)

    def _consume_while(self, predicate) -> str:
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and predicate(text[self.index]):
            chars.append(text[self.index])
            _advance()
        return "".join(chars)

    def _is_identifier_start(self, ch: str) -> bool:
        return ch == "_" or ("a" <= ch <= "z") or ("A" <= ch <= "Z")

    def _is_identifier_part(self, ch: str) -> bool:
        return self._is_identifier_start(ch) or ("0" <= ch <= "9")

    def _error(self, message: str, line: int = 0, column: int = 0) -> LexError:
        return LexError(message, filename=self.filename, line=line or self.line, column=column or self.column)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1

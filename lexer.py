from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List


class KarelError(Exception):
    """Base class for interpreter errors."""


class KarelParseError(KarelError):
    """Raised when parsing hits a structural error it cannot recover from."""

    def __init__(self, message: str, line: int, column: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int
    indent: int


KEYWORDS: Dict[str, str] = {
    "BEGINNING-OF-PROGRAM": "BEGINNING_OF_PROGRAM",
    "END-OF-PROGRAM": "END_OF_PROGRAM",
    "BEGINNING-OF-EXECUTION": "BEGINNING_OF_EXECUTION",
    "END-OF-EXECUTION": "END_OF_EXECUTION",
    "BEGIN": "BEGIN",
    "END": "END",
    "IF": "IF",
    "THEN": "THEN",
    "ELSE": "ELSE",
    "WHILE": "WHILE",
    "DO": "DO",
    "ITERATE": "ITERATE",
    "TIMES": "TIMES",
    "DEFINE-NEW-INSTRUCTION": "DEFINE_NEW_INSTRUCTION",
    "AS": "AS",
    "MOVE": "MOVE",
    "TURNLEFT": "TURNLEFT",
    "PICKBEEPER": "PICKBEEPER",
    "PUTBEEPER": "PUTBEEPER",
    "TURNOFF": "TURNOFF",
}

BUILTIN_TOKENS = {"MOVE", "TURNLEFT", "PICKBEEPER", "PUTBEEPER", "TURNOFF"}

CONDITIONS = {
    "front-is-clear",
    "front-is-blocked",
    "left-is-clear",
    "left-is-blocked",
    "right-is-clear",
    "right-is-blocked",
    "next-to-a-beeper",
    "not-next-to-a-beeper",
    "facing-north",
    "not-facing-north",
    "facing-south",
    "not-facing-south",
    "facing-east",
    "not-facing-east",
    "facing-west",
    "not-facing-west",
    "beeper-in-bag",
}

COMMENT_MARKER = "//"


class Lexer:
    """Splits Karel source into tokens, one physical line at a time.

    Words are separated by whitespace runs. A semicolon glued to the end of
    a word becomes its own SEMICOLON token. Unrecognized words come out as
    IDENT and are left for the parser to judge.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.lines = text.split("\n")
        # Lines whose leading whitespace contains spaces (tabs are required).
        self.space_indented_lines: List[int] = []

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        for index, raw in enumerate(self.lines):
            self._tokenize_line(raw, index + 1, tokens)
        tokens.append(Token("EOF", "", len(self.lines), 1, 0))
        return tokens

    def _tokenize_line(self, raw: str, line_no: int, tokens: List[Token]) -> None:
        indent = 0
        n = len(raw)
        while indent < n and raw[indent] == "\t":
            indent += 1
        content = raw[indent:].strip()
        if content == "" or content.startswith(COMMENT_MARKER):
            return
        leading = raw[: len(raw) - len(raw.lstrip())]
        if " " in leading:
            self.space_indented_lines.append(line_no)

        i = indent
        tokens_append = tokens.append
        while i < n:
            ch = raw[i]
            if ch.isspace():
                i += 1
                continue
            start = i
            while i < n and not raw[i].isspace():
                i += 1
            word = raw[start:i]
            column = start + 1
            has_semicolon = word.endswith(";")
            if has_semicolon:
                word = word[:-1]
            if word:
                tokens_append(self._classify(word, line_no, column, indent))
            if has_semicolon:
                tokens_append(Token("SEMICOLON", ";", line_no, column + len(word), indent))

    def _classify(self, word: str, line_no: int, column: int, indent: int) -> Token:
        upper = word.upper()
        token_type = KEYWORDS.get(upper)
        if token_type is None:
            if word.isascii() and word.isdigit():
                token_type = "NUMBER"
            elif word.lower() in CONDITIONS:
                token_type = "CONDITION"
            else:
                token_type = "IDENT"
        return Token(token_type, word, line_no, column, indent)


def tokenize(text: str) -> List[Token]:
    return Lexer(text).tokenize()

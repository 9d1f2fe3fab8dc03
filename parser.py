from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple, Union

from lexer import BUILTIN_TOKENS, KarelParseError, Lexer, Token


SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

CALL_BUILTIN = "builtin"
CALL_CUSTOM = "custom"


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass(frozen=True)
class Node:
    location: SourceLocation


@dataclass(frozen=True)
class Block(Node):
    statements: Tuple["Statement", ...]


@dataclass(frozen=True)
class IfStatement(Node):
    condition: str
    then_block: Block
    else_block: Optional[Block]


@dataclass(frozen=True)
class WhileStatement(Node):
    condition: str
    body: Block


@dataclass(frozen=True)
class IterateStatement(Node):
    count: int
    body: Block


@dataclass(frozen=True)
class InstructionCall(Node):
    """A call site. ``kind`` is resolved while parsing: built-in calls are
    dispatched through the interpreter's primitive table, everything else
    through the program's custom instruction table."""

    name: str
    kind: str

    @property
    def key(self) -> str:
        return self.name.lower()


Statement = Union[IfStatement, WhileStatement, IterateStatement, InstructionCall, Block]


@dataclass(frozen=True)
class DefineInstruction(Node):
    name: str
    body: Block


@dataclass(frozen=True)
class Program(Node):
    definitions: Tuple[DefineInstruction, ...]
    execution: Block


@dataclass
class Diagnostic:
    message: str
    line: int
    column: int
    end_column: Optional[int] = None
    severity: str = SEVERITY_ERROR


@dataclass
class ParseResult:
    program: Optional[Program]
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == SEVERITY_ERROR]

    @property
    def ok(self) -> bool:
        return self.program is not None and not self.errors


# Tokens that let a call drop its trailing semicolon.
_SEMICOLON_OPTIONAL_BEFORE = {"END", "ELSE", "END_OF_EXECUTION"}


class Parser:
    """Recursive-descent parser with one token of lookahead.

    Recoverable problems are collected as diagnostics and parsing carries
    on. Structural problems raise ``KarelParseError`` internally, which
    ``parse`` turns into a final error diagnostic with no program.
    """

    def __init__(self, filename: str = "<string>") -> None:
        self.filename = filename
        self.tokens: List[Token] = []
        self.source_lines: List[str] = []
        self.index = 0
        self.diagnostics: List[Diagnostic] = []
        self.custom_instructions: Set[str] = set()

    def parse(self, source: str) -> ParseResult:
        lexer = Lexer(source)
        self.tokens = lexer.tokenize()
        self.source_lines = lexer.lines
        self.index = 0
        self.diagnostics = []
        self.custom_instructions = set()

        for line_no in lexer.space_indented_lines:
            self._diagnose(
                f"Invalid indentation at line {line_no}: use tabs for indentation",
                line_no,
                1,
                severity=SEVERITY_WARNING,
            )
        try:
            program = self._parse_program()
        except KarelParseError as error:
            self.diagnostics.append(
                Diagnostic(message=error.message, line=error.line, column=error.column, severity=SEVERITY_ERROR)
            )
            return ParseResult(program=None, diagnostics=self.diagnostics)
        return ParseResult(program=program, diagnostics=self.diagnostics)

    def _parse_program(self) -> Program:
        start = self._expect(
            "BEGINNING_OF_PROGRAM", "Missing BEGINNING-OF-PROGRAM at the start of the program"
        )

        definitions: List[DefineInstruction] = []
        while self._check("DEFINE_NEW_INSTRUCTION"):
            definitions.append(self._parse_define())

        exec_start = self._expect(
            "BEGINNING_OF_EXECUTION", "Missing BEGINNING-OF-EXECUTION before instructions"
        )
        statements = self._parse_statements(stop_tokens={"END_OF_EXECUTION", "EOF"})

        last = statements[-1] if statements else None
        if not isinstance(last, InstructionCall) or last.key != "turnoff":
            self._diagnose(
                "Missing turnoff instruction before END-OF-EXECUTION",
                max(self._peek().line - 1, 1),
                1,
            )

        self._expect("END_OF_EXECUTION", "Missing END-OF-EXECUTION after instructions")
        self._expect("END_OF_PROGRAM", "Missing END-OF-PROGRAM at the end of the program")

        execution = Block(location=self._location_from_token(exec_start), statements=tuple(statements))
        return Program(location=self._location_from_token(start), definitions=tuple(definitions), execution=execution)

    def _parse_define(self) -> DefineInstruction:
        keyword = self._advance()
        if not self._check("IDENT"):
            raise KarelParseError(
                "Expected instruction name after DEFINE-NEW-INSTRUCTION", self._peek().line, self._peek().column
            )
        name_token = self._advance()
        # Visible from here on, which lets a body call itself.
        self.custom_instructions.add(name_token.value.lower())
        self._expect("AS", "Expected AS after instruction name")
        body = self._parse_block()
        return DefineInstruction(location=self._location_from_token(keyword), name=name_token.value, body=body)

    def _parse_statements(self, stop_tokens: Iterable[str]) -> List[Statement]:
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            statements.append(self._parse_statement())
        return statements

    def _parse_statement(self) -> Statement:
        token_type = self._peek().type
        if token_type == "IF":
            return self._parse_if()
        if token_type == "WHILE":
            return self._parse_while()
        if token_type == "ITERATE":
            return self._parse_iterate()
        if token_type == "BEGIN":
            return self._parse_block()
        return self._parse_call()

    def _parse_block(self) -> Block:
        start = self._expect("BEGIN", "Expected BEGIN")
        statements = self._parse_statements(stop_tokens={"END", "EOF"})
        if not self._check("END"):
            raise KarelParseError(f"Unmatched BEGIN at line {start.line}", start.line, start.column)
        self._advance()
        return Block(location=self._location_from_token(start), statements=tuple(statements))

    def _parse_if(self) -> IfStatement:
        keyword = self._advance()
        condition = self._parse_condition()
        self._expect("THEN", "Expected THEN after condition")
        then_block = self._parse_block()
        else_block: Optional[Block] = None
        if self._match("ELSE"):
            else_block = self._parse_block()
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_block=then_block,
            else_block=else_block,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._advance()
        condition = self._parse_condition()
        self._expect("DO", "Expected DO after condition")
        body = self._parse_block()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, body=body)

    def _parse_iterate(self) -> IterateStatement:
        keyword = self._advance()
        token = self._peek()
        if token.type != "NUMBER":
            raise KarelParseError(
                f"Invalid ITERATE count at line {token.line}: must be a positive integer", token.line, token.column
            )
        self._advance()
        count = int(token.value)
        if count == 0:
            self._diagnose(
                f"ITERATE count is zero at line {token.line}: the body never runs",
                token.line,
                token.column,
                end_column=token.column + len(token.value),
                severity=SEVERITY_WARNING,
            )
        self._expect("TIMES", "Expected TIMES after number")
        body = self._parse_block()
        return IterateStatement(location=self._location_from_token(keyword), count=count, body=body)

    def _parse_condition(self) -> str:
        token = self._peek()
        if token.type != "CONDITION":
            raise KarelParseError(
                f"Unknown condition '{token.value}' at line {token.line}", token.line, token.column
            )
        self._advance()
        return token.value.lower()

    def _parse_call(self) -> InstructionCall:
        token = self._advance()
        name = token.value
        key = name.lower()
        if token.type in BUILTIN_TOKENS:
            kind = CALL_BUILTIN
        else:
            kind = CALL_CUSTOM
            if token.type != "IDENT" or key not in self.custom_instructions:
                self._diagnose(
                    f"Unknown instruction '{name}' at line {token.line}",
                    token.line,
                    token.column,
                    end_column=token.column + len(name),
                )

        if self._check("SEMICOLON"):
            self._advance()
        elif self._peek().type not in _SEMICOLON_OPTIONAL_BEFORE:
            self._diagnose(
                f"Missing semicolon at line {token.line}",
                token.line,
                token.column + len(name),
            )
        return InstructionCall(location=self._location_from_token(token), name=name, kind=kind)

    def _diagnose(
        self,
        message: str,
        line: int,
        column: int,
        *,
        end_column: Optional[int] = None,
        severity: str = SEVERITY_ERROR,
    ) -> None:
        self.diagnostics.append(
            Diagnostic(message=message, line=line, column=column, end_column=end_column, severity=severity)
        )

    def _expect(self, token_type: str, message: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise KarelParseError(message, token.line, token.column)
        return self._advance()

    def _check(self, token_type: str) -> bool:
        return self._peek().type == token_type

    def _match(self, token_type: str) -> bool:
        if self._check(token_type):
            self.index += 1
            return True
        return False

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse(source: str, filename: str = "<string>") -> ParseResult:
    return Parser(filename).parse(source)

"""Tests for the Karel recursive-descent parser and its diagnostics."""

import dataclasses

import pytest

from conftest import wrap_program
from parser import (
    CALL_BUILTIN,
    CALL_CUSTOM,
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    Block,
    IfStatement,
    InstructionCall,
    IterateStatement,
    WhileStatement,
    parse,
)


TURNRIGHT = (
    "DEFINE-NEW-INSTRUCTION turnright AS\n"
    "BEGIN\n"
    "\tturnleft;\n"
    "\tturnleft;\n"
    "\tturnleft\n"
    "END\n"
)


def _messages(result):
    return [d.message for d in result.diagnostics]


class TestValidPrograms:
    def test_minimal_program(self):
        result = parse(wrap_program("move;\nturnoff"))

        assert result.diagnostics == []
        assert result.ok
        statements = result.program.execution.statements
        assert [s.name for s in statements] == ["move", "turnoff"]
        assert all(s.kind == CALL_BUILTIN for s in statements)
        assert statements[0].location.line == 3

    def test_definitions_are_collected_and_calls_resolved(self):
        result = parse(wrap_program("TurnRight;\nturnoff", TURNRIGHT))

        assert result.diagnostics == []
        (definition,) = result.program.definitions
        assert definition.name == "turnright"
        assert definition.location.line == 2
        assert len(definition.body.statements) == 3
        call = result.program.execution.statements[0]
        assert call.kind == CALL_CUSTOM
        assert call.key == "turnright"

    def test_control_structures(self):
        body = (
            "IF front-is-clear THEN BEGIN move END ELSE BEGIN turnleft END\n"
            "WHILE next-to-a-beeper DO BEGIN pickbeeper END\n"
            "ITERATE 4 TIMES BEGIN turnleft END\n"
            "BEGIN move; move END\n"
            "turnoff"
        )
        result = parse(wrap_program(body))

        assert result.diagnostics == []
        if_stmt, while_stmt, iterate_stmt, block, turnoff = result.program.execution.statements
        assert isinstance(if_stmt, IfStatement)
        assert if_stmt.condition == "front-is-clear"
        assert if_stmt.else_block is not None
        assert isinstance(while_stmt, WhileStatement)
        assert isinstance(while_stmt.body.statements[0], InstructionCall)
        assert isinstance(iterate_stmt, IterateStatement)
        assert iterate_stmt.count == 4
        assert isinstance(block, Block)
        assert len(block.statements) == 2
        assert turnoff.name == "turnoff"

    def test_if_without_else(self):
        result = parse(wrap_program("IF facing-north THEN BEGIN move; END\nturnoff"))
        assert result.diagnostics == []
        assert result.program.execution.statements[0].else_block is None

    def test_conditions_are_normalized_to_lowercase(self):
        result = parse(wrap_program("WHILE Front-Is-Clear DO BEGIN move END\nturnoff"))
        assert result.program.execution.statements[0].condition == "front-is-clear"

    def test_instruction_may_call_itself(self):
        definitions = "DEFINE-NEW-INSTRUCTION spin AS BEGIN turnleft; spin END\n"
        result = parse(wrap_program("spin;\nturnoff", definitions))
        assert result.diagnostics == []

    def test_ast_is_immutable(self):
        result = parse(wrap_program("move;\nturnoff"))
        call = result.program.execution.statements[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            call.name = "turnleft"


class TestRecoverableDiagnostics:
    def test_unknown_instructions_are_all_reported(self):
        result = parse(wrap_program("jump;\nmove;\nfly;\nturnoff"))

        assert result.program is not None
        assert _messages(result) == [
            "Unknown instruction 'jump' at line 3",
            "Unknown instruction 'fly' at line 5",
        ]
        assert all(d.severity == SEVERITY_ERROR for d in result.diagnostics)
        assert not result.ok

    def test_unknown_instruction_span(self):
        result = parse(wrap_program("\tjump;\nturnoff"))
        (diagnostic,) = result.diagnostics
        assert (diagnostic.line, diagnostic.column, diagnostic.end_column) == (3, 2, 6)

    def test_forward_reference_is_unknown(self):
        definitions = (
            "DEFINE-NEW-INSTRUCTION first AS BEGIN second END\n"
            "DEFINE-NEW-INSTRUCTION second AS BEGIN move END\n"
        )
        result = parse(wrap_program("first;\nturnoff", definitions))
        assert _messages(result) == ["Unknown instruction 'second' at line 2"]

    def test_missing_semicolon(self):
        result = parse(wrap_program("move\nturnleft;\nturnoff"))

        assert result.program is not None
        (diagnostic,) = result.diagnostics
        assert diagnostic.message == "Missing semicolon at line 3"
        assert diagnostic.column == 5

    def test_semicolon_optional_before_end_else_and_execution_end(self):
        body = "IF front-is-clear THEN BEGIN move END ELSE BEGIN turnleft END\nturnoff"
        result = parse(wrap_program(body))
        assert result.diagnostics == []

    def test_last_call_in_block_needs_no_semicolon(self):
        body = "IF front-is-clear THEN BEGIN move END\nturnoff"
        assert parse(wrap_program(body)).diagnostics == []

    def test_missing_turnoff(self):
        result = parse(wrap_program("move;"))

        assert result.program is not None
        (diagnostic,) = result.diagnostics
        assert diagnostic.message == "Missing turnoff instruction before END-OF-EXECUTION"
        assert diagnostic.line == 3

    def test_turnoff_must_be_last_top_level_statement(self):
        result = parse(wrap_program("ITERATE 2 TIMES BEGIN turnoff END"))
        assert _messages(result) == ["Missing turnoff instruction before END-OF-EXECUTION"]

    def test_diagnostics_keep_discovery_order(self):
        result = parse(wrap_program("jump\nmove;"))
        assert _messages(result) == [
            "Unknown instruction 'jump' at line 3",
            "Missing semicolon at line 3",
            "Missing turnoff instruction before END-OF-EXECUTION",
        ]

    def test_zero_iterate_count_is_a_warning(self):
        result = parse(wrap_program("ITERATE 0 TIMES BEGIN move END\nturnoff"))

        assert result.ok
        (diagnostic,) = result.diagnostics
        assert diagnostic.severity == SEVERITY_WARNING
        assert result.program.execution.statements[0].count == 0

    def test_space_indentation_warns_first(self):
        result = parse(wrap_program("  move;\njump;\nturnoff"))

        assert [d.severity for d in result.diagnostics] == [SEVERITY_WARNING, SEVERITY_ERROR]
        assert result.diagnostics[0].message == "Invalid indentation at line 3: use tabs for indentation"


class TestFatalErrors:
    @pytest.mark.parametrize(
        "source, message",
        [
            (
                "BEGINNING-OF-EXECUTION\nturnoff\nEND-OF-EXECUTION\nEND-OF-PROGRAM",
                "Missing BEGINNING-OF-PROGRAM at the start of the program",
            ),
            (
                "BEGINNING-OF-PROGRAM\nturnoff\nEND-OF-EXECUTION\nEND-OF-PROGRAM",
                "Missing BEGINNING-OF-EXECUTION before instructions",
            ),
            (
                "BEGINNING-OF-PROGRAM\nBEGINNING-OF-EXECUTION\nturnoff\nEND-OF-EXECUTION\n",
                "Missing END-OF-PROGRAM at the end of the program",
            ),
            (
                "BEGINNING-OF-PROGRAM\nBEGINNING-OF-EXECUTION\nturnoff\n",
                "Missing END-OF-EXECUTION after instructions",
            ),
        ],
    )
    def test_missing_delimiters(self, source, message):
        result = parse(source)
        assert result.program is None
        assert result.diagnostics[-1].message == message
        assert result.diagnostics[-1].severity == SEVERITY_ERROR

    def test_missing_begin(self):
        result = parse(wrap_program("IF front-is-clear THEN move; END\nturnoff"))
        assert result.program is None
        assert _messages(result) == ["Expected BEGIN"]

    def test_unmatched_begin(self):
        result = parse(wrap_program("BEGIN move;"))
        assert result.program is None
        assert result.diagnostics[-1].message == "Unmatched BEGIN at line 3"

    def test_unknown_condition(self):
        result = parse(wrap_program("IF front-is-open THEN BEGIN move END\nturnoff"))
        assert result.program is None
        assert _messages(result) == ["Unknown condition 'front-is-open' at line 3"]

    def test_missing_condition(self):
        result = parse(wrap_program("WHILE DO BEGIN move END\nturnoff"))
        assert result.program is None
        assert _messages(result) == ["Unknown condition 'DO' at line 3"]

    def test_non_numeric_iterate_count(self):
        result = parse(wrap_program("ITERATE three TIMES BEGIN move END\nturnoff"))
        assert result.program is None
        assert _messages(result) == ["Invalid ITERATE count at line 3: must be a positive integer"]

    def test_recoverable_diagnostics_survive_a_fatal_error(self):
        result = parse(wrap_program("jump;\nIF front-is-clear THEN move; END"))
        assert result.program is None
        assert _messages(result) == ["Unknown instruction 'jump' at line 3", "Expected BEGIN"]

    def test_missing_as(self):
        result = parse(wrap_program("turnoff", "DEFINE-NEW-INSTRUCTION turnright BEGIN turnleft END\n"))
        assert result.program is None
        assert _messages(result) == ["Expected AS after instruction name"]

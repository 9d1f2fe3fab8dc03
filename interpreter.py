from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from parser import (
    CALL_BUILTIN,
    SEVERITY_ERROR,
    Block,
    Diagnostic,
    IfStatement,
    InstructionCall,
    IterateStatement,
    Parser,
    Program,
    Statement,
    WhileStatement,
)
from world import KarelRuntimeError, World


STATE_UNLOADED = "unloaded"
STATE_LOADED = "loaded"
STATE_STEPPING = "stepping"
STATE_COMPLETED = "completed"
STATE_FAULTED = "faulted"

DEFAULT_DELAY_MS = 500
MIN_DELAY_MS = 50
MAX_DELAY_MS = 2000
DEFAULT_MAX_ITERATIONS = 100000


class UnknownInstructionError(KarelRuntimeError):
    pass


class MaxIterationsError(KarelRuntimeError):
    pass


class ProgramNotLoadedError(KarelRuntimeError):
    pass


class ProgramHasErrorsError(KarelRuntimeError):
    pass


@dataclass
class BlockFrame:
    name: str
    statements: Tuple[Statement, ...]
    index: int = 0
    entry_line: Optional[int] = None

    @property
    def current(self) -> Optional[Statement]:
        """The statement most recently started in this block."""
        if self.index == 0:
            return None
        return self.statements[self.index - 1]


@dataclass
class WhileFrame:
    statement: WhileStatement


@dataclass
class IterateFrame:
    statement: IterateStatement
    remaining: int
    total: int


Frame = Union[BlockFrame, WhileFrame, IterateFrame]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    rule: str
    line: Optional[int]
    statement: Optional[str]
    world_snapshot: Optional[Dict[str, Any]]
    extra: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(
        self,
        *,
        rule: str,
        line: Optional[int],
        statement: Optional[str],
        world_snapshot: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            rule=rule,
            line=line,
            statement=statement,
            world_snapshot=world_snapshot,
            extra=extra,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def steps(self) -> List[StateEntry]:
        return [entry for entry in self.entries if entry.rule != "SEED"]


class Interpreter:
    """Runs a Karel program against a World one primitive action at a time.

    Control flow lives on an explicit stack of frames rather than on the
    Python call stack, so execution can stop after any single ``move``,
    ``turnleft``, ``pickbeeper``, ``putbeeper`` or ``turnoff`` and pick up
    again later from the same place. ``step()`` advances by one such action;
    ``run()`` keeps stepping with a delay in between.
    """

    def __init__(
        self,
        world: World,
        *,
        filename: str = "<string>",
        delay_ms: int = DEFAULT_DELAY_MS,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        on_step: Optional[Callable[[int], None]] = None,
        on_complete: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[KarelRuntimeError], None]] = None,
    ) -> None:
        self.world = world
        self.filename = filename
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.delay_ms = DEFAULT_DELAY_MS
        self.set_speed(delay_ms)
        self.max_iterations = max_iterations
        self.sleep = sleep or asyncio.sleep
        self.on_step = on_step
        self.on_complete = on_complete
        self.on_error = on_error

        self.program: Optional[Program] = None
        self.diagnostics: List[Diagnostic] = []
        self.custom_instructions: Dict[str, Block] = {}
        self.frame_stack: List[Frame] = []
        self.state = STATE_UNLOADED
        self.running = False
        self.iteration_count = 0
        self.current_line = 0
        self.last_error: Optional[KarelRuntimeError] = None
        self.hook_failures: List[KarelRuntimeError] = []
        self.logger = StateLogger(verbose=verbose)
        self._step_initialized = False

        self._primitives: Dict[str, Callable[[], None]] = {
            "move": world.move,
            "turnleft": world.turn_left,
            "pickbeeper": world.pick_beeper,
            "putbeeper": world.put_beeper,
        }

    # ---- program lifecycle ----

    def load(self, source: str, filename: Optional[str] = None) -> List[Diagnostic]:
        if filename is not None:
            self.filename = filename
        result = Parser(self.filename).parse(source)
        self.program = result.program
        self.diagnostics = list(result.diagnostics)
        self.custom_instructions = {}
        if self.program is not None:
            for definition in self.program.definitions:
                self.custom_instructions[definition.name.lower()] = definition.body
        self.frame_stack = []
        self.running = False
        self.current_line = 0
        self.last_error = None
        self.hook_failures = []
        self._step_initialized = False
        self.state = STATE_LOADED if self.program is not None else STATE_UNLOADED
        self._emit_event("program_load", self, result)
        return result.diagnostics

    def initialize_step_mode(self) -> None:
        program = self._require_runnable()
        self.frame_stack = [BlockFrame(name="<execution>", statements=program.execution.statements)]
        self.logger = StateLogger(verbose=self.verbose)
        self.logger.record(rule="SEED", line=None, statement="<seed>")
        self.iteration_count = 0
        self.last_error = None
        self.hook_failures = []
        self.running = True
        self.state = STATE_STEPPING
        self._step_initialized = True

    @property
    def is_step_initialized(self) -> bool:
        return self._step_initialized

    @property
    def is_step_completed(self) -> bool:
        return self.state in (STATE_COMPLETED, STATE_FAULTED)

    @property
    def frames(self) -> Tuple[Frame, ...]:
        return tuple(self.frame_stack)

    def set_speed(self, ms: int) -> None:
        self.delay_ms = max(MIN_DELAY_MS, min(MAX_DELAY_MS, int(ms)))

    def stop(self) -> None:
        self.running = False

    def reset(self) -> None:
        self.world.reset()
        self.running = False
        self.current_line = 0
        self.iteration_count = 0
        self.frame_stack = []
        self.last_error = None
        self.hook_failures = []
        self.logger = StateLogger(verbose=self.verbose)
        self._step_initialized = False
        self.state = STATE_LOADED if self.program is not None else STATE_UNLOADED
        self._emit_event("reset", self)

    # ---- driving ----

    def step(self) -> bool:
        """Execute exactly one primitive action. Returns True while more remain."""
        if not self._step_initialized:
            self.initialize_step_mode()
        if self.is_step_completed:
            return False
        self.running = True
        return self._advance()

    async def run(self) -> None:
        if not self._step_initialized:
            self.initialize_step_mode()
        self.running = True
        while self.running and not self.is_step_completed:
            if not self._advance():
                break
            await self.sleep(self.delay_ms / 1000.0)

    def _require_runnable(self) -> Program:
        if self.program is None:
            raise ProgramNotLoadedError("No program loaded", rule="load")
        if any(d.severity == SEVERITY_ERROR for d in self.diagnostics):
            raise ProgramHasErrorsError("Cannot run program: there are errors in the code", rule="load")
        return self.program

    def _advance(self) -> bool:
        try:
            has_more = self._execute_one_step()
        except KarelRuntimeError as error:
            self._fault(error)
            return False
        if not has_more:
            self.running = False
            try:
                self._emit_event("program_end", self)
            except KarelRuntimeError as error:
                self._fault(error)
                return False
            self.state = STATE_COMPLETED
            if self.on_complete is not None:
                self.on_complete()
            return False
        return True

    def _fault(self, error: KarelRuntimeError) -> None:
        self.running = False
        self.state = STATE_FAULTED
        if error.line is None and self.current_line:
            error.line = self.current_line
        if self.logger.entries:
            error.step_index = self.logger.entries[-1].step_index
        self.last_error = error
        if self.on_error is not None:
            self.on_error(error)
        try:
            self._emit_event("on_error", self, error)
        except KarelRuntimeError as hook_error:
            # The run has already faulted with ``error``; a failing error hook
            # is kept aside instead of replacing it.
            self.hook_failures.append(hook_error)

    # ---- the frame-stack engine ----

    def _execute_one_step(self) -> bool:
        stack = self.frame_stack
        while stack:
            self.iteration_count += 1
            if self.iteration_count > self.max_iterations:
                raise MaxIterationsError(
                    f"Maximum iterations ({self.max_iterations}) reached: possible infinite loop",
                    rule="ITERATION_LIMIT",
                )
            frame = stack[-1]

            if isinstance(frame, BlockFrame):
                if frame.index >= len(frame.statements):
                    stack.pop()
                    continue
                statement = frame.statements[frame.index]
                frame.index += 1
                line = statement.location.line

                if isinstance(statement, InstructionCall):
                    if statement.kind == CALL_BUILTIN:
                        return self._execute_primitive(statement)
                    body = self.custom_instructions.get(statement.key)
                    if body is None:
                        self.current_line = line
                        raise UnknownInstructionError(
                            f"Unknown instruction '{statement.name}' at line {line}",
                            line=line,
                            rule=statement.name,
                        )
                    # Entering a custom instruction is not a visible step.
                    stack.append(BlockFrame(name=statement.name, statements=body.statements, entry_line=line))
                    continue
                if isinstance(statement, IfStatement):
                    taken = statement.then_block if self._evaluate(statement.condition, line) else statement.else_block
                    if taken is not None:
                        stack.append(BlockFrame(name="<if>", statements=taken.statements, entry_line=line))
                    continue
                if isinstance(statement, WhileStatement):
                    stack.append(WhileFrame(statement=statement))
                    continue
                if isinstance(statement, IterateStatement):
                    if statement.count > 0:
                        stack.append(IterateFrame(statement=statement, remaining=statement.count, total=statement.count))
                    continue
                if isinstance(statement, Block):
                    stack.append(BlockFrame(name="<block>", statements=statement.statements, entry_line=line))
                    continue
                raise KarelRuntimeError("Unsupported statement", line=line)

            if isinstance(frame, WhileFrame):
                loop = frame.statement
                if not self._evaluate(loop.condition, loop.location.line):
                    stack.pop()
                    continue
                # Fresh loop frame first, body on top: the body runs, then the
                # condition is checked again.
                stack.pop()
                stack.append(WhileFrame(statement=loop))
                stack.append(BlockFrame(name="<while>", statements=loop.body.statements, entry_line=loop.location.line))
                continue

            if frame.remaining <= 0:
                stack.pop()
                continue
            frame.remaining -= 1
            stack.append(
                BlockFrame(
                    name="<iterate>",
                    statements=frame.statement.body.statements,
                    entry_line=frame.statement.location.line,
                )
            )

        return False

    def _evaluate(self, condition: str, line: int) -> bool:
        try:
            return self.world.evaluate_condition(condition)
        except KarelRuntimeError as error:
            if error.line is None:
                error.line = line
            raise

    def _execute_primitive(self, call: InstructionCall) -> bool:
        line = call.location.line
        self.current_line = line
        self._emit_event("before_step", self, call)
        if self.on_step is not None:
            self.on_step(line)

        key = call.key
        if key == "turnoff":
            self.running = False
            self._log_step(call)
            return False
        primitive = self._primitives.get(key)
        if primitive is None:
            raise UnknownInstructionError(f"Unknown instruction '{call.name}' at line {line}", line=line, rule=call.name)
        try:
            primitive()
        except KarelRuntimeError as error:
            if error.line is None:
                error.line = line
            self._log_step(call, extra={"error": error.message})
            raise
        self._log_step(call)
        return True

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hook_registry.emit(event, *args)
        except KarelRuntimeError:
            raise
        except Exception as exc:
            raise KarelRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                line=self.current_line or None,
                rule="EXT",
            )

    def _log_step(self, call: InstructionCall, extra: Optional[Dict[str, Any]] = None) -> None:
        line = call.location.line
        entry = self.logger.record(
            rule=call.key,
            line=line,
            statement=call.location.statement,
            world_snapshot=self.world.snapshot() if self.verbose else None,
            extra=extra,
        )
        karel = self.world.karel
        try:
            self.hook_registry.after_step(
                self,
                StepContext(
                    step_index=entry.step_index,
                    rule=call.key,
                    line=line,
                    position=karel.position,
                    facing=karel.facing.name.lower(),
                    beepers=karel.beepers,
                    extra=extra,
                ),
            )
        except KarelRuntimeError:
            raise
        except Exception as exc:
            raise KarelRuntimeError(f"Extension step rule failed: {exc}", line=line, rule="EXT")


@dataclass
class TracebackFrame:
    name: str
    line: Optional[int]
    statement: Optional[str]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.frame_stack:
            if isinstance(frame, BlockFrame):
                current = frame.current
                if current is not None:
                    frames.append(TracebackFrame(frame.name, current.location.line, current.location.statement))
                else:
                    frames.append(TracebackFrame(frame.name, frame.entry_line, None))
            elif isinstance(frame, WhileFrame):
                loc = frame.statement.location
                frames.append(TracebackFrame(f"<while {frame.statement.condition}>", loc.line, loc.statement))
            else:
                loc = frame.statement.location
                done = frame.total - frame.remaining
                frames.append(TracebackFrame(f"<iterate {done}/{frame.total}>", loc.line, loc.statement))
        return frames

    def format_text(self, error: KarelRuntimeError, verbose: bool) -> str:
        filename = self.interpreter.filename
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.line is not None:
                lines.append(f"  File \"{filename}\", line {frame.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
        entries = self.interpreter.logger.entries
        if entries:
            last = entries[-1]
            lines.append(f"    State log index: {last.step_index}  State id: {last.state_id}")
            if verbose and last.world_snapshot is not None:
                lines.append(f"    World snapshot: {json.dumps(last.world_snapshot, sort_keys=True)}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (instruction: {rule})")
        return "\n".join(lines)

    def to_json(self, error: KarelRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.line is not None:
                entry["source_location"] = {
                    "file": self.interpreter.filename,
                    "line": frame.line,
                    "statement": frame.statement,
                }
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "line": error.line,
                "instruction": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)

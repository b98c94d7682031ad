from __future__ import annotations
import json
import os
import sys
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from plates_lexer import WORD_MAX, Lexer, PlatesError
from plates_parser import (
    DIALECT_NAMED,
    DIALECT_STACK,
    CallIf,
    Exit,
    FunctionDef,
    Parser,
    Program,
    PushArgument,
    PushDuplicate,
    PushFunction,
    PushInteger,
    PushRandom,
    SourceLocation,
    Statement,
    describe,
)


TYPE_INT = "INT"
TYPE_FUNC = "FUNC"

DEFAULT_MAX_DEPTH = 10000
# Number of step records kept for tracebacks and JSON dumps.
STATE_HISTORY = 256

TOP_LEVEL = "<top-level>"


@dataclass(frozen=True)
class Word:
    type: str
    value: Union[int, str]

    @classmethod
    def integer(cls, value: int) -> "Word":
        if not 0 <= value <= WORD_MAX:
            raise ValueError(f"{value} is not an unsigned 32-bit word")
        return cls(TYPE_INT, int(value))

    @classmethod
    def function(cls, name: str) -> "Word":
        return cls(TYPE_FUNC, name)

    def __str__(self) -> str:
        if self.type == TYPE_FUNC:
            return f"function {self.value}"
        return str(self.value)


class PlatesRuntimeError(PlatesError):
    """Raised for runtime faults."""

    kind = "RuntimeError"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class UnknownFunctionReference(PlatesRuntimeError):
    kind = "UnknownFunctionReference"


class WordTypeError(PlatesRuntimeError):
    kind = "TypeError"


class StackUnderflow(PlatesRuntimeError):
    kind = "StackUnderflow"


class StackOverflow(PlatesRuntimeError):
    kind = "StackOverflow"


class InputError(PlatesRuntimeError):
    kind = "IOError"


class StepLimitExceeded(PlatesRuntimeError):
    kind = "StepLimitExceeded"


class ExitSignal(Exception):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


@dataclass
class Frame:
    name: str
    body: Sequence[Statement]
    bindings: Tuple[Word, ...]
    frame_id: str
    call_location: Optional[SourceLocation]
    cursor: int = 0

    @property
    def exhausted(self) -> bool:
        return self.cursor >= len(self.body)


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    stack_snapshot: Optional[List[str]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = STATE_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        stack_snapshot: Optional[List[str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=statement,
            stack_snapshot=stack_snapshot,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


BuiltinImpl = Callable[["Interpreter", SourceLocation], None]


@dataclass
class BuiltinFunction:
    name: str
    impl: BuiltinImpl


def _as_word(value: Any) -> Word:
    return Word.integer(int(value))


class Builtins:
    def __init__(self, dialect: str = DIALECT_NAMED) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self._register("__print__", self._print)
        self._register("__input__", self._input)
        self._register_int_only("__nand__", 2, self._nand)
        self._register_int_only("__shift_left__", 1, self._shift_left)
        self._register_int_only("__shift_right__", 1, self._shift_right)
        if dialect == DIALECT_STACK:
            self._register("__dup__", self._dup)
            self._register("__swap__", self._swap)

    def _register(self, name: str, impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, impl=impl)

    def _register_int_only(self, name: str, arity: int, func: Callable[..., Any]) -> None:
        def impl(interpreter: "Interpreter", location: SourceLocation) -> None:
            ints = [np.uint32(interpreter._pop_int(name, location)) for _ in range(arity)]
            interpreter.stack.append(_as_word(func(*ints)))

        self.table[name] = BuiltinFunction(name=name, impl=impl)

    def __contains__(self, name: str) -> bool:
        return name in self.table

    def invoke(self, interpreter: "Interpreter", name: str, location: SourceLocation) -> None:
        builtin = self.table.get(name)
        if builtin is None:
            raise UnknownFunctionReference(f"Unknown built-in function '{name}'", location=location, rule=name)
        builtin.impl(interpreter, location)

    # Word arithmetic
    def _nand(self, a: np.uint32, b: np.uint32) -> np.uint32:
        return np.invert(np.bitwise_and(a, b, dtype=np.uint32), dtype=np.uint32)

    def _shift_left(self, value: np.uint32) -> np.uint32:
        return np.left_shift(value, np.uint32(1), dtype=np.uint32)

    def _shift_right(self, value: np.uint32) -> np.uint32:
        return np.right_shift(value, np.uint32(1), dtype=np.uint32)

    # I/O
    def _print(self, interpreter: "Interpreter", location: SourceLocation) -> None:
        stack = interpreter.stack
        index = len(stack) - 1
        # A zero on top opens the string; the scan starts beneath it.
        if index >= 0 and stack[index] == Word(TYPE_INT, 0):
            index -= 1
        chars: List[str] = []
        while index >= 0:
            word = stack[index]
            if word.type != TYPE_INT:
                raise WordTypeError(
                    f"__print__ expected a character but found {word}",
                    location=location,
                    rule="__print__",
                )
            if word.value == 0:
                break
            chars.append(self._code_point(word.value, location))
            index -= 1
        text = "".join(chars)
        interpreter.output_sink(text)

    def _code_point(self, value: int, location: SourceLocation) -> str:
        if value > 0x10FFFF or 0xD800 <= value <= 0xDFFF:
            raise WordTypeError(f"{value} is not a valid code point", location=location, rule="__print__")
        return chr(value)

    def _input(self, interpreter: "Interpreter", location: SourceLocation) -> None:
        try:
            line = interpreter.input_provider()
        except EOFError:
            line = None
        except (OSError, UnicodeDecodeError) as exc:
            raise InputError(f"Failed to read from standard input: {exc}", location=location, rule="__input__")
        if line is None:
            line = ""
        if line.endswith("\n"):
            line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]
        # First character read ends up deepest.
        interpreter.stack.extend(Word.integer(ord(ch)) for ch in line)

    # Stack dialect
    def _dup(self, interpreter: "Interpreter", location: SourceLocation) -> None:
        depth = interpreter._pop_int("__dup__", location)
        interpreter.stack.append(interpreter._peek("__dup__", location, depth))

    def _swap(self, interpreter: "Interpreter", location: SourceLocation) -> None:
        depth = interpreter._pop_int("__swap__", location)
        other = interpreter._peek("__swap__", location, depth)
        stack = interpreter.stack
        stack[-1 - depth], stack[-1] = stack[-1], other


def _stdout_sink(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _stderr_sink(text: str) -> None:
    print(text, file=sys.stderr)


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str,
        verbose: bool = False,
        debug: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_steps: Optional[int] = None,
        dialect: str = DIALECT_NAMED,
        rng: Optional[np.random.Generator] = None,
        seed: Optional[int] = None,
        input_provider: Optional[Callable[[], Optional[str]]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        trace_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        if max_steps is not None and max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.verbose = verbose
        self.debug = debug
        self.max_depth = max_depth
        self.max_steps = max_steps
        self.dialect = dialect
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.input_provider = input_provider or sys.stdin.readline
        self.output_sink = output_sink or _stdout_sink
        self.trace_sink = trace_sink or _stderr_sink
        self.builtins = Builtins(dialect)

        self.functions: Mapping[str, FunctionDef] = MappingProxyType({})
        self.stack: List[Word] = []
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.halted = False
        self.logger = StateLogger(verbose=verbose)

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, self._source_lines, dialect=self.dialect)
        return parser.parse()

    def run(self) -> int:
        """Parses and executes the program. Returns the exit status."""
        program = self.parse()
        self.functions = program.functions
        self.call_stack.append(self._new_frame(TOP_LEVEL, program.statements, (), None))
        try:
            self._execute()
        except ExitSignal as sig:
            # EXIT discards every pending frame.
            self.halted = True
            self.call_stack.clear()
            return sig.code
        except PlatesRuntimeError as error:
            if self.logger.last_entry:
                error.step_index = self.logger.last_entry.step_index
            raise
        except Exception as exc:
            last = self.logger.last_entry
            wrapped = PlatesRuntimeError(
                f"Internal interpreter error: {exc}",
                location=last.source_location if last else None,
                rule="internal",
            )
            if last:
                wrapped.step_index = last.step_index
            raise wrapped from exc
        self.halted = True
        return 0

    def _execute(self) -> None:
        call_stack = self.call_stack
        execute_stmt = self._execute_statement
        while call_stack:
            frame = call_stack[-1]
            if frame.exhausted:
                self._pop_frame()
                continue
            statement = frame.body[frame.cursor]
            frame.cursor += 1
            execute_stmt(statement, frame)

    def _execute_statement(self, statement: Statement, frame: Frame) -> None:
        self._log_step(statement, frame)
        location = statement.location
        if isinstance(statement, PushInteger):
            self.stack.append(Word.integer(statement.value))
        elif isinstance(statement, PushFunction):
            if statement.name not in self.functions and statement.name not in self.builtins:
                raise UnknownFunctionReference(
                    f"Function '{statement.name}' is not defined", location=location, rule="PUSH"
                )
            self.stack.append(Word.function(statement.name))
        elif isinstance(statement, PushRandom):
            self.stack.append(Word.integer(int(self.rng.integers(0, 256))))
        elif isinstance(statement, PushDuplicate):
            self.stack.append(self._peek("PUSH ^", location))
        elif isinstance(statement, PushArgument):
            # The parser has already checked the index against the signature.
            self.stack.append(frame.bindings[statement.index])
        elif isinstance(statement, CallIf):
            self._execute_callif(statement, frame)
        elif isinstance(statement, Exit):
            raise ExitSignal(0)
        else:
            raise PlatesRuntimeError(f"Unsupported statement {statement.__class__.__name__}", location=location)
        if self.debug:
            self.trace_sink(f"{describe(statement):<16} {self.stack_to_string()}")

    def _execute_callif(self, statement: CallIf, frame: Frame) -> None:
        location = statement.location
        condition = self._pop_int("CALLIF", location)
        name = self._pop_function("CALLIF", location)
        if condition == 0:
            return
        if name in self.builtins:
            self.builtins.invoke(self, name, location)
            return
        function = self.functions.get(name)
        if function is None:
            raise UnknownFunctionReference(f"Function '{name}' is not defined", location=location, rule="CALLIF")

        count = function.param_count
        if len(self.stack) < count:
            raise StackUnderflow(
                f"Function '{name}' expects {count} arguments but the stack holds {len(self.stack)}",
                location=location,
                rule=name,
            )
        bindings: Tuple[Word, ...] = ()
        if count:
            bindings = tuple(reversed(self.stack[-count:]))
            del self.stack[-count:]

        # A call in tail position replaces the finished caller frame.
        if frame.exhausted and frame.name != TOP_LEVEL:
            self._pop_frame()
        if len(self.call_stack) > self.max_depth:
            raise StackOverflow(
                f"Maximum call depth of {self.max_depth} exceeded calling '{name}'",
                location=location,
                rule=name,
            )
        self.call_stack.append(self._new_frame(name, function.body, bindings, location))

    # Stack helpers
    def _pop(self, rule: str, location: Optional[SourceLocation]) -> Word:
        if not self.stack:
            raise StackUnderflow(f"{rule} cannot pop from an empty stack", location=location, rule=rule)
        return self.stack.pop()

    def _pop_int(self, rule: str, location: Optional[SourceLocation]) -> int:
        word = self._pop(rule, location)
        if word.type != TYPE_INT:
            raise WordTypeError(f"{rule} expected data but received {word}", location=location, rule=rule)
        return int(word.value)

    def _pop_function(self, rule: str, location: Optional[SourceLocation]) -> str:
        word = self._pop(rule, location)
        if word.type != TYPE_FUNC:
            raise WordTypeError(f"{rule} expected a function but received data {word}", location=location, rule=rule)
        return str(word.value)

    def _peek(self, rule: str, location: Optional[SourceLocation], depth: int = 0) -> Word:
        if depth >= len(self.stack):
            raise StackUnderflow(
                f"{rule} needs {depth + 1} words but the stack holds {len(self.stack)}",
                location=location,
                rule=rule,
            )
        return self.stack[-1 - depth]

    def stack_top_first(self) -> List[Word]:
        return list(reversed(self.stack))

    def stack_to_string(self) -> str:
        return f"[{', '.join(str(word) for word in self.stack)}]  <-- top"

    # Frames and step log
    def _new_frame(
        self,
        name: str,
        body: Sequence[Statement],
        bindings: Tuple[Word, ...],
        call_location: Optional[SourceLocation],
    ) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, body=body, bindings=bindings, frame_id=frame_id, call_location=call_location)

    def _pop_frame(self) -> None:
        frame = self.call_stack.pop()
        self.logger.forget_frame(frame.frame_id)

    def _log_step(self, statement: Statement, frame: Frame) -> None:
        if self.max_steps is not None and self.logger.next_state_index >= self.max_steps:
            raise StepLimitExceeded(
                f"Step limit of {self.max_steps} instructions reached",
                location=statement.location,
                rule="host",
            )
        snapshot = [str(word) for word in self.stack] if self.verbose else None
        self.logger.record(
            frame=frame,
            location=statement.location,
            statement=describe(statement),
            stack_snapshot=snapshot,
        )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    statement=location.statement if location else None,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: PlatesRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.stack_snapshot is not None:
                    lines.append(f"    Stack: [{', '.join(frame.state_entry.stack_snapshot)}]")
        where = ""
        if error.location:
            where = f" at {error.location.file}:{error.location.line}:{error.location.column}"
        lines.append(f"{error.kind}: {error.message}{where}")
        return "\n".join(lines)

    def to_json(self, error: PlatesRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.stack_snapshot is not None:
                    entry["stack_snapshot"] = frame.state_entry.stack_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.kind,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)

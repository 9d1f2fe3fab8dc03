from typing import List

import pytest

from interpreter import Interpreter
from world import Direction, World


def wrap_program(body: str, definitions: str = "") -> str:
    """Place execution statements (and optional definitions) inside the
    program delimiters. Body statements start on line 3 when there are no
    definitions."""
    return (
        "BEGINNING-OF-PROGRAM\n"
        f"{definitions}"
        "BEGINNING-OF-EXECUTION\n"
        f"{body}\n"
        "END-OF-EXECUTION\n"
        "END-OF-PROGRAM\n"
    )


async def no_sleep(_seconds: float) -> None:
    return None


class Recorder:
    def __init__(self) -> None:
        self.lines: List[int] = []
        self.completed = 0
        self.errors: list = []

    def on_step(self, line: int) -> None:
        self.lines.append(line)

    def on_complete(self) -> None:
        self.completed += 1

    def on_error(self, error) -> None:
        self.errors.append(error)


@pytest.fixture
def world() -> World:
    return World.empty(3, 3, 1, 1, Direction.NORTH)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_interpreter(recorder):
    def factory(world: World, source: str, **kwargs) -> Interpreter:
        kwargs.setdefault("sleep", no_sleep)
        interp = Interpreter(
            world,
            on_step=recorder.on_step,
            on_complete=recorder.on_complete,
            on_error=recorder.on_error,
            **kwargs,
        )
        interp.load(source)
        return interp

    return factory

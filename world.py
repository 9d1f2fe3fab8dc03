"""Karel's world: a bounded grid, walls between adjacent cells, beeper piles
and the one robot that lives in it.

Cells use 1-based ``(x, y)`` coordinates with ``y`` growing north. Walls are
undirected edges between grid-adjacent cells; a cell outside the grid is
always blocked.
"""

from __future__ import annotations
import json
from enum import IntEnum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from lexer import KarelError


Position = Tuple[int, int]


class KarelRuntimeError(KarelError):
    """Raised for faults while a program is executing."""

    def __init__(self, message: str, *, line: Optional[int] = None, rule: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.rule = rule
        self.step_index: Optional[int] = None


class BlockedPathError(KarelRuntimeError):
    pass


class NoBeeperError(KarelRuntimeError):
    pass


class EmptyBagError(KarelRuntimeError):
    pass


class UnknownConditionError(KarelRuntimeError):
    pass


class WorldContractError(KarelError):
    """Raised when a world description is invalid."""


class Direction(IntEnum):
    # Counter-clockwise order, so a left turn is (d + 1) % 4.
    NORTH = 0
    WEST = 1
    SOUTH = 2
    EAST = 3


DIRECTION_VECTORS: Dict[Direction, Position] = {
    Direction.NORTH: (0, 1),
    Direction.WEST: (-1, 0),
    Direction.SOUTH: (0, -1),
    Direction.EAST: (1, 0),
}

DIRECTION_GLYPHS: Dict[Direction, str] = {
    Direction.NORTH: "^",
    Direction.WEST: "<",
    Direction.SOUTH: "v",
    Direction.EAST: ">",
}

_DIRECTION_NAMES = {
    "north": Direction.NORTH,
    "n": Direction.NORTH,
    "west": Direction.WEST,
    "w": Direction.WEST,
    "south": Direction.SOUTH,
    "s": Direction.SOUTH,
    "east": Direction.EAST,
    "e": Direction.EAST,
}


def parse_direction(value: Union[int, str, Direction]) -> Direction:
    if isinstance(value, bool):
        raise WorldContractError(f"Invalid direction value: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 3:
            return Direction(value)
        raise WorldContractError(f"Invalid direction value: {value}")
    if isinstance(value, str):
        try:
            return _DIRECTION_NAMES[value.strip().lower()]
        except KeyError:
            raise WorldContractError(f"Invalid direction string: {value}")
    raise WorldContractError(f"Invalid direction value: {value!r}")


def are_adjacent(a: Position, b: Position) -> bool:
    return abs(a[0] - b[0]) + abs(a[1] - b[1]) == 1


def _offset(position: Position, direction: Direction) -> Position:
    dx, dy = DIRECTION_VECTORS[direction]
    return (position[0] + dx, position[1] + dy)


class Karel:
    """The robot: where it stands, where it faces, what it carries."""

    __slots__ = ("position", "facing", "beepers")

    def __init__(self, position: Position = (1, 1), facing: Direction = Direction.NORTH, beepers: int = 0) -> None:
        self.position: Position = (int(position[0]), int(position[1]))
        self.facing = Direction(facing)
        self.beepers = int(beepers)

    @property
    def x(self) -> int:
        return self.position[0]

    @property
    def y(self) -> int:
        return self.position[1]

    def front_position(self) -> Position:
        return _offset(self.position, self.facing)

    def left_position(self) -> Position:
        return _offset(self.position, Direction((self.facing + 1) % 4))

    def right_position(self) -> Position:
        return _offset(self.position, Direction((self.facing + 3) % 4))

    def turn_left(self) -> None:
        self.facing = Direction((self.facing + 1) % 4)

    def copy_from(self, other: "Karel") -> None:
        self.position = other.position
        self.facing = other.facing
        self.beepers = other.beepers

    def clone(self) -> "Karel":
        return Karel(self.position, self.facing, self.beepers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": self.position[0],
            "y": self.position[1],
            "facing": self.facing.name.lower(),
            "beepers": self.beepers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Karel":
        try:
            x = int(data["x"])
            y = int(data["y"])
        except (KeyError, TypeError, ValueError):
            raise WorldContractError("Invalid map: karel needs integer x and y")
        facing = parse_direction(data.get("facing", Direction.NORTH))
        beepers = data.get("beepers", 0)
        if not isinstance(beepers, int) or isinstance(beepers, bool) or beepers < 0:
            raise WorldContractError(f"Invalid map: karel beeper count must be a non-negative integer, got {beepers!r}")
        return cls((x, y), facing, beepers)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Karel):
            return NotImplemented
        return (self.position, self.facing, self.beepers) == (other.position, other.facing, other.beepers)

    def __repr__(self) -> str:
        return f"Karel(position={self.position}, facing={self.facing.name}, beepers={self.beepers})"


WallKey = FrozenSet[Position]

MAX_BEEPERS_PER_CELL = int(np.iinfo(np.int64).max)


class World:
    def __init__(
        self,
        width: int,
        height: int,
        karel: Optional[Karel] = None,
        *,
        beepers: Optional[List[Tuple[Position, int]]] = None,
        walls: Optional[List[Tuple[Position, Position]]] = None,
    ) -> None:
        if not isinstance(width, int) or not isinstance(height, int) or width < 1 or height < 1:
            raise WorldContractError(f"Invalid map: dimensions must be positive integers, got {width!r}x{height!r}")
        self.width = width
        self.height = height
        self.karel = karel.clone() if karel is not None else Karel()
        if not self.is_in_bounds(self.karel.position):
            raise WorldContractError(
                f"Karel is out of bounds at position ({self.karel.x}, {self.karel.y})"
            )
        if self.karel.beepers < 0:
            raise WorldContractError("Invalid map: karel beeper count must be non-negative")

        # Row index is y - 1, column index is x - 1.
        self._beepers: NDArray[np.int64] = np.zeros((height, width), dtype=np.int64)
        for position, count in beepers or []:
            self.add_beepers(position, count)

        self._walls: Set[WallKey] = set()
        for a, b in walls or []:
            self.add_wall(a, b)

        self._initial_karel = self.karel.clone()
        self._initial_beepers = self._beepers.copy()
        self.is_modified = False

    # ---- construction helpers ----

    @classmethod
    def empty(
        cls,
        width: int,
        height: int,
        x: int = 1,
        y: int = 1,
        facing: Direction = Direction.NORTH,
        beepers: int = 0,
    ) -> "World":
        return cls(width, height, Karel((x, y), facing, beepers))

    @classmethod
    def from_description(cls, data: Dict[str, Any]) -> "World":
        if not isinstance(data, dict) or "dimensions" not in data or "karel" not in data:
            raise WorldContractError("Invalid map file: missing dimensions or karel")
        dims = data["dimensions"]
        try:
            width, height = dims["width"], dims["height"]
        except (KeyError, TypeError):
            raise WorldContractError("Invalid map file: dimensions need width and height")
        karel = Karel.from_dict(data["karel"])
        beepers: List[Tuple[Position, int]] = []
        for entry in data.get("beepers", []):
            try:
                beepers.append(((int(entry["x"]), int(entry["y"])), int(entry.get("count", 1))))
            except (KeyError, TypeError, ValueError):
                raise WorldContractError(f"Invalid beeper entry: {entry!r}")
        walls: List[Tuple[Position, Position]] = []
        for entry in data.get("walls", []):
            try:
                a = (int(entry["from"]["x"]), int(entry["from"]["y"]))
                b = (int(entry["to"]["x"]), int(entry["to"]["y"]))
            except (KeyError, TypeError, ValueError):
                raise WorldContractError(f"Invalid wall entry: {entry!r}")
            walls.append((a, b))
        return cls(width, height, karel, beepers=beepers, walls=walls)

    def to_description(self) -> Dict[str, Any]:
        return {
            "dimensions": {"width": self.width, "height": self.height},
            "karel": self.karel.to_dict(),
            "beepers": [{"x": x, "y": y, "count": count} for (x, y), count in sorted(self.beeper_map().items())],
            "walls": [{"from": {"x": a[0], "y": a[1]}, "to": {"x": b[0], "y": b[1]}} for a, b in self.all_walls()],
        }

    def add_wall(self, a: Position, b: Position) -> None:
        if not are_adjacent(a, b):
            raise WorldContractError(
                f"Invalid wall: cells ({a[0]}, {a[1]}) and ({b[0]}, {b[1]}) are not adjacent"
            )
        self._walls.add(frozenset((tuple(a), tuple(b))))

    def add_beepers(self, position: Position, count: int = 1) -> None:
        if not self.is_in_bounds(position):
            raise WorldContractError(f"Invalid beeper position ({position[0]}, {position[1]}): outside the world")
        x, y = position
        if not isinstance(count, (int, np.integer)) or isinstance(count, bool) or count < 0:
            raise WorldContractError(f"Invalid beeper count {count!r} at ({x}, {y})")
        current = int(self._beepers[y - 1, x - 1])
        if int(count) > MAX_BEEPERS_PER_CELL - current:
            raise WorldContractError(
                f"Invalid beeper count at ({x}, {y}): {current + int(count)} exceeds {MAX_BEEPERS_PER_CELL}"
            )
        self._beepers[y - 1, x - 1] = current + int(count)

    # ---- queries ----

    def is_in_bounds(self, position: Position) -> bool:
        x, y = position
        return 1 <= x <= self.width and 1 <= y <= self.height

    def has_wall(self, a: Position, b: Position) -> bool:
        return frozenset((tuple(a), tuple(b))) in self._walls

    def is_blocked(self, from_pos: Position, to_pos: Position) -> bool:
        if not self.is_in_bounds(to_pos) or not self.is_in_bounds(from_pos):
            return True
        return self.has_wall(from_pos, to_pos)

    def beepers_at(self, position: Position) -> int:
        if not self.is_in_bounds(position):
            return 0
        return int(self._beepers[position[1] - 1, position[0] - 1])

    def beeper_map(self) -> Dict[Position, int]:
        """Cells holding at least one beeper. Empty cells are never listed."""
        rows, cols = np.nonzero(self._beepers)
        return {(int(c) + 1, int(r) + 1): int(self._beepers[r, c]) for r, c in zip(rows, cols)}

    def all_walls(self) -> List[Tuple[Position, Position]]:
        return sorted(tuple(sorted(key)) for key in self._walls)  # type: ignore[misc]

    # ---- sensing ----

    def front_is_blocked(self) -> bool:
        return self.is_blocked(self.karel.position, self.karel.front_position())

    def front_is_clear(self) -> bool:
        return not self.front_is_blocked()

    def left_is_blocked(self) -> bool:
        return self.is_blocked(self.karel.position, self.karel.left_position())

    def left_is_clear(self) -> bool:
        return not self.left_is_blocked()

    def right_is_blocked(self) -> bool:
        return self.is_blocked(self.karel.position, self.karel.right_position())

    def right_is_clear(self) -> bool:
        return not self.right_is_blocked()

    def next_to_a_beeper(self) -> bool:
        return self.beepers_at(self.karel.position) > 0

    def beeper_in_bag(self) -> bool:
        return self.karel.beepers > 0

    def is_facing(self, direction: Direction) -> bool:
        return self.karel.facing == direction

    def evaluate_condition(self, name: str) -> bool:
        predicate = CONDITION_TABLE.get(name.lower())
        if predicate is None:
            raise UnknownConditionError(f"Unknown condition: {name}", rule=name)
        return predicate(self)

    # ---- actions ----

    def move(self) -> None:
        if self.front_is_blocked():
            raise BlockedPathError("Cannot move: front is blocked", rule="move")
        self.karel.position = self.karel.front_position()
        self.is_modified = True

    def turn_left(self) -> None:
        self.karel.turn_left()
        self.is_modified = True

    def pick_beeper(self) -> None:
        x, y = self.karel.position
        if self._beepers[y - 1, x - 1] <= 0:
            raise NoBeeperError(f"Cannot pick beeper: no beepers at position ({x}, {y})", rule="pickbeeper")
        self._beepers[y - 1, x - 1] -= 1
        self.karel.beepers += 1
        self.is_modified = True

    def put_beeper(self) -> None:
        if self.karel.beepers <= 0:
            raise EmptyBagError("Cannot put beeper: no beepers in bag", rule="putbeeper")
        x, y = self.karel.position
        self.karel.beepers -= 1
        self._beepers[y - 1, x - 1] += 1
        self.is_modified = True

    # ---- state ----

    def reset(self) -> None:
        self.karel.copy_from(self._initial_karel)
        np.copyto(self._beepers, self._initial_beepers)
        self.is_modified = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "karel": self.karel.to_dict(),
            "beepers": {f"{x},{y}": n for (x, y), n in sorted(self.beeper_map().items())},
        }

    def render(self) -> str:
        """Draw the world as text, north at the top.

        Cells sit on odd rows/columns of a character grid; the even slots
        between two cells hold ``|`` or ``-`` where a wall separates them.
        """
        grid = np.full((2 * self.height + 1, 2 * self.width + 1), " ", dtype="<U1")
        grid[0, :] = "-"
        grid[-1, :] = "-"
        grid[:, 0] = "|"
        grid[:, -1] = "|"
        grid[0, 0] = grid[0, -1] = grid[-1, 0] = grid[-1, -1] = "+"

        def cell(x: int, y: int) -> Tuple[int, int]:
            return 2 * (self.height - y) + 1, 2 * (x - 1) + 1

        for y in range(1, self.height + 1):
            for x in range(1, self.width + 1):
                r, c = cell(x, y)
                count = int(self._beepers[y - 1, x - 1])
                grid[r, c] = "." if count == 0 else (str(count) if count < 10 else "*")
        for a, b in self.all_walls():
            if not (self.is_in_bounds(a) and self.is_in_bounds(b)):
                continue
            ra, ca = cell(*a)
            rb, cb = cell(*b)
            grid[(ra + rb) // 2, (ca + cb) // 2] = "|" if ra == rb else "-"
        r, c = cell(*self.karel.position)
        grid[r, c] = DIRECTION_GLYPHS[self.karel.facing]
        return "\n".join("".join(row).rstrip() for row in grid)


CONDITION_TABLE: Dict[str, Callable[[World], bool]] = {
    "front-is-clear": World.front_is_clear,
    "front-is-blocked": World.front_is_blocked,
    "left-is-clear": World.left_is_clear,
    "left-is-blocked": World.left_is_blocked,
    "right-is-clear": World.right_is_clear,
    "right-is-blocked": World.right_is_blocked,
    "next-to-a-beeper": World.next_to_a_beeper,
    "not-next-to-a-beeper": lambda w: not w.next_to_a_beeper(),
    "facing-north": lambda w: w.is_facing(Direction.NORTH),
    "not-facing-north": lambda w: not w.is_facing(Direction.NORTH),
    "facing-south": lambda w: w.is_facing(Direction.SOUTH),
    "not-facing-south": lambda w: not w.is_facing(Direction.SOUTH),
    "facing-east": lambda w: w.is_facing(Direction.EAST),
    "not-facing-east": lambda w: not w.is_facing(Direction.EAST),
    "facing-west": lambda w: w.is_facing(Direction.WEST),
    "not-facing-west": lambda w: not w.is_facing(Direction.WEST),
    "beeper-in-bag": World.beeper_in_bag,
}


def load_world(path: str) -> World:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise WorldContractError(f"Invalid map file {path}: {exc}")
    return World.from_description(data)


def save_world(world: World, path: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(world.to_description(), handle, indent=2)
        handle.write("\n")

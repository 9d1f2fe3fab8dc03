"""Karel extension: robot trail.

Records the cell the robot occupies after every step in ``interp.trail``,
starting with its position when the program is loaded or reset. When the
interpreter is verbose, the trail is printed once the program ends.
"""

from __future__ import annotations

from typing import Any

from extensions import ExtensionAPI, StepContext

KAREL_EXTENSION_NAME = "trail"
KAREL_EXTENSION_API_VERSION = 1


def _start(interp: Any, *_: Any) -> None:
    interp.trail = [interp.world.karel.position]


def _record(interp: Any, ctx: StepContext) -> None:
    trail = interp.trail
    if trail[-1] != ctx.position:
        trail.append(ctx.position)


def _report(interp: Any) -> None:
    if not interp.verbose:
        return
    path = " -> ".join(f"({x},{y})" for x, y in interp.trail)
    print(f"trail: {path}")


def karel_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=KAREL_EXTENSION_NAME, version="1.0.0")
    ext.on_event("program_load", _start)
    ext.on_event("reset", _start)
    ext.on_event("program_end", _report)
    ext.every_n_steps(1, _record, name="trail")

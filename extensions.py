"""Extension hooks for the Karel interpreter.

An extension is a Python file defining ``karel_register(ext)``. It may
subscribe to interpreter events or ask to be called after every N visible
steps. Extensions are found by file path or, for the ones shipped in
``ext/``, by bare name (``--ext trail``).
"""

from __future__ import annotations

import importlib.util
import itertools
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

BUNDLED_EXTENSION_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "ext")

# event name -> arguments passed to its handlers
EVENTS: Dict[str, str] = {
    "program_load": "(interp, parse_result)",
    "before_step": "(interp, call)",
    "program_end": "(interp)",
    "on_error": "(interp, error)",
    "reset": "(interp)",
}

_module_counter = itertools.count()


class KarelExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    """What a step rule sees: the finished step and the robot after it."""

    step_index: int
    rule: str
    line: Optional[int]
    position: Tuple[int, int]
    facing: str
    beepers: int
    extra: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class EventHook:
    priority: int
    handler: Callable[..., None]
    ext_name: str


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: Callable[[Any, StepContext], None]
    ext_name: str

    def wants(self, step_index: int) -> bool:
        return step_index % self.every_n == 0


@dataclass
class HookRegistry:
    events: Dict[str, List[EventHook]] = field(default_factory=dict)
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, ext_name: str = "host") -> None:
        if event not in EVENTS:
            raise KarelExtensionError(f"Unknown event '{event}' (known: {', '.join(EVENTS)})")
        hooks = self.events.setdefault(event, [])
        hooks.append(EventHook(priority, handler, ext_name))
        # Stable sort: equal priorities keep registration order.
        hooks.sort(key=lambda hook: -hook.priority)

    def emit(self, event: str, *args: Any) -> None:
        for hook in self.events.get(event, []):
            hook.handler(*args)

    def add_step_rule(
        self,
        *,
        name: str,
        every_n: int,
        handler: Callable[[Any, StepContext], None],
        ext_name: str = "host",
    ) -> None:
        if every_n <= 0:
            raise KarelExtensionError(f"Step rule '{name}': every_n must be >= 1, got {every_n}")
        self.step_rules.append(StepRule(name, every_n, handler, ext_name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if rule.wants(ctx.step_index):
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)

    def loaded_names(self) -> List[str]:
        return [meta.name for meta in self.metadata]


class ExtensionAPI:
    """Handle passed to ``karel_register``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api > EXTENSION_API_VERSION:
            raise KarelExtensionError(
                f"Extension '{name}' needs API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        if handler is not None:
            registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
            return handler

        def deco(fn: Callable[..., None]) -> Callable[..., None]:
            registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return deco

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        registry = self._services.hook_registry
        if handler is not None:
            registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
            return handler

        def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
            return fn

        return deco


def resolve_extension(reference: str) -> str:
    """Turn a path or a bundled extension name into an absolute file path."""
    if os.path.isfile(reference):
        return os.path.abspath(reference)
    bundled = os.path.join(BUNDLED_EXTENSION_DIR, reference + ".py")
    if os.sep not in reference and os.path.isfile(bundled):
        return bundled
    raise KarelExtensionError(f"Extension not found: {reference}")


def load_extension_module(path: str) -> Any:
    stem = os.path.splitext(os.path.basename(path))[0]
    module_name = f"karel_ext_{stem}_{next(_module_counter)}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise KarelExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(references: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for reference in references:
        path = resolve_extension(reference)
        module = load_extension_module(path)
        api_version = getattr(module, "KAREL_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise KarelExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "karel_register", None)
        if not callable(register):
            raise KarelExtensionError(f"Extension {path} must define callable karel_register(ext)")
        ext_name = str(getattr(module, "KAREL_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        if ext_name in services.loaded_names():
            raise KarelExtensionError(f"Extension '{ext_name}' is already loaded")
        register(ExtensionAPI(services=services, ext_name=ext_name))
        if ext_name not in services.loaded_names():
            services.metadata.append(ExtensionMetadata(name=ext_name))
    return services

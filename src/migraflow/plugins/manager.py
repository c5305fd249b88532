# src/migraflow/plugins/manager.py
"""Plugin manager for stage handler discovery and lookup.

Uses pluggy for hook-based registration. Handlers come from three places:

- objects registered directly (embedding code, tests)
- modules listed in ``settings.plugins``
- installed distributions exposing the ``migraflow`` entry point group
"""

import importlib
from dataclasses import dataclass
from typing import Any

import pluggy
import structlog

from migraflow.contracts.enums import StageName
from migraflow.contracts.errors import HandlerNotFoundError
from migraflow.plugins.hookspecs import PROJECT_NAME, MigraflowStageSpec
from migraflow.plugins.protocols import StageHandler

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HandlerSpec:
    """Registration record for a stage handler."""

    name: str
    stage: StageName
    handler_class: str

    @classmethod
    def from_handler(cls, handler: StageHandler) -> "HandlerSpec":
        handler_type = type(handler)
        return cls(
            name=handler.name,
            stage=StageName(handler.stage),
            handler_class=f"{handler_type.__module__}.{handler_type.__qualname__}",
        )


class PluginManager:
    """Manages stage handler discovery, registration, and lookup.

    Usage:
        manager = PluginManager()
        manager.register(MyPlugin())

        handler = manager.get_handler(StageName.EXTRACT)
    """

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(MigraflowStageSpec)
        self._handlers: dict[StageName, StageHandler] = {}

    def register(self, plugin: Any) -> None:
        """Register a plugin object or module implementing hook methods.

        Raises:
            ValueError: If two handlers claim the same stage
        """
        self._pm.register(plugin)
        self._refresh_caches()

    def load_modules(self, module_paths: list[str]) -> None:
        """Import and register each module path (from ``settings.plugins``)."""
        for path in module_paths:
            module = importlib.import_module(path)
            if self._pm.is_registered(module):
                continue
            self._pm.register(module)
            slog.debug("plugin_module_registered", module=path)
        self._refresh_caches()

    def load_entrypoints(self) -> int:
        """Register plugins from installed distributions. Returns how many loaded."""
        count = self._pm.load_setuptools_entrypoints(PROJECT_NAME)
        self._refresh_caches()
        return count

    def _refresh_caches(self) -> None:
        """Rebuild the stage -> handler map from all hook implementations.

        Raises:
            ValueError: If a stage is claimed by more than one handler
        """
        new_handlers: dict[StageName, StageHandler] = {}
        for handlers in self._pm.hook.migraflow_stage_handlers():
            for handler in handlers:
                if not isinstance(handler, StageHandler):
                    raise TypeError(f"{handler!r} does not implement the StageHandler protocol")
                stage = StageName(handler.stage)
                if stage in new_handlers:
                    raise ValueError(
                        f"Duplicate handler for stage '{stage}': '{handler.name}' conflicts with '{new_handlers[stage].name}'"
                    )
                new_handlers[stage] = handler
        self._handlers = new_handlers

    def get_handler(self, stage: StageName) -> StageHandler:
        """Look up the handler for a stage.

        Raises:
            HandlerNotFoundError: No handler registered (a permanent failure)
        """
        handler = self._handlers.get(stage)
        if handler is None:
            raise HandlerNotFoundError(stage.value)
        return handler

    def has_handler(self, stage: StageName) -> bool:
        return stage in self._handlers

    def list_handlers(self) -> list[HandlerSpec]:
        """Registered handlers in pipeline order."""
        return [HandlerSpec.from_handler(self._handlers[stage]) for stage in StageName if stage in self._handlers]


def build_plugin_manager(module_paths: list[str], *, entrypoints: bool = True) -> PluginManager:
    """Plugin manager loaded from settings modules and installed entry points."""
    manager = PluginManager()
    if entrypoints:
        manager.load_entrypoints()
    manager.load_modules(module_paths)
    return manager

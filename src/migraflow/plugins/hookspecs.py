# src/migraflow/plugins/hookspecs.py
"""pluggy hook specifications for Migraflow plugins.

Plugins implement these hooks to register stage handlers with the engine.
The plugin manager calls them once at startup.

Usage (implementing a plugin):
    from migraflow.plugins.hookspecs import hookimpl

    class PostgresLoadPlugin:
        @hookimpl  # NOT @hookspec - that's for defining specs
        def migraflow_stage_handlers(self):
            return [LoadDimensionsHandler(), LoadFactsHandler()]

Note: @hookspec defines the hook interface (done here).
      @hookimpl marks plugin implementations of those hooks.
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from migraflow.plugins.protocols import StageHandler

# Project name for pluggy; also the setuptools entry point group
PROJECT_NAME = "migraflow"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class MigraflowStageSpec:
    """Hook specifications for stage handler plugins."""

    @hookspec
    def migraflow_stage_handlers(self) -> list["StageHandler"]:  # type: ignore[empty-body]
        """Return stage handler instances.

        Returns:
            List of handlers; each declares the stage it runs
        """

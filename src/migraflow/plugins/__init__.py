"""Stage handler plugin system.

Provides:
- StageHandler protocol and StageContext
- pluggy hook specifications and the hookimpl marker
- PluginManager for discovery and lookup
"""

from migraflow.plugins.context import StageContext
from migraflow.plugins.hookspecs import hookimpl, hookspec
from migraflow.plugins.manager import HandlerSpec, PluginManager, build_plugin_manager
from migraflow.plugins.protocols import StageHandler

__all__ = [
    "HandlerSpec",
    "PluginManager",
    "StageContext",
    "StageHandler",
    "build_plugin_manager",
    "hookimpl",
    "hookspec",
]

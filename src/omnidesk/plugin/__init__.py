"""Channel-kind plugins.

Each plugin contributes one or more channel kinds: how to build a transport
for a channel row, how to turn that provider's raw updates into
``InboundEvent`` objects and which kinds can be long-polled. Hooks are
declared in ``hookspecs`` and dispatched through pluggy.
"""

from __future__ import annotations

import importlib

import pluggy

from omnidesk.config import get_settings
from omnidesk.logger import logger
from omnidesk.plugin.hookspecs import OmnideskSpec

__all__ = [
    "get_plugin_manager",
    "pollable_kinds",
]

# (module, class, key under [plugins.<key>] in config.toml)
_BUILTINS: list[tuple[str, str, str]] = [
    ("omnidesk.plugin.telegram", "TelegramTransportPlugin", "telegram"),
]


def _register_builtins(pm: pluggy.PluginManager) -> None:
    plugins_cfg = get_settings().plugins
    for module_path, class_name, key in _BUILTINS:
        cfg = plugins_cfg.get(key)
        if cfg is not None and not cfg.enabled:
            logger.info("Skipping disabled plugin", plugin=key)
            continue
        try:
            plugin_cls = getattr(importlib.import_module(module_path), class_name)
            pm.register(plugin_cls(), name=f"builtin-{key}")
        except Exception:
            logger.exception("Built-in plugin failed to register", plugin=key)
        else:
            logger.debug("Registered plugin", plugin=key)


def get_plugin_manager() -> pluggy.PluginManager:
    """Build a plugin manager holding the enabled built-ins and any
    packages exposing the ``omnidesk`` entry-point group."""
    pm = pluggy.PluginManager("omnidesk")
    pm.add_hookspecs(OmnideskSpec)
    _register_builtins(pm)

    if loaded := pm.load_setuptools_entrypoints("omnidesk"):
        logger.info("Loaded entry-point plugins", count=loaded)

    # An entry point may name a class rather than an instance; its hook
    # implementations would then be unbound.
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Dropped plugin registered as a class", plugin=name)

    logger.info("Plugins ready", plugins=[pm.get_name(p) for p in pm.get_plugins()])
    return pm


def pollable_kinds(pm: pluggy.PluginManager) -> set[str]:
    """Union of the transport kinds all registered plugins can long-poll."""
    kinds: set[str] = set()
    for result in pm.hook.omnidesk_pollable_kinds():
        kinds.update(result or [])
    return kinds

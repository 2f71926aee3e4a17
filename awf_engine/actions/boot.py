"""Registry construction at service start."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from awf_engine.actions.core import register_core
from awf_engine.actions.modes import register_module_actions
from awf_engine.actions.registry import ActionRegistry
from awf_engine.actions.relationships import MODULE_ID as RELATIONSHIPS_ID
from awf_engine.actions.relationships import register_relationships
from awf_engine.config import Settings
from awf_engine.models import ModuleDoc

logger = logging.getLogger(__name__)

# Modules whose acts are implemented in code rather than declared by mode.
BUILTIN_MODULES = {
    RELATIONSHIPS_ID: register_relationships,
}


def build_registry(settings: Settings, modules: Iterable[ModuleDoc] = ()) -> ActionRegistry:
    """Core acts, built-in modules, then every moded act of `modules`."""
    registry = ActionRegistry(strict=settings.strict_registry)
    register_core(registry)
    for register in BUILTIN_MODULES.values():
        register(registry)

    for module in modules:
        if module.id in BUILTIN_MODULES:
            continue
        types = register_module_actions(registry, module)
        logger.debug("module %s registered %d actions", module.id, len(types))

    registry.health_check()
    logger.info("action registry ready: %d actions", len(registry))
    return registry


def refresh_registry(registry: ActionRegistry, settings: Settings, modules: Iterable[ModuleDoc]) -> None:
    """Rebuild from scratch and swap the new tables into `registry`."""
    registry.swap_in(build_registry(settings, modules))

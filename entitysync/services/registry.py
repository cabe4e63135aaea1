from __future__ import annotations

import importlib
import logging
from collections import defaultdict

from entitysync.core.config import get_settings
from entitysync.core.errors import ConfigurationError
from entitysync.core.integrations import get_integration
from entitysync.services.analysis.analyzers.dattormm import DattoRMMAnalyzer
from entitysync.services.analysis.analyzers.microsoft365 import MFAAnalyzer, StaleUserAnalyzer
from entitysync.services.analysis.analyzers.sophos import SophosTamperProtectionAnalyzer
from entitysync.services.analysis.base import BaseAnalyzer
from entitysync.services.sync.adapters import SourceAdapter
from entitysync.services.sync.fanout import FanOutPolicy, SiteFanOutPolicy
from entitysync.services.sync.linkers.base import BaseLinker
from entitysync.services.sync.linkers.dattormm import DattoRMMLinker
from entitysync.services.sync.linkers.microsoft365 import Microsoft365Linker
from entitysync.services.sync.linkers.sophos import SophosLinker


logger = logging.getLogger(__name__)


class IntegrationRegistry:
    """Maps integration ids to their adapters, linker, analyzers and fan-out policies.

    Resolved once at process start; nothing is looked up by reflection later.
    """

    def __init__(self) -> None:
        self._adapters: dict[tuple[str, str], SourceAdapter] = {}
        self._linkers: dict[str, BaseLinker] = {}
        self._analyzers: dict[str, list[BaseAnalyzer]] = defaultdict(list)
        self._fanout: dict[str, list[FanOutPolicy]] = defaultdict(list)

    def _require_integration(self, integration_id: str) -> None:
        if get_integration(integration_id) is None:
            raise ConfigurationError(f"Unknown integration: {integration_id}")

    def register_adapter(self, adapter: SourceAdapter) -> None:
        self._require_integration(adapter.integration_id)
        self._adapters[(adapter.integration_id, adapter.entity_type)] = adapter

    def get_adapter(self, integration_id: str, entity_type: str) -> SourceAdapter | None:
        return self._adapters.get((integration_id, entity_type))

    def has_adapter(self, integration_id: str, entity_type: str) -> bool:
        return (integration_id, entity_type) in self._adapters

    def register_linker(self, linker: BaseLinker) -> None:
        self._require_integration(linker.integration_id)
        self._linkers[linker.integration_id] = linker

    def get_linker(self, integration_id: str) -> BaseLinker | None:
        return self._linkers.get(integration_id)

    def register_analyzer(self, analyzer: BaseAnalyzer) -> None:
        self._require_integration(analyzer.integration_id)
        self._analyzers[analyzer.integration_id].append(analyzer)

    def get_analyzers(self, integration_id: str) -> list[BaseAnalyzer]:
        return list(self._analyzers.get(integration_id, []))

    def register_fanout_policy(self, integration_id: str, policy: FanOutPolicy) -> None:
        self._require_integration(integration_id)
        self._fanout[integration_id].append(policy)

    def get_fanout_policies(self, integration_id: str) -> list[FanOutPolicy]:
        return list(self._fanout.get(integration_id, []))


def register_bundled(registry: IntegrationRegistry) -> None:
    registry.register_linker(DattoRMMLinker())
    registry.register_linker(SophosLinker())
    registry.register_linker(Microsoft365Linker())
    registry.register_analyzer(DattoRMMAnalyzer())
    registry.register_analyzer(SophosTamperProtectionAnalyzer())
    registry.register_analyzer(StaleUserAnalyzer())
    registry.register_analyzer(MFAAnalyzer())
    registry.register_fanout_policy("dattormm", SiteFanOutPolicy())
    registry.register_fanout_policy("sophos-partner", SiteFanOutPolicy())


def load_plugins(registry: IntegrationRegistry, module_paths: list[str]) -> None:
    # Each plugin module exposes register(registry) and adds its adapters.
    for module_path in module_paths:
        try:
            module = importlib.import_module(module_path)
        except ImportError as exc:
            raise ConfigurationError(f"Adapter plugin {module_path} could not be imported") from exc
        register = getattr(module, "register", None)
        if not callable(register):
            raise ConfigurationError(f"Adapter plugin {module_path} has no register(registry)")
        register(registry)
        logger.info("adapter_plugin_loaded module=%s", module_path)


def _plugin_paths(raw: str) -> list[str]:
    # Accept comma-delimited module paths from settings.
    return [value.strip() for value in raw.split(",") if value.strip()]


def build_registry(*, plugins: str | None = None) -> IntegrationRegistry:
    registry = IntegrationRegistry()
    register_bundled(registry)
    load_plugins(registry, _plugin_paths(get_settings().adapter_plugins if plugins is None else plugins))
    return registry


_registry: IntegrationRegistry | None = None


def get_registry() -> IntegrationRegistry:
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry


def set_registry(registry: IntegrationRegistry | None) -> None:
    global _registry
    _registry = registry

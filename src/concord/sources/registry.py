"""Source registry — builds source bindings from the concord.toml [sources] section."""

from __future__ import annotations
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict

from concord.reconcile.spec import ReconcileSpec
from concord.sources.base import SourceAdapter

# Keys that describe reconciliation rather than the adapter itself
_SPEC_KEYS = ("record_type", "key_field", "fields", "resume")


@dataclass(frozen=True)
class SourceBinding:
    """A named source plus the spec its candidates are reconciled with.

    ``factory`` builds a fresh adapter per run; adapters carry per-run state.
    """

    name: str
    factory: Callable[[], SourceAdapter]
    spec: ReconcileSpec
    resume: bool = False

    def create(self) -> SourceAdapter:
        return self.factory()


class SourceRegistry:
    """Registry for named sources configured in concord.toml."""

    def __init__(self, sources_config: Dict[str, Dict[str, Any]] | None = None):
        """Initialize the source registry.

        Args:
            sources_config: Dict from [sources] section of concord.toml
        """
        self._sources_config = sources_config or {}
        self._adapter_factories = {
            'static': self._get_static,
            'json_file': self._get_json_file,
            'http_api': self._get_http_api,
        }

    def list_sources(self) -> Dict[str, str]:
        """Map each configured source name to its adapter type."""
        return {
            name: config.get('type', 'unknown')
            for name, config in self._sources_config.items()
        }

    def get_binding(self, name: str) -> SourceBinding:
        """Build the binding for a named source.

        Raises:
            KeyError: If source name not found
            ValueError: If source type not supported or config invalid
        """
        if name not in self._sources_config:
            raise KeyError(f"Source '{name}' not found. Available: {list(self._sources_config.keys())}")

        config = dict(self._sources_config[name])
        source_type = config.pop('type', None)
        if not source_type:
            raise ValueError(f"Source '{name}' missing required 'type' field")
        if source_type not in self._adapter_factories:
            raise ValueError(
                f"Unsupported source type '{source_type}'. "
                f"Supported: {list(self._adapter_factories.keys())}"
            )

        if 'key_field' not in config:
            raise ValueError(f"Source '{name}' missing required 'key_field'")
        spec = ReconcileSpec.from_config(
            record_type=config.get('record_type', name),
            key_field=config['key_field'],
            fields=config.get('fields'),
        )
        resume = bool(config.get('resume', False))

        adapter_config = self._resolve_env_vars(
            {k: v for k, v in config.items() if k not in _SPEC_KEYS}
        )
        factory = self._adapter_factories[source_type]
        # Build once up front so bad adapter config fails at load time
        factory(**adapter_config)
        return SourceBinding(
            name=name,
            factory=lambda: factory(**adapter_config),
            spec=spec,
            resume=resume,
        )

    def bindings(self) -> list[SourceBinding]:
        return [self.get_binding(name) for name in self._sources_config]

    def _resolve_env_vars(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve ${ENV_VAR} and ${ENV_VAR:-default} references in config values.

        Raises:
            ValueError: If required environment variable is not set
        """
        resolved = {}
        env_var_pattern = re.compile(r'\$\{([^}]+)\}')

        for key, value in config.items():
            if isinstance(value, str):
                resolved[key] = self._resolve_env_var_string(value, env_var_pattern)
            elif isinstance(value, dict):
                resolved[key] = self._resolve_env_vars(value)
            else:
                resolved[key] = value

        return resolved

    def _resolve_env_var_string(self, value: str, pattern: re.Pattern) -> str:
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default = var_expr.split(':-', 1)
                return os.environ.get(var_name.strip(), default)
            var_name = var_expr.strip()
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable '{var_name}' is not set")
            return env_value

        return pattern.sub(replace_env_var, value)

    def _get_static(self, **kwargs):
        from concord.sources.static import StaticSource
        return StaticSource(**kwargs)

    def _get_json_file(self, **kwargs):
        from concord.sources.static import JsonFileSource
        return JsonFileSource(**kwargs)

    def _get_http_api(self, **kwargs):
        from concord.sources.http_api import HttpApiSource
        return HttpApiSource(**kwargs)

"""
Configuration: loads settings from .codekb.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml

from .local.scanner import ScanOptions
from .local.summarizer import SummaryConfig


_DEFAULTS = {
    "max_tokens": 512,
    "embed_batch_size": 32,
    "include_imports": False,
    "split_large": True,
    "embedding_provider": "none",
    "embedding_model": "",
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "",
    "summary_enabled": True,
    "summary_strategy": "heuristic",
    "summary_prefer_ai_for_exported": False,
    "watch_debounce_seconds": 0.4,
    "extension_overrides": {},
    "path_aliases": {},
    "exclude": [],
}

# Config file search locations
_CONFIG_FILENAMES = [".codekb.yaml", ".codekb.yml"]


def _find_config_file(explicit_path: str | None = None,
                      search_dirs: list[str] | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    if search_dirs is None:
        search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def _str_map(value) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


class Config:
    """Indexer configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables (``CODEKB_*``, plus the provider keys)
    3. .codekb.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(env_key)
            if env_val is not None:
                return env_val.lower() == "true"
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        # Chunking
        self.MAX_TOKENS = _get("CODEKB_MAX_TOKENS", "max_tokens",
                               _DEFAULTS["max_tokens"], cast=int)
        self.INCLUDE_IMPORTS = _get_bool("CODEKB_INCLUDE_IMPORTS", "include_imports",
                                         _DEFAULTS["include_imports"])
        self.SPLIT_LARGE = _get_bool("CODEKB_SPLIT_LARGE", "split_large",
                                     _DEFAULTS["split_large"])

        # Embeddings
        self.EMBED_BATCH_SIZE = _get("CODEKB_EMBED_BATCH_SIZE", "embed_batch_size",
                                     _DEFAULTS["embed_batch_size"], cast=int)
        self.EMBEDDING_PROVIDER = _get("EMBEDDING_PROVIDER", "embedding_provider",
                                       _DEFAULTS["embedding_provider"])
        self.EMBEDDING_MODEL = _get("EMBEDDING_MODEL", "embedding_model",
                                    _DEFAULTS["embedding_model"])
        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url",
                                    _DEFAULTS["ollama_base_url"])

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        # Summaries
        self.SUMMARY_ENABLED = _get_bool("CODEKB_SUMMARY_ENABLED", "summary_enabled",
                                         _DEFAULTS["summary_enabled"])
        self.SUMMARY_STRATEGY = _get("CODEKB_SUMMARY_STRATEGY", "summary_strategy",
                                     _DEFAULTS["summary_strategy"])
        self.SUMMARY_PREFER_AI_FOR_EXPORTED = _get_bool(
            "CODEKB_SUMMARY_PREFER_AI_FOR_EXPORTED", "summary_prefer_ai_for_exported",
            _DEFAULTS["summary_prefer_ai_for_exported"])

        # Watcher
        self.WATCH_DEBOUNCE_SECONDS = _get("CODEKB_WATCH_DEBOUNCE_SECONDS",
                                           "watch_debounce_seconds",
                                           _DEFAULTS["watch_debounce_seconds"],
                                           cast=float)

        # Resolution tables (YAML only)
        self.EXTENSION_OVERRIDES: dict[str, str] = {
            (k if k.startswith(".") else f".{k}").lower(): v
            for k, v in _str_map(yd.get("extension_overrides")).items()
        }
        self.PATH_ALIASES: dict[str, str] = _str_map(yd.get("path_aliases"))

        self.EXCLUDE: list[str] = yd.get("exclude", _DEFAULTS["exclude"])
        if not isinstance(self.EXCLUDE, list):
            self.EXCLUDE = []
        self.EXCLUDE = [str(p) for p in self.EXCLUDE]

    def scan_options(self) -> ScanOptions:
        """Scanner options derived from this configuration."""
        return ScanOptions(
            max_tokens=self.MAX_TOKENS,
            batch_size=self.EMBED_BATCH_SIZE,
            include_imports=self.INCLUDE_IMPORTS,
            split_large=self.SPLIT_LARGE,
            extension_overrides=dict(self.EXTENSION_OVERRIDES),
            path_aliases=dict(self.PATH_ALIASES),
        )

    def summary_config(self) -> SummaryConfig:
        return SummaryConfig(
            enabled=self.SUMMARY_ENABLED,
            strategy=self.SUMMARY_STRATEGY,
            prefer_ai_for_exported=self.SUMMARY_PREFER_AI_FOR_EXPORTED,
        )

    @classmethod
    def load(cls, config_path: str | None = None,
             project_root: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults.

        With *project_root* the project directory is searched before the
        user's home directory.
        """
        search_dirs = None
        if project_root:
            search_dirs = [project_root, os.path.expanduser("~")]
        path = _find_config_file(config_path, search_dirs)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)

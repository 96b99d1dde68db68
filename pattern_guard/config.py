"""
Configuration — loads settings from .pattern_guard.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "data_dir": ".pattern_guard",
    "include": ["**/*"],
    "exclude": [],
    "max_file_bytes": 1_000_000,
    "max_chunk_chars": 4000,
    "language_chunk_chars": {},
    "line_window": 60,
    "line_overlap": 10,
    "cluster_threshold": 0.85,
    "min_cluster_size": 3,
    "neighbor_k": 32,
    "match_threshold": 0.80,
    "match_top_k": 20,
    "worker_pool_size": 4,
    "query_timeout": 2.0,
    "debounce_seconds": 0.5,
    "embed_max_retries": 3,
    "embed_retry_delay": 1.0,
    "degraded_retry_seconds": 300.0,
    "store_max_retries": 3,
    "store_retry_delay": 0.5,
    "exhaustive_threshold": 2048,
    "lsh_tables": 8,
    "lsh_bits": 12,
    "embedder": {
        "provider": "lexical",
        "model": "nomic-embed-text",
        "base_url": "http://localhost:11434",
        "dimension": 384,
        "timeout": 30.0,
    },
    "confidence": {
        "size_scale": 3.0,
        "half_life_days": 30.0,
        "size_weight": 1.0,
        "cohesion_weight": 1.0,
        "recency_weight": 1.0,
        "degraded_weight": 0.5,
    },
    "category_rules": [],
}

# Config file search locations
_CONFIG_FILENAMES = [".pattern_guard.yaml", ".pattern_guard.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

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


def _as_list(value) -> list[str]:
    """Accept a comma-separated string or a list of globs."""
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return []


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables (``PATTERN_GUARD_*``)
    3. .pattern_guard.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str, section: dict | None = None):
            env_val = os.getenv(f"PATTERN_GUARD_{env_key}")
            if env_val is not None:
                return cast(env_val)
            source = yd if section is None else section
            yaml_val = source.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        self.DATA_DIR = _get("DATA_DIR", "data_dir", _DEFAULTS["data_dir"])

        # File selection
        self.INCLUDE = _as_list(_get("INCLUDE", "include", _DEFAULTS["include"], cast=_as_list))
        self.EXCLUDE = _as_list(_get("EXCLUDE", "exclude", _DEFAULTS["exclude"], cast=_as_list))
        self.MAX_FILE_BYTES = _get("MAX_FILE_BYTES", "max_file_bytes",
                                   _DEFAULTS["max_file_bytes"], cast=int)

        # Chunking
        self.MAX_CHUNK_CHARS = _get("MAX_CHUNK_CHARS", "max_chunk_chars",
                                    _DEFAULTS["max_chunk_chars"], cast=int)
        self.LANGUAGE_CHUNK_CHARS: dict[str, int] = {}
        per_lang = yd.get("language_chunk_chars", {})
        if isinstance(per_lang, dict):
            for lang, limit in per_lang.items():
                self.LANGUAGE_CHUNK_CHARS[str(lang)] = int(limit)
        self.LINE_WINDOW = _get("LINE_WINDOW", "line_window",
                                _DEFAULTS["line_window"], cast=int)
        self.LINE_OVERLAP = _get("LINE_OVERLAP", "line_overlap",
                                 _DEFAULTS["line_overlap"], cast=int)

        # Clustering (tau / m)
        self.CLUSTER_THRESHOLD = _get("CLUSTER_THRESHOLD", "cluster_threshold",
                                      _DEFAULTS["cluster_threshold"], cast=float)
        self.MIN_CLUSTER_SIZE = _get("MIN_CLUSTER_SIZE", "min_cluster_size",
                                     _DEFAULTS["min_cluster_size"], cast=int)
        self.NEIGHBOR_K = _get("NEIGHBOR_K", "neighbor_k",
                               _DEFAULTS["neighbor_k"], cast=int)

        # Enforcement
        self.MATCH_THRESHOLD = _get("MATCH_THRESHOLD", "match_threshold",
                                    _DEFAULTS["match_threshold"], cast=float)
        self.MATCH_TOP_K = _get("MATCH_TOP_K", "match_top_k",
                                _DEFAULTS["match_top_k"], cast=int)
        self.QUERY_TIMEOUT = _get("QUERY_TIMEOUT", "query_timeout",
                                  _DEFAULTS["query_timeout"], cast=float)

        # Scheduling
        self.WORKER_POOL_SIZE = _get("WORKER_POOL_SIZE", "worker_pool_size",
                                     _DEFAULTS["worker_pool_size"], cast=int)
        self.DEBOUNCE_SECONDS = _get("DEBOUNCE_SECONDS", "debounce_seconds",
                                     _DEFAULTS["debounce_seconds"], cast=float)

        # Retry policy
        self.EMBED_MAX_RETRIES = _get("EMBED_MAX_RETRIES", "embed_max_retries",
                                      _DEFAULTS["embed_max_retries"], cast=int)
        self.EMBED_RETRY_DELAY = _get("EMBED_RETRY_DELAY", "embed_retry_delay",
                                      _DEFAULTS["embed_retry_delay"], cast=float)
        self.DEGRADED_RETRY_SECONDS = _get("DEGRADED_RETRY_SECONDS", "degraded_retry_seconds",
                                           _DEFAULTS["degraded_retry_seconds"], cast=float)
        self.STORE_MAX_RETRIES = _get("STORE_MAX_RETRIES", "store_max_retries",
                                      _DEFAULTS["store_max_retries"], cast=int)
        self.STORE_RETRY_DELAY = _get("STORE_RETRY_DELAY", "store_retry_delay",
                                      _DEFAULTS["store_retry_delay"], cast=float)

        # Vector index
        self.EXHAUSTIVE_THRESHOLD = _get("EXHAUSTIVE_THRESHOLD", "exhaustive_threshold",
                                         _DEFAULTS["exhaustive_threshold"], cast=int)
        self.LSH_TABLES = _get("LSH_TABLES", "lsh_tables", _DEFAULTS["lsh_tables"], cast=int)
        self.LSH_BITS = _get("LSH_BITS", "lsh_bits", _DEFAULTS["lsh_bits"], cast=int)

        # Embedder
        emb_defaults = _DEFAULTS["embedder"]
        emb_section = yd.get("embedder", {}) if isinstance(yd.get("embedder"), dict) else {}
        self.EMBEDDER_PROVIDER = _get("EMBEDDER_PROVIDER", "provider",
                                      emb_defaults["provider"], section=emb_section)
        self.EMBEDDER_MODEL = _get("EMBEDDER_MODEL", "model",
                                   emb_defaults["model"], section=emb_section)
        self.EMBEDDER_BASE_URL = _get("EMBEDDER_BASE_URL", "base_url",
                                      emb_defaults["base_url"], section=emb_section)
        self.EMBEDDING_DIMENSION = _get("EMBEDDING_DIMENSION", "dimension",
                                        emb_defaults["dimension"], cast=int, section=emb_section)
        self.EMBEDDER_TIMEOUT = _get("EMBEDDER_TIMEOUT", "timeout",
                                     emb_defaults["timeout"], cast=float, section=emb_section)
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or emb_section.get("api_key", "")

        # Confidence formula
        conf_defaults = _DEFAULTS["confidence"]
        conf_section = yd.get("confidence", {}) if isinstance(yd.get("confidence"), dict) else {}
        self.CONFIDENCE: dict[str, float] = {
            key: float(conf_section.get(key, default))
            for key, default in conf_defaults.items()
        }

        # User category rules (evaluated before the built-in rules)
        self.CATEGORY_RULES: list[dict] = yd.get("category_rules", _DEFAULTS["category_rules"])
        if not isinstance(self.CATEGORY_RULES, list):
            self.CATEGORY_RULES = []

    def chunk_limit(self, language: str) -> int:
        """Return the maximum chunk size (characters) for *language*."""
        return self.LANGUAGE_CHUNK_CHARS.get(language, self.MAX_CHUNK_CHARS)

    def data_path(self, project_root: str, *parts: str) -> str:
        """Return a path under the project's data directory."""
        base = self.DATA_DIR
        if not os.path.isabs(base):
            base = os.path.join(project_root, base)
        return os.path.join(base, *parts)

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)

"""Scribe configuration loader.

Priority (high → low):
  1. CLI flags           (handled at the call site, not here)
  2. Environment variables  (SCRIBE_GENERATION_MODEL, SCRIBE_EMBEDDING_MODEL, SCRIBE_DB)
  3. Per-project scribe.yaml
  4. Global ~/.scribe/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".scribe"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "scribe.yaml"

# Fields that suggest an API key are forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or overlap_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token (suffix)
    r"|^token$"                  # exactly "token"
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret"
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "project",
        "embedding",
        "generation",
        "retrieval",
        "chunker",
        "store",
        "autosave",
        "server",
    ]
)

_ON_CONFLICT_POLICIES = ("replace", "reject")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ProjectCfg:
    """Project-level settings (scribe.yaml: project:)."""

    name: str = ""
    db: str = ".scribe.db"


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (scribe.yaml: embedding:).

    Attributes:
        model: LiteLLM embedding model string (provider/model format).
        batch_size: Texts per provider call.
        requests_per_minute: Provider quota; sets the limiter's minimum interval.
        max_attempts: Attempts per batch before the batch fails.
    """

    model: str = "openai/text-embedding-3-small"
    batch_size: int = 50
    requests_per_minute: int = 300
    max_attempts: int = 3


@dataclass
class GenerationCfg:
    """Draft generation configuration (scribe.yaml: generation:)."""

    model: str = "openai/gpt-4o-mini"
    max_tokens: int = 2_048
    temperature: float = 0.7
    citation_style: str = "APA"
    on_conflict: str = "replace"  # replace | reject


@dataclass
class RetrievalCfg:
    """Retrieval configuration (scribe.yaml: retrieval:)."""

    default_limit: int = 8
    store_retries: int = 2


@dataclass
class ChunkerCfg:
    """Chunk window and overlap, in approximate tokens (scribe.yaml: chunker:)."""

    max_tokens: int = 800
    overlap_tokens: int = 100


@dataclass
class StoreCfg:
    """Evidence store settings (scribe.yaml: store:)."""

    batch_limit: int = 500


@dataclass
class AutosaveCfg:
    """Draft autosave settings (scribe.yaml: autosave:)."""

    delay_seconds: float = 2.0


@dataclass
class ServerCfg:
    """HTTP server bind address (scribe.yaml: server:)."""

    host: str = "127.0.0.1"
    port: int = 3001


@dataclass
class ScribeConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    project: ProjectCfg = field(default_factory=ProjectCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    chunker: ChunkerCfg = field(default_factory=ChunkerCfg)
    store: StoreCfg = field(default_factory=StoreCfg)
    autosave: AutosaveCfg = field(default_factory=AutosaveCfg)
    server: ServerCfg = field(default_factory=ServerCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: ScribeConfig) -> None:
    if cfg.chunker.max_tokens < 1:
        raise ConfigError("chunker.max_tokens must be >= 1")
    if not 0 <= cfg.chunker.overlap_tokens < cfg.chunker.max_tokens:
        raise ConfigError("chunker.overlap_tokens must be in [0, chunker.max_tokens)")
    if cfg.embedding.batch_size < 1:
        raise ConfigError("embedding.batch_size must be >= 1")
    if cfg.embedding.max_attempts < 1:
        raise ConfigError("embedding.max_attempts must be >= 1")
    if cfg.store.batch_limit < 1:
        raise ConfigError("store.batch_limit must be >= 1")
    if not 1 <= cfg.retrieval.default_limit <= 100:
        raise ConfigError("retrieval.default_limit must be in [1, 100]")
    if cfg.generation.on_conflict not in _ON_CONFLICT_POLICIES:
        raise ConfigError(
            f"generation.on_conflict must be one of {', '.join(_ON_CONFLICT_POLICIES)}; "
            f"got '{cfg.generation.on_conflict}'"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> ScribeConfig:
    """Build a *ScribeConfig* from a merged raw YAML dict."""
    cfg = ScribeConfig()

    if "project" in data:
        p = data["project"] or {}
        cfg.project = ProjectCfg(
            name=str(p.get("name", cfg.project.name)),
            db=str(p.get("db", cfg.project.db)),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            requests_per_minute=int(
                e.get("requests_per_minute", cfg.embedding.requests_per_minute)
            ),
            max_attempts=int(e.get("max_attempts", cfg.embedding.max_attempts)),
        )

    if "generation" in data:
        g = data["generation"] or {}
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            max_tokens=int(g.get("max_tokens", cfg.generation.max_tokens)),
            temperature=float(g.get("temperature", cfg.generation.temperature)),
            citation_style=str(g.get("citation_style", cfg.generation.citation_style)),
            on_conflict=str(g.get("on_conflict", cfg.generation.on_conflict)),
        )

    if "retrieval" in data:
        r = data["retrieval"] or {}
        cfg.retrieval = RetrievalCfg(
            default_limit=int(r.get("default_limit", cfg.retrieval.default_limit)),
            store_retries=int(r.get("store_retries", cfg.retrieval.store_retries)),
        )

    if "chunker" in data:
        c = data["chunker"] or {}
        cfg.chunker = ChunkerCfg(
            max_tokens=int(c.get("max_tokens", cfg.chunker.max_tokens)),
            overlap_tokens=int(c.get("overlap_tokens", cfg.chunker.overlap_tokens)),
        )

    if "store" in data:
        s = data["store"] or {}
        cfg.store = StoreCfg(batch_limit=int(s.get("batch_limit", cfg.store.batch_limit)))

    if "autosave" in data:
        a = data["autosave"] or {}
        cfg.autosave = AutosaveCfg(
            delay_seconds=float(a.get("delay_seconds", cfg.autosave.delay_seconds))
        )

    if "server" in data:
        sv = data["server"] or {}
        cfg.server = ServerCfg(
            host=str(sv.get("host", cfg.server.host)),
            port=int(sv.get("port", cfg.server.port)),
        )

    return cfg


def _apply_env_overrides(cfg: ScribeConfig) -> ScribeConfig:
    """Apply SCRIBE_* environment variable overrides."""
    if model := os.environ.get("SCRIBE_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("SCRIBE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if db := os.environ.get("SCRIBE_DB"):
        cfg.project.db = db
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ScribeConfig:
    """Load and return a merged *ScribeConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *scribe.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    cfg = _apply_env_overrides(cfg)
    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.scribe/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Scribe global configuration: model defaults only.\n"
            "# NEVER store API keys here. Use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target

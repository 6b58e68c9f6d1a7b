"""
ATLAS CONFIG - TOML configuration with environment overrides.

Resolution order: environment -> TOML file -> dataclass defaults.

    ATLAS_REPO_ROOT       resolver.repo_root
    ATLAS_SNAPSHOT_PATH   storage.snapshot_path
    ATLAS_LOG_LEVEL       logging.level

Usage:
    from infrastructure.config import load_config

    config = load_config()                       # config/atlas.toml
    config = load_config("deploy/atlas.toml")    # explicit file
"""
import logging
import os
import tomllib
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from core.ontology import DEFAULT_HOP_BOUND, DEFAULT_TOP_K

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "atlas.toml"


@dataclass
class ResolverConfig:
    """Anchor verification against the repository checkout."""
    repo_root: str = "."
    max_workers: int = 8
    timeout_seconds: float = 5.0
    retries: int = 2
    check_symbols: bool = True
    max_file_bytes: int = 2_000_000


@dataclass
class QueryConfig:
    hop_bound: int = DEFAULT_HOP_BOUND
    top_k: int = DEFAULT_TOP_K
    limit: Optional[int] = None


@dataclass
class StorageConfig:
    snapshot_path: str = ".atlas/snapshot.json"


@dataclass
class ValidationConfig:
    # Project-specific relation kinds accepted without a warning
    extra_relation_kinds: List[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class AtlasConfig:
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AtlasConfig":
        """Build from a parsed TOML mapping. Unknown keys are ignored with a warning."""
        return cls(
            resolver=_section(ResolverConfig, data.get("resolver", {}), "resolver"),
            query=_section(QueryConfig, data.get("query", {}), "query"),
            storage=_section(StorageConfig, data.get("storage", {}), "storage"),
            validation=_section(ValidationConfig, data.get("validation", {}), "validation"),
            logging=_section(LoggingConfig, data.get("logging", {}), "logging"),
        )


def _section(cls, values: Mapping[str, Any], name: str):
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        warnings.warn(f"Ignoring unknown [{name}] config keys: {', '.join(unknown)}")
    return cls(**{k: v for k, v in values.items() if k in known})


def load_toml_config(path: Union[str, Path, None] = None) -> Dict[str, Any]:
    """
    Read the TOML file.

    A missing or unreadable file yields an empty mapping (defaults apply).
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path is not None:
            warnings.warn(f"Config file {config_path} not found, using defaults")
        return {}
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        warnings.warn(f"Failed to load config from {config_path}: {e}")
        return {}


def apply_env_overrides(config: AtlasConfig, environ: Optional[Mapping[str, str]] = None) -> AtlasConfig:
    env = os.environ if environ is None else environ
    if env.get("ATLAS_REPO_ROOT"):
        config.resolver.repo_root = env["ATLAS_REPO_ROOT"]
    if env.get("ATLAS_SNAPSHOT_PATH"):
        config.storage.snapshot_path = env["ATLAS_SNAPSHOT_PATH"]
    if env.get("ATLAS_LOG_LEVEL"):
        config.logging.level = env["ATLAS_LOG_LEVEL"].upper()
    return config


def load_config(path: Union[str, Path, None] = None,
                environ: Optional[Mapping[str, str]] = None) -> AtlasConfig:
    """Load AtlasConfig: env -> TOML -> defaults."""
    config = apply_env_overrides(AtlasConfig.from_dict(load_toml_config(path)), environ)
    logger.debug(f"Loaded config (repo_root={config.resolver.repo_root}, "
                 f"snapshot={config.storage.snapshot_path})")
    return config

"""
Scriptflow Configuration Management

Dataclass configuration with JSON loading and validation.
"""

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

from scriptflow.core.exceptions import ConfigurationError, InvalidConfigError


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


@dataclass
class LLMConfig:
    """Configuration for the OpenAI-compatible completion endpoint."""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key_env: str = "SCRIPTFLOW_API_KEY"  # Environment variable name for API key
    temperature: float = 0.3
    max_tokens: int = 4000
    timeout: float = 60.0

    @classmethod
    def from_dict(cls, data: dict) -> 'LLMConfig':
        """Create LLMConfig from dictionary."""
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineConfig:
    """Pipeline configuration settings."""
    # Transient-failure retry loop around every completion call
    max_retries: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    call_timeout: float = 60.0
    concurrency: int = 1

    # Context budgets, in characters
    metadata_prefix_chars: int = 3000
    entity_context_chars: int = 5000
    batch_context_chars: int = 4000
    shot_context_chars: int = 6000
    chunk_max_tokens: int = 4000

    # Shots
    shot_attempts: int = 3
    shot_retry_delay: float = 1.0
    min_shots: int = 3
    max_shots: int = 15

    # Batch vs per-entity extraction
    prefer_batch: bool = True
    batch_min_entities: int = 2
    batch_max_entities: int = 20

    # Feature toggles
    use_semantic_chunking: bool = True
    use_cache: bool = True
    extract_items: bool = False
    lock_story_bible: bool = False
    visual_style: str = ""

    # Cost estimate
    token_price_per_1k: float = 0.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidConfigError for values the pipeline cannot run with."""
        if self.concurrency < 1:
            raise InvalidConfigError("concurrency must be at least 1", {"concurrency": self.concurrency})
        if self.max_retries < 0:
            raise InvalidConfigError("max_retries cannot be negative", {"max_retries": self.max_retries})
        if self.shot_attempts < 1:
            raise InvalidConfigError("shot_attempts must be at least 1", {"shot_attempts": self.shot_attempts})
        if not 0 < self.min_shots <= self.max_shots:
            raise InvalidConfigError(
                "min_shots must be positive and not exceed max_shots",
                {"min_shots": self.min_shots, "max_shots": self.max_shots}
            )
        if self.call_timeout <= 0:
            raise InvalidConfigError("call_timeout must be positive", {"call_timeout": self.call_timeout})

    def updated(self, **changes: Any) -> 'PipelineConfig':
        """Return a copy with ``changes`` applied. Unknown keys are rejected."""
        names = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - names)
        if unknown:
            raise InvalidConfigError("Unknown pipeline config keys", {"keys": unknown})
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict) -> 'PipelineConfig':
        """Create PipelineConfig from dictionary."""
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheConfig:
    """Multi-level cache settings. TTLs are in seconds."""
    l1_ttl: float = 300.0
    l2_ttl: float = 3600.0
    l3_ttl: float = 86400.0
    max_l1_size: int = 100
    max_l2_size: int = 1000
    max_l3_size: int = 10000
    sweep_interval: float = 300.0

    @classmethod
    def from_dict(cls, data: dict) -> 'CacheConfig':
        """Create CacheConfig from dictionary."""
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScriptflowConfig:
    """Main configuration class."""

    project_name: str = "Scriptflow"
    version: str = "1.0.0"

    # Paths
    data_dir: Path = field(default_factory=lambda: Path("data"))
    logs_dir: Path = field(default_factory=lambda: Path("logs"))

    # Sub-configurations
    llm: LLMConfig = field(default_factory=LLMConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    verbose_logging: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'ScriptflowConfig':
        """Create ScriptflowConfig from dictionary."""
        config = cls()

        config.project_name = data.get('project_name', config.project_name)
        config.version = data.get('version', config.version)
        config.verbose_logging = data.get('verbose_logging', config.verbose_logging)

        if 'paths' in data:
            paths = data['paths']
            config.data_dir = Path(paths.get('data_dir', config.data_dir))
            config.logs_dir = Path(paths.get('logs_dir', config.logs_dir))

        if 'llm' in data:
            config.llm = LLMConfig.from_dict(data['llm'])
        if 'pipeline' in data:
            config.pipeline = PipelineConfig.from_dict(data['pipeline'])
        if 'cache' in data:
            config.cache = CacheConfig.from_dict(data['cache'])

        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            'project_name': self.project_name,
            'version': self.version,
            'verbose_logging': self.verbose_logging,
            'paths': {
                'data_dir': str(self.data_dir),
                'logs_dir': str(self.logs_dir),
            },
            'llm': self.llm.to_dict(),
            'pipeline': self.pipeline.to_dict(),
            'cache': self.cache.to_dict(),
        }


def load_config(config_path: Optional[Union[str, Path]] = None) -> ScriptflowConfig:
    """
    Load configuration from JSON file.

    Args:
        config_path: Path to configuration file. If None, uses default.

    Returns:
        Loaded ScriptflowConfig instance
    """
    config_path = Path(config_path) if config_path else Path("config/scriptflow_config.json")

    if not config_path.exists():
        return ScriptflowConfig()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Invalid JSON in config file: {e}", {"path": str(config_path)})
    except OSError as e:
        raise ConfigurationError(f"Failed to load config: {e}", {"path": str(config_path)})

    if not isinstance(data, dict):
        raise InvalidConfigError("Config file must contain a JSON object", {"path": str(config_path)})
    try:
        return ScriptflowConfig.from_dict(data)
    except TypeError as e:
        raise InvalidConfigError(f"Invalid config value: {e}", {"path": str(config_path)})


def save_config(config: ScriptflowConfig, config_path: Union[str, Path]) -> Path:
    """Write configuration to a JSON file, creating parent directories."""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2), encoding='utf-8')
    return config_path

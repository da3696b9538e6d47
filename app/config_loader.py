"""
Lorekeeper Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Environment variables override YAML settings with format:
  LOREKEEPER_{SECTION}_{KEY}

Example:
  LOREKEEPER_SERVER_PORT=9000
  LOREKEEPER_KOBOLD_URL=http://localhost:5001
  LOREKEEPER_ENTITIES_MAX_AUTO_ENTRIES=50
"""

import copy
import os
import yaml
from typing import Dict, Any, Optional

ENV_PREFIX = "LOREKEEPER_"

# Default configuration (fallback if config.yaml missing)
DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "cors_origins": ["*"],
        "log_level": "INFO"
    },
    "kobold": {
        "url": "http://127.0.0.1:5001",
        "timeout": 120.0,
        "temperature": 0.7
    },
    "database": {
        "path": "app/data/lorekeeper.db"
    },
    "embeddings": {
        "model_name": "all-mpnet-base-v2",
        "dimensions": 768
    },
    "entities": {
        "enabled": True,
        "max_auto_entries": 100,
        "creation_threshold": 0.8,
        "entity_entry_length": 200,
        "max_contexts": 10
    },
    "summarization": {
        "enabled": True,
        "max_length": 200,
        "max_group_length": 2000,
        "min_group_size": 3,
        "running_memory_size": 50,
        "enable_type_detection": True,
        "enable_core_memories": True,
        "enable_frequency_core_memory": True,
        "short_term_count": 5,
        "prompt": ""
    },
    "vectors": {
        "enabled": True,
        "cache_size": 1000,
        "max_vectors": 10000,
        "search_limit": 3,
        "threshold": 0.1,
        "task_id": "chat"
    },
    "search": {
        "fusion_method": "hybrid",
        "min_score": 0.1,
        "bm25_k1": 1.2,
        "bm25_b": 0.75,
        "rrf_k": 60,
        "temporal_half_life_days": 30.0
    },
    "rerank": {
        "enabled": False,
        "url": "",
        "model": "",
        "hybrid_alpha": 0.5,
        "timeout": 10.0
    },
    "lorebook": {
        "min_entries": 8,
        "max_entries": 12
    }
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from config.yaml with environment variable overrides.

    Args:
        config_path: Path to config.yaml file (optional, auto-detected if not provided)

    Returns:
        Complete configuration dictionary with nested sections
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config_path = os.path.join(base_dir, "config.yaml")

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
                if isinstance(yaml_config, dict):
                    config = _deep_merge(config, yaml_config)
        except (OSError, yaml.YAMLError) as e:
            print(f"[CONFIG WARNING] Failed to load config.yaml: {e}")
            print(f"[CONFIG] Using default configuration")
    else:
        print(f"[CONFIG] config.yaml not found at {config_path}, using defaults")

    config = _apply_env_overrides(config)

    return config


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Override dictionary (values take precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _convert_value(current: Any, raw: str) -> Any:
    """Convert an env string to the type of the value it replaces."""
    if isinstance(current, bool):
        return raw.lower() in ('true', '1', 'yes')
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(',') if item.strip()]
    return raw


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Format: LOREKEEPER_{SECTION}_{KEY}

    Keys may themselves contain underscores, so the remainder after the
    section name is matched against the section's keys as a whole.

    Examples:
        LOREKEEPER_SERVER_PORT=9000
        LOREKEEPER_SUMMARIZATION_MAX_LENGTH=300
        LOREKEEPER_RERANK_ENABLED=true
    """
    for env_key, env_value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue

        remainder = env_key[len(ENV_PREFIX):].lower()
        if '_' not in remainder:
            continue

        section_name, _, key = remainder.partition('_')
        section = config.get(section_name)
        if not isinstance(section, dict) or key not in section:
            continue

        try:
            section[key] = _convert_value(section[key], env_value)
        except ValueError:
            print(f"[CONFIG WARNING] Ignoring {env_key}: cannot convert '{env_value}'")

    return config


# Global config instance (loaded once on import)
CONFIG = load_config()

import yaml
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .errors import ConfigError
from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < CLI
    Returns validated Pydantic PipelineConfig model.

    Args:
        cli_args: CLI overrides (None values are ignored)
        config_path: Explicit YAML file used instead of config/local.yaml

    Raises:
        ConfigError: if the merged config does not validate
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides (or the file given on the command line)
    override_path = Path(config_path) if config_path else LOCAL_CONFIG_PATH
    if config_path and not override_path.exists():
        raise ConfigError(f"Config file not found: {override_path}")
    config_data = merge_dicts(config_data, load_yaml(override_path))

    try:
        # 3. Create validated Pydantic model
        config = PipelineConfig.from_dict(config_data)

        # 4. Apply CLI overrides
        return config.merge_cli_overrides(cli_args)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

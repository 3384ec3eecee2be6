import yaml
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .models import ThumbforgeConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML mapping; a missing or empty file yields {}."""
    path = Path(path)
    if not path.exists():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


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
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> ThumbforgeConfig:
    """
    Resolve config: Default < Local < CLI

    A `config_path` entry in cli_args replaces the local override file.
    Validation errors propagate (pydantic.ValidationError).
    """
    cli_args = cli_args or {}

    config_data = load_yaml(default_path)

    override_path = cli_args.get("config_path") or local_path
    config_data = merge_dicts(config_data, load_yaml(override_path))

    config = ThumbforgeConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)

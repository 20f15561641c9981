from pathlib import Path
from typing import Type, TypeVar

import yaml
from instrukt_ai_logging import get_logger
from pydantic import BaseModel

from cathooks.config.schema import CatConfig
from cathooks.paths import config_path

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _warn_unknown_keys(model: BaseModel, config_file: Path) -> None:
    if model.model_extra:
        logger.warning("Unknown keys in %s: %s", config_file, sorted(model.model_extra.keys()))


def load_config(path: Path, model_class: Type[T]) -> T:
    """Load and validate configuration from a JSON or YAML file.

    JSON is read through the YAML loader, so either syntax works.

    Args:
        path: Path to the config file.
        model_class: The Pydantic model class to use for validation.

    Returns:
        The validated configuration model, or defaults when the file is
        missing or unreadable.
    """
    if not path.exists():
        return model_class()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return model_class()

    if not isinstance(raw, dict):
        logger.warning("Config file %s does not hold a mapping; using defaults", path)
        return model_class()

    model = model_class.model_validate(raw)
    _warn_unknown_keys(model, path)
    return model


def load_project_config(project_dir: str | Path) -> CatConfig:
    """Load the project-level CAT configuration."""
    return load_config(config_path(project_dir), CatConfig)

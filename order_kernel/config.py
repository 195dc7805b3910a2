"""
Configuration loading.

Reads a YAML document into KernelConfig. Every section is optional and falls
back to model defaults; unknown keys and invalid values fail loudly with
ConfigurationError instead of being corrected.
"""

import os
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from order_kernel.errors import ConfigurationError
from order_kernel.models.config import KernelConfig

CONFIG_ENV_VAR = "ORDER_KERNEL_CONFIG"


def load_config(path: Optional[Union[str, Path]] = None) -> KernelConfig:
    """Load configuration from `path`, the ORDER_KERNEL_CONFIG file, or defaults."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return KernelConfig()

    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {config_path} is not valid YAML: {exc}")

    return parse_config(raw or {})


def parse_config(raw: dict) -> KernelConfig:
    """Validate an already-parsed mapping."""
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration root must be a mapping")
    try:
        return KernelConfig.model_validate(raw)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}")

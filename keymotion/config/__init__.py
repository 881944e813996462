"""Configuration utilities for keymotion."""

from .io import load_config
from .merge import merge_configs
from .settings import DEFAULT_CONFIG_PATH, DownloadSettings, EncodeSettings, PipelineSettings, load_settings
from .validate import validate_config

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DownloadSettings",
    "EncodeSettings",
    "PipelineSettings",
    "load_config",
    "load_settings",
    "merge_configs",
    "validate_config",
]

"""Configuration module for lectern."""

from lectern.config.loader import get_config_path, load_config, save_config
from lectern.config.schema import Config, PromptTemplates

__all__ = ["Config", "PromptTemplates", "get_config_path", "load_config", "save_config"]

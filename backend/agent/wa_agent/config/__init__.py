"""Configuration module for wa-agent."""

from wa_agent.config.loader import get_config_path, load_config
from wa_agent.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]

"""Configuration module for dxworker."""

from dxworker.config.loader import load_config, get_config_path
from dxworker.config.schema import Config, ExecutionLimits, HostEnvironment

__all__ = ["Config", "ExecutionLimits", "HostEnvironment", "load_config", "get_config_path"]

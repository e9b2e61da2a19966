"""Configuration management for the staking service."""

from .platform import Config, configure_logging

__all__ = ["Config", "configure_logging"]

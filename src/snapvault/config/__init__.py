"""
Configuration for snapvault.
"""

from .config_loader import SnapVaultConfig

__all__ = ["SnapVaultConfig"]

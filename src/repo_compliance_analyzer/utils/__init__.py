"""Utility modules for the compliance analyzer."""

from .secure_logging import get_secure_logger, mask_sensitive_string, setup_secure_logging

__all__ = ["get_secure_logger", "mask_sensitive_string", "setup_secure_logging"]

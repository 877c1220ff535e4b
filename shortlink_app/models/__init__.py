"""
Database models for the link core.

links  - transactional short code mappings
clicks - append-only click events written by the click worker
"""

from .link import Link
from .click import Click

__all__ = ["Link", "Click"]

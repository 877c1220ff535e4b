"""
Service layer: business rules of the link core.
"""

from .code_generator import CodeGenerator, RandomShortCodeStrategy, ShortCodeStrategy
from .link_service import LinkService

__all__ = [
    "CodeGenerator",
    "RandomShortCodeStrategy",
    "ShortCodeStrategy",
    "LinkService",
]

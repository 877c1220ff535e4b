"""
Short code generation.

Uses Strategy Pattern for the candidate algorithm. Uniqueness is never
checked up front: a candidate is only "free" once the store accepted the
insert, so generation and persistence form one conditional write and two
concurrent creators can never end up with the same code.
"""

import secrets
import string
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from shortlink_app.exceptions import CodeAlreadyTaken, CodeSpaceExhausted
from shortlink_app.services.url_validation import is_reserved_code, validate_short_code

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ShortCodeStrategy(ABC):
    """Abstract base class for short code candidate strategies"""

    @abstractmethod
    def candidate(self) -> str:
        """Return a new candidate code (pure, no I/O)."""


class RandomShortCodeStrategy(ShortCodeStrategy):
    """
    Random base62 codes from a cryptographic source.

    With the default length of 7 there are 62**7 (~3.5e12) codes, so a
    collision retry is rare and running out of retries practically never
    happens.
    """

    ALPHABET = string.ascii_letters + string.digits

    def __init__(self, length: int = 7):
        if not 3 <= length <= 50:
            raise ValueError("Short code length must be between 3 and 50")
        self.length = length

    def candidate(self) -> str:
        while True:
            code = "".join(secrets.choice(self.ALPHABET) for _ in range(self.length))
            if not is_reserved_code(code):
                return code


class CodeGenerator:
    """
    Produces a short code and persists it in the same step.

    ``insert`` is the caller's conditional insert: it receives the code,
    writes the row and raises CodeAlreadyTaken on a uniqueness conflict.
    """

    def __init__(self, strategy: Optional[ShortCodeStrategy] = None, max_retries: int = 5):
        self.strategy = strategy or RandomShortCodeStrategy()
        self.max_retries = max_retries

    async def generate(
        self,
        insert: Callable[[str, bool], Awaitable[T]],
        custom_code: Optional[str] = None,
    ) -> T:
        """
        Obtain a unique code by inserting with it.

        Args:
            insert: ``insert(code, is_custom)`` persisting the link
            custom_code: Requested code; tried exactly once

        Returns:
            Whatever insert returned for the winning code

        Raises:
            InvalidCodeFormat: custom_code does not match the code pattern
            CodeAlreadyTaken: custom_code is in use
            CodeSpaceExhausted: every random candidate collided
        """
        if custom_code is not None:
            validate_short_code(custom_code)
            return await insert(custom_code, True)

        for attempt in range(1, self.max_retries + 1):
            code = self.strategy.candidate()
            try:
                return await insert(code, False)
            except CodeAlreadyTaken:
                logger.info("short code collision", attempt=attempt, max_retries=self.max_retries)

        logger.error("short code space exhausted", attempts=self.max_retries)
        raise CodeSpaceExhausted(self.max_retries)

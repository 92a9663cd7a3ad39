"""Merchant-side order id generation with a local uniqueness check."""

import logging
import random
import string
import time
from typing import Awaitable, Callable, Optional

from .exceptions import IdentifierGenerationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10
SUFFIX_LENGTH = 6
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class OrderIdGenerator:
    """
    Generates ``{prefix}_{epoch_ms}_{SUFFIX}`` order ids.

    Each candidate is checked with ``exists`` (normally
    ``TransactionRepository.order_id_exists``). The storage unique constraint
    on ``order_id`` remains the backstop across processes.
    """

    def __init__(
        self,
        prefix: str,
        exists: Callable[[str], Awaitable[bool]],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.prefix = prefix
        self._exists = exists
        self.max_attempts = max_attempts
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    def candidate(self) -> str:
        """Build one candidate id without checking it."""
        millis = int(self._clock() * 1000)
        suffix = "".join(self._rng.choice(_SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
        return f"{self.prefix}_{millis}_{suffix}"

    async def generate_unique_order_id(self) -> str:
        """Return an order id not yet present in the transaction store.

        Raises:
            IdentifierGenerationError: If every attempt collided.
        """
        for attempt in range(1, self.max_attempts + 1):
            order_id = self.candidate()
            if not await self._exists(order_id):
                return order_id
            logger.warning(f"Order id collision on attempt {attempt}: {order_id}")

        raise IdentifierGenerationError(
            f"Failed to generate unique order ID after {self.max_attempts} attempts"
        )

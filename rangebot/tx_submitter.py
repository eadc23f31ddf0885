"""
Bounded retry around ChainClient.send_and_confirm.

Each attempt rebuilds the transaction and stamps fresh validity metadata
(nonce, gas price, chain id); the builder itself embeds a fresh deadline.
Between failed attempts it backs off for base_delay * 2^attempt seconds,
waiting on a stop event so shutdown can cut the sleep short. A transaction
that has been sent is always allowed to reach its receipt or timeout.

Known gap: a transaction that landed but whose receipt wait timed out is
resubmitted without checking whether its effect already applied. Duplicate
protection is left to the target contract (a burned token cannot be burned
twice).
"""

import logging
import threading
from typing import Callable

from rangebot.errors import InvalidConfiguration, SubmissionExhausted
from rangebot.models import Confirmation

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    def __init__(
        self,
        chain,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        confirmation_timeout: float = 60.0,
        stop_event: threading.Event | None = None,
    ):
        if max_attempts < 1:
            raise InvalidConfiguration("max_attempts must be at least 1")
        self.chain = chain
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.confirmation_timeout = confirmation_timeout
        self.stop_event = stop_event or threading.Event()

    def submit(
        self,
        build_tx: Callable[[], dict],
        signer,
        max_attempts: int | None = None,
        description: str = "transaction",
    ) -> Confirmation:
        """Build, sign, send and confirm; retry with backoff on failure.

        `build_tx` is called exactly once per attempt. Raises
        SubmissionExhausted carrying the last error once every attempt failed.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise InvalidConfiguration("max_attempts must be at least 1")

        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                tx = build_tx()
                tx.update(self.chain.fresh_validity(signer.address))
                logger.debug(
                    "%s attempt %d/%d nonce=%s gasPrice=%s",
                    description,
                    attempt,
                    attempts,
                    tx.get("nonce"),
                    tx.get("gasPrice"),
                )
                tx_hash, receipt = self.chain.send_and_confirm(
                    tx, signer, timeout=self.confirmation_timeout
                )
                logger.info(
                    "%s confirmed: %s (attempt %d/%d)", description, tx_hash, attempt, attempts
                )
                return Confirmation(signature=tx_hash, attempts=attempt, receipt=receipt)
            except Exception as e:
                last_error = e
                logger.warning(
                    "%s failed (attempt %d/%d): %s: %s",
                    description,
                    attempt,
                    attempts,
                    type(e).__name__,
                    e,
                )

            if attempt < attempts:
                delay = self.base_delay * 2**attempt
                logger.info("Retrying %s in %.1fs", description, delay)
                if self.stop_event.wait(delay):
                    logger.warning("Shutdown requested; abandoning %s retries", description)
                    raise SubmissionExhausted(last_error, attempt, cancelled=True)

        logger.error(
            "%s failed after %d attempts. Last error: %s", description, attempts, last_error
        )
        raise SubmissionExhausted(last_error, attempts)

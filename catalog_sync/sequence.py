"""Human-readable document numbers from transactional counters."""

import logging
import random
import time
from typing import Callable, Dict, NamedTuple, Optional

from .database import DocumentStore, DocumentStoreError
from .models import utc_now

logger = logging.getLogger(__name__)

COUNTER_COLLECTION = "systemCounters"


class SequenceUnavailableError(Exception):
    """The counter could not be read or advanced."""
    pass


class SequenceSpec(NamedTuple):
    """Counter document and formatting for one sequence."""
    prefix: str
    doc_id: str
    field: str
    width: int = 6


SEQUENCES: Dict[str, SequenceSpec] = {
    "invoice": SequenceSpec(prefix="I", doc_id="invoiceCounter", field="lastInvoiceNumber"),
    "purchase_order": SequenceSpec(prefix="P", doc_id="purchaseOrderCounter", field="lastPoNumber"),
}


class SequenceGenerator:
    """Issues increasing numbers such as I000001, P000042.

    When the counter transaction keeps failing, a degraded number like
    ``I-ERR2410181305221234`` is returned instead; it will not collide with the
    sequential range but is not part of it, so numbers may have gaps.
    """

    def __init__(
        self,
        store: DocumentStore,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep

    def next(self, sequence_name: str) -> str:
        """Get the next formatted number for a sequence.

        Raises:
            KeyError: If the sequence is not registered
        """
        spec = SEQUENCES[sequence_name]
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                value = self._increment(spec)
                return f"{spec.prefix}{value:0{spec.width}d}"
            except SequenceUnavailableError as e:
                last_error = e
                logger.warning(
                    f"Counter transaction for {sequence_name} failed "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts:
                    self._sleep(self.retry_delay * attempt)

        fallback = self.fallback_number(spec)
        logger.error(f"Issuing fallback {sequence_name} number {fallback}: {last_error}")
        return fallback

    def _increment(self, spec: SequenceSpec) -> int:
        try:
            with self.store.transaction() as tx:
                data = tx.get(COUNTER_COLLECTION, spec.doc_id)
                if data is None:
                    value = 1
                    tx.set(COUNTER_COLLECTION, spec.doc_id, {spec.field: value})
                else:
                    value = int(data.get(spec.field) or 0) + 1
                    tx.update(COUNTER_COLLECTION, spec.doc_id, {spec.field: value})
        except (DocumentStoreError, TypeError, ValueError) as e:
            raise SequenceUnavailableError(str(e)) from e
        return value

    @staticmethod
    def fallback_number(spec: SequenceSpec) -> str:
        stamp = utc_now().strftime("%y%m%d%H%M%S")
        suffix = random.randint(1000, 9999)
        return f"{spec.prefix}-ERR{stamp}{suffix}"

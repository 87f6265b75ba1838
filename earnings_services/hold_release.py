"""
earnings_services.hold_release -- Scheduled release of matured wallet holds.

Responsibility:
    Finds frozen settlement earnings whose unlock time has passed and moves
    each one to the available balance through WalletLedgerService.release().

Architecture position:
    Services -- batch orchestration.  Owns its transaction boundaries: the
    scan runs in one read session and every hold is released in its own
    session_scope(), so one bad hold never rolls back the others.

Invariants enforced:
    - Per-hold isolation: a failure is logged at ERROR with the hold id and
      the batch continues.
    - At most once: release() locks the hold, so a hold released
      concurrently by another worker is rejected with NotFrozenError and
      counted as failed without moving money twice.
    - Termination: release_due_holds_in_batches() stops after a batch that
      released nothing or scanned less than a full batch, or after
      ``max_batches``.

Failure modes:
    - Per-hold errors are counted in ``failed`` and never raised.
    - Errors in the scan itself propagate.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from earnings_kernel.db.engine import get_session_factory, session_scope
from earnings_kernel.domain.clock import Clock, SystemClock
from earnings_kernel.logging_config import get_logger
from earnings_kernel.selectors.wallet_selector import WalletSelector
from earnings_kernel.services.wallet_ledger import WalletLedgerService

logger = get_logger("services.hold_release")

DEFAULT_BATCH_SIZE = 200
DEFAULT_MAX_BATCHES = 500


@dataclass(frozen=True)
class HoldReleaseResult:
    scanned: int
    released: int
    failed: int
    batches: int = 1

    def __add__(self, other: "HoldReleaseResult") -> "HoldReleaseResult":
        return HoldReleaseResult(
            scanned=self.scanned + other.scanned,
            released=self.released + other.released,
            failed=self.failed + other.failed,
            batches=self.batches + other.batches,
        )


class HoldReleaseJob:
    """
    Releases due holds in bounded batches.

    Contract:
        Each call scans at most ``batch_size`` due holds, oldest unlock time
        first, and releases them one transaction at a time.

    Non-goals:
        - Does NOT schedule itself; scripts/release_due_holds.py or an
          external scheduler invokes it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._factory = session_factory or get_session_factory()
        self._clock = clock or SystemClock()
        self._batch_size = batch_size

    def _due_hold_ids(self, limit: int) -> list[UUID]:
        session = self._factory()
        try:
            return WalletSelector(session).find_due_holds(self._clock.now(), limit)
        finally:
            session.close()

    def _release_one(self, tx_id: UUID) -> bool:
        try:
            with session_scope(self._factory) as session:
                WalletLedgerService(session, clock=self._clock).release(tx_id)
        except Exception:
            logger.error(
                "hold_release_failed",
                extra={"transaction_id": str(tx_id)},
                exc_info=True,
            )
            return False
        return True

    def release_due_holds_once(self, batch_size: int | None = None) -> HoldReleaseResult:
        """Release up to one batch of due holds."""
        limit = batch_size or self._batch_size
        hold_ids = self._due_hold_ids(limit)

        released = 0
        failed = 0
        for tx_id in hold_ids:
            if self._release_one(tx_id):
                released += 1
            else:
                failed += 1

        result = HoldReleaseResult(scanned=len(hold_ids), released=released, failed=failed)
        logger.info(
            "hold_release_batch_finished",
            extra={
                "scanned": result.scanned,
                "released": result.released,
                "failed": result.failed,
            },
        )
        return result

    def release_due_holds_in_batches(
        self,
        max_batches: int = DEFAULT_MAX_BATCHES,
        batch_size: int | None = None,
    ) -> HoldReleaseResult:
        """Release batches until nothing more is due or max_batches is hit."""
        limit = batch_size or self._batch_size
        total = HoldReleaseResult(scanned=0, released=0, failed=0, batches=0)

        for _ in range(max_batches):
            batch = self.release_due_holds_once(limit)
            total = total + batch
            if batch.released == 0 or batch.scanned < limit:
                break

        logger.info(
            "hold_release_run_finished",
            extra={
                "batches": total.batches,
                "released": total.released,
                "failed": total.failed,
            },
        )
        return total


def release_due_holds_once(
    batch_size: int = DEFAULT_BATCH_SIZE,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
) -> HoldReleaseResult:
    return HoldReleaseJob(session_factory, clock, batch_size).release_due_holds_once()


def release_due_holds_in_batches(
    max_batches: int = DEFAULT_MAX_BATCHES,
    batch_size: int = DEFAULT_BATCH_SIZE,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
) -> HoldReleaseResult:
    return HoldReleaseJob(session_factory, clock, batch_size).release_due_holds_in_batches(
        max_batches
    )

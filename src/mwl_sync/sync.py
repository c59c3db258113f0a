"""
Worklist sync orchestrator.

Selects orders from the RIS, maps them into worklist items, publishes them to
the configured backends and writes the primary backend's study id back to the
order. One bad order never aborts the batch.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import SyncSettings
from .errors import AuthError, BackendError, MappingError, MwlSyncError, ValidationError
from .mapper import build_from_detail
from .models import Order, OrderFilter, OrderSyncResult, PublishResult, SyncOutcome, WorklistItem
from .publisher import ALREADY_PRESENT, WorklistPublisher
from .ris_client import OrderStore

logger = logging.getLogger("mwl_sync.sync")

DRY_RUN = "dry-run"
CANCELLED = "cancelled"


@dataclass
class SyncReport:
    """Results of one sync run, in selection order."""

    results: List[OrderSyncResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def publish_results(self) -> List[PublishResult]:
        return [pr for result in self.results for pr in result.publish_results]

    def _count(self, outcome: SyncOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    @property
    def published(self) -> int:
        return self._count(SyncOutcome.PUBLISHED)

    @property
    def skipped(self) -> int:
        return self._count(SyncOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(SyncOutcome.FAILED)

    @property
    def counts(self) -> Dict[str, int]:
        return {"published": self.published, "skipped": self.skipped, "failed": self.failed}

    def format_lines(self) -> List[str]:
        """One line per order per backend.

        Orders that never reached a backend get a single line with ``-`` as
        the backend name.
        """
        lines = []
        for result in self.results:
            accession = result.accession_number or result.order_id
            if not result.publish_results:
                detail = result.reason or ""
                if result.error_type:
                    detail = f"{result.error_type}: {detail}"
                lines.append(f"{accession}\t-\t{result.outcome.value}\t{detail}".rstrip())
                continue
            for pr in result.publish_results:
                if pr.success:
                    detail = pr.external_study_id or ""
                    if pr.note:
                        detail = f"{detail} ({pr.note})".strip()
                else:
                    detail = f"{pr.error_type}: {pr.error_message}"
                lines.append(f"{accession}\t{pr.backend}\t{result.outcome.value}\t{detail}".rstrip())
        return lines

    def summary(self) -> str:
        prefix = "Dry run: " if self.dry_run else ""
        return (
            f"{prefix}{len(self.results)} orders: {self.published} published, "
            f"{self.skipped} skipped, {self.failed} failed"
        )

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "counts": self.counts,
            "results": [
                {
                    "order_id": r.order_id,
                    "accession_number": r.accession_number,
                    "outcome": r.outcome.value,
                    "reason": r.reason,
                    "error_type": r.error_type,
                    "written_study_id": r.written_study_id,
                    "item": r.item.to_dict() if r.item else None,
                    "publish_results": [asdict(pr) for pr in r.publish_results],
                }
                for r in self.results
            ],
        }


class WorklistSync:
    """Runs sync batches against a store and a set of publishers."""

    def __init__(
        self,
        store: OrderStore,
        publishers: Dict[str, WorklistPublisher],
        primary: Optional[str] = None,
        settings: Optional[SyncSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            store: Order store to read from and write back to
            publishers: Backend name to publisher, in publish order
            primary: Backend whose result decides the order outcome; defaults
                to the only publisher, or ``settings.primary`` for several
            settings: Retry, concurrency and mapping settings
            sleep: Used between retries
            now: Clock for the default schedule, when enabled
        """
        if not publishers:
            raise ValueError("At least one publisher is required")
        self.store = store
        self.publishers = publishers
        self.settings = settings or SyncSettings()
        if primary is None:
            primary = next(iter(publishers)) if len(publishers) == 1 else self.settings.primary
        if primary not in publishers:
            raise ValueError(f"Primary backend {primary!r} is not among the targets {list(publishers)}")
        self.primary = primary
        self.sleep = sleep
        self.now = now
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, order_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(order_id, threading.Lock())

    def run(
        self,
        order_filter: OrderFilter,
        *,
        dry_run: bool = False,
        force: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncReport:
        """Run one sync batch.

        Selection failures propagate; everything that happens to a single
        order ends up in its ``OrderSyncResult``.
        """
        orders = self.store.select_orders(order_filter)
        logger.info(
            "Syncing %d orders to %s (primary %s)%s",
            len(orders), ", ".join(self.publishers), self.primary, " [dry run]" if dry_run else "",
        )

        results: List[Optional[OrderSyncResult]] = [None] * len(orders)

        # First occurrence of an accession wins
        seen = set()
        pending = []
        for index, order in enumerate(orders):
            accession = (order.accession_number or "").strip()
            if accession and accession in seen:
                results[index] = OrderSyncResult(
                    order_id=order.order_id,
                    accession_number=accession,
                    outcome=SyncOutcome.FAILED,
                    reason=f"duplicate accession number {accession} in this run",
                    error_type=MappingError.classification,
                )
                continue
            seen.add(accession)
            pending.append(index)

        if cancel_event is None:
            cancel_event = threading.Event()

        with ThreadPoolExecutor(max_workers=self.settings.concurrency) as executor:
            futures = {
                executor.submit(self._sync_order, orders[index], dry_run, force, cancel_event): index
                for index in pending
            }
            try:
                self._collect(futures, results)
            except KeyboardInterrupt:
                logger.warning("Interrupted, skipping orders that have not started")
                cancel_event.set()
                self._collect(futures, results)

        report = SyncReport(results=[r for r in results if r is not None], dry_run=dry_run)
        logger.info(report.summary())
        return report

    @staticmethod
    def _collect(futures, results: List[Optional[OrderSyncResult]]) -> None:
        for completed in as_completed(futures):
            index = futures[completed]
            if results[index] is None:
                results[index] = completed.result()

    def _sync_order(
        self,
        order: Order,
        dry_run: bool,
        force: bool,
        cancel_event: Optional[threading.Event],
    ) -> OrderSyncResult:
        accession = order.accession_number or ""
        if cancel_event is not None and cancel_event.is_set():
            return OrderSyncResult(order.order_id, accession, SyncOutcome.SKIPPED, reason=CANCELLED)

        try:
            return self._process(order, dry_run, force)
        except MwlSyncError as e:
            logger.warning("Order %s (%s) failed: %s", order.order_id, accession, e)
            return OrderSyncResult(
                order.order_id, accession, SyncOutcome.FAILED, reason=str(e), error_type=e.classification
            )
        except Exception as e:
            logger.exception("Unexpected error while syncing order %s", order.order_id)
            return OrderSyncResult(
                order.order_id, accession, SyncOutcome.FAILED, reason=str(e), error_type="Error"
            )

    def _process(self, order: Order, dry_run: bool, force: bool) -> OrderSyncResult:
        accession = order.accession_number or ""
        if order.study_id and not force:
            logger.debug("Order %s already correlated with study %s", order.order_id, order.study_id)
            return OrderSyncResult(
                order.order_id, accession, SyncOutcome.SKIPPED,
                reason=f"already synced (study {order.study_id})",
            )

        detail = self.store.get_order_detail(order.order_id)
        item = build_from_detail(
            detail,
            preferred_ae_title=self.settings.preferred_ae_title,
            allow_default_schedule=self.settings.allow_default_schedule,
            now=self.now,
        )

        if dry_run:
            return OrderSyncResult(order.order_id, item.accession_number, SyncOutcome.SKIPPED, reason=DRY_RUN, item=item)

        publish_results = [
            self._publish_with_retry(publisher, item, order.order_id)
            for publisher in self.publishers.values()
        ]
        primary_result = next(pr for pr in publish_results if pr.backend == self.primary)
        result = OrderSyncResult(
            order.order_id, item.accession_number, SyncOutcome.PUBLISHED, publish_results=publish_results
        )

        if not primary_result.success:
            result.outcome = SyncOutcome.FAILED
            result.reason = primary_result.error_message
            result.error_type = primary_result.error_type
            return result

        failed = [pr.backend for pr in publish_results if not pr.success]
        notes = [f"{name} failed" for name in failed]
        if primary_result.note == ALREADY_PRESENT:
            notes.append(ALREADY_PRESENT)

        notes.append(self._write_back(order, primary_result, force, result))
        result.reason = "; ".join(n for n in notes if n) or None
        return result

    def _publish_with_retry(self, publisher: WorklistPublisher, item: WorklistItem, order_id: str) -> PublishResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                return replace(publisher.publish(item, order_id), attempts=attempt)
            except BackendError as e:
                if e.retryable and attempt <= self.settings.max_retries:
                    delay = self.settings.retry_backoff * 2 ** (attempt - 1)
                    logger.warning(
                        "%s: publishing %s failed (%s), retry %d/%d in %.1fs",
                        publisher.name, item.accession_number, e, attempt, self.settings.max_retries, delay,
                    )
                    self.sleep(delay)
                    continue
                if isinstance(e, (AuthError, ValidationError)):
                    logger.error("%s rejected %s: %s", publisher.name, item.accession_number, e)
                else:
                    logger.warning("%s: publishing %s failed: %s", publisher.name, item.accession_number, e)
                return self._failed_publish(publisher, item, order_id, e, e.classification, attempt)
            except Exception as e:
                logger.exception("%s: unexpected error publishing %s", publisher.name, item.accession_number)
                return self._failed_publish(publisher, item, order_id, e, "Error", attempt)

    @staticmethod
    def _failed_publish(publisher, item, order_id, error, error_type, attempts) -> PublishResult:
        return PublishResult(
            order_id=order_id,
            accession_number=item.accession_number,
            backend=publisher.name,
            success=False,
            error_message=str(error),
            error_type=error_type,
            attempts=attempts,
        )

    def _write_back(self, order: Order, primary_result: PublishResult, force: bool, result: OrderSyncResult) -> str:
        study_id = primary_result.external_study_id
        if not study_id:
            return f"{self.primary} returned no study id"

        with self._lock_for(order.order_id):
            try:
                current = self.store.get_study_id(order.order_id)
                if current and not force:
                    logger.info("Order %s was correlated with %s meanwhile, not overwriting", order.order_id, current)
                    return f"study id already set to {current}"
                self.store.set_study_id(order.order_id, study_id)
            except Exception as e:
                logger.error("Writing study id %s for order %s failed: %s", study_id, order.order_id, e)
                return f"study id write-back failed: {e}"

        result.written_study_id = study_id
        return ""

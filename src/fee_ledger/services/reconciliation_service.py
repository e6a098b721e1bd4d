'''
Rebuilds fee statuses from the payment ledger.

The ledger is the truth and fee statuses are a materialized view of it.
Partial failures and manual edits can make the two drift apart; a
reconciliation run recomputes every student-period from its payments and
rewrites the fee statuses that disagree. Runs are idempotent: a second run
over an unchanged ledger writes nothing.
'''
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from functools import reduce
from typing import Annotated, Any, Optional

from fastapi import Depends
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database.utils import read_session, transaction
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum, FeeStatusEnum
from ..models import fees as fee_models
from ..core.fee_status import compute_status
from ..core.keys import derive_key
from ..core.partitions import split_account_space
from ..common.config import settings
from ..common.exceptions import (
    ConcurrencyConflictError,
    ReconciliationBatchError,
    StorageUnavailableError,
)
from ..common.time_utils import utc_now, ensure_utc
from ..common.logger import log
from .audit_service import AuditService


@dataclass
class _CachedStatus:
    version: int
    total_paid: Decimal
    total_due: Decimal
    status: str


@dataclass
class _LedgerGroup:
    student_id: Any
    term: str
    session: str
    class_id: Optional[str]
    total_paid: Decimal = Decimal("0")
    count: int = 0
    last_payment: Optional[db_models.PaymentEvents] = None

    def add(self, payment: db_models.PaymentEvents) -> None:
        self.total_paid += Decimal(payment.amount)
        self.count += 1
        if self.last_payment is None or _payment_order(payment) > _payment_order(self.last_payment):
            self.last_payment = payment


@dataclass
class _StagedUpsert:
    key: str
    values: dict = field(default_factory=dict)
    # None means the fee status did not exist when the run started
    expected_version: Optional[int] = None

    @property
    def is_create(self) -> bool:
        return self.expected_version is None


def _payment_order(payment: db_models.PaymentEvents) -> tuple:
    return (ensure_utc(payment.payment_date), ensure_utc(payment.created_at), payment.receipt_number)


class ReconciliationService:
    """
    Offline batch job. Never locks the ledger, never deletes anything, and
    never overwrites a fee status that a live payment touched mid-run.
    """

    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
        audit_service: Annotated[AuditService, Depends(AuditService)]
    ):
        self.session_factory = session_factory
        self.audit_service = audit_service
        self.batch_size = settings.RECONCILE_BATCH_SIZE
        self.tolerance = settings.RECONCILE_TOLERANCE
        self.default_total_due = settings.DEFAULT_TOTAL_DUE
        self.max_batch_attempts = settings.RECONCILE_BATCH_MAX_ATTEMPTS

    # --- 1. Reading ---

    def _shard_filter(self, stmt, column, shard: Optional[fee_models.AccountRange]):
        if shard is None:
            return stmt
        if shard.start is not None:
            stmt = stmt.filter(column >= shard.start)
        if shard.end is not None:
            stmt = stmt.filter(column < shard.end)
        return stmt

    async def _load_cached_statuses(self, shard: Optional[fee_models.AccountRange]) -> dict[str, _CachedStatus]:
        """
        Read before the ledger scan: a payment committed after this point
        bumps the version, so the compare-and-swap below will skip its key.
        """
        stmt = select(
            db_models.FeeStatusSnapshots.id,
            db_models.FeeStatusSnapshots.version,
            db_models.FeeStatusSnapshots.total_paid,
            db_models.FeeStatusSnapshots.total_due,
            db_models.FeeStatusSnapshots.status,
        )
        stmt = self._shard_filter(stmt, db_models.FeeStatusSnapshots.student_id, shard)
        async with read_session(self.session_factory) as session:
            rows = (await session.execute(stmt)).all()
        return {
            row.id: _CachedStatus(
                version=row.version,
                total_paid=Decimal(row.total_paid),
                total_due=Decimal(row.total_due),
                status=row.status,
            )
            for row in rows
        }

    async def _scan_ledger(self, shard: Optional[fee_models.AccountRange]) -> tuple[dict[str, _LedgerGroup], int]:
        """
        Groups every payment by a freshly derived key. The key stored on the
        payment is ignored so old rows written with a different session
        spelling heal into the right group.
        """
        stmt = select(db_models.PaymentEvents, db_models.Students.class_id).outerjoin(
            db_models.Students, db_models.Students.id == db_models.PaymentEvents.student_id
        ).order_by(db_models.PaymentEvents.student_id, db_models.PaymentEvents.payment_date)
        stmt = self._shard_filter(stmt, db_models.PaymentEvents.student_id, shard)

        groups: dict[str, _LedgerGroup] = {}
        scanned = 0
        async with read_session(self.session_factory) as session:
            result = await session.execute(stmt)
            for payment, class_id in result.all():
                scanned += 1
                key = derive_key(payment.student_id, payment.term, payment.session)
                group = groups.get(key)
                if group is None:
                    group = _LedgerGroup(
                        student_id=payment.student_id,
                        term=payment.term,
                        session=payment.session,
                        class_id=class_id,
                    )
                    groups[key] = group
                group.add(payment)
        return groups, scanned

    # --- 2. Staging ---

    def _stage_upserts(
        self,
        groups: dict[str, _LedgerGroup],
        cached: dict[str, _CachedStatus],
        report: fee_models.ReconciliationReport
    ) -> list[_StagedUpsert]:
        staged = []
        now = utc_now()
        for key in sorted(groups):
            group = groups[key]
            current = cached.get(key)
            if current is not None and abs(current.total_paid - group.total_paid) <= self.tolerance:
                report.skipped += 1
                continue

            total_due = current.total_due if current is not None else self.default_total_due
            balance, status = compute_status(
                total_due, group.total_paid, current.status if current is not None else None
            )
            last = group.last_payment
            values = {
                "total_paid": group.total_paid,
                "balance": balance,
                "status": status.value,
                "last_payment_id": last.id,
                "last_payment_date": last.payment_date,
                "last_payment_amount": last.amount,
                "last_updated": now,
            }
            if status == FeeStatusEnum.PAID:
                values["days_overdue"] = 0

            if current is None:
                log.info(f"Creating fee status {key} from {group.count} payments (paid {group.total_paid}).")
                values.update(
                    id=key,
                    student_id=group.student_id,
                    term=group.term,
                    session=group.session,
                    class_id=group.class_id,
                    total_due=total_due,
                    due_date=None,
                    days_overdue=0,
                    version=1,
                    created_at=now,
                )
                staged.append(_StagedUpsert(key=key, values=values))
            else:
                log.info(f"Repairing fee status {key}: {current.total_paid} -> {group.total_paid}.")
                values["version"] = current.version + 1
                staged.append(_StagedUpsert(key=key, values=values, expected_version=current.version))
        return staged

    # --- 3. Committing ---

    async def _commit_batch(self, batch: list[_StagedUpsert]) -> tuple[int, int, int]:
        """
        Applies one batch in one transaction. Returns (created, updated, contended).
        A precondition miss means a live payment got there first; that key is
        left for the next run rather than overwritten with older totals.
        """
        created = updated = contended = 0
        async with transaction(self.session_factory) as session:
            for upsert in batch:
                if upsert.is_create:
                    exists = await session.execute(
                        select(db_models.FeeStatusSnapshots.id).filter(db_models.FeeStatusSnapshots.id == upsert.key)
                    )
                    if exists.scalar_one_or_none() is not None:
                        contended += 1
                        continue
                    await session.execute(insert(db_models.FeeStatusSnapshots).values(**upsert.values))
                    created += 1
                else:
                    result = await session.execute(
                        update(db_models.FeeStatusSnapshots)
                        .where(
                            db_models.FeeStatusSnapshots.id == upsert.key,
                            db_models.FeeStatusSnapshots.version == upsert.expected_version,
                        )
                        .values(**upsert.values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        contended += 1
                    else:
                        updated += 1
        return created, updated, contended

    async def _commit_batches(
        self,
        staged: list[_StagedUpsert],
        report: fee_models.ReconciliationReport,
        cancel_event: Optional[asyncio.Event]
    ) -> None:
        for start in range(0, len(staged), self.batch_size):
            if cancel_event is not None and cancel_event.is_set():
                log.warning(f"Reconciliation cancelled after {report.batches_committed} batches.")
                report.cancelled = True
                return

            batch = staged[start:start + self.batch_size]
            for attempt in range(1, self.max_batch_attempts + 1):
                try:
                    created, updated, contended = await self._commit_batch(batch)
                    break
                except (ConcurrencyConflictError, StorageUnavailableError, SQLAlchemyError) as e:
                    log.warning(
                        f"Reconciliation batch {report.batches_committed + 1} failed "
                        f"(attempt {attempt}/{self.max_batch_attempts}): {e}"
                    )
                    if attempt == self.max_batch_attempts:
                        raise ReconciliationBatchError(
                            f"Batch {report.batches_committed + 1} failed after {attempt} attempts; "
                            f"{report.batches_committed} earlier batches are committed. Safe to rerun.",
                            report
                        ) from e

            report.created += created
            report.updated += updated
            report.contended += contended
            report.batches_committed += 1

    # --- 4. Entry Points ---

    async def _record_failure(self, report: fee_models.ReconciliationReport, error: ReconciliationBatchError) -> None:
        report.finished_at = utc_now()
        log.error(f"Reconciliation aborted: {error}. Progress: {report.model_dump()}")
        await self.audit_service.emit(
            AuditActionEnum.RECONCILIATION_FAILED,
            entity_type="fee_status",
            details=report.model_dump(),
            success=False,
            error_message=str(error)
        )

    async def reconcile(
        self,
        shard: Optional[fee_models.AccountRange] = None,
        cancel_event: Optional[asyncio.Event] = None,
        dry_run: bool = False
    ) -> fee_models.ReconciliationReport:
        """
        One reconciliation pass over the whole ledger or over one shard of
        student IDs. With dry_run the staged changes are counted but not written.
        """
        report = fee_models.ReconciliationReport(started_at=utc_now(), dry_run=dry_run)
        log.info(f"Starting fee status reconciliation (shard: {shard}, dry_run: {dry_run}).")
        try:
            cached = await self._load_cached_statuses(shard)
            groups, report.scanned = await self._scan_ledger(shard)
            report.groups = len(groups)
            log.info(f"Found {report.scanned} payments in {report.groups} student-periods.")

            staged = self._stage_upserts(groups, cached, report)
            if dry_run:
                report.created = sum(1 for s in staged if s.is_create)
                report.updated = len(staged) - report.created
            else:
                await self._commit_batches(staged, report, cancel_event)
        except ReconciliationBatchError as e:
            await self._record_failure(report, e)
            raise
        except StorageUnavailableError as e:
            failure = ReconciliationBatchError(
                f"Could not read the fee ledger: {e} Nothing was written. Safe to rerun.",
                report
            )
            await self._record_failure(report, failure)
            raise failure from e

        report.finished_at = utc_now()
        log.info(
            f"Reconciliation complete: created {report.created}, updated {report.updated}, "
            f"skipped {report.skipped}, contended {report.contended}."
        )
        await self.audit_service.emit(
            AuditActionEnum.RECONCILIATION_COMPLETED,
            entity_type="fee_status",
            details=report.model_dump()
        )
        return report

    async def reconcile_sharded(
        self,
        shard_count: int,
        cancel_event: Optional[asyncio.Event] = None,
        dry_run: bool = False
    ) -> fee_models.ReconciliationReport:
        """
        Runs one pass per disjoint student-ID range concurrently and sums the
        reports. Shards share nothing, so one failing shard does not undo the
        others; the first failure is re-raised once all shards have finished.
        """
        shards = split_account_space(shard_count)
        results = await asyncio.gather(
            *(self.reconcile(shard=shard, cancel_event=cancel_event, dry_run=dry_run) for shard in shards),
            return_exceptions=True
        )
        reports = [r for r in results if isinstance(r, fee_models.ReconciliationReport)]
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if isinstance(failure, ReconciliationBatchError):
                reports.append(failure.report)

        combined = reduce(lambda a, b: a.merge(b), reports) if reports else fee_models.ReconciliationReport(dry_run=dry_run)
        if failures:
            first = failures[0]
            if isinstance(first, ReconciliationBatchError):
                raise ReconciliationBatchError(str(first), combined) from first
            raise first
        return combined

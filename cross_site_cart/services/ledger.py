"""
Transfer ledger: one row per outbound transfer attempt.

Rows are created as `initiated` and move exactly once to `completed` or
`failed`. Updates are keyed by row id and conditioned on the current status,
so a second terminal update is a no-op.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, create_engine, delete, func, select, update, case
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..utils.hash import canonical_json
from ..utils.logger import info, warn

INITIATED = "initiated"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL = (COMPLETED, FAILED)


class Base(DeclarativeBase):
    pass


def _utc(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, timezone.utc).replace(tzinfo=None)


class TransferRecord(Base):
    __tablename__ = "cross_site_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    target_product_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    transfer_data: Mapped[str] = mapped_column(Text, nullable=False)
    transfer_status: Mapped[str] = mapped_column(String(20), default=INITIATED)
    source_site: Mapped[Optional[str]] = mapped_column(String(255))
    target_site: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_transfers_source_product", "source_product_id"),
        Index("ix_transfers_status", "transfer_status"),
        Index("ix_transfers_created", "created_at"),
    )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "source_product_id": self.source_product_id,
            "target_product_id": self.target_product_id,
            "transfer_data": self.transfer_data,
            "status": self.transfer_status,
            "source_site": self.source_site,
            "target_site": self.target_site,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
        }


def make_engine(database_url: str):
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(database_url, pool_pre_ping=True)


class TransferLedger:
    def __init__(self, database_url: str = "sqlite:///:memory:", engine=None, clock=time.time):
        self.clock = clock
        self.engine = engine or make_engine(database_url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

    def open(self, payload: dict, source_site: str, target_site: str) -> int:
        with self.Session.begin() as s:
            rec = TransferRecord(
                source_product_id=int(payload["original_product_id"]),
                transfer_data=canonical_json(payload),
                transfer_status=INITIATED,
                source_site=source_site,
                target_site=target_site,
                created_at=_utc(self.clock()),
            )
            s.add(rec)
            s.flush()
            entry_id = rec.id
        info(f"[ledger] #{entry_id} initiated for source product {payload['original_product_id']}")
        return entry_id

    def _finish(self, entry_id: int, status: str, **values) -> bool:
        with self.Session.begin() as s:
            res = s.execute(
                update(TransferRecord)
                .where(TransferRecord.id == entry_id, TransferRecord.transfer_status == INITIATED)
                .values(transfer_status=status, completed_at=_utc(self.clock()), **values)
            )
            changed = res.rowcount == 1
        if not changed:
            warn(f"[ledger] #{entry_id} already terminal, ignoring {status}")
        return changed

    def complete(self, entry_id: int, target_product_id: Optional[int] = None) -> bool:
        return self._finish(entry_id, COMPLETED, target_product_id=target_product_id)

    def fail(self, entry_id: int, error_message: str) -> bool:
        return self._finish(entry_id, FAILED, error_message=(error_message or "")[:2000])

    def get(self, entry_id: int) -> Optional[dict]:
        with self.Session() as s:
            rec = s.get(TransferRecord, entry_id)
            return rec.as_dict() if rec else None

    def entries(self, source_product_id: Optional[int] = None, limit: int = 50) -> list[dict]:
        q = select(TransferRecord).order_by(TransferRecord.id.desc()).limit(limit)
        if source_product_id is not None:
            q = q.where(TransferRecord.source_product_id == source_product_id)
        with self.Session() as s:
            return [r.as_dict() for r in s.scalars(q)]

    def stats(self) -> dict:
        def count_status(status):
            return func.coalesce(func.sum(case((TransferRecord.transfer_status == status, 1), else_=0)), 0)

        q = select(
            func.count(TransferRecord.id),
            count_status(COMPLETED),
            count_status(FAILED),
            count_status(INITIATED),
        )
        with self.Session() as s:
            total, ok, failed, pending = s.execute(q).one()
        return {
            "total_transfers": int(total or 0),
            "successful_transfers": int(ok or 0),
            "failed_transfers": int(failed or 0),
            "pending_transfers": int(pending or 0),
        }

    def prune(self, older_than_days: int = 90, now: Optional[datetime] = None) -> int:
        cutoff = (now or _utc(self.clock())) - timedelta(days=older_than_days)
        with self.Session.begin() as s:
            res = s.execute(delete(TransferRecord).where(TransferRecord.created_at < cutoff))
            return res.rowcount or 0

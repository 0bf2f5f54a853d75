from __future__ import annotations

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from globalsched.db.models.scheduling import CollectionRun, RetryEntry


class RetryRepo:
    def __init__(self, session: Session):
        self.s = session

    def get_entry(self, business_id: str, platform: str) -> RetryEntry | None:
        return self.s.execute(
            select(RetryEntry).where(and_(RetryEntry.business_id == business_id, RetryEntry.platform == platform))
        ).scalar_one_or_none()

    def get_by_id(self, entry_id: int) -> RetryEntry | None:
        return self.s.get(RetryEntry, entry_id)

    def list_due_ids(self, now_iso: str, limit: int) -> list[int]:
        rows = self.s.execute(
            select(RetryEntry.id)
            .where(and_(RetryEntry.status == "pending", RetryEntry.next_attempt_at <= now_iso))
            .order_by(RetryEntry.next_attempt_at.asc(), RetryEntry.id.asc())
            .limit(max(1, int(limit)))
        ).all()
        return [int(r[0]) for r in rows]

    def list_entries(self, *, status: str | None = None, limit: int = 100) -> list[RetryEntry]:
        q = select(RetryEntry).order_by(RetryEntry.next_attempt_at.asc(), RetryEntry.id.asc()).limit(max(1, int(limit)))
        if status:
            q = q.where(RetryEntry.status == status)
        return list(self.s.execute(q).scalars().all())

    def count_by_status(self) -> dict[str, int]:
        rows = self.s.execute(select(RetryEntry.status, func.count(RetryEntry.id)).group_by(RetryEntry.status)).all()
        return {str(status): int(n) for status, n in rows}

    def count_due(self, now_iso: str) -> int:
        return int(
            self.s.execute(
                select(func.count(RetryEntry.id)).where(
                    and_(RetryEntry.status == "pending", RetryEntry.next_attempt_at <= now_iso)
                )
            ).scalar_one()
        )

    def delete_entry(self, business_id: str, platform: str, *, pending_only: bool = False) -> bool:
        cond = [RetryEntry.business_id == business_id, RetryEntry.platform == platform]
        if pending_only:
            cond.append(RetryEntry.status == "pending")
        res = self.s.execute(delete(RetryEntry).where(and_(*cond)))
        return int(res.rowcount or 0) > 0

    def delete_not_updated_since(self, cutoff_iso: str) -> int:
        res = self.s.execute(delete(RetryEntry).where(RetryEntry.updated_at < cutoff_iso))
        return int(res.rowcount or 0)


class RunsRepo:
    def __init__(self, session: Session):
        self.s = session

    def get_run(self, run_id: str) -> CollectionRun | None:
        return self.s.execute(select(CollectionRun).where(CollectionRun.run_id == run_id)).scalar_one_or_none()

    def claim(self, run_id: str, now_iso: str) -> bool:
        """Marks the run processed; False when another delivery already did."""
        res = self.s.execute(
            update(CollectionRun)
            .where(and_(CollectionRun.run_id == run_id, CollectionRun.processed_at.is_(None)))
            .values(processed_at=now_iso, updated_at=now_iso)
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0) == 1

    def delete_processed_before(self, cutoff_iso: str) -> int:
        res = self.s.execute(
            delete(CollectionRun).where(
                and_(CollectionRun.processed_at.is_not(None), CollectionRun.processed_at < cutoff_iso)
            )
        )
        return int(res.rowcount or 0)

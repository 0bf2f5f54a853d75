from __future__ import annotations

from typing import Any

from sqlalchemy import and_, delete, func, select
from sqlalchemy.orm import Session

from globalsched.db.models.scheduling import BusinessScheduleMapping, CustomIntervalOverride, GlobalSchedule


class SchedulesRepo:
    """Queries over schedules, mappings and interval overrides inside one session."""

    def __init__(self, session: Session, *, lock_rows: bool = False):
        self.s = session
        self.lock_rows = lock_rows

    def _locked(self, q: Any, for_update: bool) -> Any:
        if for_update and self.lock_rows:
            return q.with_for_update()
        return q

    def get_schedule(self, schedule_id: str, *, for_update: bool = False) -> GlobalSchedule | None:
        q = select(GlobalSchedule).where(GlobalSchedule.id == schedule_id)
        return self.s.execute(self._locked(q, for_update)).scalar_one_or_none()

    def get_by_external_id(self, external_schedule_id: str) -> GlobalSchedule | None:
        return self.s.execute(
            select(GlobalSchedule).where(GlobalSchedule.external_schedule_id == external_schedule_id)
        ).scalar_one_or_none()

    def list_group(
        self, platform: str, schedule_type: str, interval_hours: int, *, for_update: bool = False
    ) -> list[GlobalSchedule]:
        q = (
            select(GlobalSchedule)
            .where(
                and_(
                    GlobalSchedule.platform == platform,
                    GlobalSchedule.schedule_type == schedule_type,
                    GlobalSchedule.interval_hours == int(interval_hours),
                )
            )
            .order_by(GlobalSchedule.batch_index.asc())
        )
        return list(self.s.execute(self._locked(q, for_update)).scalars().all())

    def list_schedules(self, *, platform: str | None = None) -> list[GlobalSchedule]:
        q = select(GlobalSchedule).order_by(
            GlobalSchedule.platform.asc(),
            GlobalSchedule.schedule_type.asc(),
            GlobalSchedule.interval_hours.asc(),
            GlobalSchedule.batch_index.asc(),
        )
        if platform:
            q = q.where(GlobalSchedule.platform == platform)
        return list(self.s.execute(q).scalars().all())

    def next_batch_index(self, platform: str, schedule_type: str, interval_hours: int) -> int:
        used = {s.batch_index for s in self.list_group(platform, schedule_type, interval_hours)}
        idx = 0
        while idx in used:
            idx += 1
        return idx

    def get_mapping(self, business_id: str, platform: str) -> BusinessScheduleMapping | None:
        return self.s.execute(
            select(BusinessScheduleMapping).where(
                and_(BusinessScheduleMapping.business_id == business_id, BusinessScheduleMapping.platform == platform)
            )
        ).scalar_one_or_none()

    def list_business_mappings(self, business_id: str) -> list[BusinessScheduleMapping]:
        return list(
            self.s.execute(
                select(BusinessScheduleMapping)
                .where(BusinessScheduleMapping.business_id == business_id)
                .order_by(BusinessScheduleMapping.platform.asc())
            )
            .scalars()
            .all()
        )

    def list_mappings(self, schedule_id: str) -> list[BusinessScheduleMapping]:
        return list(
            self.s.execute(
                select(BusinessScheduleMapping)
                .where(BusinessScheduleMapping.schedule_id == schedule_id)
                .order_by(BusinessScheduleMapping.created_at.asc(), BusinessScheduleMapping.id.asc())
            )
            .scalars()
            .all()
        )

    def list_team_mappings(self, team_id: str, *, platform: str | None = None) -> list[BusinessScheduleMapping]:
        q = (
            select(BusinessScheduleMapping)
            .where(BusinessScheduleMapping.team_id == team_id)
            .order_by(BusinessScheduleMapping.platform.asc(), BusinessScheduleMapping.id.asc())
        )
        if platform:
            q = q.where(BusinessScheduleMapping.platform == platform)
        return list(self.s.execute(q).scalars().all())

    def find_mappings_by_identifier(self, platform: str, identifier: str) -> list[BusinessScheduleMapping]:
        return list(
            self.s.execute(
                select(BusinessScheduleMapping)
                .where(
                    and_(BusinessScheduleMapping.platform == platform, BusinessScheduleMapping.identifier == identifier)
                )
                .order_by(BusinessScheduleMapping.id.asc())
            )
            .scalars()
            .all()
        )

    def mapping_counts(self) -> dict[str, int]:
        rows = self.s.execute(
            select(BusinessScheduleMapping.schedule_id, func.count(BusinessScheduleMapping.id)).group_by(
                BusinessScheduleMapping.schedule_id
            )
        ).all()
        return {str(sid): int(n) for sid, n in rows}

    def get_override(self, team_id: str, platform: str) -> CustomIntervalOverride | None:
        return self.s.execute(
            select(CustomIntervalOverride).where(
                and_(CustomIntervalOverride.team_id == team_id, CustomIntervalOverride.platform == platform)
            )
        ).scalar_one_or_none()

    def list_overrides(self, team_id: str) -> list[CustomIntervalOverride]:
        return list(
            self.s.execute(
                select(CustomIntervalOverride)
                .where(CustomIntervalOverride.team_id == team_id)
                .order_by(CustomIntervalOverride.platform.asc())
            )
            .scalars()
            .all()
        )

    def delete_override(self, team_id: str, platform: str) -> bool:
        res = self.s.execute(
            delete(CustomIntervalOverride).where(
                and_(CustomIntervalOverride.team_id == team_id, CustomIntervalOverride.platform == platform)
            )
        )
        return int(res.rowcount or 0) > 0

    def purge_expired_overrides(self, now_iso: str) -> int:
        res = self.s.execute(
            delete(CustomIntervalOverride).where(
                and_(CustomIntervalOverride.expires_at.is_not(None), CustomIntervalOverride.expires_at <= now_iso)
            )
        )
        return int(res.rowcount or 0)

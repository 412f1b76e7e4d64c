from __future__ import annotations

import uuid
from collections.abc import Collection, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Protocol

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dealflow.metrics import observe_lock_conflict
from dealflow.pipeline.errors import ConcurrentModification, PipelineError, StoreFailure
from dealflow.pipeline.models import PIPELINE_LOCK_ID, Deal, DealActivity, PipelineLock, PipelineStage, utcnow


@dataclass
class DealFilters:
    stage_id: uuid.UUID | None = None
    owner_user_id: str | None = None
    status: str | None = None
    search: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    orphaned: bool | None = None


class RecordStore(Protocol):
    """Transactional storage for stages, deals and deal activities."""

    def transaction(self, operation: str) -> AbstractContextManager[None]:
        ...

    def claim_pipeline_lock(self) -> None:
        ...

    def get_stage(self, stage_id: uuid.UUID) -> PipelineStage | None:
        ...

    def get_stages(self, stage_ids: Collection[uuid.UUID]) -> dict[uuid.UUID, PipelineStage]:
        ...

    def list_stages(self, *, include_inactive: bool = False) -> list[PipelineStage]:
        ...

    def find_active_stage_by_name(self, name: str, *, exclude_id: uuid.UUID | None = None) -> PipelineStage | None:
        ...

    def max_active_order_index(self) -> int | None:
        ...

    def is_order_index_taken(self, order_index: int, *, exclude_id: uuid.UUID | None = None) -> bool:
        ...

    def shift_active_stages(self, from_index: int, *, exclude_id: uuid.UUID | None = None) -> int:
        ...

    def add_stage(self, stage: PipelineStage) -> PipelineStage:
        ...

    def update_stage(
        self,
        stage_id: uuid.UUID,
        values: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> PipelineStage | None:
        ...

    def get_deal(self, deal_id: uuid.UUID) -> Deal | None:
        ...

    def add_deal(self, deal: Deal) -> Deal:
        ...

    def update_deal(
        self,
        deal_id: uuid.UUID,
        values: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> Deal | None:
        ...

    def delete_deal(self, deal: Deal) -> None:
        ...

    def query_deals(self, filters: DealFilters, *, offset: int = 0, limit: int | None = None) -> list[Deal]:
        ...

    def count_deals_in_stage(self, stage_id: uuid.UUID) -> int:
        ...

    def add_activity(self, activity: DealActivity) -> DealActivity:
        ...

    def list_activities(self, deal_id: uuid.UUID) -> list[DealActivity]:
        ...


class SqlRecordStore:
    """RecordStore backed by a SQLAlchemy session. One instance per request."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def transaction(self, operation: str) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except PipelineError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreFailure(operation, exc) from exc

    def claim_pipeline_lock(self) -> None:
        lock = self.session.get(PipelineLock, PIPELINE_LOCK_ID, populate_existing=True)
        if lock is None:
            lock = PipelineLock(id=PIPELINE_LOCK_ID, row_version=1)
            try:
                self.session.add(lock)
                self.session.flush()
            except IntegrityError as exc:
                observe_lock_conflict()
                raise ConcurrentModification("pipeline ordering is being modified, retry") from exc

        result = self.session.execute(
            update(PipelineLock)
            .where(and_(PipelineLock.id == PIPELINE_LOCK_ID, PipelineLock.row_version == lock.row_version))
            .values(row_version=PipelineLock.row_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            observe_lock_conflict()
            raise ConcurrentModification("pipeline ordering is being modified, retry")

    def get_stage(self, stage_id: uuid.UUID) -> PipelineStage | None:
        return self.session.get(PipelineStage, stage_id, populate_existing=True)

    def get_stages(self, stage_ids: Collection[uuid.UUID]) -> dict[uuid.UUID, PipelineStage]:
        if not stage_ids:
            return {}
        stmt = select(PipelineStage).where(PipelineStage.id.in_(list(stage_ids)))
        return {stage.id: stage for stage in self.session.scalars(stmt.execution_options(populate_existing=True))}

    def list_stages(self, *, include_inactive: bool = False) -> list[PipelineStage]:
        stmt = select(PipelineStage)
        if not include_inactive:
            stmt = stmt.where(PipelineStage.is_active.is_(True))
        stmt = stmt.order_by(PipelineStage.order_index.asc(), PipelineStage.created_at.asc())
        return list(self.session.scalars(stmt.execution_options(populate_existing=True)).all())

    def find_active_stage_by_name(self, name: str, *, exclude_id: uuid.UUID | None = None) -> PipelineStage | None:
        stmt = select(PipelineStage).where(
            and_(PipelineStage.is_active.is_(True), func.lower(PipelineStage.name) == name.lower())
        )
        if exclude_id is not None:
            stmt = stmt.where(PipelineStage.id != exclude_id)
        return self.session.scalars(stmt.limit(1)).first()

    def max_active_order_index(self) -> int | None:
        return self.session.scalar(
            select(func.max(PipelineStage.order_index)).where(PipelineStage.is_active.is_(True))
        )

    def is_order_index_taken(self, order_index: int, *, exclude_id: uuid.UUID | None = None) -> bool:
        stmt = select(func.count(PipelineStage.id)).where(
            and_(PipelineStage.is_active.is_(True), PipelineStage.order_index == order_index)
        )
        if exclude_id is not None:
            stmt = stmt.where(PipelineStage.id != exclude_id)
        return bool(self.session.scalar(stmt))

    def shift_active_stages(self, from_index: int, *, exclude_id: uuid.UUID | None = None) -> int:
        conditions = [PipelineStage.is_active.is_(True), PipelineStage.order_index >= from_index]
        if exclude_id is not None:
            conditions.append(PipelineStage.id != exclude_id)
        result = self.session.execute(
            update(PipelineStage)
            .where(and_(*conditions))
            .values(
                order_index=PipelineStage.order_index + 1,
                updated_at=utcnow(),
                row_version=PipelineStage.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def add_stage(self, stage: PipelineStage) -> PipelineStage:
        self.session.add(stage)
        self.session.flush()
        return stage

    def update_stage(
        self,
        stage_id: uuid.UUID,
        values: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> PipelineStage | None:
        conditions = [PipelineStage.id == stage_id]
        if expected_row_version is not None:
            conditions.append(PipelineStage.row_version == expected_row_version)
        result = self.session.execute(
            update(PipelineStage)
            .where(and_(*conditions))
            .values(**values, updated_at=utcnow(), row_version=PipelineStage.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return self.get_stage(stage_id)

    def get_deal(self, deal_id: uuid.UUID) -> Deal | None:
        return self.session.get(Deal, deal_id, populate_existing=True)

    def add_deal(self, deal: Deal) -> Deal:
        self.session.add(deal)
        self.session.flush()
        return deal

    def update_deal(
        self,
        deal_id: uuid.UUID,
        values: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> Deal | None:
        conditions = [Deal.id == deal_id]
        if expected_row_version is not None:
            conditions.append(Deal.row_version == expected_row_version)
        result = self.session.execute(
            update(Deal)
            .where(and_(*conditions))
            .values(**values, updated_at=utcnow(), row_version=Deal.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return self.get_deal(deal_id)

    def delete_deal(self, deal: Deal) -> None:
        self.session.delete(deal)
        self.session.flush()

    def query_deals(self, filters: DealFilters, *, offset: int = 0, limit: int | None = None) -> list[Deal]:
        stmt: Select[tuple[Deal]] = select(Deal)

        if filters.stage_id is not None:
            stmt = stmt.where(Deal.stage_id == filters.stage_id)
        if filters.owner_user_id:
            stmt = stmt.where(Deal.owner_user_id == filters.owner_user_id)
        if filters.status:
            stmt = stmt.where(Deal.status == filters.status)
        if filters.search:
            pattern = f"%{filters.search.lower()}%"
            stmt = stmt.where(or_(func.lower(Deal.title).like(pattern), func.lower(Deal.notes).like(pattern)))
        if filters.start_date is not None:
            stmt = stmt.where(Deal.created_at >= datetime.combine(filters.start_date, time.min, tzinfo=timezone.utc))
        if filters.end_date is not None:
            stmt = stmt.where(Deal.created_at <= datetime.combine(filters.end_date, time.max, tzinfo=timezone.utc))
        if filters.orphaned is not None:
            stmt = stmt.join(PipelineStage, PipelineStage.id == Deal.stage_id).where(
                PipelineStage.is_active.is_(not filters.orphaned)
            )

        stmt = stmt.order_by(Deal.updated_at.desc(), Deal.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt.execution_options(populate_existing=True)).all())

    def count_deals_in_stage(self, stage_id: uuid.UUID) -> int:
        return int(self.session.scalar(select(func.count(Deal.id)).where(Deal.stage_id == stage_id)) or 0)

    def add_activity(self, activity: DealActivity) -> DealActivity:
        self.session.add(activity)
        self.session.flush()
        return activity

    def list_activities(self, deal_id: uuid.UUID) -> list[DealActivity]:
        return list(
            self.session.scalars(
                select(DealActivity)
                .where(DealActivity.deal_id == deal_id)
                .order_by(DealActivity.created_at.desc(), DealActivity.id.desc())
            ).all()
        )

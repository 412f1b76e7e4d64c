from __future__ import annotations

import logging
import uuid

from dealflow import audit, events
from dealflow.metrics import observe_stage_mutation
from dealflow.otel import get_tracer
from dealflow.pipeline.access import Action, Identity, ResourceKind, authorize
from dealflow.pipeline.errors import ConcurrentModification, DuplicateName, InvalidPermutation, InvalidStage, NotFound
from dealflow.pipeline.models import PipelineStage
from dealflow.pipeline.schemas import StageRead, StageUpdate
from dealflow.pipeline.store import RecordStore


logger = logging.getLogger("dealflow.pipeline.stages")
tracer = get_tracer("dealflow.pipeline.stages")


class StageRegistry:
    """Owns the ordered set of pipeline stages.

    Active stages never share an ``order_index``. Every write that can touch
    ordering claims the pipeline lock first, so concurrent renumbering from
    another process fails with ``ConcurrentModification`` instead of
    interleaving.
    """

    entity_type = "pipeline.stage"

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def list_active_stages(self) -> list[StageRead]:
        with self.store.transaction("list_active_stages"):
            return [self._to_read(stage) for stage in self.store.list_stages()]

    def list_stages(self, identity: Identity | None, *, include_inactive: bool = False) -> list[StageRead]:
        if not include_inactive:
            return self.list_active_stages()
        # inactive stages are only visible to identities that may manage them
        authorize(identity, Action.UPDATE, ResourceKind.STAGE)
        with self.store.transaction("list_stages"):
            return [self._to_read(stage) for stage in self.store.list_stages(include_inactive=True)]

    def get_stage(self, stage_id: uuid.UUID) -> StageRead:
        with self.store.transaction("get_stage"):
            stage = self.store.get_stage(stage_id)
            if stage is None:
                raise NotFound("stage not found")
            return self._to_read(stage)

    def create_stage(
        self,
        identity: Identity | None,
        name: str,
        order_index: int | None = None,
        is_active: bool = True,
    ) -> StageRead:
        authorize(identity, Action.CREATE, ResourceKind.STAGE)
        name = name.strip()

        with tracer.start_as_current_span("pipeline.stage.create") as span, self.store.transaction("create_stage"):
            self.store.claim_pipeline_lock()
            if is_active:
                self._ensure_unique_name(name)

            shifted = 0
            if order_index is None:
                current_max = self.store.max_active_order_index()
                order_index = 0 if current_max is None else current_max + 1
            elif is_active and self.store.is_order_index_taken(order_index):
                shifted = self.store.shift_active_stages(order_index)

            stage = self.store.add_stage(PipelineStage(name=name, order_index=order_index, is_active=is_active))
            created = self._to_read(stage)
            span.set_attribute("order_index", order_index)
            span.set_attribute("shifted_count", shifted)

            audit.record(
                identity,
                self.entity_type,
                str(created.id),
                "create",
                after=created.model_dump(mode="json"),
            )

        observe_stage_mutation("create")
        logger.info(
            "pipeline.stage.created",
            extra={"actor_user_id": identity.user_id, "stage_id": str(created.id), "order_index": created.order_index},
        )
        events.publish(
            events.build_envelope(
                "pipeline.stage.created",
                identity.user_id,
                {"stage_id": str(created.id), "order_index": created.order_index, "shifted_count": shifted},
            )
        )
        return created

    def update_stage(self, identity: Identity | None, stage_id: uuid.UUID, dto: StageUpdate) -> StageRead:
        authorize(identity, Action.UPDATE, ResourceKind.STAGE)
        payload = dto.model_dump(exclude_unset=True)
        expected_row_version = payload.pop("row_version", None)

        with tracer.start_as_current_span("pipeline.stage.update"), self.store.transaction("update_stage"):
            stage = self.store.get_stage(stage_id)
            if stage is None:
                raise NotFound("stage not found")
            if not payload:
                return self._to_read(stage)
            if expected_row_version is not None and stage.row_version != expected_row_version:
                raise ConcurrentModification("row_version conflict")

            new_name = payload.get("name", stage.name)
            new_index = payload.get("order_index", stage.order_index)
            new_active = payload.get("is_active", stage.is_active)
            reordering = new_active and (new_index != stage.order_index or not stage.is_active)
            renaming = new_active and (new_name.lower() != stage.name.lower() or not stage.is_active)

            if reordering or renaming or "is_active" in payload:
                self.store.claim_pipeline_lock()
            if renaming:
                self._ensure_unique_name(new_name, exclude_id=stage.id)

            before = self._to_read(stage).model_dump(mode="json")
            if reordering and self.store.is_order_index_taken(new_index, exclude_id=stage.id):
                self.store.shift_active_stages(new_index, exclude_id=stage.id)

            updated_stage = self.store.update_stage(stage.id, payload, expected_row_version=expected_row_version)
            if updated_stage is None:
                raise ConcurrentModification("row_version conflict")
            updated = self._to_read(updated_stage)

            audit.record(
                identity,
                self.entity_type,
                str(stage.id),
                "update",
                before=before,
                after=updated.model_dump(mode="json"),
            )

        observe_stage_mutation("update")
        logger.info(
            "pipeline.stage.updated",
            extra={"actor_user_id": identity.user_id, "stage_id": str(updated.id), "order_index": updated.order_index},
        )
        events.publish(
            events.build_envelope(
                "pipeline.stage.updated",
                identity.user_id,
                {"stage_id": str(updated.id), "changed_fields": sorted(payload.keys())},
            )
        )
        return updated

    def deactivate_stage(self, identity: Identity | None, stage_id: uuid.UUID) -> None:
        authorize(identity, Action.DELETE, ResourceKind.STAGE)

        with self.store.transaction("deactivate_stage"):
            stage = self.store.get_stage(stage_id)
            if stage is None:
                raise NotFound("stage not found")
            if not stage.is_active:
                return

            before = self._to_read(stage).model_dump(mode="json")
            updated_stage = self.store.update_stage(stage.id, {"is_active": False})
            if updated_stage is None:
                raise NotFound("stage not found")
            orphaned_count = self.store.count_deals_in_stage(stage.id)
            audit.record(
                identity,
                self.entity_type,
                str(stage.id),
                "deactivate",
                before=before,
                after=self._to_read(updated_stage).model_dump(mode="json"),
            )

        observe_stage_mutation("deactivate")
        logger.info(
            "pipeline.stage.deactivated",
            extra={"actor_user_id": identity.user_id, "stage_id": str(stage_id)},
        )
        events.publish(
            events.build_envelope(
                "pipeline.stage.deactivated",
                identity.user_id,
                {"stage_id": str(stage_id), "orphaned_deal_count": orphaned_count},
            )
        )

    def reorder_stages(self, identity: Identity | None, ordered_stage_ids: list[uuid.UUID]) -> list[StageRead]:
        authorize(identity, Action.REORDER, ResourceKind.STAGE)

        with tracer.start_as_current_span("pipeline.stage.reorder") as span, self.store.transaction("reorder_stages"):
            self.store.claim_pipeline_lock()
            active = self.store.list_stages()
            self._validate_permutation([stage.id for stage in active], ordered_stage_ids)
            span.set_attribute("stage_count", len(active))

            before = {str(stage.id): stage.order_index for stage in active}
            current = {stage.id: stage.order_index for stage in active}
            for position, stage_id in enumerate(ordered_stage_ids):
                if current[stage_id] != position:
                    self.store.update_stage(stage_id, {"order_index": position})

            reordered = [self._to_read(stage) for stage in self.store.list_stages()]
            audit.record(
                identity,
                self.entity_type,
                "*",
                "reorder",
                before=before,
                after={str(stage.id): stage.order_index for stage in reordered},
            )

        observe_stage_mutation("reorder")
        logger.info(
            "pipeline.stage.reordered",
            extra={"actor_user_id": identity.user_id, "stage_count": len(reordered)},
        )
        events.publish(
            events.build_envelope(
                "pipeline.stage.reordered",
                identity.user_id,
                {"stage_ids": [str(stage.id) for stage in reordered]},
            )
        )
        return reordered

    def resolve_active_stage(self, stage_id: uuid.UUID) -> PipelineStage:
        """Return the stage if it exists and is active. Runs inside the caller's transaction."""
        stage = self.store.get_stage(stage_id)
        if stage is None or not stage.is_active:
            raise InvalidStage("stage does not exist or is inactive", details={"stage_id": str(stage_id)})
        return stage

    def entry_stage(self) -> PipelineStage | None:
        """Lowest-ordered active stage, where new deals land by default."""
        stages = self.store.list_stages()
        return stages[0] if stages else None

    def _ensure_unique_name(self, name: str, *, exclude_id: uuid.UUID | None = None) -> None:
        existing = self.store.find_active_stage_by_name(name, exclude_id=exclude_id)
        if existing is not None:
            raise DuplicateName(f"an active stage named '{existing.name}' already exists")

    def _validate_permutation(self, active_ids: list[uuid.UUID], ordered_ids: list[uuid.UUID]) -> None:
        active_set = set(active_ids)
        seen: set[uuid.UUID] = set()
        duplicates: list[str] = []
        unknown: list[str] = []
        for stage_id in ordered_ids:
            if stage_id in seen:
                duplicates.append(str(stage_id))
                continue
            seen.add(stage_id)
            if stage_id not in active_set:
                unknown.append(str(stage_id))
        missing = [str(stage_id) for stage_id in active_ids if stage_id not in seen]

        if duplicates or unknown or missing:
            raise InvalidPermutation(
                "stage_ids must list every active stage exactly once",
                details={"missing": missing, "duplicate": duplicates, "unknown": unknown},
            )

    def _to_read(self, stage: PipelineStage) -> StageRead:
        return StageRead.model_validate(stage)

from __future__ import annotations

import logging
import uuid
from typing import Any

from dealflow import audit, events
from dealflow.metrics import observe_deal_move
from dealflow.pipeline.access import Action, Identity, ResourceKind, authorize
from dealflow.pipeline.errors import ConcurrentModification, Forbidden, NoStagesConfigured, NotFound
from dealflow.pipeline.models import Deal, DealActivity, PipelineStage
from dealflow.pipeline.registry import StageRegistry
from dealflow.pipeline.schemas import DealActivityRead, DealCreate, DealRead, DealUpdate
from dealflow.pipeline.store import DealFilters, RecordStore


logger = logging.getLogger("dealflow.pipeline.deals")


class DealAssignmentEngine:
    """Places deals on pipeline stages and moves them between stages."""

    entity_type = "pipeline.deal"

    def __init__(self, store: RecordStore, registry: StageRegistry | None = None) -> None:
        self.store = store
        self.registry = registry or StageRegistry(store)

    def create_deal(self, identity: Identity | None, dto: DealCreate) -> DealRead:
        authorize(identity, Action.CREATE, ResourceKind.DEAL)
        owner_user_id = dto.owner_user_id or identity.user_id
        if owner_user_id != identity.user_id and not identity.is_admin:
            raise Forbidden("only admins may assign a deal to another owner")

        with self.store.transaction("create_deal"):
            if dto.stage_id is not None:
                stage = self.registry.resolve_active_stage(dto.stage_id)
            else:
                stage = self.registry.entry_stage()
                if stage is None:
                    raise NoStagesConfigured()

            deal = self.store.add_deal(
                Deal(
                    title=dto.title.strip(),
                    lead_id=dto.lead_id,
                    stage_id=stage.id,
                    owner_user_id=owner_user_id,
                    value=dto.value,
                    probability=dto.probability,
                    expected_close_date=dto.expected_close_date,
                    status=dto.status,
                    notes=dto.notes,
                )
            )
            created = self._to_read(deal)
            self._record_activity(identity, deal.id, "create", f"Created deal: {deal.title}")
            audit.record(
                identity,
                self.entity_type,
                str(deal.id),
                "create",
                after=created.model_dump(mode="json"),
            )

        logger.info(
            "pipeline.deal.created",
            extra={"actor_user_id": identity.user_id, "deal_id": str(created.id), "stage_id": str(created.stage_id)},
        )
        events.publish(
            events.build_envelope(
                "pipeline.deal.created",
                identity.user_id,
                {"deal_id": str(created.id), "stage_id": str(created.stage_id), "owner_user_id": created.owner_user_id},
            )
        )
        return created

    def get_deal(self, identity: Identity | None, deal_id: uuid.UUID) -> DealRead:
        authorize(identity, Action.READ, ResourceKind.DEAL)
        with self.store.transaction("get_deal"):
            return self._to_read(self._load_deal(deal_id))

    def move_deal(self, identity: Identity | None, deal_id: uuid.UUID, target_stage_id: uuid.UUID) -> DealRead:
        authorize(identity, Action.READ, ResourceKind.DEAL)

        with self.store.transaction("move_deal"):
            deal = self._load_deal(deal_id)
            self._authorize_owner(identity, deal, Action.UPDATE)
            target = self.registry.resolve_active_stage(target_stage_id)

            from_stage_id = deal.stage_id
            before = self._to_read(deal).model_dump(mode="json")
            moved_deal = self.store.update_deal(deal.id, {"stage_id": target.id})
            if moved_deal is None:
                raise NotFound("deal not found")
            moved = self._to_read(moved_deal)
            self._record_activity(
                identity,
                deal.id,
                "move",
                f"Moved deal: {moved_deal.title} to {target.name}",
            )
            audit.record(
                identity,
                self.entity_type,
                str(deal.id),
                "move",
                before=before,
                after=moved.model_dump(mode="json"),
            )

        outcome = "unchanged" if from_stage_id == moved.stage_id else "moved"
        observe_deal_move(outcome)
        logger.info(
            "pipeline.deal.moved",
            extra={
                "actor_user_id": identity.user_id,
                "deal_id": str(moved.id),
                "from_stage_id": str(from_stage_id),
                "to_stage_id": str(moved.stage_id),
            },
        )
        if outcome == "moved":
            events.publish(
                events.build_envelope(
                    "pipeline.deal.stage_changed",
                    identity.user_id,
                    {"deal_id": str(moved.id), "from_stage_id": str(from_stage_id), "stage_id": str(moved.stage_id)},
                )
            )
        return moved

    def update_deal(self, identity: Identity | None, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        authorize(identity, Action.READ, ResourceKind.DEAL)
        payload: dict[str, Any] = dto.model_dump(exclude_unset=True)
        expected_row_version = payload.pop("row_version", None)

        with self.store.transaction("update_deal"):
            deal = self._load_deal(deal_id)
            self._authorize_owner(identity, deal, Action.UPDATE)
            if not payload:
                return self._to_read(deal)
            if expected_row_version is not None and deal.row_version != expected_row_version:
                raise ConcurrentModification("row_version conflict")

            if "owner_user_id" in payload and payload["owner_user_id"] != deal.owner_user_id and not identity.is_admin:
                raise Forbidden("only admins may reassign deal ownership")
            if "stage_id" in payload and payload["stage_id"] != deal.stage_id:
                payload["stage_id"] = self.registry.resolve_active_stage(payload["stage_id"]).id
            if "title" in payload:
                payload["title"] = payload["title"].strip()

            from_stage_id = deal.stage_id
            before = self._to_read(deal).model_dump(mode="json")
            updated_deal = self.store.update_deal(deal.id, payload, expected_row_version=expected_row_version)
            if updated_deal is None:
                raise ConcurrentModification("row_version conflict")
            updated = self._to_read(updated_deal)
            self._record_activity(identity, deal.id, "update", f"Updated deal: {updated_deal.title}")
            audit.record(
                identity,
                self.entity_type,
                str(deal.id),
                "update",
                before=before,
                after=updated.model_dump(mode="json"),
            )

        logger.info(
            "pipeline.deal.updated",
            extra={"actor_user_id": identity.user_id, "deal_id": str(updated.id), "stage_id": str(updated.stage_id)},
        )
        events.publish(
            events.build_envelope(
                "pipeline.deal.updated",
                identity.user_id,
                {"deal_id": str(updated.id), "changed_fields": sorted(payload.keys()), "row_version": updated.row_version},
            )
        )
        if from_stage_id != updated.stage_id:
            observe_deal_move("moved")
            events.publish(
                events.build_envelope(
                    "pipeline.deal.stage_changed",
                    identity.user_id,
                    {"deal_id": str(updated.id), "from_stage_id": str(from_stage_id), "stage_id": str(updated.stage_id)},
                )
            )
        return updated

    def delete_deal(self, identity: Identity | None, deal_id: uuid.UUID) -> None:
        authorize(identity, Action.READ, ResourceKind.DEAL)

        with self.store.transaction("delete_deal"):
            deal = self._load_deal(deal_id)
            self._authorize_owner(identity, deal, Action.DELETE)
            before = self._to_read(deal).model_dump(mode="json")
            title = deal.title
            self.store.delete_deal(deal)
            self._record_activity(identity, deal_id, "delete", f"Deleted deal: {title}")
            audit.record(
                identity,
                self.entity_type,
                str(deal_id),
                "delete",
                before=before,
            )

        logger.info("pipeline.deal.deleted", extra={"actor_user_id": identity.user_id, "deal_id": str(deal_id)})
        events.publish(events.build_envelope("pipeline.deal.deleted", identity.user_id, {"deal_id": str(deal_id)}))

    def list_deals_by_stage(self, identity: Identity | None, stage_id: uuid.UUID) -> list[DealRead]:
        return self.list_deals(identity, DealFilters(stage_id=stage_id))

    def list_deals(
        self,
        identity: Identity | None,
        filters: DealFilters,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> list[DealRead]:
        authorize(identity, Action.READ, ResourceKind.DEAL)
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        with self.store.transaction("list_deals"):
            deals = self.store.query_deals(filters, offset=offset, limit=limit)
            stages = self.store.get_stages({deal.stage_id for deal in deals})
            return [self._to_read(deal, stages.get(deal.stage_id)) for deal in deals]

    def list_deal_activities(self, identity: Identity | None, deal_id: uuid.UUID) -> list[DealActivityRead]:
        authorize(identity, Action.READ, ResourceKind.DEAL)
        with self.store.transaction("list_deal_activities"):
            self._load_deal(deal_id)
            return [DealActivityRead.model_validate(item) for item in self.store.list_activities(deal_id)]

    def _load_deal(self, deal_id: uuid.UUID) -> Deal:
        deal = self.store.get_deal(deal_id)
        if deal is None:
            raise NotFound("deal not found")
        return deal

    def _authorize_owner(self, identity: Identity | None, deal: Deal, action: Action) -> None:
        authorize(identity, action, ResourceKind.DEAL, owner_user_id=deal.owner_user_id)

    def _record_activity(self, identity: Identity, deal_id: uuid.UUID, action_type: str, description: str) -> None:
        self.store.add_activity(
            DealActivity(
                user_id=identity.user_id,
                action_type=action_type,
                deal_id=deal_id,
                description=description,
            )
        )

    def _to_read(self, deal: Deal, stage: PipelineStage | None = None) -> DealRead:
        read = DealRead.model_validate(deal)
        if stage is None:
            stage = self.store.get_stage(deal.stage_id)
        read.is_orphaned = stage is None or not stage.is_active
        return read

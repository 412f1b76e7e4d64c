from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


DealStatus = Literal["open", "closed_won", "closed_lost"]


def _reject_nulls(model: BaseModel, fields: set[str]) -> None:
    nulled = sorted(name for name in fields & model.model_fields_set if getattr(model, name) is None)
    if nulled:
        raise ValueError(f"fields cannot be null: {', '.join(nulled)}")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive values for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    order_index: int | None = Field(default=None, ge=0)
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class StageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    order_index: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    row_version: int | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @model_validator(mode="after")
    def _reject_explicit_nulls(self) -> StageUpdate:
        _reject_nulls(self, {"name", "order_index", "is_active"})
        return self


class StageReorderRequest(BaseModel):
    stage_ids: list[UUID]


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    order_index: int
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_timestamps(cls, value: datetime) -> datetime:
        return _as_utc(value)


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    stage_id: UUID | None = None
    owner_user_id: str | None = Field(default=None, min_length=1)
    lead_id: str | None = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    status: DealStatus = "open"
    notes: str | None = None


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    stage_id: UUID | None = None
    owner_user_id: str | None = Field(default=None, min_length=1)
    lead_id: str | None = None
    value: Decimal | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    status: DealStatus | None = None
    notes: str | None = None
    row_version: int | None = None

    @model_validator(mode="after")
    def _reject_explicit_nulls(self) -> DealUpdate:
        _reject_nulls(self, {"title", "stage_id", "owner_user_id", "value", "probability", "status"})
        return self


class DealMoveRequest(BaseModel):
    stage_id: UUID


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    lead_id: str | None
    stage_id: UUID
    owner_user_id: str
    value: Decimal
    probability: int
    expected_close_date: date | None
    status: str
    notes: str | None
    is_orphaned: bool = False
    created_at: datetime
    updated_at: datetime
    row_version: int

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_timestamps(cls, value: datetime) -> datetime:
        return _as_utc(value)


class DealActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    action_type: str
    deal_id: UUID
    description: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)


class DeleteResult(BaseModel):
    success: bool

from pydantic import BaseModel, Field, field_validator

from biomed.db.models import ChecklistValueType, TaskKind


class ChecklistSkeletonItem(BaseModel):
    task: str = Field(min_length=1)
    value_type: ChecklistValueType = ChecklistValueType.BOOLEAN
    order: int = 0


class TemplateIn(BaseModel):
    kind: TaskKind = TaskKind.PM
    equipment_type: str = Field(min_length=1)
    manufacturer: str | None = None
    frequency_months: int = Field(gt=0)
    checklist: list[ChecklistSkeletonItem] = Field(default_factory=list)

    @field_validator("manufacturer")
    @classmethod
    def blank_manufacturer_is_generic(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    def skeleton(self) -> list[dict]:
        ordered = sorted(self.checklist, key=lambda item: item.order)
        return [item.model_dump(mode="json") for item in ordered]


class EscalationRuleIn(BaseModel):
    entity_type: TaskKind = TaskKind.PM
    days_overdue: int = Field(ge=0)
    escalation_level: int = Field(ge=1)
    notify_user_ids: list[int] = Field(min_length=1)
    is_active: bool = True


class EscalationRuleUpdate(BaseModel):
    days_overdue: int | None = Field(default=None, ge=0)
    escalation_level: int | None = Field(default=None, ge=1)
    notify_user_ids: list[int] | None = Field(default=None, min_length=1)
    is_active: bool | None = None

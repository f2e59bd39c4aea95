from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Annotated, Any, ClassVar, Generic, Literal, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

LeadStatus = Literal["new", "contacted", "qualified", "unqualified", "converted"]
LeadSource = Literal[
    "website",
    "referral",
    "cold_call",
    "cold_email",
    "linkedin",
    "advertisement",
    "event",
    "other",
]
CompanySize = Literal["1-10", "11-50", "51-200", "201-500", "500+", "501-1000", "1000+"]
DealStatus = Literal["open", "won", "lost"]
StageOutcome = Literal["open", "won", "lost"]
ActivityType = Literal["call", "email", "meeting", "task", "note"]
ActivityStatus = Literal["pending", "completed", "cancelled"]
ActivityPriority = Literal["low", "medium", "high"]
Percentage = Annotated[int, Field(ge=0, le=100)]


class WriteModel(BaseModel):
    """Base for request bodies.

    Blank strings on optional fields are stored as null. Fields listed in
    ``required_fields`` keep their blank value so ``min_length`` rejects them.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    required_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="before")
    @classmethod
    def blank_optionals_to_none(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            key: None if isinstance(value, str) and not value.strip() and key not in cls.required_fields else value
            for key, value in data.items()
        }


class PatchModel(WriteModel):
    """Partial update body: only keys present in the request are applied."""

    non_nullable_fields: ClassVar[frozenset[str]] = frozenset()

    row_version: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_non_nullable(self) -> "PatchModel":
        for name in sorted(self.non_nullable_fields):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"row_version"})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageResponse(BaseModel):
    message: str


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    model_config = ConfigDict(populate_by_name=True)

    data: list[T]
    total: int
    page: int
    limit: int
    total_pages: int = Field(alias="totalPages")


class CompanyCreate(WriteModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = Field(min_length=1, max_length=255)
    domain: str | None = None
    industry: str | None = None
    size: CompanySize | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    phone: str | None = None
    website: str | None = None
    notes: str | None = None


class CompanyUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    domain: str | None = None
    industry: str | None = None
    size: CompanySize | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    phone: str | None = None
    website: str | None = None
    notes: str | None = None


class ContactCreate(WriteModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"first_name", "last_name"})

    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    mobile: str | None = None
    company_id: str | None = None
    title: str | None = None
    department: str | None = None
    linkedin_url: str | None = None
    notes: str | None = None
    tags: list[str] | None = None


class ContactUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"first_name", "last_name"})
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"first_name", "last_name"})

    first_name: str | None = Field(default=None, min_length=1, max_length=255)
    last_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    mobile: str | None = None
    company_id: str | None = None
    title: str | None = None
    department: str | None = None
    linkedin_url: str | None = None
    notes: str | None = None
    tags: list[str] | None = None


class LeadCreate(WriteModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    company_name: str | None = None
    title: str | None = None
    status: LeadStatus | None = None
    source: LeadSource | None = None
    score: Percentage | None = None
    assigned_to: str | None = None
    notes: str | None = None


class LeadUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name", "status", "score"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    company_name: str | None = None
    title: str | None = None
    status: LeadStatus | None = None
    source: LeadSource | None = None
    score: Percentage | None = None
    assigned_to: str | None = None
    notes: str | None = None


class PipelineStageCreate(WriteModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = Field(min_length=1, max_length=255)
    color: str | None = Field(default=None, max_length=32)
    probability: Percentage | None = None
    outcome: StageOutcome | None = None


class PipelineStageUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name", "color", "probability", "outcome"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    color: str | None = Field(default=None, max_length=32)
    probability: Percentage | None = None
    outcome: StageOutcome | None = None


class PipelineStageReorder(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stage_ids: list[str] = Field(alias="stageIds")

    @field_validator("stage_ids", mode="before")
    @classmethod
    def validate_stage_ids(cls, value: Any) -> Any:
        if not isinstance(value, list):
            raise ValueError("stageIds must be an array")
        return value


class DealCreate(WriteModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str = Field(min_length=1, max_length=255)
    value: float = Field(ge=0)
    currency: str | None = Field(default=None, max_length=3)
    stage_id: str | None = None
    probability: Percentage | None = None
    expected_close_date: date | None = None
    contact_id: str | None = None
    company_id: str | None = None
    assigned_to: str | None = None
    loss_reason: str | None = None
    notes: str | None = None


class DealUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"name"})
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name", "value", "currency", "probability"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    value: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, max_length=3)
    stage_id: str | None = None
    probability: Percentage | None = None
    expected_close_date: date | None = None
    contact_id: str | None = None
    company_id: str | None = None
    assigned_to: str | None = None
    loss_reason: str | None = None
    notes: str | None = None


class DealStageChange(BaseModel):
    stage_id: str = Field(min_length=1)
    row_version: int | None = Field(default=None, ge=1)


class ActivityCreate(WriteModel):
    type: ActivityType
    subject: str | None = Field(default=None, max_length=255)
    description: str | None = None
    status: ActivityStatus | None = None
    priority: ActivityPriority | None = None
    due_date: UtcDatetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    outcome: str | None = None
    lead_id: str | None = None
    contact_id: str | None = None
    deal_id: str | None = None
    company_id: str | None = None
    user_id: str | None = None


class ActivityUpdate(PatchModel):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"type", "status", "priority"})

    type: ActivityType | None = None
    subject: str | None = Field(default=None, max_length=255)
    description: str | None = None
    status: ActivityStatus | None = None
    priority: ActivityPriority | None = None
    due_date: UtcDatetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    outcome: str | None = None
    lead_id: str | None = None
    contact_id: str | None = None
    deal_id: str | None = None
    company_id: str | None = None
    user_id: str | None = None


class ActivityComplete(WriteModel):
    outcome: str | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    subject: str | None
    description: str | None
    status: str
    priority: str
    due_date: UtcDatetime | None
    completed_at: UtcDatetime | None
    duration_minutes: int | None
    outcome: str | None
    lead_id: str | None
    contact_id: str | None
    deal_id: str | None
    company_id: str | None
    user_id: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    row_version: int
    lead_name: str | None = None
    contact_first_name: str | None = None
    contact_last_name: str | None = None
    deal_name: str | None = None
    user_name: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    value: float
    currency: str
    stage_id: str | None
    probability: int
    expected_close_date: date | None
    actual_close_date: UtcDatetime | None
    contact_id: str | None
    company_id: str | None
    assigned_to: str | None
    status: DealStatus
    loss_reason: str | None
    notes: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    row_version: int
    contact_first_name: str | None = None
    contact_last_name: str | None = None
    company_name: str | None = None
    stage_name: str | None = None
    stage_color: str | None = None


class DealDetail(DealRead):
    contact_email: str | None = None
    activities: list[ActivityRead] = Field(default_factory=list)


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    mobile: str | None
    company_id: str | None
    title: str | None
    department: str | None
    linkedin_url: str | None
    notes: str | None
    tags: list[str]
    created_at: UtcDatetime
    updated_at: UtcDatetime
    row_version: int
    company_name: str | None = None


class ContactDetail(ContactRead):
    activities: list[ActivityRead] = Field(default_factory=list)
    deals: list[DealRead] = Field(default_factory=list)


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    domain: str | None
    industry: str | None
    size: str | None
    address: str | None
    city: str | None
    state: str | None
    country: str | None
    phone: str | None
    website: str | None
    notes: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    row_version: int


class CompanyDetail(CompanyRead):
    contacts: list[ContactRead] = Field(default_factory=list)
    deals: list[DealRead] = Field(default_factory=list)
    activities: list[ActivityRead] = Field(default_factory=list)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str | None
    phone: str | None
    company_name: str | None
    title: str | None
    status: LeadStatus
    source: str | None
    score: int
    assigned_to: str | None
    notes: str | None
    converted_contact_id: str | None
    converted_at: UtcDatetime | None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    row_version: int


class LeadDetail(LeadRead):
    activities: list[ActivityRead] = Field(default_factory=list)


class LeadConvertResponse(BaseModel):
    message: str
    contact: ContactRead


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    position: int
    color: str
    probability: int
    outcome: StageOutcome
    created_at: UtcDatetime
    updated_at: UtcDatetime
    row_version: int


class PipelineBoardColumn(PipelineStageRead):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    deals: list[DealRead] = Field(default_factory=list)
    total_value: float = Field(default=0.0, alias="totalValue")


class PipelineBoard(BaseModel):
    pipeline: list[PipelineBoardColumn]


class DealsByStageRow(CamelModel):
    stage: str
    color: str
    count: int
    value: float


class LeadsByStatusRow(CamelModel):
    status: str
    count: int


class DashboardStats(CamelModel):
    total_leads: int
    total_contacts: int
    total_companies: int
    total_deals: int
    total_value: float
    won_deals: int
    won_value: float
    pending_activities: int
    overdue_activities: int
    deals_by_stage: list[DealsByStageRow]
    leads_by_status: list[LeadsByStatusRow]
    recent_activities: list[ActivityRead]
    upcoming_activities: list[ActivityRead]


class ClosedDealsSummary(CamelModel):
    won: int
    lost: int
    won_value: float
    lost_value: float


class DashboardMetrics(CamelModel):
    period: int
    closed_deals: ClosedDealsSummary
    conversion_rate: float
    avg_deal_value: float
    avg_days_to_close: int

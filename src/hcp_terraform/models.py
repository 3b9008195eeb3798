"""Typed projections of the JSON:API resources the client works with.

Attribute names are kebab-case on the wire and snake_case here; the alias
generator handles the mapping in both directions.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    PrivateAttr,
    Tag,
)

from hcp_terraform.errors import validation_error


def _to_kebab(name: str) -> str:
    return name.replace("_", "-")


class APIModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=_to_kebab,
        populate_by_name=True,
        extra="ignore",
    )


# --- Run status lifecycle ----------------------------------------------------


class RunStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    FETCHING_COMPLETED = "fetching_completed"
    QUEUED = "queued"
    PLAN_QUEUED = "plan_queued"
    PLAN_QUEUEABLE = "plan_queueable"
    PLANNING = "planning"
    PLANNED = "planned"
    COST_ESTIMATING = "cost_estimating"
    COST_ESTIMATED = "cost_estimated"
    POLICY_CHECKING = "policy_checking"
    POLICY_OVERRIDE = "policy_override"
    POLICY_SOFT_FAILED = "policy_soft_failed"
    POLICY_CHECKED = "policy_checked"
    POST_PLAN_RUNNING = "post_plan_running"
    POST_PLAN_COMPLETED = "post_plan_completed"
    POST_PLAN_AWAITING_DECISION = "post_plan_awaiting_decision"
    PLANNED_AND_SAVED = "planned_and_saved"
    CONFIRMED = "confirmed"
    APPLY_QUEUED = "apply_queued"
    APPLY_QUEUEABLE = "apply_queueable"
    PRE_APPLY_RUNNING = "pre_apply_running"
    PRE_APPLY_COMPLETED = "pre_apply_completed"
    QUEUING_APPLY = "queuing_apply"
    APPLYING = "applying"
    APPLIED = "applied"
    DISCARDED = "discarded"
    ERRORED = "errored"
    CANCELED = "canceled"
    FORCE_CANCELED = "force_canceled"
    PLANNED_AND_FINISHED = "planned_and_finished"


TERMINAL_STATUSES = frozenset(
    {
        RunStatus.APPLIED.value,
        RunStatus.DISCARDED.value,
        RunStatus.ERRORED.value,
        RunStatus.CANCELED.value,
        RunStatus.FORCE_CANCELED.value,
        RunStatus.PLANNED_AND_FINISHED.value,
    }
)


def is_terminal_status(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


# --- Relationships -----------------------------------------------------------


class _ResourceRef(APIModel):
    id: str


class WorkspaceRef(_ResourceRef):
    type: Literal["workspaces"]


class PlanRef(_ResourceRef):
    type: Literal["plans"]


class ApplyRef(_ResourceRef):
    type: Literal["applies"]


class ConfigurationVersionRef(_ResourceRef):
    type: Literal["configuration-versions"]


class UserRef(_ResourceRef):
    type: Literal["users"]


class CostEstimateRef(_ResourceRef):
    type: Literal["cost-estimates"]


class PolicyCheckRef(_ResourceRef):
    type: Literal["policy-checks"]


class RunEventRef(_ResourceRef):
    type: Literal["run-events"]


class TaskStageRef(_ResourceRef):
    type: Literal["task-stages"]


class CommentRef(_ResourceRef):
    type: Literal["comments"]


class OtherRef(_ResourceRef):
    """A resource type this client has no dedicated reference for."""

    type: str


_REF_TYPES = frozenset(
    {
        "workspaces",
        "plans",
        "applies",
        "configuration-versions",
        "users",
        "cost-estimates",
        "policy-checks",
        "run-events",
        "task-stages",
        "comments",
    }
)


def _ref_tag(value: Any) -> str:
    if isinstance(value, dict):
        ref_type = value.get("type")
    else:
        ref_type = getattr(value, "type", None)
    return ref_type if ref_type in _REF_TYPES else "other"


ResourceRef = Annotated[
    Union[
        Annotated[WorkspaceRef, Tag("workspaces")],
        Annotated[PlanRef, Tag("plans")],
        Annotated[ApplyRef, Tag("applies")],
        Annotated[ConfigurationVersionRef, Tag("configuration-versions")],
        Annotated[UserRef, Tag("users")],
        Annotated[CostEstimateRef, Tag("cost-estimates")],
        Annotated[PolicyCheckRef, Tag("policy-checks")],
        Annotated[RunEventRef, Tag("run-events")],
        Annotated[TaskStageRef, Tag("task-stages")],
        Annotated[CommentRef, Tag("comments")],
        Annotated[OtherRef, Tag("other")],
    ],
    Discriminator(_ref_tag),
]


class Relationship(APIModel):
    data: Union[ResourceRef, list[ResourceRef], None] = None

    @property
    def single(self) -> _ResourceRef | None:
        if isinstance(self.data, list):
            return None
        return self.data


# --- Documents ---------------------------------------------------------------


def _flatten_resource(resource: Any) -> dict[str, Any]:
    """Merge a JSON:API resource object's id, attributes and relationships."""
    if not isinstance(resource, dict) or "id" not in resource:
        raise ValueError("resource object is missing 'id'")
    attributes = resource.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise ValueError("resource 'attributes' must be an object")
    flattened = dict(attributes)
    flattened["id"] = resource["id"]
    flattened["relationships"] = resource.get("relationships") or {}
    return flattened


class _Resource(APIModel):
    id: str
    relationships: dict[str, Relationship] = Field(default_factory=dict)

    @classmethod
    def from_resource(cls, resource: Any):
        return cls.model_validate(_flatten_resource(resource))

    @classmethod
    def from_document(cls, document: Any):
        """Decode a single-resource ``{"data": {...}}`` document."""
        if not isinstance(document, dict) or "data" not in document:
            raise ValueError("document is missing 'data'")
        return cls.from_resource(document["data"])

    def related_id(self, name: str) -> str | None:
        relationship = self.relationships.get(name)
        if relationship is None:
            return None
        ref = relationship.single
        return ref.id if ref is not None else None


class RunActions(APIModel):
    is_cancelable: bool = False
    is_confirmable: bool = False
    is_discardable: bool = False
    is_force_cancelable: bool = False


class RunPermissions(APIModel):
    can_apply: bool = False
    can_cancel: bool = False
    can_discard: bool = False
    can_force_cancel: bool = False
    can_force_execute: bool = False


class Run(_Resource):
    status: str
    status_timestamps: dict[str, datetime] = Field(default_factory=dict)
    message: str | None = None
    is_destroy: bool = False
    has_changes: bool | None = None
    created_at: datetime | None = None
    source: str | None = None
    plan_only: bool | None = None
    auto_apply: bool | None = None
    actions: RunActions = Field(default_factory=RunActions)
    permissions: RunPermissions = Field(default_factory=RunPermissions)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    @property
    def plan_id(self) -> str | None:
        return self.related_id("plan")

    @property
    def apply_id(self) -> str | None:
        return self.related_id("apply")

    @property
    def workspace_id(self) -> str | None:
        return self.related_id("workspace")

    @property
    def configuration_version_id(self) -> str | None:
        return self.related_id("configuration-version")


class _PhaseResource(_Resource):
    status: str
    resource_additions: int | None = None
    resource_changes: int | None = None
    resource_destructions: int | None = None
    resource_imports: int | None = None
    log_read_url: str | None = Field(default=None, repr=False)
    status_timestamps: dict[str, datetime] = Field(default_factory=dict)


class Plan(_PhaseResource):
    has_changes: bool | None = None


class Apply(_PhaseResource):
    pass


class ConfigurationVersion(_Resource):
    status: str | None = None
    upload_url: str | None = Field(default=None, repr=False)
    auto_queue_runs: bool = True
    speculative: bool = False
    source: str | None = None
    error_message: str | None = None

    _upload_url_taken: bool = PrivateAttr(default=False)

    def take_upload_url(self) -> str:
        """Hand out the single-use upload URL; a second call is an error."""
        if self._upload_url_taken:
            raise validation_error(
                f"Upload URL for configuration version {self.id} has already been used"
            )
        if not self.upload_url:
            raise validation_error(f"Configuration version {self.id} has no upload URL")
        self._upload_url_taken = True
        return self.upload_url


class Pagination(APIModel):
    current_page: int = 1
    page_size: int | None = None
    prev_page: int | None = None
    next_page: int | None = None
    total_pages: int | None = None
    total_count: int | None = None


class RunList(BaseModel):
    data: list[Run] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)

    @property
    def latest(self) -> Run | None:
        return self.data[0] if self.data else None

    @classmethod
    def from_document(cls, document: Any) -> "RunList":
        if not isinstance(document, dict) or not isinstance(document.get("data"), list):
            raise ValueError("document 'data' must be a list")
        meta = document.get("meta") or {}
        return cls(
            data=[Run.from_resource(item) for item in document["data"]],
            pagination=Pagination.model_validate(meta.get("pagination") or {}),
        )


# --- Request options ---------------------------------------------------------


class RunVariable(BaseModel):
    key: str
    # HCL-encoded, so strings carry their own quotes.
    value: str


class RunCreateOptions(APIModel):
    workspace_id: str
    configuration_version_id: str | None = None
    message: str | None = None
    is_destroy: bool | None = None
    refresh: bool | None = None
    refresh_only: bool | None = None
    plan_only: bool | None = None
    auto_apply: bool | None = None
    target_addrs: list[str] | None = None
    replace_addrs: list[str] | None = None
    variables: list[RunVariable] | None = None

    def to_payload(self) -> dict[str, Any]:
        attributes = self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"workspace_id", "configuration_version_id"},
        )
        relationships: dict[str, Any] = {
            "workspace": {"data": {"type": "workspaces", "id": self.workspace_id}},
        }
        if self.configuration_version_id:
            relationships["configuration-version"] = {
                "data": {
                    "type": "configuration-versions",
                    "id": self.configuration_version_id,
                }
            }
        return {
            "data": {
                "type": "runs",
                "attributes": attributes,
                "relationships": relationships,
            }
        }


class ConfigurationVersionCreateOptions(APIModel):
    auto_queue_runs: bool = True
    speculative: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "data": {
                "type": "configuration-versions",
                "attributes": self.model_dump(by_alias=True),
            }
        }


class RunListOptions(BaseModel):
    page_number: int | None = Field(default=None, ge=1)
    page_size: int | None = Field(default=None, ge=1, le=100)
    status: list[str] | None = None
    operation: list[str] | None = None
    source: list[str] | None = None
    include: list[str] | None = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.page_number is not None:
            params["page[number]"] = str(self.page_number)
        if self.page_size is not None:
            params["page[size]"] = str(self.page_size)
        for name in ("status", "operation", "source"):
            values = getattr(self, name)
            if values:
                params[f"filter[{name}]"] = ",".join(values)
        if self.include:
            params["include"] = ",".join(self.include)
        return params

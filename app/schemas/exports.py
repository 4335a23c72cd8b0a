from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ExportType = Literal["full", "prompts", "evaluations", "settings", "activity"]
ExportFormat = Literal["json", "csv", "zip"]
ExportStatus = Literal["pending", "processing", "completed", "failed", "expired"]

CategoryName = Literal[
    "profile",
    "prompts",
    "evaluations",
    "contextPackages",
    "activity",
    "loginHistory",
    "apiKeys",
    "apiUsage",
]


# ── API ──────────────────────────────────────────────────────────────────────


class ExportCreate(BaseModel):
    export_type: ExportType = "full"
    format: ExportFormat = "json"
    password: str | None = Field(default=None, min_length=1, max_length=1024)


class ExportCreated(BaseModel):
    request_id: str
    status: ExportStatus


class ExportStatusResponse(BaseModel):
    id: str
    export_type: ExportType
    format: ExportFormat
    status: ExportStatus
    progress: int
    encrypted: bool = False
    file_name: str | None = None
    file_size: int | None = None
    included_data: list[str] = []
    error_message: str | None = None
    requested_at: str
    started_at: str | None = None
    completed_at: str | None = None
    expires_at: str


class ExportHistory(BaseModel):
    exports: list[ExportStatusResponse]
    total: int


class DownloadUrlResponse(BaseModel):
    request_id: str
    status: ExportStatus
    url: str | None = None
    expires_at: str | None = None


class DataSummary(BaseModel):
    prompts: int = 0
    evaluations: int = 0
    context_packages: int = 0
    activity_events: int = 0
    api_keys: int = 0


# ── Export document records (camelCase on the wire) ──────────────────────────


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProfileRecord(_Record):
    id: str
    name: str
    email: str
    created_at: str | None = None


class PromptVersionRecord(_Record):
    id: str
    prompt_id: str
    version: int
    content: str
    variables: list[Any] = []
    change_message: str | None = None
    created_by: str
    created_at: str | None = None


class PromptRecord(_Record):
    id: str
    name: str
    description: str | None = None
    content: str
    variables: list[Any] = []
    tags: list[str] = []
    folder_path: str = "/"
    is_template: bool = False
    is_public: bool = False
    version: int = 1
    created_at: str | None = None
    updated_at: str | None = None
    versions: list[PromptVersionRecord] = []


class EvaluationResultRecord(_Record):
    id: str
    evaluation_id: str
    provider_id: str
    model: str
    test_case_index: int
    input: Any = None
    output: str
    tokens_used: int = 0
    latency_ms: int = 0
    cost: int = 0
    quality: int | None = None
    created_at: str | None = None


class EvaluationRecord(_Record):
    id: str
    prompt_id: str | None = None
    name: str
    description: str | None = None
    test_cases: list[Any] = []
    status: str
    created_at: str | None = None
    completed_at: str | None = None
    results: list[EvaluationResultRecord] = []


class ContextPackageRecord(_Record):
    id: str
    name: str
    description: str | None = None
    content: str
    tags: list[str] = []
    is_public: bool = False
    created_at: str | None = None
    updated_at: str | None = None


class ActivityRecord(_Record):
    id: str
    event_type: str
    event_data: Any = None
    created_at: str | None = None


class LoginRecord(_Record):
    id: str
    device_name: str | None = None
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    ip_address: str | None = None
    city: str | None = None
    country: str | None = None
    login_status: str
    failure_reason: str | None = None
    is_new_device: bool = False
    is_new_location: bool = False
    created_at: str | None = None


class ApiKeyRecord(_Record):
    """Key metadata only; the hash is never exported."""

    id: int
    label: str
    key_prefix: str
    is_active: bool
    rate_limit: int
    created_at: str | None = None
    last_used_at: str | None = None


class ApiUsageRecord(_Record):
    id: int
    api_key_id: int
    endpoint: str
    method: str
    status_code: int
    response_time_ms: float | None = None
    timestamp: str | None = None


# ── Category sections (discriminated on ``category``) ────────────────────────


class ProfileSection(BaseModel):
    category: Literal["profile"] = "profile"
    records: ProfileRecord


class PromptsSection(BaseModel):
    category: Literal["prompts"] = "prompts"
    records: list[PromptRecord]


class EvaluationsSection(BaseModel):
    category: Literal["evaluations"] = "evaluations"
    records: list[EvaluationRecord]


class ContextPackagesSection(BaseModel):
    category: Literal["contextPackages"] = "contextPackages"
    records: list[ContextPackageRecord]


class ActivitySection(BaseModel):
    category: Literal["activity"] = "activity"
    records: list[ActivityRecord]


class LoginHistorySection(BaseModel):
    category: Literal["loginHistory"] = "loginHistory"
    records: list[LoginRecord]


class ApiKeysSection(BaseModel):
    category: Literal["apiKeys"] = "apiKeys"
    records: list[ApiKeyRecord]


class ApiUsageSection(BaseModel):
    category: Literal["apiUsage"] = "apiUsage"
    records: list[ApiUsageRecord]


CategorySection = Annotated[
    Union[
        ProfileSection,
        PromptsSection,
        EvaluationsSection,
        ContextPackagesSection,
        ActivitySection,
        LoginHistorySection,
        ApiKeysSection,
        ApiUsageSection,
    ],
    Field(discriminator="category"),
]


class ExportMetadata(_Record):
    export_date: str
    export_type: ExportType
    format: ExportFormat
    user_id: str
    included_data: list[CategoryName]


class ExportDocument(BaseModel):
    """An export: ordered category sections plus metadata."""

    metadata: ExportMetadata
    sections: list[CategorySection] = []

    def to_wire(self) -> dict[str, Any]:
        """Render as ``{<category>: records, ..., "metadata": {...}}``."""
        out: dict[str, Any] = {}
        for section in self.sections:
            out[section.category] = (
                section.records.model_dump(by_alias=True, mode="json")
                if isinstance(section.records, BaseModel)
                else [r.model_dump(by_alias=True, mode="json") for r in section.records]
            )
        out["metadata"] = self.metadata.model_dump(by_alias=True, mode="json")
        return out

from pydantic import BaseModel, Field, HttpUrl


# ── Webhooks ─────────────────────────────────────────────────────────────────


class WebhookCreate(BaseModel):
    url: HttpUrl
    event_types: list[str] = Field(..., min_length=1)
    name: str | None = Field(default=None, max_length=255)


class WebhookUpdate(BaseModel):
    url: HttpUrl | None = None
    event_types: list[str] | None = Field(default=None, min_length=1)
    enabled: bool | None = None
    name: str | None = Field(default=None, max_length=255)


class WebhookResponse(BaseModel):
    id: str
    name: str | None = None
    url: str
    event_types: list[str]
    enabled: bool
    created_at: str
    last_triggered_at: str | None = None


class WebhookCreated(WebhookResponse):
    """Returned once at registration; the only response carrying the secret."""

    secret: str


class WebhookList(BaseModel):
    webhooks: list[WebhookResponse]
    total: int


class WebhookEventInfo(BaseModel):
    event: str
    description: str


# ── Deliveries ───────────────────────────────────────────────────────────────


class WebhookDeliveryResponse(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    payload: str
    signature: str
    attempt: int
    status: str
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    delivered_at: str | None = None
    created_at: str


class WebhookDeliveryList(BaseModel):
    deliveries: list[WebhookDeliveryResponse]
    total: int


class WebhookTestResult(BaseModel):
    success: bool
    delivery_id: str
    response_status: int | None = None
    error_message: str | None = None


class TriggerSummary(BaseModel):
    event_type: str
    triggered: int = 0
    delivered: int = 0
    delivery_ids: list[str] = []

"""Catalogue of webhook event types a tenant can subscribe to."""

WILDCARD = "*"
TEST_EVENT = "webhook.test"

EVENT_TYPES: dict[str, str] = {
    "export.completed": "When a data export finishes and is ready to download",
    "export.failed": "When a data export fails",
    "deletion.completed": "When a confirmed data deletion finishes",
    "deletion.failed": "When a confirmed data deletion fails",
    "prompt.created": "When a new prompt is created",
    "prompt.updated": "When a prompt is updated",
    "prompt.deleted": "When a prompt is deleted",
    "evaluation.completed": "When an evaluation finishes successfully",
    "evaluation.failed": "When an evaluation fails",
    "budget.threshold_50": "When budget reaches 50%",
    "budget.threshold_75": "When budget reaches 75%",
    "budget.threshold_90": "When budget reaches 90%",
    "budget.exceeded": "When budget is exceeded",
    "security.login_new_device": "When login from a new device is detected",
    "security.login_new_location": "When login from a new location is detected",
    "security.2fa_disabled": "When 2FA is disabled on an account",
}


def is_known_event(event_type: str) -> bool:
    return event_type == WILDCARD or event_type in EVENT_TYPES


def subscribes_to(event_types: list[str], event_type: str) -> bool:
    return WILDCARD in event_types or event_type in event_types

from dataclasses import dataclass, field
import uuid


@dataclass(frozen=True)
class RequestContext:
    """Caller identity passed explicitly into every service operation."""

    user_id: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    api_key_prefix: str | None = None

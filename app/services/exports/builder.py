"""Collect an owner's data into an ExportDocument and render it to bytes."""

import csv
import io
import json
import zipfile
from typing import Any, Awaitable, Callable

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import isoformat_z
from app.core.database import (
    AnalyticsEvent,
    ApiKey,
    ApiUsage,
    ContextPackage,
    Evaluation,
    EvaluationResult,
    LoginActivity,
    Prompt,
    PromptVersion,
    User,
)
from app.core.exceptions import NotFoundError
from app.schemas.exports import (
    ActivityRecord,
    ActivitySection,
    ApiKeyRecord,
    ApiKeysSection,
    ApiUsageRecord,
    ApiUsageSection,
    ContextPackageRecord,
    ContextPackagesSection,
    EvaluationRecord,
    EvaluationResultRecord,
    EvaluationsSection,
    ExportDocument,
    LoginHistorySection,
    LoginRecord,
    ProfileRecord,
    ProfileSection,
    PromptRecord,
    PromptVersionRecord,
    PromptsSection,
)

ACTIVITY_LIMIT = 1000
LOGIN_HISTORY_LIMIT = 500
API_USAGE_LIMIT = 1000

# Category order is the collection order and the order of keys in the document.
CATEGORIES_BY_TYPE: dict[str, list[str]] = {
    "full": [
        "profile",
        "prompts",
        "evaluations",
        "contextPackages",
        "activity",
        "loginHistory",
        "apiKeys",
        "apiUsage",
    ],
    "prompts": ["prompts"],
    "evaluations": ["evaluations"],
    "settings": ["profile", "apiKeys", "apiUsage"],
    "activity": ["activity", "loginHistory"],
}


def categories_for(export_type: str) -> list[str]:
    return CATEGORIES_BY_TYPE[export_type]


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


# ── Collectors ───────────────────────────────────────────────────────────────


async def _collect_profile(session: AsyncSession, owner_id: str) -> ProfileSection:
    user = await session.get(User, owner_id)
    if user is None:
        raise NotFoundError(f"User {owner_id} not found.")
    return ProfileSection(
        records=ProfileRecord(
            id=user.id,
            name=user.name,
            email=user.email,
            created_at=isoformat_z(user.created_at),
        )
    )


async def _collect_prompts(session: AsyncSession, owner_id: str) -> PromptsSection:
    result = await session.execute(
        select(Prompt).where(Prompt.user_id == owner_id).order_by(Prompt.created_at)
    )
    prompts = list(result.scalars().all())

    versions_by_prompt: dict[str, list[PromptVersionRecord]] = {p.id: [] for p in prompts}
    if prompts:
        result = await session.execute(
            select(PromptVersion)
            .where(PromptVersion.prompt_id.in_(list(versions_by_prompt)))
            .order_by(PromptVersion.prompt_id, PromptVersion.version)
        )
        for v in result.scalars().all():
            versions_by_prompt[v.prompt_id].append(
                PromptVersionRecord(
                    id=v.id,
                    prompt_id=v.prompt_id,
                    version=v.version,
                    content=v.content,
                    variables=_loads(v.variables_json, []),
                    change_message=v.change_message,
                    created_by=v.created_by,
                    created_at=isoformat_z(v.created_at),
                )
            )

    return PromptsSection(
        records=[
            PromptRecord(
                id=p.id,
                name=p.name,
                description=p.description,
                content=p.content,
                variables=_loads(p.variables_json, []),
                tags=_loads(p.tags_json, []),
                folder_path=p.folder_path,
                is_template=p.is_template,
                is_public=p.is_public,
                version=p.version,
                created_at=isoformat_z(p.created_at),
                updated_at=isoformat_z(p.updated_at),
                versions=versions_by_prompt[p.id],
            )
            for p in prompts
        ]
    )


async def _collect_evaluations(session: AsyncSession, owner_id: str) -> EvaluationsSection:
    result = await session.execute(
        select(Evaluation).where(Evaluation.user_id == owner_id).order_by(Evaluation.created_at)
    )
    evaluations = list(result.scalars().all())

    results_by_eval: dict[str, list[EvaluationResultRecord]] = {e.id: [] for e in evaluations}
    if evaluations:
        result = await session.execute(
            select(EvaluationResult)
            .where(EvaluationResult.evaluation_id.in_(list(results_by_eval)))
            .order_by(EvaluationResult.evaluation_id, EvaluationResult.test_case_index)
        )
        for r in result.scalars().all():
            results_by_eval[r.evaluation_id].append(
                EvaluationResultRecord(
                    id=r.id,
                    evaluation_id=r.evaluation_id,
                    provider_id=r.provider_id,
                    model=r.model,
                    test_case_index=r.test_case_index,
                    input=_loads(r.input_json, None),
                    output=r.output,
                    tokens_used=r.tokens_used,
                    latency_ms=r.latency_ms,
                    cost=r.cost,
                    quality=r.quality,
                    created_at=isoformat_z(r.created_at),
                )
            )

    return EvaluationsSection(
        records=[
            EvaluationRecord(
                id=e.id,
                prompt_id=e.prompt_id,
                name=e.name,
                description=e.description,
                test_cases=_loads(e.test_cases_json, []),
                status=e.status,
                created_at=isoformat_z(e.created_at),
                completed_at=isoformat_z(e.completed_at),
                results=results_by_eval[e.id],
            )
            for e in evaluations
        ]
    )


async def _collect_context_packages(session: AsyncSession, owner_id: str) -> ContextPackagesSection:
    result = await session.execute(
        select(ContextPackage).where(ContextPackage.user_id == owner_id).order_by(ContextPackage.created_at)
    )
    return ContextPackagesSection(
        records=[
            ContextPackageRecord(
                id=c.id,
                name=c.name,
                description=c.description,
                content=c.content,
                tags=_loads(c.tags_json, []),
                is_public=c.is_public,
                created_at=isoformat_z(c.created_at),
                updated_at=isoformat_z(c.updated_at),
            )
            for c in result.scalars().all()
        ]
    )


async def _collect_activity(session: AsyncSession, owner_id: str) -> ActivitySection:
    result = await session.execute(
        select(AnalyticsEvent)
        .where(AnalyticsEvent.user_id == owner_id)
        .order_by(desc(AnalyticsEvent.created_at))
        .limit(ACTIVITY_LIMIT)
    )
    return ActivitySection(
        records=[
            ActivityRecord(
                id=a.id,
                event_type=a.event_type,
                event_data=_loads(a.event_data_json, None),
                created_at=isoformat_z(a.created_at),
            )
            for a in result.scalars().all()
        ]
    )


async def _collect_login_history(session: AsyncSession, owner_id: str) -> LoginHistorySection:
    result = await session.execute(
        select(LoginActivity)
        .where(LoginActivity.user_id == owner_id)
        .order_by(desc(LoginActivity.created_at))
        .limit(LOGIN_HISTORY_LIMIT)
    )
    return LoginHistorySection(
        records=[
            LoginRecord(
                id=row.id,
                device_name=row.device_name,
                device_type=row.device_type,
                browser=row.browser,
                os=row.os,
                ip_address=row.ip_address,
                city=row.city,
                country=row.country,
                login_status=row.login_status,
                failure_reason=row.failure_reason,
                is_new_device=row.is_new_device,
                is_new_location=row.is_new_location,
                created_at=isoformat_z(row.created_at),
            )
            for row in result.scalars().all()
        ]
    )


async def _collect_api_keys(session: AsyncSession, owner_id: str) -> ApiKeysSection:
    result = await session.execute(
        select(ApiKey).where(ApiKey.user_id == owner_id).order_by(ApiKey.created_at)
    )
    return ApiKeysSection(
        records=[
            ApiKeyRecord(
                id=k.id,
                label=k.label,
                key_prefix=k.key_prefix,
                is_active=k.is_active,
                rate_limit=k.rate_limit,
                created_at=isoformat_z(k.created_at),
                last_used_at=isoformat_z(k.last_used_at),
            )
            for k in result.scalars().all()
        ]
    )


async def _collect_api_usage(session: AsyncSession, owner_id: str) -> ApiUsageSection:
    result = await session.execute(
        select(ApiUsage)
        .where(ApiUsage.user_id == owner_id)
        .order_by(desc(ApiUsage.timestamp))
        .limit(API_USAGE_LIMIT)
    )
    return ApiUsageSection(
        records=[
            ApiUsageRecord(
                id=u.id,
                api_key_id=u.api_key_id,
                endpoint=u.endpoint,
                method=u.method,
                status_code=u.status_code,
                response_time_ms=u.response_time_ms,
                timestamp=isoformat_z(u.timestamp),
            )
            for u in result.scalars().all()
        ]
    )


COLLECTORS: dict[str, Callable[[AsyncSession, str], Awaitable[Any]]] = {
    "profile": _collect_profile,
    "prompts": _collect_prompts,
    "evaluations": _collect_evaluations,
    "contextPackages": _collect_context_packages,
    "activity": _collect_activity,
    "loginHistory": _collect_login_history,
    "apiKeys": _collect_api_keys,
    "apiUsage": _collect_api_usage,
}


# ── Rendering ────────────────────────────────────────────────────────────────


def _document_json(document: ExportDocument) -> bytes:
    return json.dumps(document.to_wire(), indent=2, ensure_ascii=False).encode("utf-8")


def _csv_cell(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return value


def _category_csv(rows: list[dict]) -> str:
    output = io.StringIO()
    if rows:
        fieldnames = list(rows[0].keys())
        writer = csv.DictWriter(output, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow({k: _csv_cell(v) for k, v in row.items()})
    return output.getvalue()


def render_artifact(document: ExportDocument, fmt: str, base_name: str) -> tuple[bytes, str, str]:
    """Serialize a document. Returns (data, content_type, file_name)."""
    if fmt == "json":
        return _document_json(document), "application/json", f"{base_name}.json"

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        if fmt == "zip":
            archive.writestr(f"{base_name}.json", _document_json(document))
        elif fmt == "csv":
            wire = document.to_wire()
            metadata = wire.pop("metadata")
            for category, records in wire.items():
                rows = records if isinstance(records, list) else [records]
                archive.writestr(f"{category}.csv", _category_csv(rows))
            archive.writestr("metadata.json", json.dumps(metadata, indent=2))
        else:
            raise ValueError(f"Unsupported export format '{fmt}'")
    return buffer.getvalue(), "application/zip", f"{base_name}.zip"

import datetime
import io
import json
import uuid
import zipfile

import pytest

from app.core.clock import utcnow
from app.core.database import (
    AnalyticsEvent,
    DataExportRequest,
    Evaluation,
    EvaluationResult,
    LoginActivity,
    Prompt,
    PromptVersion,
)
from app.core.exceptions import NotFoundError, ValidationError
from app.services.download_tokens import DownloadTokenService
from app.services.encryption import decrypt_export, is_encrypted_export
from app.services.exports import ExportService
from app.services.exports import builder
from app.services.exports.runner import blob_key
from app.services.webhooks import WebhookService, verify_signature


async def _blob_missing(storage, key: str) -> bool:
    try:
        await storage.get(key)
    except NotFoundError:
        return True
    return False


async def _seed_prompts(session_factory, user_id: str, count: int) -> list[str]:
    ids = []
    async with session_factory() as session:
        for i in range(count):
            prompt_id = str(uuid.uuid4())
            ids.append(prompt_id)
            session.add(
                Prompt(
                    id=prompt_id,
                    user_id=user_id,
                    name=f"Prompt {i}",
                    content=f"Say hello {i}",
                    tags_json=json.dumps(["demo"]),
                    version=2,
                )
            )
            for version in (1, 2):
                session.add(
                    PromptVersion(
                        id=str(uuid.uuid4()),
                        prompt_id=prompt_id,
                        version=version,
                        content=f"Say hello {i} v{version}",
                        created_by=user_id,
                    )
                )
        await session.commit()
    return ids


@pytest.fixture
def frozen_now():
    return utcnow()


@pytest.fixture
def export_service(storage, job_queue, session_factory, frozen_now):
    return ExportService(
        storage=storage,
        job_queue=job_queue,
        session_factory=session_factory,
        token_service=DownloadTokenService(secret_key="test-secret"),
        clock=lambda: frozen_now,
        public_base_url="http://api.test",
    )


async def _run_export(service, job_queue, ctx, export_type="prompts", fmt="json", password=None):
    created = await service.create_export(ctx, export_type, fmt, password=password)
    await job_queue.drain()
    return created.request_id


class TestCreateExport:
    @pytest.mark.asyncio
    async def test_returns_pending_and_schedules_one_job(self, export_service, job_queue, ctx):
        created = await export_service.create_export(ctx, "prompts", "json")
        assert created.status == "pending"
        assert job_queue.active_jobs == [created.request_id]
        await job_queue.drain()

    @pytest.mark.asyncio
    async def test_expiry_is_seven_days_from_request(self, export_service, job_queue, ctx, frozen_now):
        request_id = await _run_export(export_service, job_queue, ctx)
        status = await export_service.get_export_status(ctx, request_id)
        expected = frozen_now + datetime.timedelta(days=7)
        assert status.expires_at == expected.isoformat() + "Z"

    @pytest.mark.asyncio
    async def test_rejects_unknown_type_and_format(self, export_service, ctx):
        with pytest.raises(ValidationError):
            await export_service.create_export(ctx, "everything", "json")
        with pytest.raises(ValidationError):
            await export_service.create_export(ctx, "full", "xml")

    @pytest.mark.asyncio
    async def test_rejects_weak_password(self, export_service, ctx):
        with pytest.raises(ValidationError) as exc_info:
            await export_service.create_export(ctx, "full", "json", password="password")
        assert exc_info.value.details["feedback"]

    @pytest.mark.asyncio
    async def test_password_is_never_stored(self, export_service, job_queue, ctx, session_factory):
        password = "Str0ng!Passw0rd#2024"
        request_id = await _run_export(export_service, job_queue, ctx, password=password)
        async with session_factory() as session:
            row = await session.get(DataExportRequest, request_id)
        assert row.encrypted is True
        assert password not in json.dumps({c.name: str(getattr(row, c.name)) for c in row.__table__.columns})


class TestExportJob:
    @pytest.mark.asyncio
    async def test_prompts_json_export_has_three_prompts(
        self, export_service, job_queue, ctx, session_factory, storage
    ):
        prompt_ids = await _seed_prompts(session_factory, ctx.user_id, 3)

        request_id = await _run_export(export_service, job_queue, ctx, "prompts", "json")

        status = await export_service.get_export_status(ctx, request_id)
        assert status.status == "completed"
        assert status.progress == 100
        assert status.included_data == ["prompts"]
        assert status.file_name.endswith(".json")

        data, content_type = await storage.get(blob_key(ctx.user_id, request_id))
        assert content_type == "application/json"
        assert status.file_size == len(data)

        document = json.loads(data)
        assert set(document) == {"prompts", "metadata"}
        assert len(document["prompts"]) == 3
        assert {p["id"] for p in document["prompts"]} == set(prompt_ids)
        # every prompt carries its own versions, not just the first one
        for prompt in document["prompts"]:
            assert [v["version"] for v in prompt["versions"]] == [1, 2]
            assert all(v["promptId"] == prompt["id"] for v in prompt["versions"])

        metadata = document["metadata"]
        assert metadata["exportType"] == "prompts"
        assert metadata["format"] == "json"
        assert metadata["includedData"] == ["prompts"]
        assert metadata["exportDate"].endswith("Z")

    @pytest.mark.asyncio
    async def test_full_export_includes_every_category(
        self, export_service, job_queue, ctx, other_ctx, session_factory, storage, api_key
    ):
        await _seed_prompts(session_factory, ctx.user_id, 1)
        await _seed_prompts(session_factory, other_ctx.user_id, 2)
        async with session_factory() as session:
            session.add(Evaluation(id="eval-1", user_id=ctx.user_id, name="Eval", status="completed"))
            session.add(
                EvaluationResult(
                    id="res-1",
                    evaluation_id="eval-1",
                    provider_id="openai",
                    model="gpt-4o",
                    test_case_index=0,
                    output="hi",
                )
            )
            session.add(AnalyticsEvent(id="ev-1", user_id=ctx.user_id, event_type="prompt.created"))
            session.add(LoginActivity(id="login-1", user_id=ctx.user_id, login_status="success"))
            await session.commit()

        request_id = await _run_export(export_service, job_queue, ctx, "full", "json")
        data, _ = await storage.get(blob_key(ctx.user_id, request_id))
        document = json.loads(data)

        assert list(document) == builder.CATEGORIES_BY_TYPE["full"] + ["metadata"]
        assert document["profile"]["email"] == "ada@example.com"
        assert len(document["prompts"]) == 1
        assert document["evaluations"][0]["results"][0]["model"] == "gpt-4o"
        assert document["activity"][0]["eventType"] == "prompt.created"
        assert document["loginHistory"][0]["loginStatus"] == "success"
        assert document["apiKeys"][0]["keyPrefix"] == api_key[1].key_prefix
        assert "keyHash" not in document["apiKeys"][0]

    @pytest.mark.asyncio
    async def test_csv_export_is_zip_of_category_files(self, export_service, job_queue, ctx, session_factory, storage):
        await _seed_prompts(session_factory, ctx.user_id, 2)
        request_id = await _run_export(export_service, job_queue, ctx, "settings", "csv")

        data, content_type = await storage.get(blob_key(ctx.user_id, request_id))
        assert content_type == "application/zip"
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = set(archive.namelist())
            assert names == {"profile.csv", "apiKeys.csv", "apiUsage.csv", "metadata.json"}
            profile_csv = archive.read("profile.csv").decode()
        assert profile_csv.splitlines()[0] == "id,name,email,createdAt"

    @pytest.mark.asyncio
    async def test_zip_export_wraps_json_document(self, export_service, job_queue, ctx, session_factory, storage):
        await _seed_prompts(session_factory, ctx.user_id, 1)
        request_id = await _run_export(export_service, job_queue, ctx, "prompts", "zip")

        data, _ = await storage.get(blob_key(ctx.user_id, request_id))
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            [name] = archive.namelist()
            document = json.loads(archive.read(name))
        assert len(document["prompts"]) == 1

    @pytest.mark.asyncio
    async def test_encrypted_export_round_trips(self, export_service, job_queue, ctx, session_factory, storage):
        await _seed_prompts(session_factory, ctx.user_id, 3)
        password = "Str0ng!Passw0rd#2024"
        request_id = await _run_export(export_service, job_queue, ctx, "prompts", "json", password=password)

        status = await export_service.get_export_status(ctx, request_id)
        assert status.encrypted is True
        assert status.file_name.endswith(".json.enc")

        data, _ = await storage.get(blob_key(ctx.user_id, request_id))
        assert is_encrypted_export(data)
        document = json.loads(decrypt_export(data, password))
        assert len(document["prompts"]) == 3

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, export_service, job_queue, ctx, session_factory, monkeypatch):
        runner = export_service._runner
        original_advance = runner._advance
        observed: list[int] = []

        async def recording_advance(request_id, progress):
            await original_advance(request_id, progress)
            async with session_factory() as session:
                row = await session.get(DataExportRequest, request_id)
                observed.append(row.progress)

        monkeypatch.setattr(runner, "_advance", recording_advance)
        request_id = await _run_export(export_service, job_queue, ctx, "full", "json")

        assert observed == sorted(observed)
        assert observed[0] == 10
        assert len(observed) == len(builder.CATEGORIES_BY_TYPE["full"]) + 2
        status = await export_service.get_export_status(ctx, request_id)
        assert status.progress == 100

    @pytest.mark.asyncio
    async def test_progress_write_cannot_lower_value(self, export_service, job_queue, ctx, session_factory):
        request_id = await _run_export(export_service, job_queue, ctx)
        await export_service._runner._advance(request_id, 20)
        async with session_factory() as session:
            row = await session.get(DataExportRequest, request_id)
        assert row.progress == 100

    @pytest.mark.asyncio
    async def test_collection_failure_marks_failed_without_blob(
        self, export_service, job_queue, ctx, storage, monkeypatch
    ):
        async def broken(session, owner_id):
            raise RuntimeError("prompts table unavailable")

        monkeypatch.setitem(builder.COLLECTORS, "prompts", broken)
        request_id = await _run_export(export_service, job_queue, ctx, "full", "json")

        status = await export_service.get_export_status(ctx, request_id)
        assert status.status == "failed"
        assert status.error_message == "prompts table unavailable"
        # profile was collected before the failure
        assert 10 < status.progress < 100
        assert await _blob_missing(storage, blob_key(ctx.user_id, request_id))

    @pytest.mark.asyncio
    async def test_failure_after_upload_removes_blob(self, export_service, job_queue, ctx, storage, monkeypatch):
        runner = export_service._runner
        original_update = runner._update

        async def flaky_update(request_id, **values):
            if values.get("status") == "completed":
                raise RuntimeError("database went away")
            await original_update(request_id, **values)

        monkeypatch.setattr(runner, "_update", flaky_update)
        request_id = await _run_export(export_service, job_queue, ctx)

        status = await export_service.get_export_status(ctx, request_id)
        assert status.status == "failed"
        assert await _blob_missing(storage, blob_key(ctx.user_id, request_id))


class TestDownloadAndExpiry:
    @pytest.mark.asyncio
    async def test_completed_export_gets_signed_url(self, export_service, job_queue, ctx, frozen_now):
        request_id = await _run_export(export_service, job_queue, ctx)
        link = await export_service.get_download_url(ctx, request_id, now=frozen_now)
        assert link.status == "completed"
        assert link.url.startswith("http://api.test/v1/exports/download/")

        token = link.url.rsplit("/", 1)[1]
        data, content_type, file_name = await export_service.open_download(token, now=frozen_now)
        assert json.loads(data)["metadata"]["exportType"] == "prompts"
        assert file_name.endswith(".json")

    @pytest.mark.asyncio
    async def test_past_expiry_transitions_to_expired(self, export_service, job_queue, ctx, frozen_now):
        request_id = await _run_export(export_service, job_queue, ctx)

        later = frozen_now + datetime.timedelta(days=7, seconds=1)
        link = await export_service.get_download_url(ctx, request_id, now=later)
        assert link.url is None
        assert link.status == "expired"

        status = await export_service.get_export_status(ctx, request_id)
        assert status.status == "expired"
        # stays expired even if asked again "before" expiry
        again = await export_service.get_download_url(ctx, request_id, now=frozen_now)
        assert again.url is None

    @pytest.mark.asyncio
    async def test_exactly_at_expiry_still_downloads(self, export_service, job_queue, ctx, frozen_now):
        request_id = await _run_export(export_service, job_queue, ctx)
        at_expiry = frozen_now + datetime.timedelta(days=7)
        link = await export_service.get_download_url(ctx, request_id, now=at_expiry)
        assert link.url is not None

    @pytest.mark.asyncio
    async def test_no_url_for_unfinished_export(self, export_service, job_queue, ctx):
        created = await export_service.create_export(ctx, "prompts", "json")
        link = await export_service.get_download_url(ctx, created.request_id)
        assert link.url is None
        assert link.status in ("pending", "processing")
        await job_queue.drain()

    @pytest.mark.asyncio
    async def test_open_download_rejects_bad_token(self, export_service):
        with pytest.raises(NotFoundError):
            await export_service.open_download("garbage")

    @pytest.mark.asyncio
    async def test_expire_overdue_removes_blobs(self, export_service, job_queue, ctx, storage, frozen_now):
        request_id = await _run_export(export_service, job_queue, ctx)
        assert await export_service.expire_overdue(now=frozen_now) == 0

        count = await export_service.expire_overdue(now=frozen_now + datetime.timedelta(days=8))
        assert count == 1
        assert await _blob_missing(storage, blob_key(ctx.user_id, request_id))
        status = await export_service.get_export_status(ctx, request_id)
        assert status.status == "expired"


class TestQueries:
    @pytest.mark.asyncio
    async def test_other_owner_sees_not_found(self, export_service, job_queue, ctx, other_ctx):
        request_id = await _run_export(export_service, job_queue, ctx)
        with pytest.raises(NotFoundError):
            await export_service.get_export_status(other_ctx, request_id)
        with pytest.raises(NotFoundError):
            await export_service.get_download_url(other_ctx, request_id)

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_limited(
        self, storage, job_queue, session_factory, ctx
    ):
        ticks = iter(utcnow() + datetime.timedelta(seconds=i) for i in range(100))
        service = ExportService(
            storage=storage,
            job_queue=job_queue,
            session_factory=session_factory,
            token_service=DownloadTokenService(secret_key="test-secret"),
            clock=lambda: next(ticks),
        )
        ids = []
        for _ in range(3):
            ids.append((await service.create_export(ctx, "prompts", "json")).request_id)
            await job_queue.drain()

        history = await service.get_export_history(ctx)
        assert [e.id for e in history.exports] == list(reversed(ids))

        limited = await service.get_export_history(ctx, limit=2)
        assert limited.total == 2

    @pytest.mark.asyncio
    async def test_data_summary_counts_owned_rows(self, export_service, ctx, other_ctx, session_factory, api_key):
        await _seed_prompts(session_factory, ctx.user_id, 3)
        await _seed_prompts(session_factory, other_ctx.user_id, 5)
        summary = await export_service.get_data_summary(ctx)
        assert summary.prompts == 3
        assert summary.evaluations == 0
        assert summary.api_keys == 1


class TestExportWebhooks:
    @pytest.mark.asyncio
    async def test_completed_export_delivers_one_signed_webhook(
        self, storage, job_queue, session_factory, dispatcher, receiver, ctx
    ):
        webhook = await WebhookService(session_factory=session_factory).register_webhook(
            ctx, "http://receiver.test/hook", ["export.completed"]
        )
        service = ExportService(
            storage=storage,
            job_queue=job_queue,
            session_factory=session_factory,
            token_service=DownloadTokenService(secret_key="test-secret"),
            dispatcher=dispatcher,
        )

        request_id = await _run_export(service, job_queue, ctx)

        assert len(receiver.received) == 1
        request = receiver.received[0]
        assert request["headers"]["x-promptforge-event"] == "export.completed"
        signature = request["headers"]["x-promptforge-signature"]
        assert signature.startswith("sha256=")
        assert verify_signature(request["body"], webhook.secret, signature)

        body = json.loads(request["body"])
        assert body["event"] == "export.completed"
        assert body["data"]["requestId"] == request_id

        deliveries = await WebhookService(session_factory=session_factory).get_webhook_deliveries(ctx, webhook.id)
        assert deliveries.total == 1
        assert deliveries.deliveries[0].status == "success"

    @pytest.mark.asyncio
    async def test_failed_export_triggers_export_failed(
        self, storage, job_queue, session_factory, dispatcher, receiver, ctx, monkeypatch
    ):
        await WebhookService(session_factory=session_factory).register_webhook(
            ctx, "http://receiver.test/hook", ["export.completed", "export.failed"]
        )

        async def broken(session, owner_id):
            raise RuntimeError("boom")

        monkeypatch.setitem(builder.COLLECTORS, "prompts", broken)
        service = ExportService(
            storage=storage,
            job_queue=job_queue,
            session_factory=session_factory,
            token_service=DownloadTokenService(secret_key="test-secret"),
            dispatcher=dispatcher,
        )
        await _run_export(service, job_queue, ctx)

        assert [r["headers"]["x-promptforge-event"] for r in receiver.received] == ["export.failed"]

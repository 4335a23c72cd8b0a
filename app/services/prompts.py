import json
import uuid

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.core.database as db_module
from app.core.clock import Clock, isoformat_z, utcnow
from app.core.context import RequestContext
from app.core.database import AnalyticsEvent, Prompt, PromptVersion
from app.core.exceptions import NotFoundError
from app.schemas.prompts import PromptCreate, PromptList, PromptResponse, PromptUpdate
from app.services.webhooks.dispatcher import WebhookDispatcher

logger = structlog.get_logger()


def _row_to_response(prompt: Prompt) -> PromptResponse:
    return PromptResponse(
        id=prompt.id,
        name=prompt.name,
        description=prompt.description,
        content=prompt.content,
        variables=json.loads(prompt.variables_json or "[]"),
        tags=json.loads(prompt.tags_json or "[]"),
        folder_path=prompt.folder_path,
        is_template=prompt.is_template,
        is_public=prompt.is_public,
        version=prompt.version,
        created_at=isoformat_z(prompt.created_at),
        updated_at=isoformat_z(prompt.updated_at),
    )


class PromptService:
    """Owner-scoped prompt CRUD. Mutations are versioned, logged as analytics
    events and published as ``prompt.*`` webhook events."""

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        dispatcher: WebhookDispatcher | None = None,
        clock: Clock = utcnow,
    ):
        self._session_factory_override = session_factory
        self._dispatcher = dispatcher
        self._clock = clock

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def _get_owned(self, session: AsyncSession, prompt_id: str, owner_id: str) -> Prompt:
        result = await session.execute(
            select(Prompt).where(Prompt.id == prompt_id, Prompt.user_id == owner_id)
        )
        prompt = result.scalar_one_or_none()
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found.")
        return prompt

    def _record_event(self, session: AsyncSession, owner_id: str, event_type: str, data: dict) -> None:
        session.add(
            AnalyticsEvent(
                id=str(uuid.uuid4()),
                user_id=owner_id,
                event_type=event_type,
                event_data_json=json.dumps(data),
                created_at=self._clock(),
            )
        )

    def _publish(self, event_type: str, data: dict, owner_id: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher.publish(event_type, data, owner_id)

    async def create_prompt(self, ctx: RequestContext, data: PromptCreate) -> PromptResponse:
        now = self._clock()
        prompt = Prompt(
            id=str(uuid.uuid4()),
            user_id=ctx.user_id,
            name=data.name,
            description=data.description,
            content=data.content,
            variables_json=json.dumps(data.variables),
            tags_json=json.dumps(data.tags),
            folder_path=data.folder_path,
            is_template=data.is_template,
            is_public=data.is_public,
            version=1,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(prompt)
            session.add(
                PromptVersion(
                    id=str(uuid.uuid4()),
                    prompt_id=prompt.id,
                    version=1,
                    content=prompt.content,
                    variables_json=prompt.variables_json,
                    change_message="Initial version",
                    created_by=ctx.user_id,
                    created_at=now,
                )
            )
            self._record_event(session, ctx.user_id, "prompt.created", {"promptId": prompt.id})
            await session.commit()
            await session.refresh(prompt)

        logger.info("prompt_created", prompt_id=prompt.id, user_id=ctx.user_id)
        self._publish("prompt.created", {"promptId": prompt.id, "name": prompt.name}, ctx.user_id)
        return _row_to_response(prompt)

    async def list_prompts(self, ctx: RequestContext, limit: int = 50, offset: int = 0) -> PromptList:
        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(Prompt).where(Prompt.user_id == ctx.user_id))
            ).scalar() or 0
            result = await session.execute(
                select(Prompt)
                .where(Prompt.user_id == ctx.user_id)
                .order_by(Prompt.updated_at.desc())
                .limit(limit)
                .offset(offset)
            )
            prompts = [_row_to_response(p) for p in result.scalars().all()]
        return PromptList(prompts=prompts, total=total)

    async def get_prompt(self, ctx: RequestContext, prompt_id: str) -> PromptResponse:
        async with self._session_factory() as session:
            return _row_to_response(await self._get_owned(session, prompt_id, ctx.user_id))

    async def update_prompt(self, ctx: RequestContext, prompt_id: str, data: PromptUpdate) -> PromptResponse:
        async with self._session_factory() as session:
            prompt = await self._get_owned(session, prompt_id, ctx.user_id)

            if data.name is not None:
                prompt.name = data.name
            if data.description is not None:
                prompt.description = data.description
            if data.content is not None:
                prompt.content = data.content
            if data.variables is not None:
                prompt.variables_json = json.dumps(data.variables)
            if data.tags is not None:
                prompt.tags_json = json.dumps(data.tags)
            if data.folder_path is not None:
                prompt.folder_path = data.folder_path
            if data.is_template is not None:
                prompt.is_template = data.is_template
            if data.is_public is not None:
                prompt.is_public = data.is_public

            now = self._clock()
            prompt.version += 1
            prompt.updated_at = now
            session.add(
                PromptVersion(
                    id=str(uuid.uuid4()),
                    prompt_id=prompt.id,
                    version=prompt.version,
                    content=prompt.content,
                    variables_json=prompt.variables_json,
                    change_message=data.change_message,
                    created_by=ctx.user_id,
                    created_at=now,
                )
            )
            self._record_event(
                session, ctx.user_id, "prompt.updated", {"promptId": prompt.id, "version": prompt.version}
            )
            await session.commit()
            await session.refresh(prompt)

        logger.info("prompt_updated", prompt_id=prompt_id, version=prompt.version)
        self._publish(
            "prompt.updated",
            {"promptId": prompt.id, "name": prompt.name, "version": prompt.version},
            ctx.user_id,
        )
        return _row_to_response(prompt)

    async def delete_prompt(self, ctx: RequestContext, prompt_id: str) -> None:
        async with self._session_factory() as session:
            prompt = await self._get_owned(session, prompt_id, ctx.user_id)
            await session.execute(delete(PromptVersion).where(PromptVersion.prompt_id == prompt.id))
            await session.delete(prompt)
            self._record_event(session, ctx.user_id, "prompt.deleted", {"promptId": prompt_id})
            await session.commit()

        logger.info("prompt_deleted", prompt_id=prompt_id, user_id=ctx.user_id)
        self._publish("prompt.deleted", {"promptId": prompt_id}, ctx.user_id)

from typing import Any

from pydantic import BaseModel, Field


class PromptCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    description: str | None = None
    variables: list[Any] = []
    tags: list[str] = []
    folder_path: str = "/"
    is_template: bool = False
    is_public: bool = False


class PromptUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    content: str | None = Field(default=None, min_length=1)
    description: str | None = None
    variables: list[Any] | None = None
    tags: list[str] | None = None
    folder_path: str | None = None
    is_template: bool | None = None
    is_public: bool | None = None
    change_message: str | None = None


class PromptResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    content: str
    variables: list[Any] = []
    tags: list[str] = []
    folder_path: str
    is_template: bool
    is_public: bool
    version: int
    created_at: str
    updated_at: str


class PromptList(BaseModel):
    prompts: list[PromptResponse]
    total: int

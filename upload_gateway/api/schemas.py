"""Pydantic schemas for the admin and session endpoints."""
from typing import Any

from pydantic import BaseModel, ConfigDict


def _config_forbid(**kwargs):
    return ConfigDict(extra="forbid", **kwargs)


# ----- Admin -----
class PathRequest(BaseModel):
    # Extra keys are tolerated: upload clients send whatever their admin UI holds
    model_config = ConfigDict(extra="ignore")
    # Any: a non-string value must reach the handler as a 400, not a 422
    id_or_path: Any = None


class MessageResponse(BaseModel):
    model_config = _config_forbid()
    message: str


class FolderChild(BaseModel):
    model_config = _config_forbid()
    name: str
    is_directory: bool
    size: int
    file_count: int
    modified: str


class FolderInfo(BaseModel):
    model_config = _config_forbid()
    path: str
    is_directory: bool
    file_count: int
    total_size: int
    modified: str
    children: list[FolderChild]


class ObjectCountResponse(BaseModel):
    model_config = _config_forbid()
    count: int


class ObjectClearResponse(BaseModel):
    model_config = _config_forbid()
    message: str
    deleted: int


# ----- Session -----
class SessionUser(BaseModel):
    model_config = _config_forbid()
    user_id: str | None

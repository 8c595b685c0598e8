import datetime
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Gallery(SQLModel, table=True):
    """A shared collection of captioned photos.

    `share_code` lets anyone join and browse; `admin_code` grants deletion
    rights. Both are unique across galleries.
    """
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    share_code: str = Field(index=True, unique=True)
    admin_code: str = Field(index=True, unique=True)
    creator_identifier: Optional[str] = Field(default=None, index=True)
    creator_google_id: Optional[str] = Field(default=None, index=True)
    creator_email: Optional[str] = None
    settings: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime.datetime = Field(default_factory=_utcnow)


class Photo(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    gallery_id: str = Field(foreign_key="gallery.id", index=True)
    username: str = Field(index=True)
    image_url: str
    description: str
    owner_identifier: str = Field(index=True)
    created_at: datetime.datetime = Field(default_factory=_utcnow, index=True)

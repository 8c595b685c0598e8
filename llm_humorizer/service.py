import logging
import posixpath
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional
from urllib.parse import urlparse

from .constants import MAX_GALLERY_NAME_LENGTH, MAX_USERNAME_LENGTH, DEFAULT_MAX_UPLOAD_BYTES, normalize_code
from .db_helpers import session_scope
from .errors import NotAuthorized, ResourceNotFound
from .genai_client import CaptionClient
from .image_helpers import inspect_image
from .models import Gallery, Photo
from .permissions import (
    Actor,
    UnverifiedAdminClaim,
    authorize_gallery_delete,
    authorize_photo_delete,
)
from .prompts import GallerySettings
from . import db

logger = logging.getLogger(__name__)


@dataclass
class JoinResult:
    gallery: Gallery
    admin_claim: Optional[UnverifiedAdminClaim] = None


class GalleryService:
    """Gallery and photo use-cases on top of the store, object storage and caption client."""

    def __init__(
        self,
        engine,
        storage: Any = None,
        caption_client: Optional[CaptionClient] = None,
        max_code_attempts: int = 5,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        require_login_to_create: bool = False,
    ):
        self.engine = engine
        self.storage = storage
        self.caption_client = caption_client
        self.max_code_attempts = max_code_attempts
        self.max_upload_bytes = max_upload_bytes
        self.require_login_to_create = require_login_to_create

    # galleries

    def create_gallery(self, actor: Actor, name: str, style: Optional[GallerySettings] = None) -> Gallery:
        name = (name or '').strip()
        if not name:
            raise ValueError("Gallery name is required")
        if len(name) > MAX_GALLERY_NAME_LENGTH:
            raise ValueError(f"Gallery name is longer than {MAX_GALLERY_NAME_LENGTH} characters")
        if self.require_login_to_create and not actor.google_id:
            raise NotAuthorized("sign in with Google to create a gallery")

        style = style or GallerySettings()
        with session_scope(self.engine) as session:
            return db.create_gallery(
                session,
                name=name,
                creator_identifier=actor.owner_identifier,
                creator_google_id=actor.google_id,
                creator_email=actor.email,
                settings=style.model_dump(),
                max_attempts=self.max_code_attempts,
            )

    def join_gallery(self, share_code: str, admin_code: Optional[str] = None) -> JoinResult:
        """Find a gallery by share code; a correct admin code adds an admin claim."""
        with session_scope(self.engine) as session:
            gallery = db.get_gallery_by_share_code(session, share_code)
            if gallery is None:
                raise ResourceNotFound("No gallery found for that share code")
            claim = None
            code = normalize_code(admin_code or '')
            if code:
                if db.is_admin_for_gallery(session, gallery.id, code):
                    claim = UnverifiedAdminClaim(gallery_id=gallery.id, admin_code=code)
                else:
                    logger.info("Join of gallery %s with a wrong admin code; joining as member", gallery.id)
            return JoinResult(gallery=gallery, admin_claim=claim)

    def get_gallery(self, gallery_id: str) -> Gallery:
        with session_scope(self.engine) as session:
            gallery = db.get_gallery(session, gallery_id)
            if gallery is None:
                raise ResourceNotFound(f"Gallery {gallery_id} not found")
            return gallery

    def my_galleries(self, actor: Actor) -> List[Gallery]:
        if not actor.google_id:
            return []
        with session_scope(self.engine) as session:
            return db.get_galleries_by_creator_google_id(session, actor.google_id)

    # photos

    def list_photos(self, gallery_id: str) -> List[Photo]:
        with session_scope(self.engine) as session:
            if db.get_gallery(session, gallery_id) is None:
                raise ResourceNotFound(f"Gallery {gallery_id} not found")
            return db.get_photos_by_gallery(session, gallery_id)

    def find_photo_by_username(self, gallery_id: str, username: str) -> Photo:
        username = (username or '').strip()
        if not username:
            raise ValueError("Username is required for search")
        with session_scope(self.engine) as session:
            photo = db.get_photo_by_username_in_gallery(session, gallery_id, username)
            if photo is None:
                raise ResourceNotFound(f"No photo by {username} in this gallery")
            return photo

    def caption(self, image: bytes, gallery_id: Optional[str] = None) -> str:
        """Caption an image with the gallery's style, or the default prompt when solo."""
        self._check_size(image)
        mime_type, _ = inspect_image(image)
        style = None
        if gallery_id:
            style = GallerySettings.from_stored(self.get_gallery(gallery_id).settings)
        return self.caption_client.describe(image, mime_type=mime_type, settings=style)

    def save_photo(self, actor: Actor, gallery_id: str, username: str, image: bytes, description: str) -> Photo:
        """Upload the image, then insert the row; a failed insert removes the upload again."""
        username = (username or '').strip()
        description = (description or '').strip()
        if not username:
            raise ValueError("Username is required")
        if len(username) > MAX_USERNAME_LENGTH:
            raise ValueError(f"Username is longer than {MAX_USERNAME_LENGTH} characters")
        if not description:
            raise ValueError("Description is required; generate a caption first")
        self._check_size(image)
        _, ext = inspect_image(image)

        gallery = self.get_gallery(gallery_id)
        storage = self._require_storage()
        path = f"{gallery.id}/{uuid.uuid4()}.{ext}"
        storage.upload_fileobj(path, image)
        image_url = storage.public_url(path)

        try:
            with session_scope(self.engine) as session:
                photo = db.insert_photo(
                    session,
                    gallery_id=gallery.id,
                    owner_identifier=actor.owner_identifier,
                    username=username,
                    image_url=image_url,
                    description=description,
                )
        except Exception:
            logger.exception("Failed to save photo row for %s; removing uploaded object", path)
            self._cleanup_storage([path])
            raise
        logger.info("Saved photo %s in gallery %s by %s", photo.id, gallery.id, actor.owner_identifier)
        return photo

    def delete_photo(self, actor: Actor, photo_id: str) -> None:
        with session_scope(self.engine) as session:
            photo = db.get_photo(session, photo_id)
            if photo is None:
                raise ResourceNotFound(f"Photo {photo_id} not found")
            gallery = db.get_gallery(session, photo.gallery_id)
            if gallery is None:
                raise ResourceNotFound(f"Gallery {photo.gallery_id} not found")

            admin_code = authorize_photo_delete(photo, gallery, actor)
            path = self.photo_storage_path(photo)

            db.delete_photo_with_admin_check(
                session,
                photo_id,
                owner_identifier=actor.owner_identifier,
                is_admin=admin_code is not None,
                admin_code=admin_code,
                before_delete=lambda _photo: self._cleanup_storage([path] if path else []),
            )

    def delete_gallery(self, actor: Actor, gallery_id: str, admin_code: Optional[str]) -> int:
        """Delete a gallery, its photos and their objects. Returns the number of photos removed."""
        with session_scope(self.engine) as session:
            gallery = db.get_gallery(session, gallery_id)
            if gallery is None:
                raise ResourceNotFound(f"Gallery {gallery_id} not found")
            grant = db.verify_admin_code(session, gallery_id, admin_code)
            authorize_gallery_delete(gallery, actor, grant)

            def cleanup(_gallery: Gallery, photos: List[Photo]) -> None:
                paths = [p for p in (self.photo_storage_path(photo) for photo in photos) if p]
                self._cleanup_storage(paths)

            photos = db.delete_gallery_with_admin_check(
                session,
                gallery_id,
                owner_identifier=actor.owner_identifier,
                admin_code=admin_code,
                before_delete=cleanup,
            )
            return len(photos)

    # storage

    def photo_storage_path(self, photo: Photo) -> Optional[str]:
        """Object path of a photo, derived from its public URL."""
        if self.storage is not None:
            path = self.storage.path_from_public_url(photo.image_url)
            if path:
                return path
        try:
            basename = posixpath.basename(urlparse(photo.image_url or '').path)
        except ValueError:
            basename = ''
        if not basename:
            logger.warning("Could not extract storage path from URL: %s", photo.image_url)
            return None
        return f"{photo.gallery_id}/{basename}"

    def _cleanup_storage(self, paths: List[str]) -> None:
        if not paths or self.storage is None:
            return
        failed = self.storage.remove(paths)
        if failed:
            logger.warning("storage cleanup failed: %s", ", ".join(failed))

    def _require_storage(self):
        if self.storage is None:
            raise IOError("Storage is not configured")
        return self.storage

    def _check_size(self, image: bytes) -> None:
        if image is not None and len(image) > self.max_upload_bytes:
            raise ValueError(f"Image is larger than {self.max_upload_bytes} bytes")

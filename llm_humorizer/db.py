import os
import secrets
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import SQLModel, Session, create_engine, select
import logging

from .constants import (
    ADMIN_CODE_LENGTH,
    CODE_ALPHABET,
    MAX_CODE_GENERATION_ATTEMPTS,
    SHARE_CODE_LENGTH,
    normalize_code,
)
from .errors import CodeGenerationFailed, NotAuthorized, RecordDeleteFailed, ResourceNotFound
from .models import Gallery, Photo
from .permissions import VerifiedAdminGrant

logger = logging.getLogger(__name__)


def init_db(database_url: str = "sqlite:////data/humorizer.db"):
    """Create and return SQLAlchemy engine. Creates all tables on startup."""
    connect_args = {}
    if database_url.startswith("sqlite:///"):
        connect_args = {"check_same_thread": False}
        file_path = database_url[len("sqlite:///"):]
        dirpath = os.path.dirname(file_path)
        try:
            if dirpath and not os.path.exists(dirpath):
                os.makedirs(dirpath, exist_ok=True)
        except OSError as e:
            logger.debug("Unable to create database directory %s: %s", dirpath, e)

    engine = create_engine(database_url, echo=False, connect_args=connect_args)

    if database_url.startswith("sqlite"):
        try:
            with engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
        except Exception as e:
            logger.debug("Unable to set SQLite pragmas: %s", e)

    SQLModel.metadata.create_all(engine)
    return engine


def generate_code(length: int) -> str:
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def create_gallery(
    session: Session,
    name: str,
    creator_identifier: Optional[str],
    creator_google_id: Optional[str] = None,
    creator_email: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None,
    max_attempts: int = MAX_CODE_GENERATION_ATTEMPTS,
    code_factory: Callable[[int], str] = generate_code,
) -> Gallery:
    """Insert a gallery with fresh share/admin codes.

    Uniqueness is enforced by the table; a collision rolls back and retries
    with new codes up to `max_attempts` times.
    """
    for attempt in range(1, max_attempts + 1):
        gallery = Gallery(
            name=name,
            share_code=code_factory(SHARE_CODE_LENGTH),
            admin_code=code_factory(ADMIN_CODE_LENGTH),
            creator_identifier=creator_identifier,
            creator_google_id=creator_google_id,
            creator_email=creator_email,
            settings=settings,
        )
        session.add(gallery)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.debug("Gallery code collision on attempt %d: %s", attempt, exc.orig)
            continue
        session.refresh(gallery)
        logger.info("Created gallery %s (share_code=%s)", gallery.id, gallery.share_code)
        return gallery
    raise CodeGenerationFailed(f"Failed to generate unique codes for gallery after {max_attempts} attempts")


def get_gallery(session: Session, gallery_id: str) -> Optional[Gallery]:
    return session.get(Gallery, gallery_id)


def get_gallery_by_share_code(session: Session, share_code: str) -> Optional[Gallery]:
    code = normalize_code(share_code)
    if not code:
        return None
    return session.exec(select(Gallery).where(Gallery.share_code == code)).first()


def get_galleries_by_creator_google_id(session: Session, google_id: str) -> List[Gallery]:
    """Galleries created by a signed-in user, newest first."""
    stmt = (
        select(Gallery)
        .where(Gallery.creator_google_id == google_id)
        .order_by(Gallery.created_at.desc())
    )
    return list(session.exec(stmt).all())


def verify_admin_code(session: Session, gallery_id: str, admin_code: Optional[str]) -> Optional[VerifiedAdminGrant]:
    """Compare `admin_code` with the stored row; a grant is only issued on a match."""
    code = normalize_code(admin_code or '')
    if not code:
        return None
    stmt = select(Gallery.id).where(Gallery.id == gallery_id, Gallery.admin_code == code)
    if session.exec(stmt).first() is None:
        return None
    return VerifiedAdminGrant(gallery_id=gallery_id)


def is_admin_for_gallery(session: Session, gallery_id: str, admin_code: Optional[str]) -> bool:
    return verify_admin_code(session, gallery_id, admin_code) is not None


def get_photo(session: Session, photo_id: str) -> Optional[Photo]:
    return session.get(Photo, photo_id)


def get_photos_by_gallery(session: Session, gallery_id: str) -> List[Photo]:
    """Photos of a gallery, newest first."""
    stmt = (
        select(Photo)
        .where(Photo.gallery_id == gallery_id)
        .order_by(Photo.created_at.desc())
    )
    return list(session.exec(stmt).all())


def get_photo_by_username_in_gallery(session: Session, gallery_id: str, username: str) -> Optional[Photo]:
    """Most recent photo uploaded under `username` (exact match) in the gallery."""
    stmt = (
        select(Photo)
        .where(Photo.gallery_id == gallery_id, Photo.username == username)
        .order_by(Photo.created_at.desc())
        .limit(1)
    )
    return session.exec(stmt).first()


def insert_photo(
    session: Session,
    gallery_id: str,
    owner_identifier: str,
    username: str,
    image_url: str,
    description: str,
) -> Photo:
    photo = Photo(
        gallery_id=gallery_id,
        owner_identifier=owner_identifier,
        username=username,
        image_url=image_url,
        description=description,
    )
    session.add(photo)
    session.commit()
    session.refresh(photo)
    return photo


def delete_photo_with_admin_check(
    session: Session,
    photo_id: str,
    owner_identifier: str,
    is_admin: bool,
    admin_code: Optional[str] = None,
    before_delete: Optional[Callable[[Photo], None]] = None,
) -> Photo:
    """Privileged photo removal.

    Authorized when the admin claim is backed by the stored admin code, or
    when the requester owns the photo. `before_delete` runs after the check
    and before the row is removed (used for object storage cleanup).
    """
    photo = session.get(Photo, photo_id)
    if photo is None:
        raise ResourceNotFound(f"Photo {photo_id} not found")

    allowed = False
    if is_admin:
        allowed = verify_admin_code(session, photo.gallery_id, admin_code) is not None
        if not allowed:
            logger.warning("Admin delete of photo %s rejected: admin code mismatch", photo_id)
    if not allowed and owner_identifier and photo.owner_identifier == owner_identifier:
        allowed = True
    if not allowed:
        raise NotAuthorized("not allowed to delete this photo")

    if before_delete is not None:
        before_delete(photo)

    try:
        session.delete(photo)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Failed to delete photo %s: %s", photo_id, exc)
        raise RecordDeleteFailed(f"Failed to delete photo data: {exc}") from exc
    logger.info("Deleted photo %s (admin=%s, by=%s)", photo_id, is_admin, owner_identifier)
    return photo


def delete_gallery_with_admin_check(
    session: Session,
    gallery_id: str,
    owner_identifier: str,
    admin_code: Optional[str],
    before_delete: Optional[Callable[[Gallery, List[Photo]], None]] = None,
) -> List[Photo]:
    """Privileged cascade removal of a gallery and all its photos.

    The admin code is re-verified against the stored row before anything is
    touched. Photos and gallery are removed in one transaction so a failure
    never leaves photos without their gallery.
    """
    gallery = session.get(Gallery, gallery_id)
    if gallery is None:
        raise ResourceNotFound(f"Gallery {gallery_id} not found")
    if verify_admin_code(session, gallery_id, admin_code) is None:
        logger.warning("Gallery delete of %s by %s rejected: admin code mismatch", gallery_id, owner_identifier)
        raise NotAuthorized("admin code does not match")

    photos = get_photos_by_gallery(session, gallery_id)
    if before_delete is not None:
        before_delete(gallery, photos)

    try:
        for photo in photos:
            session.delete(photo)
        session.flush()
        session.delete(gallery)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Failed to delete gallery %s: %s", gallery_id, exc)
        raise RecordDeleteFailed(f"Failed to delete gallery data: {exc}") from exc
    logger.info("Deleted gallery %s with %d photos (by=%s)", gallery_id, len(photos), owner_identifier)
    return photos

"""
Ownership and admin authorization for gallery and photo mutation.

Two kinds of admin evidence are kept apart:

- `UnverifiedAdminClaim` is what the actor's session remembers after a join
  with an admin code. It is good enough to decide what the UI offers and to
  route a delete through the admin branch, but it is self-asserted.
- `VerifiedAdminGrant` is only produced by `db.verify_admin_code`, i.e. after
  the code was compared against the stored gallery row. Irreversible bulk
  actions (gallery deletion) require one.

All checks here are pure functions of the actor and the resource's
ownership fields. Denials raise `NotAuthorized` and have no side effects.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from .constants import normalize_code
from .errors import NotAuthorized
from .models import Gallery, Photo

logger = logging.getLogger(__name__)

BASIS_CREATOR_GOOGLE_ID = "creator_google_id"
BASIS_CREATOR_IDENTIFIER = "creator_identifier"
BASIS_ADMIN_CODE = "admin_code"


@dataclass(frozen=True)
class UnverifiedAdminClaim:
    gallery_id: str
    admin_code: str


@dataclass(frozen=True)
class VerifiedAdminGrant:
    gallery_id: str
    verified_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


@dataclass(frozen=True)
class Actor:
    """The requester: pseudo-identity always, identity-provider subject when signed in."""
    owner_identifier: str
    google_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    admin_claim: Optional[UnverifiedAdminClaim] = None


def admin_basis(gallery: Gallery, actor: Actor) -> Optional[str]:
    """Return which rule makes `actor` admin of `gallery`, or None."""
    if actor.google_id and gallery.creator_google_id and actor.google_id == gallery.creator_google_id:
        return BASIS_CREATOR_GOOGLE_ID
    if actor.owner_identifier and gallery.creator_identifier and actor.owner_identifier == gallery.creator_identifier:
        return BASIS_CREATOR_IDENTIFIER
    claim = actor.admin_claim
    if (
        claim is not None
        and claim.gallery_id == gallery.id
        and gallery.admin_code
        and normalize_code(claim.admin_code) == gallery.admin_code
    ):
        return BASIS_ADMIN_CODE
    return None


def is_gallery_admin(gallery: Gallery, actor: Actor) -> bool:
    return admin_basis(gallery, actor) is not None


def is_photo_owner(photo: Photo, actor: Actor) -> bool:
    return bool(actor.owner_identifier) and photo.owner_identifier == actor.owner_identifier


def can_delete_photo(photo: Photo, gallery: Gallery, actor: Actor) -> bool:
    """Admin of the photo's gallery, or the uploader by pseudo-identity."""
    if photo.gallery_id != gallery.id:
        return False
    return is_gallery_admin(gallery, actor) or is_photo_owner(photo, actor)


def authorize_photo_delete(photo: Photo, gallery: Gallery, actor: Actor) -> Optional[str]:
    """Raise NotAuthorized unless `actor` may delete `photo`.

    Returns the admin code the delete procedure should re-check when the
    grant comes from admin status, or None when it comes from ownership.
    """
    if photo.gallery_id != gallery.id:
        raise NotAuthorized("photo does not belong to this gallery")
    basis = admin_basis(gallery, actor)
    if basis == BASIS_ADMIN_CODE:
        return normalize_code(actor.admin_claim.admin_code)
    if basis is not None:
        # creator identity was matched against the stored row loaded for this request
        return gallery.admin_code
    if is_photo_owner(photo, actor):
        return None
    logger.info("Denied photo delete: photo=%s actor=%s", photo.id, actor.owner_identifier)
    raise NotAuthorized("you can only delete your own photos")


def authorize_gallery_delete(gallery: Gallery, actor: Actor, grant: Optional[VerifiedAdminGrant]) -> VerifiedAdminGrant:
    """Gallery deletion needs admin status AND a store-verified admin code."""
    if not is_gallery_admin(gallery, actor):
        logger.info("Denied gallery delete (not admin): gallery=%s actor=%s", gallery.id, actor.owner_identifier)
        raise NotAuthorized("only the gallery admin can delete it")
    if grant is None or grant.gallery_id != gallery.id:
        logger.info("Denied gallery delete (admin code not verified): gallery=%s", gallery.id)
        raise NotAuthorized("admin code could not be verified")
    return grant

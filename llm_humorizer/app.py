from contextlib import asynccontextmanager
from io import BytesIO
import logging
import secrets
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel

from .auth import ActorTokenManager, OIDCClient, SessionManager, generate_state_token
from .config import Settings, configure_logging, load_settings
from .constants import ACTOR_COOKIE, SESSION_COOKIE, _get_extension, is_image, mime_type_for_extension, sanitize_filename
from .db import init_db
from .errors import (
    AllCredentialsExhausted,
    CodeGenerationFailed,
    EmptyResponse,
    NotAuthorized,
    RecordDeleteFailed,
    ResourceNotFound,
    ServiceError,
)
from .genai_client import CaptionClient
from .key_rotation import JsonFileKeyStateStore, KeyPool
from .models import Gallery, Photo
from .permissions import Actor, UnverifiedAdminClaim, can_delete_photo, is_gallery_admin
from .prompts import GallerySettings
from .service import GalleryService
from .storage import WebDavStorage

logger = logging.getLogger(__name__)


class CreateGalleryRequest(BaseModel):
    name: str
    settings: Optional[GallerySettings] = None


class JoinGalleryRequest(BaseModel):
    share_code: str
    admin_code: Optional[str] = None


class DeleteGalleryRequest(BaseModel):
    admin_code: str


def build_state(app_instance: FastAPI, settings: Settings) -> None:
    """Wire store, object storage, key pool and identity helpers from settings."""
    engine = init_db(settings.database_url)

    storage = None
    if settings.webdav_url:
        base_url = settings.webdav_url.rstrip('/') + '/' + settings.webdav_path.lstrip('/')
        storage = WebDavStorage(
            base_url,
            auth=(settings.webdav_username, settings.webdav_password),
            public_base_url=settings.public_base_url,
        )
    else:
        logger.warning("WEBDAV_URL not set; saving photos is disabled")

    keys = settings.api_keys()
    if not keys:
        logger.warning("No GOOGLE_GENAI_API_KEYS configured; captioning will report exhausted credentials")
    pool = KeyPool(
        keys,
        JsonFileKeyStateStore(settings.key_state_file),
        quarantine_seconds=settings.key_quarantine_hours * 3600,
    )
    caption_client = CaptionClient(pool, model=settings.google_genai_model)

    jwt_secret = settings.jwt_secret
    if not jwt_secret:
        logger.warning("JWT_SECRET not set; actor identities will not survive a restart")
        jwt_secret = secrets.token_urlsafe(32)

    app_instance.state.settings = settings
    app_instance.state.engine = engine
    app_instance.state.key_pool = pool
    app_instance.state.service = GalleryService(
        engine,
        storage=storage,
        caption_client=caption_client,
        max_code_attempts=settings.max_code_generation_attempts,
        max_upload_bytes=settings.max_upload_bytes,
        require_login_to_create=settings.require_login_to_create,
    )
    app_instance.state.tokens = ActorTokenManager(jwt_secret, settings.jwt_expiry_days)
    app_instance.state.sessions = SessionManager(settings.session_expiry_seconds)
    app_instance.state.oidc = OIDCClient(settings) if settings.oidc_enabled else None


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    """Manage application lifecycle (startup and shutdown events)."""
    if getattr(app_instance.state, 'service', None) is None:
        settings = load_settings()
        configure_logging(settings)
        build_state(app_instance, settings)
    logger.info("llm_humorizer started (keys configured: %d)", len(getattr(app_instance.state, 'key_pool', None) or []))
    yield
    engine = getattr(app_instance.state, 'engine', None)
    if engine is not None:
        engine.dispose()
    logger.info("llm_humorizer stopped")


router = APIRouter()


def _error(status_code: int, detail: str, **extra) -> JSONResponse:
    body: Dict[str, Any] = {'detail': detail}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app_instance: FastAPI) -> None:
    @app_instance.exception_handler(NotAuthorized)
    async def _not_authorized(request: Request, exc: NotAuthorized):
        return _error(403, str(exc) or "Not authorized")

    @app_instance.exception_handler(ResourceNotFound)
    async def _not_found(request: Request, exc: ResourceNotFound):
        return _error(404, str(exc))

    @app_instance.exception_handler(AllCredentialsExhausted)
    async def _exhausted(request: Request, exc: AllCredentialsExhausted):
        return _error(503, str(exc), retry="later")

    @app_instance.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        return _error(502, str(exc), retry="now")

    @app_instance.exception_handler(EmptyResponse)
    async def _empty(request: Request, exc: EmptyResponse):
        return _error(502, str(exc), retry="now")

    @app_instance.exception_handler(RecordDeleteFailed)
    async def _delete_failed(request: Request, exc: RecordDeleteFailed):
        return _error(500, str(exc))

    @app_instance.exception_handler(CodeGenerationFailed)
    async def _codes(request: Request, exc: CodeGenerationFailed):
        return _error(409, str(exc))


# dependencies

def get_service(request: Request) -> GalleryService:
    service = getattr(request.app.state, 'service', None)
    if service is None:
        raise HTTPException(status_code=503, detail='Service is not initialised')
    return service


def _cookie_kwargs(request: Request) -> Dict[str, Any]:
    settings = getattr(request.app.state, 'settings', None)
    secure = not getattr(settings, 'debug_mode', True) and request.url.scheme == 'https'
    return {'httponly': True, 'samesite': 'lax', 'secure': secure}


def ensure_session(request: Request, response: Response) -> str:
    sessions: SessionManager = request.app.state.sessions
    session_id = request.cookies.get(SESSION_COOKIE)
    if sessions.get_session(session_id) is None:
        session_id = sessions.create_session()
        response.set_cookie(SESSION_COOKIE, session_id, **_cookie_kwargs(request))
    return session_id


def get_actor(request: Request, response: Response) -> Actor:
    """Resolve the requester from the signed actor cookie and the session."""
    tokens: ActorTokenManager = request.app.state.tokens
    owner_identifier = tokens.verify_token(request.cookies.get(ACTOR_COOKIE))
    if owner_identifier is None:
        owner_identifier = tokens.new_identifier()
        response.set_cookie(
            ACTOR_COOKIE,
            tokens.create_token(owner_identifier),
            max_age=tokens.expiry_days * 86400,
            **_cookie_kwargs(request),
        )
        logger.debug("Issued new actor identity %s", owner_identifier)

    session = request.app.state.sessions.get_session(request.cookies.get(SESSION_COOKIE)) or {}
    user_info = session.get('user_info') or {}
    claim = None
    if session.get('gallery_id') and session.get('admin_code'):
        claim = UnverifiedAdminClaim(gallery_id=session['gallery_id'], admin_code=session['admin_code'])

    return Actor(
        owner_identifier=owner_identifier,
        google_id=user_info.get('sub'),
        email=user_info.get('email'),
        name=user_info.get('name'),
        admin_claim=claim,
    )


def gallery_view(gallery: Gallery, actor: Actor) -> Dict[str, Any]:
    admin = is_gallery_admin(gallery, actor)
    view = {
        'id': gallery.id,
        'name': gallery.name,
        'share_code': gallery.share_code,
        'settings': GallerySettings.from_stored(gallery.settings).model_dump(),
        'created_at': gallery.created_at,
        'is_admin': admin,
    }
    if admin:
        view['admin_code'] = gallery.admin_code
    return view


def photo_view(photo: Photo, gallery: Gallery, actor: Actor) -> Dict[str, Any]:
    data = photo.model_dump(exclude={'owner_identifier'})
    data['is_mine'] = photo.owner_identifier == actor.owner_identifier
    data['can_delete'] = can_delete_photo(photo, gallery, actor)
    return data


def _read_upload(file: UploadFile, limit: int) -> bytes:
    data = file.file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=f'Image is larger than {limit} bytes')
    return data


# routes

@router.get("/health", tags=["health"])
def health(request: Request) -> Dict[str, Any]:
    pool = getattr(request.app.state, 'key_pool', None)
    return {
        "status": "ok",
        "keys_configured": len(pool) if pool is not None else 0,
        "keys_usable": pool.usable_count() if pool is not None else 0,
    }


@router.get("/auth/login", tags=["auth"])
def login(request: Request):
    oidc: Optional[OIDCClient] = request.app.state.oidc
    if oidc is None:
        raise HTTPException(status_code=404, detail='Sign-in is not enabled')
    state = generate_state_token()
    return RedirectResponse(oidc.get_authorization_url(state), status_code=302)


@router.get("/auth/callback", tags=["auth"])
async def auth_callback(request: Request, code: str = "", state: str = ""):
    oidc: Optional[OIDCClient] = request.app.state.oidc
    if oidc is None:
        raise HTTPException(status_code=404, detail='Sign-in is not enabled')
    if not code or not state:
        raise HTTPException(status_code=400, detail='Missing code or state')
    try:
        token = await oidc.exchange_code_for_token(code, state)
        user_info = await oidc.get_userinfo(token['access_token'])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("Sign-in callback failed: %s", exc)
        raise HTTPException(status_code=502, detail='Sign-in with the identity provider failed')
    if not user_info.get('sub'):
        raise HTTPException(status_code=502, detail='Identity provider returned no subject')

    response = RedirectResponse("/", status_code=302)
    session_id = ensure_session(request, response)
    request.app.state.sessions.set_user(session_id, user_info)
    logger.info("User %s signed in", user_info.get('email') or user_info['sub'])
    return response


@router.post("/auth/logout", tags=["auth"])
def logout(request: Request):
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        request.app.state.sessions.set_user(session_id, None)
    return {"status": "signed_out"}


@router.get("/me", tags=["auth"])
def me(request: Request, actor: Actor = Depends(get_actor), service: GalleryService = Depends(get_service)):
    session = request.app.state.sessions.get_session(request.cookies.get(SESSION_COOKIE)) or {}
    gallery = None
    gallery_id = session.get('gallery_id')
    if gallery_id:
        try:
            gallery = gallery_view(service.get_gallery(gallery_id), actor)
        except ResourceNotFound:
            request.app.state.sessions.clear_active_gallery(request.cookies.get(SESSION_COOKIE))
    user = None
    if actor.google_id:
        user = {'id': actor.google_id, 'email': actor.email, 'name': actor.name}
    return {'owner_identifier': actor.owner_identifier, 'user': user, 'gallery': gallery}


@router.post("/galleries", tags=["galleries"], status_code=201)
def create_gallery(
    payload: CreateGalleryRequest,
    request: Request,
    response: Response,
    actor: Actor = Depends(get_actor),
    service: GalleryService = Depends(get_service),
):
    try:
        gallery = service.create_gallery(actor, payload.name, payload.settings)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session_id = ensure_session(request, response)
    request.app.state.sessions.set_active_gallery(session_id, gallery.id)
    return gallery_view(gallery, actor)


@router.get("/galleries/mine", tags=["galleries"])
def my_galleries(actor: Actor = Depends(get_actor), service: GalleryService = Depends(get_service)):
    if not actor.google_id:
        raise HTTPException(status_code=401, detail='Sign in to list your galleries')
    return [gallery_view(g, actor) for g in service.my_galleries(actor)]


@router.post("/galleries/join", tags=["galleries"])
def join_gallery(
    payload: JoinGalleryRequest,
    request: Request,
    response: Response,
    actor: Actor = Depends(get_actor),
    service: GalleryService = Depends(get_service),
):
    result = service.join_gallery(payload.share_code, payload.admin_code)
    session_id = ensure_session(request, response)
    admin_code = result.admin_claim.admin_code if result.admin_claim else None
    request.app.state.sessions.set_active_gallery(session_id, result.gallery.id, admin_code)
    joined_as = Actor(
        owner_identifier=actor.owner_identifier,
        google_id=actor.google_id,
        email=actor.email,
        name=actor.name,
        admin_claim=result.admin_claim,
    )
    return gallery_view(result.gallery, joined_as)


@router.post("/galleries/leave", tags=["galleries"])
def leave_gallery(request: Request):
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        request.app.state.sessions.clear_active_gallery(session_id)
    return {"status": "left"}


@router.get("/galleries/{gallery_id}", tags=["galleries"])
def get_gallery(gallery_id: str, actor: Actor = Depends(get_actor), service: GalleryService = Depends(get_service)):
    return gallery_view(service.get_gallery(gallery_id), actor)


@router.delete("/galleries/{gallery_id}", tags=["galleries"])
def delete_gallery(
    gallery_id: str,
    payload: DeleteGalleryRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    service: GalleryService = Depends(get_service),
):
    removed = service.delete_gallery(actor, gallery_id, payload.admin_code)
    session_id = request.cookies.get(SESSION_COOKIE)
    session = request.app.state.sessions.get_session(session_id)
    if session and session.get('gallery_id') == gallery_id:
        request.app.state.sessions.clear_active_gallery(session_id)
    return {"status": "deleted", "id": gallery_id, "photos_deleted": removed}


@router.get("/galleries/{gallery_id}/photos", tags=["photos"])
def list_photos(gallery_id: str, actor: Actor = Depends(get_actor), service: GalleryService = Depends(get_service)) -> List[Dict[str, Any]]:
    gallery = service.get_gallery(gallery_id)
    return [photo_view(p, gallery, actor) for p in service.list_photos(gallery_id)]


@router.get("/galleries/{gallery_id}/photos/search", tags=["photos"])
def search_photo(
    gallery_id: str,
    username: str = "",
    actor: Actor = Depends(get_actor),
    service: GalleryService = Depends(get_service),
):
    gallery = service.get_gallery(gallery_id)
    try:
        photo = service.find_photo_by_username(gallery_id, username)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return photo_view(photo, gallery, actor)


@router.post("/captions", tags=["captions"])
def create_caption(
    request: Request,
    file: UploadFile = File(...),
    gallery_id: Optional[str] = Form(None),
    service: GalleryService = Depends(get_service),
):
    image = _read_upload(file, service.max_upload_bytes)
    try:
        description = service.caption(image, gallery_id=gallery_id or None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"description": description}


@router.post("/galleries/{gallery_id}/photos", tags=["photos"], status_code=201)
def save_photo(
    gallery_id: str,
    file: UploadFile = File(...),
    username: str = Form(...),
    description: str = Form(...),
    actor: Actor = Depends(get_actor),
    service: GalleryService = Depends(get_service),
):
    image = _read_upload(file, service.max_upload_bytes)
    try:
        photo = service.save_photo(actor, gallery_id, username, image, description)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IOError as exc:
        logger.exception('Storage error while saving photo: %s', exc)
        raise HTTPException(status_code=503, detail='Storage error')
    gallery = service.get_gallery(gallery_id)
    return photo_view(photo, gallery, actor)


@router.delete("/photos/{photo_id}", tags=["photos"])
def delete_photo(photo_id: str, actor: Actor = Depends(get_actor), service: GalleryService = Depends(get_service)):
    service.delete_photo(actor, photo_id)
    return {"status": "deleted", "id": photo_id}


@router.get("/files/{gallery_id}/{filename}", tags=["files"])
def download_file(gallery_id: str, filename: str, service: GalleryService = Depends(get_service)):
    """Stream a stored photo (this is what public image URLs point at by default)."""
    try:
        gallery_id = sanitize_filename(gallery_id)
        filename = sanitize_filename(filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not is_image(filename):
        raise HTTPException(status_code=404, detail='File not found')

    storage = service.storage
    if storage is None:
        raise HTTPException(status_code=503, detail='Storage is not configured')
    try:
        data = storage.download_file(f"{gallery_id}/{filename}")
    except FileNotFoundError:
        logger.info('File not found: %s/%s', gallery_id, filename)
        raise HTTPException(status_code=404, detail='File not found in storage')
    except IOError as exc:
        logger.exception('Storage error for %s/%s: %s', gallery_id, filename, exc)
        raise HTTPException(status_code=503, detail='Storage error')
    return StreamingResponse(BytesIO(data), media_type=mime_type_for_extension(_get_extension(filename)))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application; with `settings` the state is wired immediately."""
    app_instance = FastAPI(title="llm_humorizer", lifespan=lifespan)
    app_instance.state.service = None
    app_instance.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app_instance)
    app_instance.include_router(router)
    if settings is not None:
        build_state(app_instance, settings)
    return app_instance


app = create_app()

import json
import uuid
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS
from .errors import AuthenticationError, ConflictError, NotFoundError, ServiceError, ValidationError
from .events import parse_entry, parse_envelope
from .models import GenerationStatus, PreferencesSubmission, UserPreferences, utc_now_iso
from .runtime import Services, build_services

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
    return request_id


def error_response(request: Request, status_code: int, code: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    request_id = _request_id(request)
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "requestId": request_id, "timestamp": utc_now_iso()}},
        headers={**(headers or {}), "X-Request-ID": request_id},
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Authentication happens upstream; the gateway forwards the verified user id
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("User not authenticated")
    return x_user_id.strip()


async def _json_body(request: Request):
    raw = await request.body()
    if not raw.strip():
        raise ValidationError("Request body is required", code="MISSING_BODY")
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON in request body", code="INVALID_JSON")


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Serial Story Backend")
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = _request_id(request)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return error_response(request, exc.status_code, exc.code, exc.message, exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err["loc"] if p != "body")
            parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
        return error_response(request, 400, "VALIDATION_ERROR", "; ".join(parts) or "Invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}.get(exc.status_code, "HTTP_ERROR")
        return error_response(request, exc.status_code, code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return error_response(request, 500, "INTERNAL_ERROR", "An unexpected error occurred")

    @app.get("/health")
    def health(services: Services = Depends(get_services)):
        keys_ok = has_all_keys()
        logger.info(f"Health check: API keys present = {keys_ok}")
        return {"ok": True, "has_keys": keys_ok, "event_bus": type(services.bus).__name__}

    # --- Preferences ---

    @app.put("/preferences")
    async def put_preferences(body: PreferencesSubmission, user_id: str = Depends(current_user),
                              services: Services = Depends(get_services)):
        prefs = UserPreferences(user_id=user_id, preferences=body.preferences, insights=body.insights)
        await services.preferences.save(prefs)
        return prefs.to_json_dict()

    @app.get("/preferences")
    async def get_preferences(user_id: str = Depends(current_user), services: Services = Depends(get_services)):
        prefs = await services.preferences.latest(user_id)
        if prefs is None:
            raise NotFoundError("User preferences not found", code="PREFERENCES_NOT_FOUND")
        return prefs.to_json_dict()

    # --- Workflow ---

    @app.post("/workflow/start", status_code=202)
    async def start_workflow(request: Request, user_id: str = Depends(current_user),
                             services: Services = Depends(get_services)):
        payload = await _json_body(request)
        ack = await services.coordinator.start_workflow(user_id, payload)
        return JSONResponse(status_code=202, content=ack.to_json_dict())

    @app.get("/status/{request_id}")
    async def get_status(request_id: str, user_id: str = Depends(current_user),
                         services: Services = Depends(get_services)):
        status = await services.status.get_status(request_id, user_id)
        return status.to_json_dict(exclude_none=True)

    @app.post("/stories/{story_id}/episodes", status_code=202)
    async def continue_story(story_id: str, user_id: str = Depends(current_user),
                             services: Services = Depends(get_services)):
        ack = await services.continuation.continue_story(user_id, story_id)
        return JSONResponse(status_code=202, content=ack.to_json_dict())

    # --- Content ---

    async def _owned_story(services: Services, story_id: str, user_id: str):
        story = await services.stories.get(story_id)
        if story is None or story.user_id != user_id:
            raise NotFoundError("Story not found", code="STORY_NOT_FOUND")
        return story

    @app.get("/stories")
    async def list_stories(user_id: str = Depends(current_user), services: Services = Depends(get_services)):
        stories = await services.stories.list_for_user(user_id)
        return {"stories": [s.to_json_dict(exclude_none=True) for s in stories]}

    @app.get("/stories/{story_id}")
    async def get_story(story_id: str, user_id: str = Depends(current_user), services: Services = Depends(get_services)):
        story = await _owned_story(services, story_id, user_id)
        episodes = await services.episodes.list_for_story(story_id)
        return {
            "story": story.to_json_dict(exclude_none=True),
            "episodes": [e.to_json_dict(exclude_none=True) for e in episodes],
        }

    @app.get("/stories/{story_id}/download")
    async def download_story(story_id: str, user_id: str = Depends(current_user),
                             services: Services = Depends(get_services)):
        story = await _owned_story(services, story_id, user_id)
        if story.status != GenerationStatus.COMPLETED or not story.content_key:
            raise ConflictError("Story is not ready", code="NOT_READY")
        text = services.blobs.get_text(story.content_key)
        headers = {"Content-Disposition": f'attachment; filename="story-{story_id}.md"'}
        return Response(content=text, media_type="text/markdown; charset=utf-8", headers=headers)

    @app.get("/episodes/{episode_id}/download")
    async def download_episode(episode_id: str, user_id: str = Depends(current_user),
                               services: Services = Depends(get_services)):
        episode = await services.episodes.get_by_id(episode_id)
        if episode is None or episode.user_id != user_id:
            raise NotFoundError("Episode not found", code="EPISODE_NOT_FOUND")
        if not episode.artifact_key:
            raise ConflictError("Episode is not ready", code="NOT_READY")
        data = services.blobs.get_bytes(episode.artifact_key)
        filename = f"episode-{episode.episode_number}-{episode_id}.pdf"
        headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
        return Response(content=data, media_type="application/pdf", headers=headers)

    # --- Push delivery from the event bus ---

    @app.post("/events")
    async def receive_event(request: Request, services: Services = Depends(get_services)):
        body = await _json_body(request)
        if not isinstance(body, dict):
            raise ValidationError("Event must be a JSON object")
        envelope = parse_entry(body) if "DetailType" in body else parse_envelope(body)
        try:
            dispatched = await services.router.dispatch(envelope)
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"Handler for {envelope.detail_type} failed: {e}")
            raise ServiceError(f"Event handler failed: {e}") from e
        return {"ok": True, "detailType": envelope.detail_type, "dispatched": dispatched}

    return app


app = create_app()

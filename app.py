import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

from robyn import Request, Response, Robyn

from auth import (
    SESSION_COOKIE_NAME,
    SessionManager,
    hash_api_token,
    is_well_formed_api_token,
    parse_bearer_token,
)
from config import configure_logging, load_settings
from database import VISIBILITIES, Database, ImageRecord, ProfileRecord
from rate_limiter import RateLimiter
from storage import LocalBlobStore, StorageError, build_blob_store
from uploads import FilePart, UploadPipeline, guess_mime_type, parse_multipart

# Author: Daniel Neugent

app = Robyn(__file__)
logger = logging.getLogger(__name__)

# Singletons used by every request
settings = load_settings()
db = Database(settings.db_path)
store = build_blob_store(settings)
sessions = SessionManager()
pipeline = UploadPipeline(db, store, settings)
sharex_limiter = RateLimiter(settings.sharex_rate_limit, settings.sharex_rate_window)

DEFAULT_PAGE_SIZE = 24
MAX_PAGE_SIZE = 100


async def _ensure_database() -> None:
    """Prepare the sqlite file before handling the first request."""
    await db.initialize()


app.startup_handler(_ensure_database)


@dataclass
class Viewer:
    profile: ProfileRecord

    @property
    def id(self) -> int:
        return self.profile.id


class BadRequest(ValueError):
    pass


def _get_cookie_value(request: Request, name: str) -> Optional[str]:
    """Extract a single cookie value from the request headers."""
    cookie_header = request.headers.get("cookie")
    if not cookie_header:
        return None
    for chunk in cookie_header.split(";"):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key.strip() == name:
            return value
    return None


def _raw_body_bytes(request: Request) -> bytes:
    raw_body = request.body
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, list):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return b""


def _json_data(request: Request) -> dict:
    body = _raw_body_bytes(request)
    if not body:
        return {}
    try:
        parsed = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _json_response(
    payload: dict | list,
    *,
    status: int = 200,
    headers: Optional[dict[str, str]] = None,
) -> Response:
    response_headers = {"content-type": "application/json; charset=utf-8"}
    if headers:
        response_headers.update(headers)
    return Response(
        status_code=status,
        headers=response_headers,
        description=json.dumps(payload),
    )


def _error(message: str, status: int, headers: Optional[dict[str, str]] = None) -> Response:
    return _json_response({"error": message}, status=status, headers=headers)


def _uploaded_files(request: Request) -> list[FilePart]:
    """Return every file part of a multipart body, in request order.

    Robyn's ``request.files`` is keyed by filename and drops both field names
    and repeated filenames, so the raw body is parsed first.
    """
    parts = parse_multipart(
        _raw_body_bytes(request), request.headers.get("content-type") or ""
    )
    if parts:
        return parts
    files = request.files or {}
    return [
        FilePart(field=None, filename=str(name), content_type="", data=bytes(content))
        for name, content in files.items()
    ]


def _sharex_file(files: list[FilePart]) -> Optional[FilePart]:
    """The part sent under the ``file`` field, or the first part when names are unknown."""
    for part in files:
        if part.field == "file" or part.field is None:
            return part
    return None


def _image_id(request: Request) -> Optional[int]:
    raw = str(request.path_params.get("id") or "").strip()
    return int(raw) if raw.isdigit() else None


def _page(request: Request) -> tuple[int, int]:
    raw_limit = str(request.query_params.get("limit", None) or DEFAULT_PAGE_SIZE)
    raw_offset = str(request.query_params.get("offset", None) or 0)
    if not raw_limit.isdigit() or not raw_offset.isdigit():
        raise BadRequest("limit and offset must be non-negative integers")
    limit = int(raw_limit)
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise BadRequest(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit, int(raw_offset)


def _image_payload(record: ImageRecord) -> dict:
    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "filename": record.filename,
        "extension": record.extension,
        "size_bytes": record.size_bytes,
        "width": record.width,
        "height": record.height,
        "mime_type": record.mime_type,
        "checksum": record.checksum,
        "visibility": record.visibility,
        "created_at": record.created_at,
        "owner_display_name": record.owner_display_name,
        "url": store.public_url(record.storage_key),
    }


def _profile_payload(profile: ProfileRecord) -> dict:
    return {
        "id": profile.id,
        "username": profile.username,
        "display_name": profile.display_name,
        "avatar_url": profile.avatar_url,
        "sharex_default_visibility": profile.sharex_default_visibility,
        "sharex_auto_copy_link": profile.sharex_auto_copy_link,
        "updated_at": profile.updated_at,
    }


async def _current_viewer(request: Request) -> Optional[Viewer]:
    """Resolve the signed-in profile from the session cookie, if present."""
    user_id = sessions.decode(_get_cookie_value(request, SESSION_COOKIE_NAME))
    if user_id is None:
        return None
    profile = await db.fetch_profile_by_id(user_id)
    return Viewer(profile=profile) if profile else None


def _visible_to(record: ImageRecord, viewer: Optional[Viewer]) -> bool:
    return record.visibility == "public" or (
        viewer is not None and viewer.id == record.owner_id
    )


@app.get("/api/health")
async def health(_: Request) -> Response:
    return _json_response({"status": "ok", "service": "snapshelf"})


@app.post("/api/upload")
async def upload_api(request: Request) -> Response:
    """Upload one or more images from the signed-in web client."""
    viewer = await _current_viewer(request)
    if viewer is None:
        return _error("Unauthorized. Please sign in to upload images.", 401)
    files = _uploaded_files(request)
    if not files:
        return _error("No files provided", 400)
    try:
        results = []
        for part in files:
            result = await pipeline.upload(
                viewer.id,
                part.filename,
                part.data,
                guess_mime_type(part.filename, part.content_type, part.data),
                visibility="public",
            )
            results.append(result)
    except Exception:
        logger.exception("upload failed user_id=%s", viewer.id)
        return _error("Internal server error during upload", 500)
    successful = sum(1 for result in results if result.success)
    return _json_response(
        {
            "results": [result.to_dict() for result in results],
            "summary": {
                "total": len(results),
                "successful": successful,
                "failed": len(results) - successful,
            },
        },
        status=200 if successful == len(results) else 207,
    )


@app.post("/api/sharex/upload")
async def sharex_upload_api(request: Request) -> Response:
    """ShareX custom uploader endpoint authenticated with a bearer API token."""
    started = time.perf_counter()
    header = request.headers.get("authorization")
    logger.info("sharex upload received has_auth_header=%s", bool(header))
    token = parse_bearer_token(header)
    if token is None:
        logger.warning("sharex upload rejected reason=bad_authorization_header")
        return _error("Missing or invalid authorization header", 401)
    if not is_well_formed_api_token(token):
        logger.warning("sharex upload rejected reason=bad_token_format")
        return _error("Invalid token format", 401)

    api_token = await db.fetch_api_token_by_hash(hash_api_token(token))
    if api_token is None:
        logger.warning("sharex upload rejected reason=unknown_token")
        return _error("Invalid or expired token", 401)

    limit = sharex_limiter.check(str(api_token.id))
    if not limit.success:
        headers = limit.headers()
        headers["Retry-After"] = str(sharex_limiter.retry_after(limit))
        return _json_response(
            {
                "error": "Rate limit exceeded. Please try again later.",
                "limit": limit.limit,
                "reset": limit.reset,
            },
            status=429,
            headers=headers,
        )

    try:
        await db.touch_api_token(api_token.id)
        part = _sharex_file(_uploaded_files(request))
        if part is None:
            logger.warning("sharex upload rejected user_id=%s reason=no_file", api_token.owner_id)
            return _error("No file provided", 400, headers=limit.headers())
        owner = await db.fetch_profile_by_id(api_token.owner_id)
        visibility = owner.sharex_default_visibility if owner else "private"
        result = await pipeline.upload(
            api_token.owner_id,
            part.filename,
            part.data,
            guess_mime_type(part.filename, part.content_type, part.data),
            visibility=visibility,
        )
    except Exception:
        logger.exception("sharex upload failed token_id=%s", api_token.id)
        return _error("Internal server error", 500)

    logger.info(
        "sharex upload finished user_id=%s token_id=%s filename=%s success=%s duration_ms=%d",
        api_token.owner_id,
        api_token.id,
        result.filename,
        result.success,
        (time.perf_counter() - started) * 1000,
    )
    if not result.success:
        return _error(result.error or "Upload failed", 400, headers=limit.headers())
    return _json_response(
        {
            "success": True,
            "url": f"{settings.site_url}/i/{result.image_id}",
            "filename": result.filename,
        },
        headers=limit.headers(),
    )


@app.get("/api/images")
async def public_gallery_api(request: Request) -> Response:
    """Newest public images across every profile."""
    try:
        limit, offset = _page(request)
    except BadRequest as exc:
        return _error(str(exc), 400)
    q = str(request.query_params.get("q", None) or "").strip()
    images = await db.list_public_images(limit=limit, offset=offset, q=q or None)
    return _json_response(
        {
            "images": [_image_payload(record) for record in images],
            "limit": limit,
            "offset": offset,
            "q": q,
        }
    )


@app.get("/api/images/:id")
async def image_detail_api(request: Request) -> Response:
    image_id = _image_id(request)
    if image_id is None:
        return _error("Image not found", 404)
    record = await db.fetch_image(image_id)
    viewer = await _current_viewer(request)
    # Private images look exactly like missing ones to everyone but the owner.
    if record is None or not _visible_to(record, viewer):
        return _error("Image not found", 404)
    return _json_response(_image_payload(record))


@app.patch("/api/images/:id")
async def update_visibility_api(request: Request) -> Response:
    """Owner-only toggle between public and private."""
    viewer = await _current_viewer(request)
    if viewer is None:
        return _error("Unauthorized. Please sign in.", 401)
    visibility = _json_data(request).get("visibility")
    if visibility not in VISIBILITIES:
        return _error("Invalid visibility value. Must be 'public' or 'private'.", 400)
    image_id = _image_id(request)
    record = await db.fetch_image(image_id) if image_id is not None else None
    if record is None:
        return _error("Image not found", 404)
    if record.owner_id != viewer.id:
        logger.warning(
            "visibility change rejected user_id=%s image_id=%s reason=not_owner",
            viewer.id,
            record.id,
        )
        return _error("Forbidden. You can only modify your own images.", 403)
    try:
        await db.update_image_visibility(record.id, visibility)
    except Exception:
        logger.exception("visibility update failed image_id=%s", record.id)
        return _error("Failed to update visibility", 500)
    logger.info(
        "visibility updated user_id=%s image_id=%s visibility=%s",
        viewer.id,
        record.id,
        visibility,
    )
    return _json_response(
        {
            "success": True,
            "visibility": visibility,
            "message": f"Visibility updated to {visibility}",
        }
    )


@app.delete("/api/images/:id")
async def delete_image_api(request: Request) -> Response:
    """Remove an image from storage and then from the database."""
    viewer = await _current_viewer(request)
    if viewer is None:
        return _error("Unauthorized. Please sign in.", 401)
    image_id = _image_id(request)
    record = await db.fetch_image(image_id) if image_id is not None else None
    if record is None:
        return _error("Image not found", 404)
    if record.owner_id != viewer.id:
        return _error("Forbidden. You can only delete your own images.", 403)
    logger.info("delete requested user_id=%s image_id=%s", viewer.id, record.id)
    try:
        await asyncio.to_thread(store.delete, record.storage_key)
    except StorageError:
        logger.exception(
            "delete failed user_id=%s image_id=%s reason=storage_error",
            viewer.id,
            record.id,
        )
        return _error("Failed to delete image from storage", 500)
    try:
        await db.delete_image(record.id)
    except Exception:
        logger.exception(
            "delete failed user_id=%s image_id=%s reason=db_error",
            viewer.id,
            record.id,
        )
        return _error("Failed to delete image metadata", 500)
    logger.info("delete completed user_id=%s image_id=%s", viewer.id, record.id)
    return _json_response({"success": True, "message": "Image deleted"})


@app.get("/api/profile")
async def profile_api(request: Request) -> Response:
    viewer = await _current_viewer(request)
    if viewer is None:
        return _error("Unauthorized. Please sign in.", 401)
    return _json_response(_profile_payload(viewer.profile))


@app.patch("/api/profile")
async def update_profile_api(request: Request) -> Response:
    """Save the signed-in user's profile settings."""
    viewer = await _current_viewer(request)
    if viewer is None:
        return _error("Unauthorized. Please sign in.", 401)
    data = _json_data(request)
    changes: dict = {}
    for field in ("display_name", "avatar_url"):
        if field not in data:
            continue
        value = data[field]
        if value is not None and not isinstance(value, str):
            return _error(f"{field} must be a string", 400)
        changes[field] = value or ""
    if "sharex_default_visibility" in data:
        visibility = data["sharex_default_visibility"]
        if visibility not in VISIBILITIES:
            return _error("Invalid visibility value. Must be 'public' or 'private'.", 400)
        changes["sharex_default_visibility"] = visibility
    if "sharex_auto_copy_link" in data:
        if not isinstance(data["sharex_auto_copy_link"], bool):
            return _error("sharex_auto_copy_link must be true or false", 400)
        changes["sharex_auto_copy_link"] = data["sharex_auto_copy_link"]
    try:
        profile = await db.update_profile(viewer.id, **changes)
    except Exception:
        logger.exception("profile update failed user_id=%s", viewer.id)
        return _error("Failed to update profile", 500)
    if profile is None:
        return _error("Profile not found", 404)
    logger.info("profile updated user_id=%s fields=%s", viewer.id, ",".join(sorted(changes)))
    return _json_response(_profile_payload(profile))


@app.get("/api/users/:username/images")
async def profile_gallery_api(request: Request) -> Response:
    """A profile's gallery; private images only for the profile owner."""
    username = unquote(str(request.path_params.get("username") or ""))
    profile = await db.fetch_profile_by_username(username)
    if profile is None:
        return _error("Profile not found", 404)
    try:
        limit, offset = _page(request)
    except BadRequest as exc:
        return _error(str(exc), 400)
    viewer = await _current_viewer(request)
    is_owner = viewer is not None and viewer.id == profile.id
    images = await db.list_images_for_owner(
        profile.id, include_private=is_owner, limit=limit, offset=offset
    )
    return _json_response(
        {
            "username": profile.username,
            "display_name": profile.display_name,
            "images": [_image_payload(record) for record in images],
            "limit": limit,
            "offset": offset,
        }
    )


@app.get("/i/:id")
async def view_image(request: Request) -> Response:
    """Short share link; redirects to the stored blob when the viewer may see it."""
    image_id = _image_id(request)
    record = await db.fetch_image(image_id) if image_id is not None else None
    viewer = await _current_viewer(request)
    if record is None or not _visible_to(record, viewer):
        return Response(status_code=404, headers={}, description="Not found")
    return Response(
        status_code=302,
        headers={"location": store.public_url(record.storage_key)},
        description="",
    )


@app.get("/blobs/:owner/:name")
async def local_blob(request: Request) -> Response:
    """Serve blobs straight from disk when running with local storage."""
    if not isinstance(store, LocalBlobStore):
        return Response(status_code=404, headers={}, description="Not found")
    owner = str(request.path_params.get("owner") or "")
    name = unquote(str(request.path_params.get("name") or ""))
    try:
        content = await asyncio.to_thread(store.read, f"{owner}/{name}")
    except StorageError:
        return Response(status_code=404, headers={}, description="Not found")
    return Response(
        status_code=200,
        headers={"content-type": guess_mime_type(name)},
        description=content,
    )


if __name__ == "__main__":
    configure_logging(settings.log_level)
    app.start(_check_port=False)

# sayso/api.py

import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web

from .auth import Authenticator, InvalidToken, TokenSigner, hash_password
from .db_async import Database
from .gateway import RealtimeGateway
from .media import POST_IMAGES, PROFILE_PICS, MediaStore, UnsupportedMedia
from .oauth import GoogleLogin, GoogleLoginError, find_or_create_google_user
from .presence import PresenceDirectory
from .router import NotificationRouter

logger = logging.getLogger(__name__)

DB_KEY = web.AppKey("db", Database)
AUTHENTICATOR_KEY = web.AppKey("authenticator", Authenticator)
TOKENS_KEY = web.AppKey("tokens", TokenSigner)
NOTIFIER_KEY = web.AppKey("notifier", NotificationRouter)
DIRECTORY_KEY = web.AppKey("directory", PresenceDirectory)
MEDIA_KEY = web.AppKey("media", MediaStore)
FRONTEND_URL_KEY = web.AppKey("frontend_url", str)
GOOGLE_KEY = web.AppKey("google", GoogleLogin)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
OAUTH_STATE_COOKIE = "sayso_oauth_state"


class ApiError(Exception):
    """Rendered by error_middleware as {"message": ...} with the given status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


# =============================================================================
# MIDDLEWARES
# =============================================================================

@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            _add_cors_headers(request, exc)
            raise

    if not response.prepared:
        _add_cors_headers(request, response)
    return response


def _add_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
    origin = request.app[FRONTEND_URL_KEY]
    response.headers["Access-Control-Allow-Origin"] = origin
    # Credentials are never allowed together with the wildcard origin.
    if origin != "*":
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ApiError as e:
        return web.json_response({"message": e.message}, status=e.status)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception(f"Handler error on {request.method} {request.path}")
        return web.json_response({"message": "Internal server error"}, status=500)


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Attaches the bearer token's user (or None) to the request."""
    request["user"] = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            claims = request.app[TOKENS_KEY].verify(auth_header[len("Bearer "):])
        except InvalidToken as e:
            logger.debug(f"Rejected bearer token on {request.path}: {e}")
        else:
            row = await request.app[DB_KEY].get_user_by_id(claims["sub"])
            request["user"] = dict(row) if row else None
    return await handler(request)


# =============================================================================
# HELPERS
# =============================================================================

def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in user.items() if key != "password"}


def _require_user(request: web.Request) -> Dict[str, Any]:
    user = request["user"]
    if user is None:
        raise ApiError(401, "Unauthorized")
    return user


def _int_param(request: web.Request, name: str, not_found: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError:
        raise ApiError(404, not_found)


def _text_field(fields: Dict[str, Any], name: str) -> Optional[str]:
    """Returns a text field's value, or None when absent or empty."""
    value = fields.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ApiError(400, f"{name} must be a string")
    return value


def _parse_tags(value: Any) -> Optional[List[str]]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    if isinstance(value, list):
        return [str(tag).strip() for tag in value if str(tag).strip()]
    raise ApiError(400, "Tags must be a list or a comma separated string")


async def _read_body(request: web.Request) -> Tuple[Dict[str, Any], Dict[str, Tuple[str, bytes]]]:
    """Returns (fields, files) from a JSON, urlencoded or multipart body."""
    if request.content_type == "application/json":
        try:
            data = await request.json()
        except ValueError:
            raise ApiError(400, "Invalid JSON body")
        if not isinstance(data, dict):
            raise ApiError(400, "Invalid JSON body")
        return data, {}

    if request.content_type in ("multipart/form-data", "application/x-www-form-urlencoded"):
        fields: Dict[str, Any] = {}
        files: Dict[str, Tuple[str, bytes]] = {}
        for name, value in (await request.post()).items():
            if isinstance(value, web.FileField):
                files[name] = (value.filename, value.file.read())
            else:
                fields[name] = value
        return fields, files

    return {}, {}


def _store_upload(request: web.Request, files: Dict[str, Tuple[str, bytes]],
                  field: str, folder: str) -> Optional[str]:
    if field not in files:
        return None
    filename, data = files[field]
    try:
        return request.app[MEDIA_KEY].save(folder, filename, data)
    except UnsupportedMedia as e:
        raise ApiError(400, str(e))


async def _load_post(request: web.Request, name: str = "id") -> Dict[str, Any]:
    post_id = _int_param(request, name, "Post not found")
    post = await request.app[DB_KEY].get_post(post_id)
    if post is None:
        raise ApiError(404, "Post not found")
    return post


async def _load_own_comment(request: web.Request, user: Dict[str, Any]) -> Dict[str, Any]:
    comment_id = _int_param(request, "commentId", "Comment not found")
    comment = await request.app[DB_KEY].get_comment(comment_id)
    if comment is None:
        raise ApiError(404, "Comment not found")
    if comment["user_id"] != user["id"]:
        raise ApiError(403, "Forbidden")
    return comment


# =============================================================================
# HANDLERS
# =============================================================================

async def index(request: web.Request):
    return web.json_response({"message": "Welcome to the SAYSO!"})


async def health_check(request: web.Request):
    return web.json_response({"status": "ok", "online": len(request.app[DIRECTORY_KEY])})


async def register(request: web.Request):
    fields, files = await _read_body(request)
    email = (_text_field(fields, "email") or "").strip().lower()
    password = _text_field(fields, "password") or ""
    if not email or not password:
        raise ApiError(400, "Email and password are required")

    db = request.app[DB_KEY]
    if await db.get_user_by_email(email):
        raise ApiError(400, "User already exists")

    image_url = _store_upload(request, files, "profilePic", PROFILE_PICS)
    user = await db.add_user(
        email, hash_password(password),
        fullname=_text_field(fields, "fullname"), username=_text_field(fields, "username"),
        bio=_text_field(fields, "bio"), image_url=image_url,
    )
    if user is None:
        raise ApiError(400, "User already exists")

    token = request.app[TOKENS_KEY].issue(user["id"])
    return web.json_response({"user": public_user(user), "token": token})


async def login(request: web.Request):
    fields, _ = await _read_body(request)
    email = _text_field(fields, "email") or ""
    password = _text_field(fields, "password") or ""
    if not email or not password:
        raise ApiError(400, "Email and password are required")

    user, reason = await request.app[AUTHENTICATOR_KEY].authenticate(email, password)
    if user is None:
        raise ApiError(401, reason)

    token = request.app[TOKENS_KEY].issue(user["id"])
    return web.json_response({"user": public_user(user), "token": token})


async def logout(request: web.Request):
    # Tokens are stateless; an open notification socket stays registered.
    return web.json_response({"message": "Logged out"})


async def profile(request: web.Request):
    return web.json_response(public_user(_require_user(request)))


async def update_user(request: web.Request):
    user = _require_user(request)
    fields, files = await _read_body(request)

    update_data = {name: _text_field(fields, name) for name in ("fullname", "username", "email", "bio")}
    update_data = {name: value for name, value in update_data.items() if value}
    if "email" in update_data:
        update_data["email"] = update_data["email"].strip().lower()
    image_url = _store_upload(request, files, "profilePic", PROFILE_PICS)
    if image_url:
        update_data["image_url"] = image_url

    if not update_data:
        raise ApiError(400, "No fields to update")

    updated = await request.app[DB_KEY].update_user(user["id"], update_data)
    if updated is None:
        raise ApiError(400, "Email already in use")
    return web.json_response(public_user(updated))


async def create_post(request: web.Request):
    user = _require_user(request)
    fields, files = await _read_body(request)
    title = _text_field(fields, "title")
    content = _text_field(fields, "content")
    if not title or not content:
        raise ApiError(400, "Title and content are required")

    tags = _parse_tags(fields.get("tags"))
    image_url = _store_upload(request, files, "image", POST_IMAGES)
    post = await request.app[DB_KEY].create_post(
        user["id"], title, content,
        category=_text_field(fields, "category"), tags=tags, image_url=image_url,
    )
    return web.json_response(post)


async def list_posts(request: web.Request):
    posts = await request.app[DB_KEY].list_posts(
        category=request.query.get("category"), tag=request.query.get("tag"),
    )
    return web.json_response(posts)


async def get_post(request: web.Request):
    post = await _load_post(request)
    user = request["user"]
    post["liked_by_me"] = bool(user) and await request.app[DB_KEY].has_liked(post["id"], user["id"])
    return web.json_response(post)


async def update_post(request: web.Request):
    user = _require_user(request)
    post = await _load_post(request)
    if post["user_id"] != user["id"]:
        raise ApiError(403, "Forbidden")

    fields, files = await _read_body(request)
    update_data: Dict[str, Any] = {}
    for name in ("title", "content", "category"):
        value = _text_field(fields, name)
        if value:
            update_data[name] = value
    tags = _parse_tags(fields.get("tags"))
    if tags is not None:
        update_data["tags"] = tags
    image_url = _store_upload(request, files, "image", POST_IMAGES)
    if image_url:
        update_data["image_url"] = image_url

    if not update_data:
        raise ApiError(400, "No fields to update")
    return web.json_response(await request.app[DB_KEY].update_post(post["id"], update_data))


async def delete_post(request: web.Request):
    user = _require_user(request)
    post = await _load_post(request)
    if post["user_id"] != user["id"]:
        raise ApiError(403, "Forbidden")

    await request.app[DB_KEY].delete_post(post["id"])
    return web.json_response({"message": "Post deleted"})


async def add_comment(request: web.Request):
    user = _require_user(request)
    fields, _ = await _read_body(request)
    content = _text_field(fields, "content")
    if not content:
        raise ApiError(400, "Content is required")

    post = await _load_post(request, "postId")
    comment = await request.app[DB_KEY].add_comment(post["id"], user["id"], content)
    request.app[NOTIFIER_KEY].post_commented(user, post, comment)
    return web.json_response(comment)


async def list_comments(request: web.Request):
    post_id = _int_param(request, "postId", "Post not found")
    return web.json_response(await request.app[DB_KEY].list_comments(post_id))


async def update_comment(request: web.Request):
    user = _require_user(request)
    fields, _ = await _read_body(request)
    content = _text_field(fields, "content")
    if not content:
        raise ApiError(400, "Content is required")

    comment = await _load_own_comment(request, user)
    return web.json_response(await request.app[DB_KEY].update_comment(comment["id"], content))


async def delete_comment(request: web.Request):
    user = _require_user(request)
    comment = await _load_own_comment(request, user)
    await request.app[DB_KEY].delete_comment(comment["id"])
    return web.json_response({"message": "Comment deleted"})


def _frontend_redirect(request: web.Request, path: str) -> str:
    frontend_url = request.app[FRONTEND_URL_KEY]
    base = "" if frontend_url == "*" else frontend_url.rstrip("/")
    return f"{base}{path}"


def _redirect(location: str) -> web.Response:
    return web.Response(status=302, headers={"Location": location})


def _google(request: web.Request) -> GoogleLogin:
    google = request.app.get(GOOGLE_KEY)
    if google is None:
        raise ApiError(404, "Google login is not configured")
    return google


async def google_login(request: web.Request):
    google = _google(request)
    state = secrets.token_urlsafe(24)
    response = _redirect(await google.authorization_url(state))
    response.set_cookie(OAUTH_STATE_COOKIE, state, max_age=600, httponly=True, samesite="Lax")
    return response


async def google_callback(request: web.Request):
    google = _google(request)
    failure = _redirect(_frontend_redirect(request, "/login"))
    failure.del_cookie(OAUTH_STATE_COOKIE)

    state = request.query.get("state")
    code = request.query.get("code")
    if not code or not state or state != request.cookies.get(OAUTH_STATE_COOKIE):
        logger.info("Google login rejected: missing code or state mismatch.")
        return failure

    try:
        profile = await google.fetch_profile(code)
        user = await find_or_create_google_user(request.app[DB_KEY], profile)
    except GoogleLoginError as e:
        logger.warning(f"Google login failed: {e}")
        return failure

    token = request.app[TOKENS_KEY].issue(user["id"])
    success = _redirect(_frontend_redirect(request, f"/dashboard#token={token}"))
    success.del_cookie(OAUTH_STATE_COOKIE)
    return success


async def like_post(request: web.Request):
    user = _require_user(request)
    post = await _load_post(request)
    created, like_count = await request.app[DB_KEY].like_post(post["id"], user["id"])
    if created:
        request.app[NOTIFIER_KEY].post_liked(user, post)
    return web.json_response({"liked": True, "like_count": like_count})


async def unlike_post(request: web.Request):
    user = _require_user(request)
    post = await _load_post(request)
    _, like_count = await request.app[DB_KEY].unlike_post(post["id"], user["id"])
    return web.json_response({"liked": False, "like_count": like_count})


def create_app(db: Database, authenticator: Authenticator, tokens: TokenSigner,
               notifier: NotificationRouter, gateway: RealtimeGateway,
               media: MediaStore, frontend_url: str = "*",
               google: Optional[GoogleLogin] = None) -> web.Application:
    """Builds the HTTP application around already-constructed components."""
    app = web.Application(
        middlewares=[cors_middleware, error_middleware, auth_middleware],
        client_max_size=MAX_UPLOAD_BYTES,
    )
    app[DB_KEY] = db
    app[AUTHENTICATOR_KEY] = authenticator
    app[TOKENS_KEY] = tokens
    app[NOTIFIER_KEY] = notifier
    app[DIRECTORY_KEY] = gateway.directory
    app[MEDIA_KEY] = media
    app[FRONTEND_URL_KEY] = frontend_url
    if google is not None:
        app[GOOGLE_KEY] = google
    app.on_shutdown.append(gateway.stop)

    app.router.add_get("/", index)
    app.router.add_get("/health", health_check)
    app.router.add_get("/ws", gateway.handle_websocket)

    # Users and auth
    app.router.add_post("/api/register", register)
    app.router.add_post("/api/login", login)
    app.router.add_post("/api/logout", logout)
    app.router.add_get("/api/profile", profile)
    app.router.add_put("/api/user", update_user)
    app.router.add_get("/auth/google", google_login)
    app.router.add_get("/auth/google/callback", google_callback)

    # Posts
    app.router.add_post("/api/posts", create_post)
    app.router.add_get("/api/posts", list_posts)
    app.router.add_get("/api/posts/{id}", get_post)
    app.router.add_put("/api/posts/{id}", update_post)
    app.router.add_delete("/api/posts/{id}", delete_post)
    app.router.add_post("/api/posts/{id}/like", like_post)
    app.router.add_delete("/api/posts/{id}/like", unlike_post)

    # Comments
    app.router.add_post("/api/posts/{postId}/comments", add_comment)
    app.router.add_get("/api/posts/{postId}/comments", list_comments)
    app.router.add_put("/api/comments/{commentId}", update_comment)
    app.router.add_delete("/api/comments/{commentId}", delete_comment)

    app.router.add_static(media.url_prefix, media.root)

    logger.info("HTTP application created.")
    return app

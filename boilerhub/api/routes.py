from __future__ import annotations

import os
import tempfile
from pathlib import Path as FilePath
from typing import List, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
)

from boilerhub.api.schemas import (
    AuthResponse,
    BoilerplatePatch,
    BoilerplateRequest,
    BoilerplateResponse,
    CategoryResponse,
    CommitResponse,
    ConnectionResponse,
    EdgeResponse,
    Envelope,
    LikeResponse,
    LoginRequest,
    PageInfoResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    SignupRequest,
    UpdateUserRoleRequest,
    UploadResponse,
    UserListResponse,
    UserResponse,
    UserSummary,
)
from boilerhub.config import get_settings
from boilerhub.logging import get_logger
from boilerhub.service.auth import AuthContext, AuthService, IssuedSession
from boilerhub.service.boilerplates import Connection
from boilerhub.service.errors import NotFoundError, PayloadTooLargeError
from boilerhub.service.runtime import get_runtime
from boilerhub.storage.cursors import decode_time_id_cursor, encode_time_id_cursor, is_uuid
from boilerhub.storage.models import Boilerplate, BoilerplateFilter, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_UPLOAD_CHUNK_SIZE = 1024 * 1024


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


# dependencies
async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    result = await runtime.auth.authenticate(authorization)
    return result.unwrap()


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not AuthService.role_allows(principal.role, "admin"):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    """Anonymous callers get ``None``; a presented but invalid token is still a 401."""
    if not authorization:
        return None
    runtime = get_runtime()
    result = await runtime.auth.authenticate(authorization)
    return result.unwrap()


# response helpers
def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
        created_at=user.created_at,
        meta=user.meta,
    )


def _user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, name=user.name, created_at=user.created_at)


def _boilerplate_to_response(
    item: Boilerplate, *, viewer_has_liked: Optional[bool] = None
) -> BoilerplateResponse:
    return BoilerplateResponse(
        id=item.id,
        title=item.title,
        description=item.description,
        repository_url=item.repository_url,
        framework=item.framework,
        language=item.language,
        tags=list(item.tags),
        category_id=item.category_id,
        author_id=item.author_id,
        like_count=item.like_count,
        has_files=bool(item.repo_path),
        viewer_has_liked=viewer_has_liked,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


def _connection_to_response(conn: Connection) -> ConnectionResponse:
    return ConnectionResponse(
        edges=[
            EdgeResponse(
                node=_boilerplate_to_response(edge.node), cursor=edge.cursor, score=edge.score
            )
            for edge in conn.edges
        ],
        page_info=PageInfoResponse(
            has_next_page=conn.page_info.has_next_page,
            end_cursor=conn.page_info.end_cursor,
        ),
        total_count=conn.total_count,
    )


def _auth_response(issued: IssuedSession) -> AuthResponse:
    return AuthResponse(
        access_token=issued.tokens.access_token,
        token_type="Bearer",
        expires_at=issued.tokens.access_expires_at,
        session_id=issued.tokens.session_id,
        user=_user_to_response(issued.user),
    )


def _apply_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )


def _read_refresh_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_settings().refresh_cookie_name)


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )


def _filters(
    title: Optional[str],
    description: Optional[str],
    author_id: Optional[str],
    category_id: Optional[str],
    tags: Optional[List[str]],
) -> Optional[BoilerplateFilter]:
    cleaned_tags = [t.strip().lower() for t in (tags or []) if t.strip()]
    if not any([title, description, author_id, category_id, cleaned_tags]):
        return None
    return BoilerplateFilter(
        title=title or None,
        description=description or None,
        author_id=author_id or None,
        category_id=category_id or None,
        tags=cleaned_tags,
    )


def _get_user_or_404(user_id: str) -> User:
    runtime = get_runtime()
    user = runtime.store.get_user(user_id) if is_uuid(user_id) else None
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    return user


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Create an account and open its first session.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    issued = (await runtime.auth.signup(body.email, body.password, body.name)).unwrap()
    _apply_refresh_cookie(response, issued.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password; the refresh token is set as a cookie."""
    runtime = get_runtime()
    issued = (await runtime.auth.login(body.email, body.password)).unwrap()
    _apply_refresh_cookie(response, issued.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, response: Response):
    """Rotate the refresh cookie and return a new access token."""
    runtime = get_runtime()
    refresh_token = _read_refresh_cookie(request)
    issued = (await runtime.auth.refresh(refresh_token)).unwrap()
    _apply_refresh_cookie(response, issued.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Revoke every session of the caller and clear the refresh cookie."""
    runtime = get_runtime()
    user_id: Optional[str] = None
    if authorization:
        ctx = await runtime.auth.authenticate(authorization)
        if ctx.ok:
            user_id = ctx.value.user_id
    if user_id is None:
        user_id = runtime.auth.subject_from_refresh(_read_refresh_cookie(request))
    removed = 0
    if user_id is not None:
        removed = (await runtime.auth.logout(user_id)).unwrap()
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out", "sessions_revoked": removed})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password, revoke all sessions and issue a fresh one."""
    runtime = get_runtime()
    issued = (
        await runtime.auth.change_password(
            principal.user_id, body.current_password, body.new_password
        )
    ).unwrap()
    _apply_refresh_cookie(response, issued.tokens.refresh_token)
    return Envelope(status="ok", data=_auth_response(issued))


# users
@router.get("/me", response_model=Envelope, tags=["users"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    user = _get_user_or_404(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/me", response_model=Envelope, tags=["users"])
async def update_current_user(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = runtime.store.update_user_profile(principal.user_id, name=body.name, meta=body.meta)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": principal.user_id})
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/me/likes", response_model=Envelope, tags=["users"])
async def my_likes(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = runtime.boilerplates.liked_by(principal.user_id)
    return Envelope(
        status="ok", data={"items": [_boilerplate_to_response(i, viewer_has_liked=True) for i in items]}
    )


@router.get("/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: Optional[int] = Query(None, ge=1, description="Maximum users to return"),
    cursor: Optional[str] = Query(None, max_length=256),
    principal: AuthContext = Depends(get_admin_user),
):
    """List users newest first with a keyset cursor."""
    runtime = get_runtime()
    settings = runtime.settings
    resolved_limit = min(limit or settings.default_page_size, settings.max_page_size)
    after = None
    if cursor:
        try:
            after = decode_time_id_cursor(cursor)
        except ValueError as exc:
            raise _http_error("validation_error", "invalid cursor", status_code=400) from exc
        if not is_uuid(after[1]):
            raise _http_error("validation_error", "invalid cursor", status_code=400)
    users = runtime.store.list_users(resolved_limit + 1, after=after)
    page = users[:resolved_limit]
    next_cursor = (
        encode_time_id_cursor(page[-1].created_at, page[-1].id)
        if len(users) > resolved_limit and page
        else None
    )
    return Envelope(
        status="ok",
        data=UserListResponse(items=[_user_to_response(u) for u in page], next_cursor=next_cursor),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_profile(user_id: str):
    return Envelope(status="ok", data=_user_summary(_get_user_or_404(user_id)))


@router.get("/users/{user_id}/boilerplates", response_model=Envelope, tags=["users"])
async def list_user_boilerplates(
    user_id: str,
    first: Optional[int] = Query(None),
    after: Optional[str] = Query(None, max_length=256),
):
    user = _get_user_or_404(user_id)
    runtime = get_runtime()
    conn = runtime.boilerplates.list_boilerplates(
        first=first, after=after, filters=BoilerplateFilter(author_id=user.id)
    )
    return Envelope(status="ok", data=_connection_to_response(conn))


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    _get_user_or_404(user_id)
    user = runtime.store.update_user_role(user_id, body.role)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info("user_role_updated", user_id=user_id, role=body.role, actor_id=principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


# catalogue
@router.get("/categories", response_model=Envelope, tags=["catalogue"])
async def list_categories():
    runtime = get_runtime()
    items = [
        CategoryResponse(
            id=c.id,
            name=c.name,
            slug=c.slug,
            icon=c.icon,
            color=c.color,
            description=c.description,
        )
        for c in runtime.boilerplates.list_categories()
    ]
    return Envelope(status="ok", data={"items": items})


@router.get("/boilerplates", response_model=Envelope, tags=["catalogue"])
async def list_boilerplates(
    first: Optional[int] = Query(None),
    after: Optional[str] = Query(None, max_length=256),
    title: Optional[str] = Query(None, max_length=200),
    description: Optional[str] = Query(None, max_length=200),
    author_id: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    tags: Optional[List[str]] = Query(None),
    order_by: str = Query("created_at"),
    direction: str = Query("desc"),
):
    runtime = get_runtime()
    conn = runtime.boilerplates.list_boilerplates(
        first=first,
        after=after,
        filters=_filters(title, description, author_id, category_id, tags),
        order_by=order_by,
        direction=direction,
    )
    return Envelope(status="ok", data=_connection_to_response(conn))


@router.get("/boilerplates/search", response_model=Envelope, tags=["catalogue"])
async def search_boilerplates(
    query: str = Query(..., min_length=1, max_length=200),
    match_mode: str = Query("contains"),
    min_score: float = Query(0.3),
    first: Optional[int] = Query(None),
    after: Optional[str] = Query(None, max_length=256),
    author_id: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    tags: Optional[List[str]] = Query(None),
):
    runtime = get_runtime()
    conn = runtime.boilerplates.search(
        query,
        match_mode=match_mode,
        min_score=min_score,
        first=first,
        after=after,
        filters=_filters(None, None, author_id, category_id, tags),
    )
    return Envelope(status="ok", data=_connection_to_response(conn))


@router.post("/boilerplates", response_model=Envelope, status_code=201, tags=["catalogue"])
async def create_boilerplate(
    body: BoilerplateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    item = runtime.boilerplates.create(principal, body.model_dump())
    return Envelope(status="ok", data=_boilerplate_to_response(item))


@router.get("/boilerplates/{boilerplate_id}", response_model=Envelope, tags=["catalogue"])
async def get_boilerplate(
    boilerplate_id: str, viewer: Optional[AuthContext] = Depends(get_optional_user)
):
    runtime = get_runtime()
    item = runtime.boilerplates.get(boilerplate_id)
    liked = runtime.store.has_liked(viewer.user_id, item.id) if viewer else None
    return Envelope(status="ok", data=_boilerplate_to_response(item, viewer_has_liked=liked))


@router.patch("/boilerplates/{boilerplate_id}", response_model=Envelope, tags=["catalogue"])
async def update_boilerplate(
    boilerplate_id: str,
    body: BoilerplatePatch,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise _http_error("validation_error", "no fields to update", status_code=400)
    item = runtime.boilerplates.update(principal, boilerplate_id, changes)
    return Envelope(status="ok", data=_boilerplate_to_response(item))


@router.delete("/boilerplates/{boilerplate_id}", response_model=Envelope, tags=["catalogue"])
async def delete_boilerplate(boilerplate_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.boilerplates.delete(principal, boilerplate_id)
    return Envelope(status="ok", data={"deleted": True, "id": boilerplate_id})


@router.post("/boilerplates/{boilerplate_id}/like", response_model=Envelope, tags=["likes"])
async def like_boilerplate(boilerplate_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = runtime.boilerplates.like(principal, boilerplate_id)
    return Envelope(
        status="ok",
        data=LikeResponse(boilerplate_id=boilerplate_id, liked=True, like_count=count),
    )


@router.delete("/boilerplates/{boilerplate_id}/like", response_model=Envelope, tags=["likes"])
async def unlike_boilerplate(boilerplate_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = runtime.boilerplates.unlike(principal, boilerplate_id)
    return Envelope(
        status="ok",
        data=LikeResponse(boilerplate_id=boilerplate_id, liked=False, like_count=count),
    )


@router.get("/boilerplates/{boilerplate_id}/likes", response_model=Envelope, tags=["likes"])
async def list_likers(boilerplate_id: str):
    runtime = get_runtime()
    users = runtime.boilerplates.likers(boilerplate_id)
    return Envelope(status="ok", data={"items": [_user_summary(u) for u in users]})


# repositories
@router.post("/boilerplates/{boilerplate_id}/upload", response_model=Envelope, tags=["files"])
async def upload_archive(
    boilerplate_id: str,
    file: UploadFile = File(...),
    principal: AuthContext = Depends(get_user),
):
    """Import a zip archive as a new commit of the boilerplate's repository."""
    runtime = get_runtime()
    max_bytes = max(1, runtime.settings.max_upload_bytes)
    fd, tmp_name = tempfile.mkstemp(prefix="boilerhub_upload_", suffix=".zip")
    tmp_path = FilePath(tmp_name)
    try:
        received = 0
        with os.fdopen(fd, "wb") as out:
            while True:
                chunk = await file.read(_UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                received += len(chunk)
                if received > max_bytes:
                    raise PayloadTooLargeError(
                        "file too large", detail={"max_bytes": max_bytes}
                    )
                out.write(chunk)
        result = await runtime.boilerplates.import_archive(principal, boilerplate_id, tmp_path)
    finally:
        tmp_path.unlink(missing_ok=True)
        await file.close()
    return Envelope(
        status="ok",
        data=UploadResponse(
            boilerplate_id=boilerplate_id,
            commit=result.commit,
            file_count=result.file_count,
        ),
    )


@router.get("/boilerplates/{boilerplate_id}/archive", tags=["files"])
async def download_archive(boilerplate_id: str):
    runtime = get_runtime()
    content = await runtime.boilerplates.archive(boilerplate_id)
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{boilerplate_id}.zip"'},
    )


@router.get("/boilerplates/{boilerplate_id}/history", response_model=Envelope, tags=["files"])
async def repository_history(
    boilerplate_id: str,
    limit: int = Query(20, ge=1, le=100),
):
    runtime = get_runtime()
    commits = await runtime.boilerplates.history(boilerplate_id, limit)
    return Envelope(
        status="ok",
        data={
            "items": [
                CommitResponse(
                    hash=c.hash, author=c.author, email=c.email, date=c.date, message=c.message
                )
                for c in commits
            ]
        },
    )


@router.get("/boilerplates/{boilerplate_id}/files", response_model=Envelope, tags=["files"])
async def list_repository_files(
    boilerplate_id: str,
    ref: str = Query("HEAD", min_length=1, max_length=200),
):
    runtime = get_runtime()
    paths = await runtime.boilerplates.list_files(boilerplate_id, ref)
    return Envelope(status="ok", data={"ref": ref, "items": paths})


@router.get("/boilerplates/{boilerplate_id}/files/{file_path:path}", tags=["files"])
async def read_repository_file(
    boilerplate_id: str,
    file_path: str,
    ref: str = Query("HEAD", min_length=1, max_length=200),
):
    """Raw bytes of one tracked file at ``ref``."""
    runtime = get_runtime()
    content = await runtime.boilerplates.read_file(boilerplate_id, file_path, ref)
    return Response(content=content, media_type="application/octet-stream")

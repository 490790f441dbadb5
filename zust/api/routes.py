from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    Header,
    Path,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import FileResponse
from pydantic import ValidationError as PydanticValidationError

from zust.api.schemas import (
    AccountCreatedResponse,
    AccountStatusResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthLoginResponse,
    OAuthStartResponse,
    ProfileResponse,
    ProfileUpdate,
    RegisterRequest,
    SubscribeRequest,
    SubscriptionResponse,
    TokenResponse,
    VideoActionResponse,
    VideoDetailResponse,
    VideoResponse,
)
from zust.logging import get_logger
from zust.service.accounts import Profile, require_self
from zust.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    StaleVersionError,
    TokenError,
    TokenExpiredError,
    TokenMalformedError,
    WrongTokenKindError,
)
from zust.service.media import MediaKind
from zust.service.runtime import Runtime
from zust.service.tokens import TokenClaims
from zust.storage.models import Account, Video

logger = get_logger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@dataclass(frozen=True)
class AuthenticatedRequest:
    """The inbound request together with the claims its bearer token proved."""

    request: Request
    claims: TokenClaims

    @property
    def account_id(self) -> str:
        return self.claims.subject


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing request header")
    return token.strip()


async def authenticated(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthenticatedRequest:
    """Verify the bearer token; the refresh endpoint wants a refresh token, every other route an access token."""
    runtime = get_runtime(request)
    token = _bearer_token(authorization)
    try:
        claims = runtime.sessions.verify_for_path(token, request.url.path)
    except TokenExpiredError as exc:
        raise TokenExpiredError("Access token expired") from exc
    except TokenMalformedError as exc:
        raise TokenMalformedError("Invalid access token: token is malformed") from exc
    except (StaleVersionError, WrongTokenKindError):
        raise
    except TokenError as exc:
        raise type(exc)(f"Invalid access token: {exc.message}") from exc
    return AuthenticatedRequest(request=request, claims=claims)


async def require_admin(
    auth: AuthenticatedRequest = Depends(authenticated),
) -> AuthenticatedRequest:
    if auth.claims.role != "admin":
        raise ForbiddenError("Admin access required")
    return auth


def _login_response(runtime: Runtime, account: Account, tokens, **extra) -> dict:
    return dict(
        id=account.id,
        username=account.username,
        email=account.email,
        avatar=runtime.media.media_link(account.id, MediaKind.AVATAR),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        **extra,
    )


def _profile_response(profile: Profile) -> ProfileResponse:
    account = profile.account
    return ProfileResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        description=account.description,
        avatar=profile.avatar,
        cover=profile.cover,
        total_subscribers=profile.total_subscribers,
        created_at=account.created_at,
    )


def _video_response(video: Video) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        title=video.title,
        description=video.description,
        duration=video.duration,
        publisher_id=video.publisher_id,
        status=video.status.value,
        created_at=video.created_at,
    )


def _optional_upload(upload: Optional[UploadFile]) -> Optional[UploadFile]:
    # Browsers send an empty part for an untouched file input
    if upload is None or not upload.filename:
        return None
    return upload


# Auth


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an inactive password account and email its verification link."""
    runtime = get_runtime(request)
    account = await runtime.auth.register(body.email, body.username, body.password)
    return Envelope(
        status="ok",
        data=AccountCreatedResponse(
            id=account.id,
            email=account.email,
            username=account.username,
            status=account.status.value,
            message="Account created successfully",
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime(request)
    result = await runtime.auth.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=LoginResponse(**_login_response(runtime, result.account, result.tokens)),
    )


@router.get("/auth/verification", response_model=Envelope, tags=["auth"])
async def verify_email(
    request: Request,
    token: Optional[str] = Query(None, max_length=512),
):
    runtime = get_runtime(request)
    account = runtime.auth.verify_email(token or "")
    return Envelope(
        status="ok",
        data=AccountStatusResponse(
            id=account.id,
            status=account.status.value,
            message="Account verified successfully",
        ),
    )


@router.post("/auth/verification/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(
    request: Request,
    email: Optional[str] = Query(None, max_length=254),
):
    runtime = get_runtime(request)
    await runtime.auth.resend_verification(email or "")
    return Envelope(
        status="ok", data=MessageResponse(message="Verification email sent successfully")
    )


@router.post("/auth/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, auth: AuthenticatedRequest = Depends(authenticated)):
    """Spend a refresh token for a new pair; the old pair stops working."""
    runtime = get_runtime(request)
    tokens = runtime.auth.refresh(auth.claims)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, auth: AuthenticatedRequest = Depends(authenticated)):
    runtime = get_runtime(request)
    runtime.auth.logout(auth.claims)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


# OAuth


@router.get("/oauth2/{provider}/authorize", response_model=Envelope, tags=["oauth"])
async def oauth_authorize(
    request: Request,
    provider: str = Path(..., max_length=32, description="OAuth provider (github, google)"),
):
    """Return the provider consent URL the client should redirect the user to."""
    runtime = get_runtime(request)
    url = runtime.federation.authorization_url(provider)
    return Envelope(
        status="ok",
        data=OAuthStartResponse(authorization_url=url, provider=provider),
    )


@router.get("/oauth2/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128, description="Provider tag"),
):
    """Complete the authorization-code flow and log the mapped account in.

    New accounts get their media repository and provider avatar after the
    response is sent.
    """
    runtime = get_runtime(request)
    result = await runtime.federation.complete(state, code)
    if result.created:
        background_tasks.add_task(
            runtime.federation.initialize_profile_assets,
            result.account.id,
            result.identity.avatar_url,
        )
    return Envelope(
        status="ok",
        data=OAuthLoginResponse(
            **_login_response(runtime, result.account, result.tokens, created=result.created)
        ),
    )


# Accounts


@router.get("/accounts/{account_id}", response_model=Envelope, tags=["accounts"])
async def get_account(request: Request, account_id: str = Path(..., max_length=64)):
    runtime = get_runtime(request)
    profile = runtime.accounts.get_profile(account_id)
    return Envelope(status="ok", data=_profile_response(profile))


@router.put("/accounts/{account_id}", response_model=Envelope, status_code=201, tags=["accounts"])
async def edit_account(
    request: Request,
    account_id: str = Path(..., max_length=64),
    username: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    cover: Optional[UploadFile] = File(None),
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    try:
        fields = ProfileUpdate(username=username, description=description)
    except PydanticValidationError as exc:
        raise BadRequestError(
            "Invalid profile fields",
            detail={"errors": [err["msg"] for err in exc.errors()]},
        ) from exc
    profile = await runtime.accounts.edit_profile(
        auth.claims,
        account_id,
        username=fields.username,
        description=fields.description,
        avatar=_optional_upload(avatar),
        cover=_optional_upload(cover),
    )
    return Envelope(status="ok", data=_profile_response(profile))


@router.post("/accounts/{account_id}/lock", response_model=Envelope, status_code=201, tags=["accounts"])
async def lock_account(
    request: Request,
    account_id: str = Path(..., max_length=64),
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    require_self(auth.claims, account_id)
    account = runtime.auth.lock(account_id)
    return Envelope(
        status="ok",
        data=AccountStatusResponse(
            id=account.id,
            status=account.status.value,
            message=f"Account with ID {account.id} locked successfully",
        ),
    )


@router.post("/accounts/{account_id}/ban", response_model=Envelope, tags=["admin"])
async def ban_account(
    request: Request,
    account_id: str = Path(..., max_length=64),
    auth: AuthenticatedRequest = Depends(require_admin),
):
    runtime = get_runtime(request)
    account = runtime.auth.ban(account_id)
    logger.info("account_banned", account_id=account_id, admin_id=auth.account_id)
    return Envelope(
        status="ok",
        data=AccountStatusResponse(
            id=account.id,
            status=account.status.value,
            message=f"Account with ID {account.id} banned successfully",
        ),
    )


@router.post("/subscribe", response_model=Envelope, status_code=201, tags=["accounts"])
async def subscribe(
    body: SubscribeRequest,
    request: Request,
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    runtime.accounts.subscribe(auth.claims, body.subscriber_id, body.subscribe_to_id)
    return Envelope(
        status="ok",
        data=SubscriptionResponse(
            subscriber_id=body.subscriber_id,
            subscribe_to_id=body.subscribe_to_id,
            subscribed=True,
        ),
    )


@router.delete("/subscribe", response_model=Envelope, tags=["accounts"])
async def unsubscribe(
    body: SubscribeRequest,
    request: Request,
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    runtime.accounts.unsubscribe(auth.claims, body.subscriber_id, body.subscribe_to_id)
    return Envelope(
        status="ok",
        data=SubscriptionResponse(
            subscriber_id=body.subscriber_id,
            subscribe_to_id=body.subscribe_to_id,
            subscribed=False,
        ),
    )


# Videos


@router.post("/videos", response_model=Envelope, status_code=201, tags=["videos"])
async def upload_video(
    request: Request,
    title: str = Form(""),
    description: Optional[str] = Form(None),
    publisher_id: str = Form(""),
    resource: UploadFile = File(...),
    thumbnail: UploadFile = File(...),
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    video = await runtime.videos.upload(
        auth.claims,
        title=title,
        description=description,
        publisher_id=publisher_id,
        resource=resource,
        thumbnail=thumbnail,
    )
    return Envelope(status="ok", data=_video_response(video))


@router.get("/videos/{video_id}", response_model=Envelope, tags=["videos"])
async def get_video(request: Request, video_id: str = Path(..., max_length=64)):
    runtime = get_runtime(request)
    view = runtime.videos.get(video_id)
    detail = view.detail
    video = detail.video
    return Envelope(
        status="ok",
        data=VideoDetailResponse(
            id=video.id,
            title=video.title,
            media=view.media,
            thumbnail=view.thumbnail,
            duration=video.duration,
            description=video.description,
            created_at=video.created_at,
            publisher_id=video.publisher_id,
            username=detail.publisher_username,
            avatar=view.avatar,
            total_subscribers=detail.total_subscribers,
            total_like=detail.total_likes,
            total_view=detail.total_views,
        ),
    )


@router.post("/videos/{video_id}/like", response_model=Envelope, tags=["videos"])
async def like_video(
    request: Request,
    video_id: str = Path(..., max_length=64),
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    changed = runtime.videos.like(auth.claims, video_id)
    return Envelope(status="ok", data=VideoActionResponse(video_id=video_id, changed=changed))


@router.delete("/videos/{video_id}/like", response_model=Envelope, tags=["videos"])
async def unlike_video(
    request: Request,
    video_id: str = Path(..., max_length=64),
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    changed = runtime.videos.unlike(auth.claims, video_id)
    return Envelope(status="ok", data=VideoActionResponse(video_id=video_id, changed=changed))


@router.post("/videos/{video_id}/view", response_model=Envelope, tags=["videos"])
async def view_video(
    request: Request,
    video_id: str = Path(..., max_length=64),
    auth: AuthenticatedRequest = Depends(authenticated),
):
    runtime = get_runtime(request)
    changed = runtime.videos.record_view(auth.claims, video_id)
    return Envelope(status="ok", data=VideoActionResponse(video_id=video_id, changed=changed))


# Media


@router.get("/media/{media_id}", tags=["media"])
async def get_media(request: Request, media_id: str = Path(..., max_length=512)):
    runtime = get_runtime(request)
    path = runtime.media.resolve_media(media_id)
    return FileResponse(path)

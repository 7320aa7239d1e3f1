"""
api/routes/v1/auth.py -- Username/password login endpoint.

Routes:
  POST /api/v1/auth/login   -- verify credentials; 200 with the account identity

This route only translates HTTP into a CredentialAuthenticator call and the
AuthResult back into JSON. Session cookies and tokens are issued by the host
application, not here.

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] Every INVALID_CREDENTIALS reason renders the identical 401 body. The
       internal FailureReason never leaves the process.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import ErrorDetail, ErrorResponse, LoginRequest, LoginResponse
from auth.authenticator import CredentialAuthenticator
from auth.models import FailureKind, RequestContext

router = APIRouter()


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
    )


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest | None = None) -> JSONResponse:
    """Authenticate with username (email) and password.

    Declared sync so the blocking account lookup and hash check run in the
    threadpool, off the event loop.
    """
    authenticator: CredentialAuthenticator = request.app.state.authenticator
    username = body.username if body is not None else None
    password = body.password if body is not None else None
    result = authenticator.authenticate(username, password, _request_context(request))

    if result.failure is not None:
        if result.failure.kind is FailureKind.DEPENDENCY_UNAVAILABLE:
            resp = _error(503, "service_unavailable", "Login is temporarily unavailable. Try again later.")
            resp.headers["Retry-After"] = "30"
            return resp
        return _error(401, "bad_credentials", "Invalid username or password.")  # [C1]

    account = result.account
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(account_id=account.id, email=account.email).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp

# truckdesk/transport/security.py
"""
API authentication and response hardening.

- Constant-time bearer token comparison
- Token strength warnings at startup
- Security headers on every response
- Sanitized error messages in production
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from truckdesk.config import settings
from truckdesk.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

bearer_scheme = HTTPBearer(
    scheme_name="API Token",
    description="Enter the dispatch API token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Returns a list of warnings, empty when the token looks strong.

    Checks length, common weak patterns and character diversity.
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)
    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def check_configured_token(token: str | None) -> None:
    """Log warnings for a weak API token. Call from app startup."""
    if not token:
        return
    for warning in validate_token_strength(token, "API_TOKEN"):
        logger.warning(f"SECURITY: {warning}")


async def require_api_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    Bearer token check for every dispatch endpoint.

    No token configured means the API is open (dev only, prod refuses to
    start without one).

    Client example:
        curl -H "Authorization: Bearer $API_TOKEN" http://localhost:8000/jobs/<id>
    """
    expected = getattr(request.app.state, "api_token", None)
    if not expected:
        return

    if not credentials:
        logger.warning(f"Missing Authorization header: {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning(f"Invalid API token: {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    In production: generic messages.
    In dev: the exception text.
    """
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PostgresError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }
    return generic_messages.get(type(error).__name__, "Internal server error")

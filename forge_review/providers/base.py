"""
Forge Provider Base Module

Defines the capability every forge adapter implements, the errors they
raise, and the shared HTTP transport and signature helpers.

Design Decisions:
- Adapters are plain classes satisfying a ``Protocol``; a factory keyed on
  ``ProviderType`` picks one, adapters do not inherit from a base class
- The HTTP transport is composed into each adapter
- Use httpx for async HTTP requests with an injectable transport
- Retries are opt-in (``forge_max_attempts``); by default a failed call
  surfaces immediately as ``TransportError``
"""

import hashlib
import hmac
import re
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

import httpx
from aiolimiter import AsyncLimiter
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from forge_review.logging_config import get_logger
from forge_review.models import (
    ChangedFile,
    Comment,
    Commit,
    LineComment,
    ProviderType,
    PullRequest,
    Repository,
    ReviewDecision,
    ReviewRecord,
    WebhookEvent,
)

logger = get_logger(__name__)


class TransportError(Exception):
    """Network or HTTP failure while talking to a forge."""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        provider: Optional[ProviderType] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.provider = provider


class PartialReviewError(TransportError):
    """
    Review submission failed after some line comments were already posted.

    ``submitted_count`` tells the caller how many comments made it to the
    forge before the failure.
    """
    def __init__(self, message: str, submitted_count: int, total_count: int, **kwargs):
        super().__init__(message, **kwargs)
        self.submitted_count = submitted_count
        self.total_count = total_count


class ProviderConfig(BaseModel):
    """Connection settings for one forge."""
    type: ProviderType
    base_url: str
    token: str
    max_attempts: int = 1
    timeout_seconds: float = 30.0
    rate_limit_per_minute: int = 600


@runtime_checkable
class ForgeProvider(Protocol):
    """
    Capability every forge adapter provides.

    All network operations are async and raise ``TransportError`` on failure.
    ``verify_webhook_signature`` and ``parse_webhook_event`` are pure and
    never raise.
    """

    name: ProviderType
    base_url: str

    async def get_repository(self, owner: str, repo: str) -> Repository: ...

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest: ...

    async def get_pull_request_diff(self, owner: str, repo: str, number: int) -> str: ...

    async def get_pull_request_files(self, owner: str, repo: str, number: int) -> List[ChangedFile]: ...

    async def get_pull_request_commits(self, owner: str, repo: str, number: int) -> List[Commit]: ...

    async def get_pull_request_reviews(self, owner: str, repo: str, number: int) -> List[ReviewRecord]: ...

    async def get_review_comments(
        self, owner: str, repo: str, number: int, review_id: int
    ) -> List[Comment]: ...

    async def get_compare_diff(self, owner: str, repo: str, base: str, head: str) -> str: ...

    async def get_commit_diff(self, owner: str, repo: str, sha: str) -> str: ...

    async def create_review(
        self,
        owner: str,
        repo: str,
        number: int,
        decision: ReviewDecision,
        comments: Sequence[LineComment],
        body: str = "",
        commit_id: Optional[str] = None,
    ) -> ReviewRecord: ...

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> Comment: ...

    async def create_line_comment(
        self,
        owner: str,
        repo: str,
        number: int,
        comment: LineComment,
        commit_id: Optional[str] = None,
    ) -> Comment: ...

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> bool: ...

    def parse_webhook_event(
        self, payload: Any, headers: Mapping[str, str]
    ) -> Optional[WebhookEvent]: ...


# =============================================================================
# Signature helpers
# =============================================================================

SHA256_HEX_PATTERN = re.compile(r"[0-9a-f]{64}")


def normalize_signature(signature: Optional[str], prefix: str = "sha256=") -> Optional[str]:
    """
    Reduce a signature header to its lowercase hex digest.

    Accepts ``sha256=<hex>`` and bare ``<hex>``. Any other algorithm
    prefix, or a value that is not exactly 64 hex digits, yields None.
    """
    if not signature:
        return None

    value = signature.strip()
    if "=" in value:
        algorithm, _, digest = value.partition("=")
        if f"{algorithm}=" != prefix:
            return None
        value = digest

    value = value.lower()
    if not SHA256_HEX_PATTERN.fullmatch(value):
        return None
    return value


def verify_hmac_sha256(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check a hex HMAC-SHA256 signature of ``payload`` in constant time.

    Returns False on any malformed input instead of raising.
    """
    digest = normalize_signature(signature)
    if digest is None or not secret:
        return False

    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest.encode("ascii"), expected.encode("ascii"))


# =============================================================================
# HTTP transport
# =============================================================================

class ForgeHttpClient:
    """
    Async HTTP transport shared by forge adapters.

    Handles auth headers, rate limiting and the optional retry loop, and
    converts every failure into ``TransportError``.

    Usage:
        http = ForgeHttpClient(config, api_prefix="/api/v1")
        data = await http.get_json("/repos/owner/repo")
    """

    def __init__(
        self,
        config: ProviderConfig,
        api_prefix: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config
        self.api_base = f"{config.base_url.rstrip('/')}{api_prefix}"
        self._transport = transport
        self._rate_limiter = AsyncLimiter(
            max_rate=config.rate_limit_per_minute,
            time_period=60
        )

    def _headers(self, accept: str) -> Dict[str, str]:
        return {
            "Authorization": f"token {self.config.token}",
            "Accept": accept,
        }

    async def request(
        self,
        method: str,
        endpoint: str,
        accept: str = "application/json",
        **kwargs
    ) -> httpx.Response:
        """
        Make an authenticated request to the forge API.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint relative to the API prefix
            accept: Accept header value
            **kwargs: Additional arguments to pass to httpx

        Returns:
            httpx.Response object

        Raises:
            TransportError: If the request fails or returns an error status
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send(method, endpoint, accept, **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                "Forge request failed",
                provider=self.config.type.value,
                method=method,
                endpoint=endpoint,
                error=str(e),
                error_type=type(e).__name__
            )
            raise TransportError(
                f"{self.config.type.value} request failed: {e}",
                provider=self.config.type
            ) from e

    async def _send(self, method: str, endpoint: str, accept: str, **kwargs) -> httpx.Response:
        async with self._rate_limiter:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    f"{self.api_base}{endpoint}",
                    headers=self._headers(accept),
                    **kwargs
                )

        if response.status_code >= 400:
            error_body = response.text
            logger.error(
                "Forge API error",
                provider=self.config.type.value,
                status_code=response.status_code,
                endpoint=endpoint,
                error=error_body[:500]
            )
            message = f"{self.config.type.value} API error: {response.status_code}"
            if response.status_code == 403 or "required scope" in error_body:
                message += " (token lacks write:repository permission)"
            raise TransportError(
                message,
                status_code=response.status_code,
                response_body=error_body,
                provider=self.config.type
            )

        return response

    async def get_json(self, endpoint: str, **kwargs) -> Any:
        response = await self.request("GET", endpoint, **kwargs)
        return self._decode_json(response, endpoint)

    async def get_text(self, endpoint: str, **kwargs) -> str:
        response = await self.request("GET", endpoint, accept="text/plain", **kwargs)
        return response.text

    async def post_json(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        response = await self.request("POST", endpoint, json=payload)
        return self._decode_json(response, endpoint)

    def _decode_json(self, response: httpx.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"{self.config.type.value} returned invalid JSON for {endpoint}",
                status_code=response.status_code,
                response_body=response.text[:500],
                provider=self.config.type
            ) from e

"""Jira REST API client."""

import asyncio
import time
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiofiles
import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from workitem_migrator.config import JiraConfig
from workitem_migrator.logging import get_logger, logger as migration_logger
from workitem_migrator.utils.errors import ApiError


class RateLimiter:
    """Token bucket rate limiter."""

    def __init__(self, rate: int, per: float = 60.0) -> None:
        """Initialize rate limiter.

        Args:
            rate: Number of allowed requests
            per: Time period in seconds (default 60 for per minute)
        """
        self.rate = rate
        self.per = per
        self.tokens = float(rate)
        self.updated_at = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            while self.tokens < 1:
                now = time.monotonic()
                elapsed = now - self.updated_at
                self.tokens = min(self.rate, self.tokens + elapsed * (self.rate / self.per))
                self.updated_at = now

                if self.tokens < 1:
                    await asyncio.sleep(self.per / self.rate)

            self.tokens -= 1


class JiraApiError(ApiError):
    """Jira API error."""


class JiraClient:
    """Jira REST client with rate limiting and retry logic."""

    def __init__(self, config: JiraConfig) -> None:
        """Initialize the client.

        Args:
            config: Jira configuration
        """
        self.config = config
        self.logger = get_logger("jira_client")
        self.rate_limiter = RateLimiter(config.rate_limit, per=60.0)
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "JiraClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.config.url.rstrip("/"),
            auth=(self.config.user, self.config.api_token.get_secret_value()),
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(self.config.timeout),
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=4, max=60),
        reraise=True,
    )
    async def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Any]:
        """Send a GET request and decode the JSON answer.

        Args:
            path: Path relative to the Jira base URL
            params: Query parameters
            allow_not_found: Return None on HTTP 404

        Returns:
            Decoded response body

        Raises:
            JiraApiError: On any other HTTP error status
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        await self.rate_limiter.acquire()

        start_time = time.monotonic()
        response = await self._client.get(path, params=params)
        duration_ms = (time.monotonic() - start_time) * 1000

        if allow_not_found and response.status_code == 404:
            return None

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            migration_logger.log_api_request(
                "GET", path, e.response.status_code, duration_ms, error=e.response.text
            )
            raise JiraApiError(
                f"HTTP {e.response.status_code} on GET {path}",
                status_code=e.response.status_code,
            ) from e

        migration_logger.log_api_request("GET", path, response.status_code, duration_ms)
        return response.json()

    async def get_server_info(self) -> Dict[str, Any]:
        return await self._get("/rest/api/2/serverInfo")

    async def test_connection(self) -> bool:
        """Test API connectivity.

        Returns:
            True if connection successful
        """
        try:
            info = await self.get_server_info()
            self.logger.info("jira_connected", version=info.get("version"))
            return True
        except (JiraApiError, httpx.HTTPError) as e:
            self.logger.error("connection_test_failed", error=str(e))
            return False

    async def get_issue(self, key: str) -> Optional[Dict[str, Any]]:
        """Download an issue with rendered fields and embedded changelog."""
        return await self._get(
            f"/rest/api/2/issue/{key}",
            params={"expand": "renderedFields,changelog"},
            allow_not_found=True,
        )

    async def iter_changelog(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield the changelog histories of an issue, oldest first.

        Uses the paged changelog resource and pages until the server reports
        the last page.
        """
        start_at = 0
        while True:
            page = await self._get(
                f"/rest/api/2/issue/{key}/changelog",
                params={"startAt": start_at, "maxResults": 100},
            )
            values = page.get("values", [])
            for history in values:
                yield history

            start_at += len(values)
            if page.get("isLast", True) or not values:
                break

    async def iter_comments(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield all comments of an issue with their rendered body."""
        start_at = 0
        while True:
            page = await self._get(
                f"/rest/api/2/issue/{key}/comment",
                params={"startAt": start_at, "maxResults": 100, "expand": "renderedBody"},
            )
            comments = page.get("comments", [])
            for comment in comments:
                yield comment

            start_at += len(comments)
            if not comments or start_at >= page.get("total", 0):
                break

    async def iter_issue_keys(self, jql: str) -> AsyncIterator[str]:
        """Yield the keys of all issues matching a JQL query."""
        start_at = 0
        while True:
            page = await self._get(
                "/rest/api/2/search",
                params={
                    "jql": jql,
                    "startAt": start_at,
                    "maxResults": self.config.batch_size,
                    "fields": "key",
                },
            )
            issues = page.get("issues", [])
            for issue in issues:
                yield issue["key"]

            start_at += len(issues)
            if not issues or start_at >= page.get("total", 0):
                break

    async def get_fields(self) -> List[Dict[str, Any]]:
        return await self._get("/rest/api/2/field") or []

    async def get_link_types(self) -> List[Dict[str, Any]]:
        data = await self._get("/rest/api/2/issueLinkType")
        return data.get("issueLinkTypes", []) if data else []

    async def iter_sprints(self, board_id: int) -> AsyncIterator[Dict[str, Any]]:
        """Yield the sprints of a board, paging until the last page."""
        start_at = 0
        while True:
            page = await self._get(
                f"/rest/agile/1.0/board/{board_id}/sprint",
                params={"startAt": start_at},
            )
            values = page.get("values", [])
            for sprint in values:
                yield sprint

            start_at += len(values)
            if page.get("isLast", True) or not values:
                break

    async def download_attachment(self, url: str, destination: Path) -> Path:
        """Stream an attachment to disk.

        The content is written next to the destination and moved into place
        once complete, so an interrupted transfer never leaves ``destination``.

        Args:
            url: Attachment content URL
            destination: Target file

        Returns:
            The written path
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        await self.rate_limiter.acquire()
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")

        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                async with aiofiles.open(partial, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await f.write(chunk)
        except Exception:
            partial.unlink(missing_ok=True)
            raise

        partial.replace(destination)

        self.logger.debug("attachment_downloaded", url=url, path=str(destination))
        return destination

"""Umami REST API client."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from umami_sync.core.clock import parse_timestamp, to_epoch_ms

logger = logging.getLogger(__name__)

LOGIN_ENDPOINT = "/api/auth/login"
SESSIONS_ENDPOINT = "/api/websites/{website_id}/sessions"


class UmamiAuthError(Exception):
    """Raised when login fails or a request is made without a token."""
    pass


class UmamiApiError(Exception):
    """Raised when a sessions page cannot be fetched."""
    pass


@dataclass
class AnalyticsRecord:
    """Session detail as returned by the Umami sessions endpoint."""
    session_id: str
    website_id: str
    browser: str
    os: str
    device: str
    screen: str
    language: str
    country: str
    region: str
    city: str
    first_at: datetime
    last_at: datetime
    visits: int
    views: str
    created_at: datetime

    @classmethod
    def from_api(cls, payload: dict[str, Any], website_id: str) -> "AnalyticsRecord":
        """Build a record from an API item. Raises ValueError if it is unusable."""
        if not isinstance(payload, dict):
            raise ValueError("session item is not an object")

        session_id = payload.get("id")
        if not session_id:
            raise ValueError("session has no id")

        return cls(
            session_id=str(session_id),
            website_id=payload.get("websiteId") or website_id,
            browser=payload.get("browser") or "",
            os=payload.get("os") or "",
            device=payload.get("device") or "",
            screen=payload.get("screen") or "",
            language=payload.get("language") or "",
            country=payload.get("country") or "",
            region=payload.get("region") or "",
            city=payload.get("city") or "",
            first_at=parse_timestamp(payload.get("firstAt")),
            last_at=parse_timestamp(payload.get("lastAt")),
            visits=int(payload.get("visits") or 0),
            views=str(payload.get("views") or 0),
            created_at=parse_timestamp(payload.get("createdAt")),
        )

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-ready analytics snapshot stored on the user record."""
        return {
            "id": self.session_id,
            "websiteId": self.website_id,
            "browser": self.browser,
            "os": self.os,
            "device": self.device,
            "screen": self.screen,
            "language": self.language,
            "country": self.country,
            "region": self.region,
            "city": self.city,
            "firstAt": self.first_at.isoformat(),
            "lastAt": self.last_at.isoformat(),
            "visits": self.visits,
            "views": self.views,
            "createdAt": self.created_at.isoformat(),
        }


class UmamiApiClient:
    """Async client for the Umami API.

    Holds a bearer token in memory between ``authenticate()`` and
    ``clear_token()``.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        page_size: int = 100,
        max_pages: int = 1000,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.page_size = page_size
        self.max_pages = max_pages
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self.transport,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def authenticate(self) -> str:
        """Log in and cache the bearer token."""
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}{LOGIN_ENDPOINT}",
                json={"username": self.username, "password": self.password},
            )
            response.raise_for_status()
            token = response.json().get("token")
        except httpx.HTTPStatusError as e:
            logger.error(f"Umami API authentication failed: HTTP {e.response.status_code}")
            raise UmamiAuthError(f"Failed to authenticate with Umami API: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Umami API authentication failed: {e}")
            raise UmamiAuthError(f"Failed to authenticate with Umami API: {e}") from e

        if not token:
            raise UmamiAuthError("Umami API login response did not contain a token")

        self._token = token
        logger.debug("Authenticated with Umami API")
        return token

    def get_token(self) -> str:
        if not self._token:
            raise UmamiAuthError("No token available. Call authenticate() first.")
        return self._token

    def clear_token(self) -> None:
        """Forget the current token (called once the analytics phase ends)."""
        self._token = None
        logger.debug("Umami API token cleared")

    async def fetch_sessions_page(
        self,
        website_id: str,
        start: datetime,
        end: datetime,
        page: int,
    ) -> dict[str, Any]:
        """Fetch one page of sessions. Pages are numbered from 1."""
        token = self.get_token()
        client = await self._get_client()
        url = f"{self.base_url}{SESSIONS_ENDPOINT.format(website_id=website_id)}"

        try:
            response = await client.get(
                url,
                headers={"Authorization": f"Bearer {token}"},
                params={
                    "startAt": to_epoch_ms(start),
                    "endAt": to_epoch_ms(end),
                    "page": page,
                    "pageSize": self.page_size,
                },
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to fetch sessions for website {website_id} page {page}: HTTP {e.response.status_code}")
            raise UmamiApiError(
                f"Failed to fetch sessions for website {website_id} page {page}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch sessions for website {website_id} page {page}: {e}")
            raise UmamiApiError(f"Failed to fetch sessions for website {website_id} page {page}: {e}") from e

        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise UmamiApiError(f"Unexpected sessions response for website {website_id} page {page}")

        logger.debug(
            f"Fetched sessions page {page} for website {website_id}: "
            f"{len(body['data'])} items (total {body.get('count')})"
        )
        return body

    async def fetch_all_sessions(
        self,
        website_id: str,
        start: datetime,
        end: datetime,
    ) -> list[AnalyticsRecord]:
        """
        Fetch every session for a website within ``[start, end]``.

        Pages until one comes back shorter than ``page_size``. Stops with a
        warning after ``max_pages`` pages. Unparseable items are skipped.
        """
        logger.info(f"Started sync for website {website_id}")

        records: list[AnalyticsRecord] = []
        skipped = 0
        page = 1

        while True:
            body = await self.fetch_sessions_page(website_id, start, end, page)
            items = body["data"]

            for item in items:
                try:
                    records.append(AnalyticsRecord.from_api(item, website_id))
                except (TypeError, ValueError) as e:
                    skipped += 1
                    logger.warning(f"Skipping malformed session for website {website_id}: {e}")

            if len(items) < self.page_size:
                break

            if page >= self.max_pages:
                logger.warning(
                    f"Reached maximum page limit ({self.max_pages}) for website {website_id}, stopping pagination"
                )
                break
            page += 1

        logger.info(
            f"Completed sync for website {website_id}: {len(records)} sessions over {page} pages"
            + (f" ({skipped} malformed skipped)" if skipped else "")
        )
        return records

"""
Ads Platform Client
Talks to the Meta Graph API over HTTPS for spend reporting (insights) and
daily-budget updates on ad sets and campaigns.
"""

import json
import logging
from typing import Any, Optional
import httpx
from adspend.config import Settings, get_settings
from adspend.utils import safe_float

logger = logging.getLogger(__name__)

AD_INSIGHT_FIELDS = [
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
    "spend",
    "impressions",
    "clicks",
    "reach",
    "cpc",
    "cpm",
    "ctr",
    "actions",
    "action_values",
]

BUDGET_FIELDS = "name,daily_budget,lifetime_budget,status"

# The ids= batch lookup accepts at most 50 objects per request
MAX_IDS_PER_LOOKUP = 50


class GraphAPIError(Exception):
    """Network error, timeout or non-2xx response from the ads platform."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MetaGraphClient:
    """
    Wrapper around the Graph API for one access token.
    Every request is bounded by the configured timeout; a timeout surfaces
    as GraphAPIError exactly like any other failed call.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_pages: int = 20,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_pages = max_pages
        self._transport = transport

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> dict:
        if not url.startswith("http"):
            url = f"{self.base_url}/{url.lstrip('/')}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, headers=self.headers
            ) as client:
                response = await client.request(method, url, params=params, data=data)
        except httpx.TimeoutException as e:
            logger.error(f"Graph API timeout: {method} {url}")
            raise GraphAPIError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Graph API request failed: {method} {url} - {e}")
            raise GraphAPIError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"Graph API error {response.status_code}: {message}")
            raise GraphAPIError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise GraphAPIError(f"Invalid JSON from Graph API: {e}", status_code=response.status_code) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"].get("message") or f"HTTP {response.status_code}"
        return f"HTTP {response.status_code}"

    async def _paginated_get(self, path: str, params: dict[str, Any]) -> list[dict]:
        """
        Follow paging.next links until exhausted or max_pages is reached.
        The next link already carries every query parameter.
        """
        rows: list[dict] = []
        url: Optional[str] = path
        page_params: Optional[dict[str, Any]] = params
        page = 0

        while url and page < self.max_pages:
            result = await self._request("GET", url, params=page_params)
            data = result.get("data") if isinstance(result, dict) else None
            if isinstance(data, list):
                rows.extend(data)
            page += 1
            url = (result.get("paging") or {}).get("next") if isinstance(result, dict) else None
            page_params = None

        logger.info(f"_paginated_get({path}) complete: {len(rows)} rows in {page} page(s)")
        return rows

    # ── Reporting ────────────────────────────────────────────────────

    async def get_account_spend(self, account_id: str, date: str) -> Optional[dict]:
        """
        Account-level spend for one day: {"spend": float, "currency": str}.
        Returns None when the platform reports no rows for the day.
        """
        result = await self._request(
            "GET",
            f"act_{account_id}/insights",
            params={
                "fields": "spend,account_currency",
                "level": "account",
                "time_range": json.dumps({"since": date, "until": date}),
                "limit": "1",
            },
        )
        data = result.get("data") or []
        if not data:
            return None
        row = data[0]
        return {
            "spend": safe_float(row.get("spend")),
            "currency": row.get("account_currency"),
        }

    async def get_ad_insights(self, account_id: str, date: str) -> list[dict]:
        """Per-ad insight rows for one day (one row per ad)."""
        return await self._paginated_get(
            f"act_{account_id}/insights",
            {
                "fields": ",".join(AD_INSIGHT_FIELDS),
                "level": "ad",
                "time_range": json.dumps({"since": date, "until": date}),
                "limit": "1000",
            },
        )

    async def get_budget_objects(self, object_ids: list[str]) -> dict[str, dict]:
        """
        Budget fields for campaigns/ad sets keyed by id. Budgets are returned by
        the platform in minor units and left untouched here.
        """
        objects: dict[str, dict] = {}
        unique_ids = [i for i in dict.fromkeys(object_ids) if i]
        for start in range(0, len(unique_ids), MAX_IDS_PER_LOOKUP):
            chunk = unique_ids[start:start + MAX_IDS_PER_LOOKUP]
            result = await self._request(
                "GET", "", params={"ids": ",".join(chunk), "fields": BUDGET_FIELDS}
            )
            for object_id, data in result.items():
                if isinstance(data, dict):
                    objects[object_id] = data
        return objects

    # ── Budget updates ───────────────────────────────────────────────

    async def update_daily_budget(self, object_id: str, amount: float) -> dict:
        """
        Set the daily budget of an ad set or campaign. ``amount`` is in major
        currency units; the platform expects minor units as an integer.
        """
        minor_units = round(amount * 100)
        logger.info(f"Updating daily budget of {object_id} to {minor_units} (minor units)")
        result = await self._request(
            "POST", object_id, data={"daily_budget": str(minor_units)}
        )
        if isinstance(result, dict) and result.get("success") is False:
            raise GraphAPIError(f"Budget update rejected for {object_id}")
        return result


def create_graph_client(
    access_token: str,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MetaGraphClient:
    """Factory: build a client from application settings."""
    settings = settings or get_settings()
    return MetaGraphClient(
        access_token=access_token,
        base_url=settings.graph_api_url,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )

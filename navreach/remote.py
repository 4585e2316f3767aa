"""Remote data service client (PostgREST-style REST + RPC over httpx)."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from typing import Any

import httpx

from navreach.config import RemoteConfig, get_config
from navreach.exceptions import RemoteDataError
from navreach.logging import get_logger

log = get_logger(__name__)

SYSTEM_SETTINGS_TABLE = "system_settings"
USER_SETTINGS_TABLE = "user_settings"
SUBSCRIPTIONS_TABLE = "subscriptions"
PLAYBOOKS_TABLE = "playbooks"


def decode_user_id(access_token: str) -> str:
    """Return the ``sub`` claim of a JWT without verifying its signature."""
    parts = str(access_token or "").split(".")
    if len(parts) < 2:
        raise RemoteDataError("Invalid token")
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeError) as e:
        raise RemoteDataError("Invalid token") from e
    subject = payload.get("sub") if isinstance(payload, dict) else None
    if not subject:
        raise RemoteDataError("Invalid token")
    return str(subject)


class RemoteDataClient:
    """Thin client for the hosted data service."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = (url or "").rstrip("/")
        self.anon_key = anon_key or ""
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: RemoteConfig | None = None) -> RemoteDataClient | None:
        """Build a client from config, or ``None`` when no service is configured."""
        cfg = config or get_config().remote
        if not cfg.url or not cfg.anon_key:
            return None
        return cls(cfg.url, cfg.anon_key, timeout=cfg.timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        bearer = access_token or self.anon_key
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        params: dict[str, str] | None = None,
        payload: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = self._headers(access_token)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method,
                f"{self.url}{path}",
                params=params,
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            try:
                body = e.response.json()
                message = body.get("message") or body.get("error") or str(e)
            except ValueError:
                message = e.response.text or str(e)
            log.warning("Remote request failed", method=method, path=path, status=status)
            raise RemoteDataError(str(message), status_code=status) from e
        except httpx.HTTPError as e:
            log.warning("Remote request error", method=method, path=path, error=str(e))
            raise RemoteDataError(f"HTTP error: {e}") from e

        if not response.content:
            return None
        return response.json()

    async def select(
        self,
        table: str,
        params: dict[str, str] | None = None,
        access_token: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = await self._request("GET", f"/rest/v1/{table}", access_token=access_token, params=params)
        return rows if isinstance(rows, list) else []

    async def rpc(self, function: str, args: dict[str, Any], access_token: str | None = None) -> Any:
        return await self._request("POST", f"/rest/v1/rpc/{function}", access_token=access_token, payload=args)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_system_settings(self) -> dict[str, Any]:
        """Return the key/value system settings table as a dict."""
        rows = await self.select(SYSTEM_SETTINGS_TABLE, {"select": "key,value"})
        return {str(row.get("key")): row.get("value") for row in rows if row.get("key")}

    async def get_user_settings(self, access_token: str) -> dict[str, Any]:
        """Return the caller's user settings row (empty when none exists)."""
        user_id = decode_user_id(access_token)
        rows = await self.select(
            USER_SETTINGS_TABLE,
            {"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
            access_token=access_token,
        )
        return rows[0] if rows else {}

    async def has_active_subscription(self, access_token: str, statuses: list[str]) -> bool:
        user_id = decode_user_id(access_token)
        rows = await self.select(
            SUBSCRIPTIONS_TABLE,
            {
                "select": "status",
                "user_id": f"eq.{user_id}",
                "status": f"in.({','.join(statuses)})",
                "limit": "1",
            },
            access_token=access_token,
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Usage RPCs
    # ------------------------------------------------------------------

    @staticmethod
    def _usage_count(data: Any) -> int:
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            return int(data.get("count") or 0)
        return 0

    async def get_usage(self, access_token: str, usage_type: str, user_timezone: str) -> int:
        """Return today's usage count for the caller."""
        data = await self.rpc(
            "get_user_usage",
            {
                "target_user_id": decode_user_id(access_token),
                "usage_type": usage_type,
                "user_timezone": user_timezone,
            },
            access_token=access_token,
        )
        return self._usage_count(data)

    async def increment_usage(
        self,
        access_token: str,
        usage_type: str,
        user_timezone: str,
        increment_by: int = 1,
    ) -> int:
        """Increment today's usage and return the stored count."""
        data = await self.rpc(
            "increment_user_usage",
            {
                "target_user_id": decode_user_id(access_token),
                "usage_type": usage_type,
                "increment_val": increment_by,
                "user_timezone": user_timezone,
            },
            access_token=access_token,
        )
        return self._usage_count(data)

    # ------------------------------------------------------------------
    # Playbooks
    # ------------------------------------------------------------------

    async def list_playbooks(self, access_token: str | None = None) -> list[dict[str, Any]]:
        return await self.select(
            PLAYBOOKS_TABLE,
            {
                "select": "id,name,description,capabilities,created_at,updated_at",
                "order": "updated_at.desc",
            },
            access_token=access_token,
        )

    async def get_playbook(self, playbook_id: str, access_token: str | None = None) -> dict[str, Any] | None:
        rows = await self.select(
            PLAYBOOKS_TABLE,
            {"select": "*", "id": f"eq.{playbook_id}", "limit": "1"},
            access_token=access_token,
        )
        return rows[0] if rows else None

    async def save_playbook(self, record: dict[str, Any], access_token: str) -> dict[str, Any]:
        """Insert a playbook, or update it when ``record`` carries an id."""
        data = dict(record)
        data["user_id"] = decode_user_id(access_token)
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        playbook_id = str(data.pop("id", "") or "")
        if playbook_id:
            rows = await self._request(
                "PATCH",
                f"/rest/v1/{PLAYBOOKS_TABLE}",
                access_token=access_token,
                params={"id": f"eq.{playbook_id}"},
                payload=data,
                prefer="return=representation",
            )
        else:
            data.setdefault("version", "1.0.0")
            data.setdefault("visibility", "private")
            rows = await self._request(
                "POST",
                f"/rest/v1/{PLAYBOOKS_TABLE}",
                access_token=access_token,
                payload=[data],
                prefer="return=representation",
            )
        if isinstance(rows, list) and rows:
            return rows[0]
        raise RemoteDataError("Playbook save returned no rows")

    async def delete_playbook(self, playbook_id: str, access_token: str | None = None) -> None:
        await self._request(
            "DELETE",
            f"/rest/v1/{PLAYBOOKS_TABLE}",
            access_token=access_token,
            params={"id": f"eq.{playbook_id}"},
        )

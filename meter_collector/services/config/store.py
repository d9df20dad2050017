"""
Configuration Store Adapters

The cache reads three collections from whichever store is configured:
active meters, registers and device-register associations.

- SQLiteConfigStore: catalog tables in the local database
- HttpConfigStore: PostgREST-style REST API
"""

import asyncio
from typing import Any, Protocol

import httpx

from meter_collector.common.config import StoreBackend, StoreSettings
from meter_collector.common.exceptions import ConfigError, LoadError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.storage.local_db import LocalDatabase

logger = get_service_logger("config.store")


class ConfigStore(Protocol):
    async def fetch_active_meters(self) -> list[dict[str, Any]]: ...

    async def fetch_registers(self) -> list[dict[str, Any]]: ...

    async def fetch_device_registers(self) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...


class SQLiteConfigStore:
    """Reads the catalog tables; queries run in a worker thread."""

    def __init__(self, db: LocalDatabase, tenant_id: str | None = None):
        self.db = db
        self.tenant_id = tenant_id

    async def _query(self, func, *args) -> list[dict[str, Any]]:
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as e:
            raise LoadError(str(e), source=str(self.db.db_path)) from e

    async def fetch_active_meters(self) -> list[dict[str, Any]]:
        return await self._query(self.db.get_active_meters, self.tenant_id)

    async def fetch_registers(self) -> list[dict[str, Any]]:
        return await self._query(self.db.get_registers)

    async def fetch_device_registers(self) -> list[dict[str, Any]]:
        return await self._query(self.db.get_device_registers)

    async def close(self) -> None:
        pass


class HttpConfigStore:
    """
    Fetches the catalog from a REST API.

    Endpoints (relative to api_url):
        /rest/v1/meter            active meters (active=eq.true)
        /rest/v1/register         register definitions
        /rest/v1/device_register  device-register associations
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        tenant_id: str | None = None,
        timeout_s: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.tenant_id = tenant_id
        self.timeout_s = timeout_s
        # Reusable HTTP client - avoids connection overhead per request
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        """Get request headers"""
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        url = f"{self.api_url}/rest/v1/{table}"
        client = await self._get_client()
        try:
            response = await client.get(url, params=params, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise LoadError(f"{table}: {e}", source=url) from e
        except ValueError as e:
            raise LoadError(f"{table}: invalid JSON response", source=url) from e

        if not isinstance(data, list):
            raise LoadError(f"{table}: expected a list of rows", source=url)
        return data

    async def fetch_active_meters(self) -> list[dict[str, Any]]:
        params = {
            "active": "eq.true",
            "select": "meter_id,name,device_id,ip,port",
            "order": "name.asc,meter_id.asc",
        }
        if self.tenant_id:
            params["tenant_id"] = f"eq.{self.tenant_id}"
        return await self._get("meter", params)

    async def fetch_registers(self) -> list[dict[str, Any]]:
        return await self._get("register", {"select": "register_id,name,register,field_name,unit"})

    async def fetch_device_registers(self) -> list[dict[str, Any]]:
        # Embedded register row flattened below
        rows = await self._get(
            "device_register",
            {"select": "device_id,register_id,register(register,field_name,unit)"},
        )
        flattened = []
        for row in rows:
            # Malformed rows pass through for the validator to drop
            if isinstance(row, dict) and isinstance(row.get("register"), dict):
                row = {**row, **row["register"]}
            flattened.append(row)
        return flattened


def create_config_store(settings: StoreSettings, db: LocalDatabase | None = None) -> ConfigStore:
    """Build the store selected by configuration"""
    if settings.backend == StoreBackend.HTTP:
        logger.info(f"Using HTTP config store: {settings.api_url}")
        return HttpConfigStore(
            api_url=settings.api_url,
            api_key=settings.api_key,
            tenant_id=settings.tenant_id,
            timeout_s=settings.request_timeout_s,
        )

    if db is None:
        raise ConfigError("SQLite config store requires a local database", recoverable=False)
    logger.info(f"Using SQLite config store: {db.db_path}")
    return SQLiteConfigStore(db, tenant_id=settings.tenant_id)

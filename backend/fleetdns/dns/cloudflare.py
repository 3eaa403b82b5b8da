"""
Cloudflare DNS provider

Talks to the Cloudflare v4 REST API with a scoped API token.
"""

import asyncio
from datetime import datetime
from typing import Any, Literal, Optional

import aiohttp

from ..errors import CredentialError, ProviderAPIError
from ..logger import logger
from .provider import DNSProvider, register_provider
from .types import Record, RecordIdT

JsonT = dict[str, Any]


@register_provider("cloudflare")
class CloudflareProvider(DNSProvider):
    BASE_URL = "https://api.cloudflare.com/client/v4"
    PAGE_SIZE = 100

    def __init__(
        self, api_token: str, api_id: Optional[str] = None, timeout: float = 30
    ) -> None:
        self._api_token = api_token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._zone_ids: dict[str, str] = {}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bearer {self._api_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def _send_request(
        self,
        method: Literal["GET", "POST", "PUT", "DELETE"],
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[JsonT] = None,
    ) -> JsonT:
        try:
            async with self._get_session().request(
                method, self.BASE_URL + path, params=params, json=json
            ) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderAPIError(
                f"Cloudflare request {method} {path} failed: {type(e).__name__}: {e}"
            ) from e

        if status in (401, 403):
            raise CredentialError(
                f"Cloudflare rejected the API token ({status}): {_first_error(payload)}"
            )
        if not isinstance(payload, dict):
            raise ProviderAPIError(
                f"Cloudflare returned an unreadable response for {method} {path} ({status})"
            )
        if not payload.get("success", False):
            raise ProviderAPIError(f"Cloudflare error: {_first_error(payload)}")
        return payload

    async def validate_credentials(self) -> None:
        try:
            await self._send_request("GET", "/user/tokens/verify")
            return
        except (CredentialError, ProviderAPIError) as e:
            # Account scoped tokens may lack User:Read, listing zones is enough
            logger.debug(f"Token verify endpoint refused, falling back to zones: {e}")

        try:
            await self._send_request("GET", "/zones", params={"per_page": 1})
        except (CredentialError, ProviderAPIError) as e:
            raise CredentialError(
                f"Cloudflare token validation failed: unable to verify token or list zones ({e})"
            ) from e

    async def _get_zone_id(self, domain: str) -> str:
        if domain in self._zone_ids:
            return self._zone_ids[domain]

        payload = await self._send_request("GET", "/zones", params={"name": domain})
        zones = payload.get("result") or []
        if not zones:
            raise ProviderAPIError(f"Cloudflare zone not found for {domain}")

        self._zone_ids[domain] = zones[0]["id"]
        return self._zone_ids[domain]

    async def get_expected_nameservers(self, domain: str) -> list[str]:
        zone_id = await self._get_zone_id(domain)
        payload = await self._send_request("GET", f"/zones/{zone_id}")
        return list(payload["result"].get("name_servers") or [])

    async def list_records(self, domain: str) -> list[Record]:
        zone_id = await self._get_zone_id(domain)
        records: list[Record] = []
        page = 1
        while True:
            payload = await self._send_request(
                "GET",
                f"/zones/{zone_id}/dns_records",
                params={"page": page, "per_page": self.PAGE_SIZE},
            )
            for item in payload.get("result") or []:
                records.append(self._parse_record(domain, item))

            total_pages = (payload.get("result_info") or {}).get("total_pages", 1)
            if page >= total_pages:
                break
            page += 1
        return records

    async def create_record(self, domain: str, record: Record) -> Record:
        zone_id = await self._get_zone_id(domain)
        payload = await self._send_request(
            "POST",
            f"/zones/{zone_id}/dns_records",
            json=self._record_body(domain, record),
        )
        return record._replace(record_id=payload["result"]["id"])

    async def update_record(
        self, domain: str, record_id: RecordIdT, record: Record
    ) -> Record:
        zone_id = await self._get_zone_id(domain)
        await self._send_request(
            "PUT",
            f"/zones/{zone_id}/dns_records/{record_id}",
            json=self._record_body(domain, record),
        )
        return record._replace(record_id=record_id)

    async def delete_record(self, domain: str, record_id: RecordIdT) -> None:
        zone_id = await self._get_zone_id(domain)
        await self._send_request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    @staticmethod
    def _record_body(domain: str, record: Record) -> JsonT:
        body: JsonT = {
            "type": record.record_type,
            "name": to_full_name(record.name, domain),
            "content": record.value,
            # ttl=1 means automatic
            "ttl": record.ttl or 1,
            "proxied": record.proxied,
        }
        if record.record_type == "MX":
            body["priority"] = record.priority
        return body

    @staticmethod
    def _parse_record(domain: str, item: JsonT) -> Record:
        updated_at = None
        if item.get("modified_on"):
            updated_at = datetime.fromisoformat(item["modified_on"].replace("Z", "+00:00"))
        return Record(
            name=to_relative_name(item["name"], domain),
            record_type=item["type"],
            value=item["content"],
            ttl=item.get("ttl", 1),
            priority=item.get("priority") or 0,
            proxied=bool(item.get("proxied", False)),
            record_id=item["id"],
            updated_at=updated_at,
        )


def to_full_name(name: str, domain: str) -> str:
    """``www`` -> ``www.example.com``, ``@`` -> ``example.com``"""
    if name in ("@", ""):
        return domain
    return f"{name}.{domain}"


def to_relative_name(full_name: str, domain: str) -> str:
    """``www.example.com`` -> ``www``, ``example.com`` -> ``@``"""
    full_name = full_name.rstrip(".").lower()
    domain = domain.rstrip(".").lower()
    if full_name == domain:
        return "@"
    suffix = f".{domain}"
    if full_name.endswith(suffix):
        return full_name[: -len(suffix)]
    return full_name


def _first_error(payload: Any) -> str:
    if isinstance(payload, dict):
        errors = payload.get("errors") or []
        if errors:
            return f"[{errors[0].get('code')}] {errors[0].get('message')}"
    return "request failed"

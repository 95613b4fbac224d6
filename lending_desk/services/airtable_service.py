import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from lending_desk.config import settings
from lending_desk.errors import ExternalServiceError, RecordNotFound, RecordRejected
from lending_desk.services.http_client import OptimizedHTTPClient, get_http_client

logger = logging.getLogger(__name__)

# Airtable caps list pages at 100 records
PAGE_SIZE = 100


def escape_formula_value(value: str) -> str:
    """Escape a value for use inside a double-quoted Airtable formula string."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


class AirtableService:
    """Client for the Airtable REST API (one base, many tables)"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_id: Optional[str] = None,
        base_url: Optional[str] = None,
        http: Optional[OptimizedHTTPClient] = None,
    ):
        self.api_key = api_key or settings.airtable_api_key
        self.base_id = base_id or settings.airtable_base_id
        self.base_url = (base_url or settings.airtable_base_url).rstrip("/")
        self._http = http

    def _table_url(self, table: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{self.base_id}/{quote(table, safe='')}"
        if record_id:
            url = f"{url}/{record_id}"
        return url

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _client(self) -> OptimizedHTTPClient:
        if self._http is None:
            self._http = await get_http_client()
        return self._http

    def _check_response(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        """Return the JSON body or raise the matching error"""
        if response.status_code in (200, 201):
            try:
                return response.json()
            except ValueError as e:
                logger.error(f"Airtable {action} returned a non-JSON body: {response.text[:200]!r}")
                raise ExternalServiceError() from e

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        error = body.get("error") if isinstance(body, dict) else None
        detail = error.get("message") if isinstance(error, dict) else error

        if response.status_code == 404:
            raise RecordNotFound(f"{action}: record not found")
        if response.status_code == 422:
            logger.error(f"Airtable rejected {action}: {body}")
            raise RecordRejected(
                f"The record store rejected the update: {detail or 'invalid payload'}",
                details=error if isinstance(error, dict) else {"message": detail},
            )
        logger.error(f"Airtable {action} failed: {response.status_code} - {body}")
        raise ExternalServiceError()

    async def list_records(
        self,
        table: str,
        formula: Optional[str] = None,
        max_records: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List records of ``table`` matching ``formula``, following pagination"""
        client = await self._client()
        params: Dict[str, Any] = {"pageSize": PAGE_SIZE}
        if formula:
            params["filterByFormula"] = formula
        if max_records:
            params["maxRecords"] = max_records

        records: List[Dict[str, Any]] = []
        start_time = time.time()
        while True:
            try:
                response = await client.get_with_retry(self._table_url(table), params=params, headers=self._headers())
            except httpx.HTTPError as e:
                logger.error(f"Airtable list {table} unreachable: {e}")
                raise ExternalServiceError() from e

            body = self._check_response(response, f"list {table}")
            records.extend(body.get("records", []))

            offset = body.get("offset")
            if not offset or (max_records and len(records) >= max_records):
                break
            params["offset"] = offset

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Airtable list {table}: {len(records)} records in {elapsed_ms}ms (formula={formula!r})")
        return records[:max_records] if max_records else records

    async def get_record(self, table: str, record_id: str) -> Dict[str, Any]:
        client = await self._client()
        try:
            response = await client.get_with_retry(self._table_url(table, record_id), headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Airtable get {table}/{record_id} unreachable: {e}")
            raise ExternalServiceError() from e
        return self._check_response(response, f"get {table}/{record_id}")

    async def create_record(self, table: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._client()
        payload = {"records": [{"fields": fields}]}
        try:
            response = await client.post(self._table_url(table), json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Airtable create in {table} unreachable: {e}")
            raise ExternalServiceError() from e
        body = self._check_response(response, f"create in {table}")
        record = body["records"][0]
        logger.info(f"Airtable created {table}/{record['id']}")
        return record

    async def update_record(self, table: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """PATCH only the given fields of one record"""
        client = await self._client()
        try:
            response = await client.patch(
                self._table_url(table, record_id), json={"fields": fields}, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Airtable update {table}/{record_id} unreachable: {e}")
            raise ExternalServiceError() from e
        record = self._check_response(response, f"update {table}/{record_id}")
        logger.info(f"Airtable updated {table}/{record_id}: {sorted(fields)}")
        return record

# backend/omniverify/services/bouncer_client.py
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..exceptions import BouncerApiError

logger = logging.getLogger("omniverify.bouncer")

KNOWN_STATUSES = {"queued", "processing", "completed", "failed"}


@dataclass
class CreatedBatch:
    provider_batch_id: str
    quantity: int
    duplicates: int = 0


@dataclass
class BatchStatusReport:
    status: str
    progress: Optional[float] = None
    error: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class ProviderResult:
    email: str
    status: Optional[str] = None
    reason: Optional[str] = None
    score: Optional[int] = None
    toxic: Optional[bool] = None
    toxicity: Optional[float] = None
    provider: Optional[str] = None
    domain_info: Dict[str, Any] = field(default_factory=dict)
    account_info: Dict[str, Any] = field(default_factory=dict)
    dns_info: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, item: dict) -> "ProviderResult":
        toxic = item.get("toxic")
        if isinstance(toxic, str):
            toxic = toxic.lower() in ("1", "true", "yes")
        return cls(
            email=(item.get("email") or "").strip().lower(),
            status=item.get("status"),
            reason=item.get("reason"),
            score=item.get("score"),
            toxic=toxic,
            toxicity=item.get("toxicity"),
            provider=item.get("provider"),
            domain_info=item.get("domain") or item.get("domain_info") or {},
            account_info=item.get("account") or item.get("account_info") or {},
            dns_info=item.get("dns") or item.get("dns_info") or {},
        )


def normalize_status(raw) -> str:
    status = (raw or "").strip().lower()
    return status if status in KNOWN_STATUSES else "unknown"


class BouncerClient:
    """
    Thin typed wrapper over the verification provider.

    Bounded retry per request: 5xx, 429 and transport errors are retried with
    ``backoff_base * 2**attempt`` seconds between tries; other 4xx fail at once.
    Rate limiting and circuit breaking are the caller's job.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "x-api-key": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    # ---------------------------------------------------
    # Transport with bounded retry
    # ---------------------------------------------------
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        for attempt in range(self.max_retries):
            last = attempt == self.max_retries - 1
            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                if last:
                    raise
                delay = self.backoff_base * (2 ** attempt)
                logger.warning("Bouncer %s %s transport error (attempt %d/%d): %s; retrying in %.1fs",
                               method, path, attempt + 1, self.max_retries, e, delay)
                await self._sleep(delay)
                continue

            if resp.is_success:
                return resp

            retryable = resp.status_code == 429 or resp.status_code >= 500
            if retryable and not last:
                delay = self.backoff_base * (2 ** attempt)
                logger.warning("Bouncer %s %s -> %d (attempt %d/%d); retrying in %.1fs",
                               method, path, resp.status_code, attempt + 1, self.max_retries, delay)
                await self._sleep(delay)
                continue

            raise BouncerApiError(resp.status_code, self._error_message(resp))

        # unreachable; loop always returns or raises
        raise RuntimeError("retry loop exited without a response")

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.reason_phrase or resp.text[:200]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or resp.reason_phrase)
        return resp.reason_phrase

    # ---------------------------------------------------
    # Endpoints
    # ---------------------------------------------------
    async def create_batch(self, emails: List[str]) -> CreatedBatch:
        payload = {"emails": [{"email": e, "name": ""} for e in emails]}
        resp = await self._request("POST", "/batch", json=payload)
        body = resp.json()
        batch_id = body.get("batch_id") or body.get("batchId")
        if not batch_id:
            raise BouncerApiError(resp.status_code, "response missing batch_id")
        created = CreatedBatch(
            provider_batch_id=str(batch_id),
            quantity=int(body.get("quantity") or len(emails)),
            duplicates=int(body.get("duplicates") or 0),
        )
        logger.info("Bouncer batch created id=%s quantity=%d duplicates=%d",
                    created.provider_batch_id, created.quantity, created.duplicates)
        return created

    async def get_status(self, provider_batch_id: str) -> BatchStatusReport:
        resp = await self._request("GET", f"/batch/{provider_batch_id}")
        body = resp.json()
        raw = body.get("status")
        return BatchStatusReport(
            status=normalize_status(raw),
            progress=body.get("progress"),
            error=body.get("error"),
            raw_status=raw,
        )

    async def download_results(self, provider_batch_id: str) -> List[ProviderResult]:
        resp = await self._request("GET", f"/batch/{provider_batch_id}/download")
        body = resp.json()
        if isinstance(body, dict):
            body = body.get("results") or body.get("data") or []
        return [ProviderResult.from_json(item) for item in body if isinstance(item, dict)]

    async def ping(self) -> bool:
        resp = await self._client.get("/health")
        return resp.is_success

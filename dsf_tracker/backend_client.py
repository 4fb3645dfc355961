from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from dsf_tracker.errors import OracleUnavailable, WorldUnknownToOracle
from dsf_tracker.eventlog.models import EventRecord, OracleReading, now_ms
from dsf_tracker.messages import RecordPayload, WorldEventStatus
from dsf_tracker.reconcile import SubmitOutcome, SubmitStatus

logger = logging.getLogger("dsftracker")

TOKEN_EXPIRED = "Token has expired"


def decode_jwt(token: str) -> Dict[str, Any]:
    """Claims of a JWT, unverified (only used to find our own discord id)."""
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (IndexError, ValueError, UnicodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


@dataclass
class TokenStore:
    access_token: str = ""
    refresh_token: str = ""

    @property
    def discord_id(self) -> str:
        if not self.access_token:
            return ""
        return str(decode_jwt(self.access_token).get("discord_id") or "")


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or "")
    return ""


def _outcome(resp: Optional[httpx.Response]) -> SubmitOutcome:
    if resp is None:
        return SubmitOutcome(SubmitStatus.ERROR, detail="backend unreachable")
    if resp.status_code < 300:
        return SubmitOutcome(SubmitStatus.OK)
    detail = _detail(resp)
    if resp.status_code == 401 and detail == TOKEN_EXPIRED:
        return SubmitOutcome(SubmitStatus.AUTH_EXPIRED, detail=detail)
    if resp.status_code == 409:
        try:
            first = bool((resp.json() or {}).get("is_first_event"))
        except (ValueError, AttributeError):
            first = False
        return SubmitOutcome(SubmitStatus.CONFLICT, is_first_event=first, detail=detail)
    return SubmitOutcome(SubmitStatus.ERROR, detail=f"HTTP {resp.status_code} {detail}".strip())


class BackendClient:
    """DSF backend REST API. Implements the engine's transport contract."""

    def __init__(
        self,
        api_url: str,
        tokens: Optional[TokenStore] = None,
        *,
        reporter: str = "",
        debug: bool = False,
        timeout_seconds: float = 12.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_url = (api_url or "").strip().rstrip("/")
        self.tokens = tokens or TokenStore()
        self._reporter = reporter
        self._debug = debug
        timeout = httpx.Timeout(float(timeout_seconds), connect=4.0)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            timeout=timeout,
            limits=limits,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth(self) -> Dict[str, str]:
        tok = self.tokens.access_token
        return {"Authorization": f"Bearer {tok}"} if tok else {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        """Two attempts on connection errors and first-attempt 5xx; None when unreachable."""
        resp: Optional[httpx.Response] = None
        for attempt in range(2):
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                logger.warning("%s %s failed: %s", method, url, e)
                resp = None
                if attempt == 0:
                    await asyncio.sleep(0.5)
                continue
            if 500 <= resp.status_code < 600 and attempt == 0:
                await asyncio.sleep(0.5)
                continue
            return resp
        return resp

    # -----------------
    # Event submissions
    # -----------------
    async def submit_create(self, record: EventRecord, *, is_first_event: bool) -> SubmitOutcome:
        payload = RecordPayload.from_record(record).wire()
        payload["token"] = self.tokens.access_token
        body = {
            "eventRecord": payload,
            "isFirstEvent": is_first_event,
            "debug": self._debug,
            "reportedBy": record.reported_by or self._reporter,
        }
        outcome = _outcome(await self._request("POST", "/events/webhook", json=body))
        if not outcome.ok:
            return outcome

        # backend forgets the (kind, world) lock once the event is over
        event_world = f"{record.kind}_{record.world}"
        resp = await self._request(
            "POST", "/events/clear_timer", params={"event_world": event_world, "timeout": record.duration}
        )
        if resp is not None and resp.status_code == 200:
            logger.info("%s on world %s has been queued for %d seconds.", record.kind, record.world, record.duration)
        return outcome

    async def submit_edit(self, record: EventRecord) -> SubmitOutcome:
        payload = RecordPayload.from_record(record, misty_update=True).wire()
        return _outcome(await self._request("PATCH", f"/events/{record.id}", json=payload, headers=self._auth()))

    async def submit_delete(self, record: EventRecord) -> SubmitOutcome:
        return _outcome(await self._request("DELETE", f"/events/{record.id}", headers=self._auth()))

    async def record_attribution(self, kind: str, first: bool) -> SubmitOutcome:
        discord_id = self.tokens.discord_id
        if not discord_id:
            # not logged in, counts are only kept for verified profiles
            return SubmitOutcome(SubmitStatus.OK, detail="no profile")
        body = {"key": "alt1First" if first else "alt1", "event": kind}
        outcome = _outcome(await self._request("PATCH", f"/profiles/{discord_id}", json=body, headers=self._auth()))
        if outcome.ok:
            logger.info("%s has been added to call count.", kind)
        return outcome

    async def refresh_token(self) -> bool:
        if not self.tokens.refresh_token:
            logger.error("No refresh token found, user needs to re-authenticate.")
            return False
        resp = await self._request("POST", "/auth/refresh", params={"token": self.tokens.refresh_token}, json={})
        if resp is None or resp.status_code != 200:
            logger.error("Failed to refresh token, user must re-authenticate.")
            return False
        try:
            token = (resp.json() or {}).get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            logger.error("Failed to refresh token, user must re-authenticate.")
            return False
        self.tokens.access_token = str(token)
        return True

    # -----------------
    # World timers (oracle)
    # -----------------
    async def fetch_world_status(self, world: str) -> OracleReading:
        resp = await self._request("GET", f"/worlds/{world}/event")
        if resp is None:
            raise OracleUnavailable(f"GET /worlds/{world}/event unreachable")
        if resp.status_code == 404:
            raise WorldUnknownToOracle(str(world))
        if resp.status_code != 200:
            raise OracleUnavailable(f"GET /worlds/{world}/event returned {resp.status_code}")

        try:
            rows = (resp.json() or {}).get("message") or []
            status = WorldEventStatus.model_validate(rows[0])
        except (ValueError, AttributeError, IndexError, TypeError) as e:
            raise OracleUnavailable(f"unreadable world status for {world}: {e}") from e
        return status.reading()

    async def fetch_current_events(self) -> List[WorldEventStatus]:
        resp = await self._request("GET", "/events/current")
        if resp is None or resp.status_code != 200:
            raise OracleUnavailable("GET /events/current failed")
        try:
            rows = (resp.json() or {}).get("message") or []
        except (ValueError, AttributeError) as e:
            raise OracleUnavailable(f"unreadable world status table: {e}") from e
        if not isinstance(rows, list):
            raise OracleUnavailable("world status table is not a list")
        out: List[WorldEventStatus] = []
        for row in rows:
            try:
                out.append(WorldEventStatus.model_validate(row))
            except ValueError as e:
                logger.debug("Skipping world status row: %s", e)
        return out

    async def _patch_world(self, world: str, active: bool, seconds: int) -> bool:
        params = {"type": "active" if active else "inactive", "seconds": int(seconds)}
        resp = await self._request("PATCH", f"/worlds/{world}/event", params=params, json={})
        return resp is not None and resp.status_code < 300

    async def register_world_event(self, record: EventRecord) -> bool:
        return await self._patch_world(record.world, True, int(record.remaining(now_ms())))

    async def report_world_timer(self, world: str, active: bool, seconds: int) -> bool:
        return await self._patch_world(world, active, seconds)


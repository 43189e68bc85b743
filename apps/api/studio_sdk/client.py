"""HTTP client for the studio API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from services.entitlements import GateDecision, evaluate_gate
from .autosave import DebouncedSessionSaver

logger = logging.getLogger(__name__)


class StudioAPIError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        message = detail.get("message") if isinstance(detail, dict) else detail
        super().__init__(f"{status_code}: {message}")

    @property
    def kind(self) -> Optional[str]:
        if isinstance(self.detail, dict):
            return self.detail.get("kind")
        return None


_REFUSAL_STATUS = {"unauthenticated": 401, "insufficient_credits": 402, "tier_limit_exceeded": 403}


class GenerationInFlightError(RuntimeError):
    """A generation is already running for this client."""


def _unauthenticated_decision() -> GateDecision:
    return GateDecision(
        allowed=False,
        is_iteration=False,
        cost=0,
        balance=0,
        tier="",
        reason="unauthenticated",
        message="Sign in to generate games.",
    )


def parse_sse_lines(lines: List[str]) -> Optional[Dict[str, Any]]:
    """Turn the lines of one SSE frame into {"type", "data"}; comments and empty frames give None."""
    event_type = "message"
    data_lines: List[str] = []
    for line in lines:
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_type = value
        elif field == "data":
            data_lines.append(value)
    if not data_lines:
        return None
    raw = "\n".join(data_lines)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = raw
    return {"type": event_type, "data": data}


class StudioClient:
    """
    Async client for one signed-in user.

    `check_gate()` applies the tier and balance rules locally against the last
    known account snapshot so a refused prompt costs no round trip; the server
    re-checks everything. Only one generation may be in flight per client.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 300.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.token = token
        self._http = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport, timeout=timeout)
        self.account: Optional[Dict[str, Any]] = None
        self._in_flight = False
        self._savers: List[DebouncedSessionSaver] = []

    async def __aenter__(self) -> "StudioClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        # Unsaved snapshots go out before the connection pool closes.
        for saver in self._savers:
            await saver.close()
        self._savers.clear()
        await self._http.aclose()

    @property
    def generating(self) -> bool:
        return self._in_flight

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._http.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise StudioAPIError(response.status_code, detail)
        return response.json()

    async def refresh_account(self) -> Dict[str, Any]:
        self.account = await self._request("GET", "/auth/me")
        return self.account

    async def check_gate(self, has_existing_artifact: bool, *, remote: bool = False) -> GateDecision:
        if not self.token:
            return _unauthenticated_decision()
        if remote:
            payload = await self._request(
                "GET", "/studio/gate", params={"has_existing_artifact": str(bool(has_existing_artifact)).lower()}
            )
            return GateDecision(**payload)
        if self.account is None:
            await self.refresh_account()
        return evaluate_gate(
            tier=self.account.get("tier"),
            credits=int(self.account.get("credits") or 0),
            games_created=int(self.account.get("games_created") or 0),
            existing_html="existing" if has_existing_artifact else None,
        )

    def _generation_body(
        self,
        prompt: str,
        history: Optional[List[Dict[str, Any]]],
        existing_html: Optional[str],
        session_id: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "prompt": prompt,
            "history": history or [],
            "existing_html": existing_html,
            "session_id": session_id,
        }

    def _begin(self) -> None:
        if self._in_flight:
            raise GenerationInFlightError("A generation is already in progress.")
        self._in_flight = True

    def _apply_result(self, result: Dict[str, Any]) -> None:
        if self.account is None:
            return
        self.account["credits"] = result.get("credits_remaining", self.account.get("credits"))
        if not result.get("is_iteration"):
            self.account["games_created"] = int(self.account.get("games_created") or 0) + 1

    async def _refuse_locally(self, existing_html: Optional[str]) -> None:
        decision = await self.check_gate(bool(existing_html))
        if not decision.allowed:
            raise StudioAPIError(
                _REFUSAL_STATUS.get(decision.reason, 403),
                {"kind": decision.reason, "message": decision.message, "retryable": False},
            )

    async def generate(
        self,
        prompt: str,
        *,
        history: Optional[List[Dict[str, Any]]] = None,
        existing_html: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._begin()
        try:
            await self._refuse_locally(existing_html)
            result = await self._request(
                "POST",
                "/studio/generate",
                json=self._generation_body(prompt, history, existing_html, session_id),
            )
            self._apply_result(result)
            return result
        finally:
            self._in_flight = False

    async def stream_generate(
        self,
        prompt: str,
        *,
        history: Optional[List[Dict[str, Any]]] = None,
        existing_html: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield status, progress, result and error events as they arrive."""
        self._begin()
        try:
            await self._refuse_locally(existing_html)
            body = self._generation_body(prompt, history, existing_html, session_id)
            async with self._http.stream("POST", "/studio/generate/stream", json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    try:
                        detail = response.json().get("detail")
                    except ValueError:
                        detail = response.text
                    raise StudioAPIError(response.status_code, detail)
                frame: List[str] = []
                async for line in response.aiter_lines():
                    if line:
                        frame.append(line)
                        continue
                    event = parse_sse_lines(frame)
                    frame = []
                    if event is None:
                        continue
                    if event["type"] == "result":
                        self._apply_result(event["data"])
                    yield event
                event = parse_sse_lines(frame)
                if event is not None:
                    yield event
        finally:
            self._in_flight = False

    async def new_session(self) -> Dict[str, Any]:
        return await self._request("POST", "/studio/sessions/new")

    async def live_session(self) -> Optional[Dict[str, Any]]:
        payload = await self._request("GET", "/studio/sessions/live")
        return payload.get("session")

    async def save_session(self, session_id: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"/studio/sessions/{session_id}", json=snapshot)

    def autosave(self, session_id: str, delay_seconds: Optional[float] = None) -> DebouncedSessionSaver:
        """Debounced saver for one session; closed with the client."""

        async def _save(snapshot: Dict[str, Any]) -> Dict[str, Any]:
            return await self.save_session(session_id, snapshot)

        saver = DebouncedSessionSaver(_save, delay_seconds=delay_seconds)
        self._savers.append(saver)
        return saver

    async def deactivate_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/studio/sessions/{session_id}/deactivate")

    async def list_versions(self, session_id: str, include_html: bool = True) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET",
            f"/studio/sessions/{session_id}/versions",
            params={"include_html": str(include_html).lower()},
        )
        return payload.get("versions", [])

    async def restore_version(self, session_id: str, version_number: int) -> Dict[str, Any]:
        return await self._request("POST", f"/studio/sessions/{session_id}/versions/{version_number}/restore")

    async def credits(self) -> Dict[str, Any]:
        return await self._request("GET", "/billing/credits")

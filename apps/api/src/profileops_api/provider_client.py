from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, assert_never

import httpx

from profileops_api.config import Settings
from profileops_api.schemas import (
    CheckEmailStatusPayload,
    CheckInboxPayload,
    CreateAccountPayload,
    LaunchProfilePayload,
    LoginPayload,
    ReadEmailPayload,
    SendEmailPayload,
    StarEmailPayload,
    TaskPayload,
)
from profileops_api.security import error_message_for_store

logger = logging.getLogger(__name__)

STOP_ENDPOINTS = (
    "/browser/{profile_id}/stop",
    "/browser/v2/{profile_id}/stop",
    "/browser/{profile_id}/web/stop",
)
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class FailureDetail:
    message: str
    retryable: bool = True
    status_code: int | None = None


@dataclass(frozen=True)
class ProviderResult:
    ok: bool
    value: dict[str, Any] = field(default_factory=dict)
    failure: FailureDetail | None = None

    @classmethod
    def succeeded(cls, value: dict[str, Any] | None = None) -> "ProviderResult":
        return cls(ok=True, value=value or {})

    @classmethod
    def failed(cls, message: str, *, retryable: bool = True, status_code: int | None = None) -> "ProviderResult":
        return cls(ok=False, failure=FailureDetail(message=message, retryable=retryable, status_code=status_code))


class ProviderClient(Protocol):
    def execute(self, resource_ref: str, payload: TaskPayload) -> ProviderResult: ...


class ProviderError(Exception):
    def __init__(self, detail: FailureDetail) -> None:
        super().__init__(detail.message)
        self.detail = detail


class HttpProviderClient:
    """Browser-profile provider reached over its REST API.

    Every task starts the profile, runs its action (except a bare launch) and
    stops the profile again. Failures never raise out of :meth:`execute`.
    """

    def __init__(self, base_url: str, api_key: str, *, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def execute(self, resource_ref: str, payload: TaskPayload) -> ProviderResult:
        try:
            started = self._request("POST", f"/browser/{resource_ref}/web")
        except ProviderError as exc:
            return self._failure(exc.detail, prefix="failed to start profile")

        try:
            if isinstance(payload, LaunchProfilePayload):
                value: dict[str, Any] = {"launched": True, "session": started}
            else:
                value = self._request("POST", f"/browser/{resource_ref}/actions", json=_action_body(payload))
        except ProviderError as exc:
            try:
                self.stop_profile(resource_ref)
            except ProviderError as stop_exc:
                logger.warning("profile %s stop after failed action also failed: %s", resource_ref, stop_exc)
            return self._failure(exc.detail, prefix=f"{payload.task_type} failed")

        try:
            self.stop_profile(resource_ref)
        except ProviderError as exc:
            return self._failure(exc.detail, prefix="action completed but profile stop failed")
        return ProviderResult.succeeded(value)

    def stop_profile(self, resource_ref: str) -> dict[str, Any]:
        last_error: FailureDetail | None = None
        for template in STOP_ENDPOINTS:
            path = template.format(profile_id=resource_ref)
            try:
                return self._request("POST", path)
            except ProviderError as exc:
                if exc.detail.status_code == 404:
                    logger.debug("profile %s not found at %s, may already be stopped", resource_ref, path)
                    if last_error is None or last_error.status_code == 404:
                        last_error = exc.detail
                    continue
                last_error = exc.detail

        if last_error is None or last_error.status_code == 404:
            return {"success": True, "message": "Profile already stopped"}
        raise ProviderError(
            FailureDetail(
                message=f"failed to stop profile after trying all endpoints: {last_error.message}",
                retryable=last_error.retryable,
                status_code=last_error.status_code,
            )
        )

    def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = httpx.request(
                method,
                url,
                json=json,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(FailureDetail(message=f"provider request timed out: {method} {path}")) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(FailureDetail(message=f"provider request failed: {exc}")) from exc

        if response.status_code >= 400:
            status_code = response.status_code
            retryable = status_code >= 500 or status_code in _RETRYABLE_CLIENT_STATUSES
            raise ProviderError(
                FailureDetail(
                    message=f"provider returned {status_code}: {response.text}",
                    retryable=retryable,
                    status_code=status_code,
                )
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}

    def _failure(self, detail: FailureDetail, *, prefix: str) -> ProviderResult:
        message = error_message_for_store(f"{prefix}: {detail.message}", secrets=[self._api_key])
        return ProviderResult.failed(message, retryable=detail.retryable, status_code=detail.status_code)


class MockProviderClient:
    """Local stand-in that succeeds after a short delay."""

    def __init__(self, delay_seconds: float = 0.05) -> None:
        self._delay_seconds = delay_seconds

    def execute(self, resource_ref: str, payload: TaskPayload) -> ProviderResult:
        time.sleep(self._delay_seconds)
        value: dict[str, Any] = {"mock": True, "resource_ref": resource_ref, "action": payload.task_type}
        if isinstance(payload, CheckEmailStatusPayload):
            value.update({"status": "active", "message": "mock mailbox is active"})
        return ProviderResult.succeeded(value)


def build_provider_client(settings: Settings) -> ProviderClient:
    if settings.provider_mode == "mock":
        return MockProviderClient(delay_seconds=settings.mock_delay_seconds)
    return HttpProviderClient(
        settings.provider_url,
        settings.http_provider_api_key(),
        timeout_seconds=settings.provider_timeout_seconds,
    )


def _action_body(payload: TaskPayload) -> dict[str, Any]:
    if isinstance(payload, (LoginPayload, CheckInboxPayload, CheckEmailStatusPayload)):
        return {"action": payload.task_type}
    if isinstance(payload, (ReadEmailPayload, StarEmailPayload)):
        return {"action": payload.task_type, "email_index": payload.email_index}
    if isinstance(payload, SendEmailPayload):
        return {"action": payload.task_type, "to": payload.to, "subject": payload.subject, "body": payload.body}
    if isinstance(payload, CreateAccountPayload):
        body: dict[str, Any] = {
            "action": payload.task_type,
            "first_name": payload.first_name,
            "last_name": payload.last_name,
        }
        if payload.recovery_email is not None:
            body["recovery_email"] = payload.recovery_email
        return body
    if isinstance(payload, LaunchProfilePayload):
        return {"action": payload.task_type}
    assert_never(payload)

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from leadflow.context import get_correlation_id
from leadflow.core.config import Settings


logger = logging.getLogger("leadflow.messaging")
tracer = trace.get_tracer("leadflow.messaging")


class MessagingError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MessagingClient(Protocol):
    def send_whatsapp_template(
        self,
        *,
        lead_id: uuid.UUID,
        phone: str,
        template_name: str,
        parameters: list[str],
    ) -> dict[str, Any]: ...

    def send_email(
        self,
        *,
        lead_id: uuid.UUID,
        to: str,
        subject: str | None,
        body: str | None,
        template_id: str | None,
    ) -> dict[str, Any]: ...

    def send_sms(
        self,
        *,
        lead_id: uuid.UUID,
        phone: str,
        message: str | None,
        template_id: str | None,
    ) -> dict[str, Any]: ...

    def close(self) -> None: ...


class HttpMessagingClient:
    """Posts outbound messages to the internal messaging service.

    One JSON POST per message; no retries. Transport failures and non-2xx
    responses are raised as ``MessagingError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http = http_client or httpx.Client(timeout=timeout)

    def send_whatsapp_template(
        self,
        *,
        lead_id: uuid.UUID,
        phone: str,
        template_name: str,
        parameters: list[str],
    ) -> dict[str, Any]:
        return self._post(
            "messaging.send_whatsapp_template",
            "/whatsapp/send-template",
            {
                "lead_id": str(lead_id),
                "phone": phone,
                "template_name": template_name,
                "parameters": parameters,
            },
        )

    def send_email(
        self,
        *,
        lead_id: uuid.UUID,
        to: str,
        subject: str | None,
        body: str | None,
        template_id: str | None,
    ) -> dict[str, Any]:
        return self._post(
            "messaging.send_email",
            "/email/send",
            {
                "lead_id": str(lead_id),
                "to": to,
                "subject": subject,
                "body": body,
                "template_id": template_id,
            },
        )

    def send_sms(
        self,
        *,
        lead_id: uuid.UUID,
        phone: str,
        message: str | None,
        template_id: str | None,
    ) -> dict[str, Any]:
        return self._post(
            "messaging.send_sms",
            "/sms/send",
            {
                "lead_id": str(lead_id),
                "phone": phone,
                "message": message,
                "template_id": template_id,
            },
        )

    def close(self) -> None:
        self._http.close()

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id
        return headers

    def _post(self, span_name: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        with tracer.start_as_current_span(span_name) as span:
            span.set_attribute("lead_id", payload["lead_id"])
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = self._http.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
            except httpx.TimeoutException as exc:
                raise MessagingError(f"messaging timeout: {path}") from exc
            except httpx.HTTPError as exc:
                raise MessagingError(f"messaging request failed: {path}: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                logger.warning(
                    "messaging.request_failed",
                    extra={"path": path, "status_code": response.status_code, "lead_id": payload["lead_id"]},
                )
                raise MessagingError(
                    f"messaging service returned {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            if not response.content:
                return {}
            try:
                body = response.json()
            except ValueError:
                return {"raw": response.text}
            return body if isinstance(body, dict) else {"result": body}


class StubMessagingClient:
    """In-memory client used when no messaging service is configured."""

    def __init__(self, *, fail_with: str | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_with = fail_with

    def send_whatsapp_template(
        self,
        *,
        lead_id: uuid.UUID,
        phone: str,
        template_name: str,
        parameters: list[str],
    ) -> dict[str, Any]:
        return self._record(
            "whatsapp",
            {"lead_id": str(lead_id), "phone": phone, "template_name": template_name, "parameters": parameters},
        )

    def send_email(
        self,
        *,
        lead_id: uuid.UUID,
        to: str,
        subject: str | None,
        body: str | None,
        template_id: str | None,
    ) -> dict[str, Any]:
        return self._record(
            "email",
            {"lead_id": str(lead_id), "to": to, "subject": subject, "body": body, "template_id": template_id},
        )

    def send_sms(
        self,
        *,
        lead_id: uuid.UUID,
        phone: str,
        message: str | None,
        template_id: str | None,
    ) -> dict[str, Any]:
        return self._record(
            "sms",
            {"lead_id": str(lead_id), "phone": phone, "message": message, "template_id": template_id},
        )

    def _record(self, channel: str, payload: dict[str, Any]) -> dict[str, Any]:
        with tracer.start_as_current_span(f"messaging.stub.{channel}") as span:
            span.set_attribute("lead_id", payload["lead_id"])
            if self.fail_with is not None:
                raise MessagingError(self.fail_with)
            message_id = str(uuid.uuid4())
            self.sent.append({"channel": channel, "message_id": message_id, **payload})
            return {"message_id": message_id, "status": "queued"}

    def close(self) -> None:
        pass


def build_messaging_client(settings: Settings) -> MessagingClient:
    if settings.messaging_base_url:
        return HttpMessagingClient(
            settings.messaging_base_url,
            api_key=settings.messaging_api_key,
            timeout=settings.messaging_timeout_seconds,
        )
    return StubMessagingClient()

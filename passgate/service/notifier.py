from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx

from passgate.logging import get_logger, redact_contact

logger = get_logger(__name__)

INVITATION_TEMPLATE = "registration_invite"
PASSWORD_RESET_TEMPLATE = "password_reset"


class Notifier(Protocol):
    def send(
        self,
        source: dict[str, Any],
        destination: str,
        template_id: str,
        options: Optional[dict[str, Any]] = None,
    ) -> bool: ...


class LoggingNotifier:
    """Dev-mode notifier: logs the delivery instead of sending it.

    The link is logged so a developer can follow it; nothing is kept in memory.
    """

    def send(
        self,
        source: dict[str, Any],
        destination: str,
        template_id: str,
        options: Optional[dict[str, Any]] = None,
    ) -> bool:
        logger.info(
            "notifier_dev_mode",
            to=redact_contact(destination),
            template_id=template_id,
            link=(options or {}).get("link"),
        )
        return True


class HttpNotifier:
    """Posts deliveries to an external sender service.

    The request body is ``{srcData, dstEmail, templateId, options}`` sent to
    ``{base_url}/send``. Any transport error or non-200 response is logged and
    reported as ``False``; nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def send(
        self,
        source: dict[str, Any],
        destination: str,
        template_id: str,
        options: Optional[dict[str, Any]] = None,
    ) -> bool:
        body = {
            "srcData": source,
            "dstEmail": destination,
            "templateId": template_id,
            "options": options or {},
        }
        try:
            response = self._client.post("send", json=body)
        except httpx.HTTPError as exc:
            logger.error(
                "notifier_transport_failed",
                to=redact_contact(destination),
                template_id=template_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if response.status_code != 200:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            code = payload.get("code") if isinstance(payload, dict) else None
            logger.warning(
                "notifier_rejected",
                to=redact_contact(destination),
                template_id=template_id,
                status_code=response.status_code,
                code=code,
            )
            return False
        logger.info(
            "notifier_sent", to=redact_contact(destination), template_id=template_id
        )
        return True

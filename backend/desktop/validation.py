"""Remote token check against the running service's ``/validate`` endpoint."""

from __future__ import annotations

import logging

import httpx

from desktop.config import API_PREFIX, VALIDATION_TIMEOUT
from desktop.credentials import token_preview
from desktop.errors import ValidationTimeout, ValidationUnauthorized

_log = logging.getLogger(__name__)


class ValidationUnavailable(ValidationTimeout):
    """No verdict: service unreachable or answered with a server error."""


class TokenValidator:
    def __init__(
        self,
        timeout: float = VALIDATION_TIMEOUT,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def check(self, base_url: str, token: str) -> None:
        """Return quietly if the service accepts ``token``.

        Raises ``ValidationUnauthorized`` on an explicit rejection and
        ``ValidationTimeout`` (or its ``ValidationUnavailable`` subclass) when
        no verdict could be obtained.
        """
        url = f"{base_url}{API_PREFIX}/validate"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, trust_env=False,
            ) as client:
                resp = await client.get(url, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException as exc:
            raise ValidationTimeout(f"Validation of {token_preview(token)} timed out") from exc
        except httpx.TransportError as exc:
            raise ValidationUnavailable(f"Validation endpoint unreachable: {exc}") from exc

        if resp.status_code in (401, 403):
            raise ValidationUnauthorized(f"Service rejected token ({resp.status_code})")
        if resp.status_code != 200:
            raise ValidationUnavailable(f"Validation endpoint answered {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and (data.get("valid") is False or data.get("code") == 401):
            raise ValidationUnauthorized("Service reported the token as invalid")
        _log.debug("Token %s accepted by %s", token_preview(token), base_url)

"""Inbound webhook verification contract.

A verifier holds the credentials it was built with and judges one delivery at a
time. A failed result carries the HTTP status to answer with: 401 for bad or
missing credentials, 403 for a caller outside the allow-listed networks.
Callers never see which check failed; `error` is for logs only.
"""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    error: str | None = None
    status_code: int = 200

    @classmethod
    def passed(cls) -> "VerificationResult":
        return cls(success=True)

    @classmethod
    def denied(cls, error: str, status_code: int = 401) -> "VerificationResult":
        return cls(success=False, error=error, status_code=status_code)


class WebhookVerifier(Protocol):
    async def verify(
        self,
        headers: dict[str, str],
        body: bytes,
        client_ip: str | None = None,
    ) -> VerificationResult:
        """Judge one delivery.

        Args:
            headers: Request headers, keys lower-cased
            body: Raw request body, exactly as received
            client_ip: Caller address as seen by the gatekeeper, if known
        """
        ...

"""
Pipedrive webhook verification and normalization.

Pipedrive does not sign webhooks on its own; deployments protect the endpoint
with any combination of HTTP Basic Auth (configured on the Pipedrive webhook),
an IP allow-list, and an HMAC-SHA256 signature added by a relay in front of
the gatekeeper. Pipedrive delivers two payload versions:

v1:
{
    "event": "updated.deal",
    "meta": {"v": 1, "action": "updated", "object": "deal", "id": 42, ...},
    "current": {...},
    "previous": {...},
    "retry": 0
}

v2:
{
    "meta": {"version": "2.0", "action": "change", "entity": "deal", "entity_id": "42", ...},
    "data": {...},
    "previous": {...}    # only the fields that changed
}
"""

import base64
import binascii
import hashlib
import hmac
import ipaddress
import json
from collections.abc import Iterable, Mapping
from typing import Any

from connectors.pipedrive.pipedrive_errors import FormatError
from connectors.pipedrive.pipedrive_models import (
    PipedriveEntityType,
    WebhookAction,
    WebhookEvent,
    WebhookVersion,
)
from connectors.pipedrive.pipedrive_settings import SecurityPolicy
from src.ingest.gatekeeper.verification import VerificationResult
from src.utils.logging import get_logger

logger = get_logger(__name__)

INVALID_FORMAT = "invalid webhook format"


def _get_header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup."""
    value = headers.get(name) or headers.get(name.lower())
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return ""


def verify_pipedrive_basic_auth(
    headers: Mapping[str, str], username: str | None, password: str | None
) -> None:
    """Verify the HTTP Basic credentials Pipedrive sends with each delivery.

    Raises:
        ValueError: If credentials are not configured, missing, malformed or wrong
    """
    if not username or not password:
        raise ValueError("Basic auth is enabled but no credentials are configured")

    authorization = _get_header(headers, "Authorization")
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        raise ValueError("Missing Basic auth credentials")

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError("Malformed Basic auth header") from e

    provided_user, separator, provided_password = decoded.partition(":")
    if not separator:
        raise ValueError("Malformed Basic auth header")

    # Both halves are always compared
    user_ok = hmac.compare_digest(provided_user.encode("utf-8"), username.encode("utf-8"))
    password_ok = hmac.compare_digest(
        provided_password.encode("utf-8"), password.encode("utf-8")
    )
    if not (user_ok and password_ok):
        raise ValueError("Invalid Basic auth credentials")


def verify_pipedrive_client_ip(client_ip: str | None, patterns: Iterable[str]) -> None:
    """Verify the caller address against exact addresses and CIDR ranges.

    Raises:
        ValueError: If the list is empty, the address is unparseable, or nothing matches
    """
    networks = [ipaddress.ip_network(pattern, strict=False) for pattern in patterns]
    if not networks:
        raise ValueError("IP allow-list is enabled but empty")
    if not client_ip:
        raise ValueError("Client IP address is unknown")

    try:
        address = ipaddress.ip_address(client_ip.strip())
    except ValueError as e:
        raise ValueError(f"Unparseable client IP address: {client_ip}") from e

    # IPv4-mapped IPv6 addresses (::ffff:a.b.c.d) should match IPv4 ranges
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    for network in networks:
        if address.version == network.version and address in network:
            return

    raise ValueError(f"IP address {client_ip} is not allowed")


def verify_pipedrive_signature(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    header_name: str = "X-Pipedrive-Signature",
) -> None:
    """Verify a hex HMAC-SHA256 signature of the raw body.

    Raises:
        ValueError: If secret is missing, signature is missing, or signature is invalid
    """
    if not secret:
        raise ValueError("Missing Pipedrive webhook secret - cannot verify webhook")

    signature = _get_header(headers, header_name).strip()
    if not signature:
        raise ValueError("Missing Pipedrive webhook signature header")

    # Some relays prefix the algorithm, as in "sha256=<hex>"
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256=") :]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    if not hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8")):
        raise ValueError("Invalid Pipedrive webhook signature")


def compute_pipedrive_signature(body: bytes, secret: str) -> str:
    """Signature a relay should send for `body`."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class PipedriveWebhookVerifier:
    """Applies the configured SecurityPolicy to an inbound request.

    Checks run in order Basic Auth, IP allow-list, signature; the first
    failure decides the response (401 for credentials, 403 for origin).
    """

    def __init__(self, policy: SecurityPolicy):
        self.policy = policy
        if not policy.any_enabled:
            logger.warning(
                "Pipedrive webhook security is not configured; all webhook requests will be accepted. "
                "Enable basic auth, an IP allow-list or a signature secret."
            )

    async def verify(
        self,
        headers: dict[str, str],
        body: bytes,
        client_ip: str | None = None,
    ) -> VerificationResult:
        policy = self.policy

        if policy.basic_auth.enabled:
            try:
                verify_pipedrive_basic_auth(
                    headers, policy.basic_auth.username, policy.basic_auth.password
                )
            except ValueError as e:
                logger.warning("Pipedrive webhook basic auth failed", error=str(e), client_ip=client_ip)
                return VerificationResult.denied(str(e), status_code=401)

        if policy.ip_allow_list.enabled:
            try:
                verify_pipedrive_client_ip(client_ip, policy.ip_allow_list.patterns)
            except ValueError as e:
                logger.warning("Pipedrive webhook IP not allowed", error=str(e), client_ip=client_ip)
                return VerificationResult.denied(str(e), status_code=403)

        if policy.signature.enabled:
            try:
                verify_pipedrive_signature(
                    headers, body, policy.signature.secret, policy.signature.header_name
                )
            except ValueError as e:
                logger.warning("Pipedrive webhook signature failed", error=str(e), client_ip=client_ip)
                return VerificationResult.denied(str(e), status_code=401)

        return VerificationResult.passed()


def _require(mapping: Mapping[str, Any], key: str) -> Any:
    value = mapping.get(key)
    if value is None or value == "":
        raise FormatError(INVALID_FORMAT, details={"missing": key})
    return value


def _optional_mapping(value: Any) -> dict[str, Any] | None:
    return dict(value) if isinstance(value, Mapping) else None


def _detect_version(meta: Mapping[str, Any]) -> WebhookVersion:
    version = meta.get("version")
    if version is not None and str(version).strip() in ("2.0", "2"):
        return WebhookVersion.V2
    return WebhookVersion.V1


def normalize_pipedrive_webhook(payload: Any) -> WebhookEvent:
    """Normalize a decoded v1 or v2 payload into a WebhookEvent.

    Raises:
        FormatError: If the payload is not an object, has no meta, or misses a required key
    """
    if not isinstance(payload, Mapping):
        raise FormatError(INVALID_FORMAT, details={"reason": "payload is not an object"})

    meta = payload.get("meta")
    if not isinstance(meta, Mapping):
        raise FormatError(INVALID_FORMAT, details={"missing": "meta"})

    version = _detect_version(meta)
    if version is WebhookVersion.V2:
        raw_action = _require(meta, "action")
        object_type = _require(meta, "entity")
        object_id = _require(meta, "entity_id")
        current = _optional_mapping(payload.get("data"))
    else:
        event_name = _require(payload, "event")
        if not isinstance(event_name, str):
            raise FormatError(INVALID_FORMAT, details={"invalid": "event"})
        raw_action = _require(meta, "action")
        object_type = _require(meta, "object")
        object_id = _require(meta, "id")
        current = _optional_mapping(payload.get("current"))

    if isinstance(object_id, bool) or not isinstance(object_id, str | int):
        raise FormatError(INVALID_FORMAT, details={"invalid": "id"})

    retry = payload.get("retry", 0)
    try:
        retry = int(retry) if retry is not None else 0
    except (TypeError, ValueError):
        retry = 0

    return WebhookEvent(
        version=version,
        action=WebhookAction.from_raw(str(raw_action)),
        raw_action=str(raw_action),
        object_type=str(object_type),
        entity_type=PipedriveEntityType.from_object_type(str(object_type)),
        object_id=str(object_id),
        current=current,
        previous=_optional_mapping(payload.get("previous")),
        meta=dict(meta),
        retry=retry,
    )


def _is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def parse_pipedrive_webhook_request(
    method: str, content_type: str | None, body: bytes
) -> WebhookEvent:
    """Check request framing, decode the JSON body and normalize it.

    Raises:
        FormatError: If the request is not a JSON POST or the body is not a valid payload
    """
    if method.upper() != "POST":
        raise FormatError(INVALID_FORMAT, details={"reason": f"method {method} not allowed"})
    if not _is_json_content_type(content_type):
        raise FormatError(INVALID_FORMAT, details={"reason": "content type is not JSON"})

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FormatError(INVALID_FORMAT, details={"reason": "body is not valid JSON"}) from e

    return normalize_pipedrive_webhook(payload)


def extract_pipedrive_webhook_metadata(headers: Mapping[str, str], body_str: str) -> dict[str, Any]:
    """Extract a loggable summary of a webhook without payload contents.

    Never raises; unparseable bodies still report their size.
    """
    metadata: dict[str, Any] = {
        "payload_size": len(body_str.encode("utf-8")),
        "user_agent": _get_header(headers, "User-Agent") or None,
    }
    try:
        payload = json.loads(body_str)
    except json.JSONDecodeError:
        metadata["parse_error"] = True
        return metadata

    if not isinstance(payload, dict):
        metadata["parse_error"] = True
        return metadata

    meta = payload.get("meta")
    if isinstance(meta, dict):
        is_v2 = _detect_version(meta) is WebhookVersion.V2
        metadata.update(
            {
                "version": "2.0" if is_v2 else "1.0",
                "action": meta.get("action"),
                "object": meta.get("entity") if is_v2 else meta.get("object"),
                "object_id": meta.get("entity_id") if is_v2 else meta.get("id"),
                "company_id": meta.get("company_id"),
                "attempt": meta.get("attempt", payload.get("retry", 0)),
            }
        )
    return metadata

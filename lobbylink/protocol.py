"""Protocol helpers: reply payload normalisation, realtime envelope codec, local session restore."""
from __future__ import annotations
import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from .models import RestoredSession

Payload = Union[str, bytes, bytearray, Dict[str, Any]]


class LobbyLinkError(Exception):
    """Base class for all lobby client errors."""
    pass


class ProtocolError(LobbyLinkError):
    """Raised when a reply, envelope or token does not have the expected shape."""
    pass


def decode_payload(payload: Payload) -> Dict[str, Any]:
    """Normalise a reply payload to a dict.

    The remote side may hand back already-structured data or a JSON string;
    strings get exactly one decode pass. Anything that does not end up as a
    JSON object raises ProtocolError.
    """
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Payload is not valid UTF-8: {e}") from e
    if isinstance(payload, str):
        try:
            body = json.loads(payload)
        except ValueError as e:
            raise ProtocolError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise ProtocolError(f"Expected a JSON object, got {type(body).__name__}")
        return body
    raise ProtocolError(f"Unsupported payload type: {type(payload).__name__}")


def require_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"Reply field '{key}' is missing or not a string")
    return value


# ---- realtime envelopes ----

@dataclass(frozen=True)
class Envelope:
    """One realtime message: optional correlation id plus a single typed body."""
    cid: Optional[str]
    kind: Optional[str]
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.kind == "error"

    def error_info(self) -> Tuple[Optional[int], str]:
        code = self.body.get("code")
        return (code if isinstance(code, int) else None), str(self.body.get("message") or "")


def build_envelope(cid: Optional[str], kind: str, body: Optional[Dict[str, Any]] = None) -> str:
    msg: Dict[str, Any] = {kind: body or {}}
    if cid is not None:
        msg["cid"] = cid
    return json.dumps(msg, separators=(",", ":"))


def parse_envelope(raw: Payload) -> Envelope:
    """Parse a realtime frame.

    An envelope carries at most one message key next to ``cid``; an envelope
    with only a ``cid`` is an empty acknowledgement.
    """
    msg = decode_payload(raw)
    cid = msg.get("cid")
    if cid is not None and not isinstance(cid, str):
        cid = str(cid)
    kinds = [k for k in msg if k != "cid"]
    if len(kinds) > 1:
        raise ProtocolError(f"Envelope carries several messages: {sorted(kinds)}")
    if not kinds:
        if cid is None:
            raise ProtocolError("Empty envelope without cid")
        return Envelope(cid=cid, kind=None)
    kind = kinds[0]
    body = msg[kind]
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ProtocolError(f"Envelope body for '{kind}' is not an object")
    return Envelope(cid=cid, kind=kind, body=body)


# ---- session restore ----

def _b64url_json(segment: str) -> Dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Token segment is not base64url: {e}") from e
    return decode_payload(raw)


def restore_session(token: str) -> RestoredSession:
    """Rebuild session claims from a token without any network I/O.

    The token is a JWT; its signature is the server's business and is not
    checked here. Claims: ``uid`` user id, ``usn`` username, ``exp`` expiry,
    ``vrs`` session variables.
    """
    if not isinstance(token, str) or not token:
        raise ProtocolError("Session token is empty")
    parts = token.split(".")
    if len(parts) != 3:
        raise ProtocolError("Session token is not a JWT")
    claims = _b64url_json(parts[1])
    exp = claims.get("exp")
    vrs = claims.get("vrs")
    return RestoredSession(
        token=token,
        user_id=claims.get("uid"),
        username=claims.get("usn"),
        expires_at=int(exp) if isinstance(exp, (int, float)) else None,
        vars=dict(vrs) if isinstance(vrs, dict) else {},
    )

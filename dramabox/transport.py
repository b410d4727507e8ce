import json
from typing import Any, Dict, Optional

import httpx

from .errors import MalformedResponse, UpstreamStatusError, classify_transport_error
from .signer import DeviceIdentity

APP_CHANNEL = "DAUAF1064291"
APP_PACKAGE = "com.storymatrix.drama"


def encode_body(payload: Any) -> str:
    """Compact JSON, identical to what gets signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _device_headers(identity: DeviceIdentity, lang: str) -> Dict[str, str]:
    return {
        "cid": APP_CHANNEL,
        "package-Name": APP_PACKAGE,
        "Apn": "1",
        "device-id": identity.device_id,
        "language": lang,
        "current-Language": lang,
        "Time-Zone": "+0700",
        "md": "Redmi Note 8",
        "over-flow": "new-fly",
        "android-id": identity.android_id,
        "mf": "XIAOMI",
        "brand": "Xiaomi",
        "X-Forwarded-For": identity.spoofed_ip,
        "X-Real-IP": identity.spoofed_ip,
        "Content-Type": "application/json; charset=UTF-8",
    }


def bootstrap_headers(identity: DeviceIdentity, lang: str) -> Dict[str, str]:
    headers = _device_headers(identity, lang)
    headers.update({"tn": "", "version": "470", "vn": "4.7.0", "p": "48", "ov": "9"})
    return headers


def request_headers(identity: DeviceIdentity, lang: str, bearer: str) -> Dict[str, str]:
    headers = _device_headers(identity, lang)
    headers.update(
        {
            "tn": f"Bearer {bearer}",
            "version": "451",
            "vn": "4.5.1",
            "p": "46",
            "ov": "14",
            "User-Agent": "okhttp/4.10.0",
        }
    )
    return headers


def webfic_headers(lang: str) -> Dict[str, str]:
    return {"Content-Type": "application/json", "pline": "DRAMABOX", "language": lang}


async def send_json(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    params: Optional[Dict[str, Any]] = None,
    content: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Any:
    """Issue one HTTP call and return its decoded JSON body.

    Raises :class:`TransportError` when no response arrived,
    :class:`UpstreamStatusError` for non-2xx statuses and
    :class:`MalformedResponse` when a 2xx body is not JSON.
    """
    extra = {"timeout": timeout} if timeout is not None else {}
    try:
        response = await http.request(
            method,
            url,
            headers=headers,
            params=params,
            content=content.encode("utf-8") if content is not None else None,
            **extra,
        )
    except httpx.TransportError as exc:
        raise classify_transport_error(exc) from exc

    if response.is_error:
        raise UpstreamStatusError(response.status_code, response.reason_phrase)

    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponse(url) from exc

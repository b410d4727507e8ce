import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from .config import Settings
from .errors import DramaboxError, UpstreamRejected
from .retry import RetryContext, RetryPolicy
from .signer import Signer
from .tokens import TokenStore
from .transport import encode_body, request_headers, send_json, webfic_headers

logger = logging.getLogger(__name__)


class UpstreamClient:
    """
    Signed access to the Dramabox app API and the webfic surface.

    ``request`` runs one logical call: at most ``max_retries + 1`` attempts,
    a single immediate re-auth retry on the first ``success: false`` payload,
    and a forced token invalidation on 502/503 before the backoff pause.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: TokenStore,
        signer: Signer,
        retry_policy: RetryPolicy,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.tokens = tokens
        self.signer = signer
        self.retry_policy = retry_policy
        self.settings = settings
        self.clock = clock

    def _should_retry(self, error: BaseException) -> bool:
        if isinstance(error, UpstreamRejected):
            return error.retry_with_fresh_token
        return self.retry_policy.is_retryable(error)

    async def request(
        self,
        lang: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        use_alternate_auth: bool = False,
        method: str = "POST",
    ) -> Any:
        payload = {} if payload is None else payload
        ctx = RetryContext()
        retrying = self.retry_policy.retrying(
            ctx,
            "Request",
            should_retry=self._should_retry,
            on_reauth=lambda: self.tokens.invalidate(lang),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    data = await self._dispatch(lang, endpoint, payload, use_alternate_auth, method, ctx)
        except DramaboxError as exc:
            ctx.last_error = exc
            raise exc.annotate(endpoint)
        return data

    async def _dispatch(
        self,
        lang: str,
        endpoint: str,
        payload: Dict[str, Any],
        use_alternate_auth: bool,
        method: str,
        ctx: RetryContext,
    ) -> Any:
        timestamp = int(self.clock() * 1000)
        method = method.upper()
        body = encode_body(payload)

        if use_alternate_auth:
            url = f"{self.settings.webfic_url}{endpoint}"
            headers = webfic_headers(lang)
            params = None
        else:
            token = await self.tokens.get_token(lang)
            url = f"{self.settings.base_url}{endpoint}"
            headers = request_headers(token.identity, lang, token.value)
            headers["sn"] = self.signer.sign(
                self.signer.material(timestamp, body, token.identity, headers["tn"])
            )
            params = {"timestamp": timestamp}

        data = await send_json(
            self.http,
            method,
            url,
            headers=headers,
            params=params,
            content=body if method != "GET" else None,
            timeout=self.settings.request_timeout,
        )

        if not use_alternate_auth and isinstance(data, dict) and data.get("success") is False:
            first = ctx.attempt == 0
            if first:
                logger.info("[Request] Token refresh required for %s, regenerating...", endpoint)
            raise UpstreamRejected(data.get("message") or "API request failed", retry_with_fresh_token=first)

        return data

    async def debug_headers(self, lang: str) -> Dict[str, Any]:
        token = await self.tokens.get_token(lang)
        timestamp = int(self.clock() * 1000)
        return {
            "language": lang,
            "timestamp": timestamp,
            "headers": request_headers(token.identity, lang, token.value),
            "tokenInfo": {
                "deviceId": token.identity.device_id,
                "validUntil": datetime.fromtimestamp(token.expires_at, tz=timezone.utc).isoformat(),
            },
        }

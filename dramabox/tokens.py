import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

import httpx

from .cache import ResponseCache
from .config import Settings
from .errors import InvalidTokenResponse, TokenAcquisitionFailed, describe_error
from .models import BootstrapResponse
from .retry import RetryContext, RetryPolicy
from .signer import DeviceIdentity, Signer, new_identity
from .transport import bootstrap_headers, encode_body, send_json

logger = logging.getLogger(__name__)

BOOTSTRAP_ENDPOINT = "/drama-box/ap001/bootstrap"


@dataclass(frozen=True)
class Token:
    value: str
    identity: DeviceIdentity
    user_id: str
    attribution_param: Any
    issued_at: float
    expires_at: float


class TokenStore:
    """
    Bearer token lifecycle, partitioned by language.

    Tier one is an in-memory map of live tokens; tier two is the shared
    response cache under ``token_<lang>``. A token is used until it gets
    within ``token_safety_margin`` seconds of ``expires_at``; the cache TTL only
    bounds how long a minted token is shared.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        cache: ResponseCache,
        signer: Signer,
        retry_policy: RetryPolicy,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.cache = cache
        self.signer = signer
        self.retry_policy = retry_policy
        self.settings = settings
        self.clock = clock
        self._live: Dict[str, Token] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def cache_key(lang: str) -> str:
        return f"token_{lang}"

    def is_valid(self, token: Token, now: float = None) -> bool:
        now = self.clock() if now is None else now
        return token.expires_at > now + self.settings.token_safety_margin

    def peek(self, lang: str) -> Token:
        return self._live.get(lang)

    async def get_token(self, lang: str) -> Token:
        token = self._live.get(lang)
        if token is not None and self.is_valid(token):
            return token

        # One mint per language at a time; waiters reuse the fresh token
        async with self._lock(lang):
            token = self._live.get(lang)
            if token is not None and self.is_valid(token):
                return token

            shared = self.cache.get(self.cache_key(lang))
            if shared is not None and shared.expires_at > self.clock():
                self._live[lang] = shared
                return shared

            return await self._mint(lang)

    def invalidate(self, lang: str) -> None:
        self._live.pop(lang, None)
        self.cache.delete(self.cache_key(lang))

    async def refresh(self, lang: str) -> Token:
        """Drop the current token for ``lang`` and mint a replacement."""
        self.invalidate(lang)
        async with self._lock(lang):
            return await self._mint(lang)

    def clear(self) -> None:
        self._live.clear()

    def _lock(self, lang: str) -> asyncio.Lock:
        if lang not in self._locks:
            self._locks[lang] = asyncio.Lock()
        return self._locks[lang]

    async def _mint(self, lang: str) -> Token:
        ctx = RetryContext()
        retrying = self.retry_policy.retrying(ctx, "Token", on_reauth=lambda: self.invalidate(lang))
        try:
            async for attempt in retrying:
                with attempt:
                    logger.info(
                        "[Token] Generating new token for '%s' (attempt %d/%d)...",
                        lang,
                        ctx.attempt + 1,
                        self.retry_policy.max_attempts,
                    )
                    token = await self._bootstrap(lang)
        except Exception as exc:
            ctx.last_error = exc
            raise TokenAcquisitionFailed(describe_error(exc, "Token generation")) from exc

        self._live[lang] = token
        self.cache.set(self.cache_key(lang), token, self.settings.ttl_token)
        logger.info("[Token] ✅ Token generated for '%s'", lang)
        return token

    async def _bootstrap(self, lang: str) -> Token:
        timestamp = int(self.clock() * 1000)
        identity = new_identity()
        body = encode_body({"distinctId": None})

        headers = bootstrap_headers(identity, lang)
        headers["sn"] = self.signer.sign(self.signer.material(timestamp, body, identity))

        payload = await send_json(
            self.http,
            "POST",
            f"{self.settings.base_url}{BOOTSTRAP_ENDPOINT}",
            headers=headers,
            params={"timestamp": timestamp},
            content=body,
            timeout=self.settings.token_timeout,
        )

        bootstrap = BootstrapResponse.from_payload(payload)
        if not bootstrap.token or not bootstrap.user_id:
            raise InvalidTokenResponse("Invalid token response - user data missing")

        issued_at = self.clock()
        return Token(
            value=bootstrap.token,
            identity=identity,
            user_id=bootstrap.user_id,
            attribution_param=bootstrap.attribution_param,
            issued_at=issued_at,
            expires_at=issued_at + self.settings.token_lifetime,
        )

"""OAuth2 client-credentials tokens for the PISTE government API gateway.

The token cache is an explicit object owned by whoever builds the client, so
two clients never share state by accident and tests can pre-seed or inspect it.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from tendersniper.core.config import get_settings

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 60
MAX_ATTEMPTS = 3
INITIAL_BACKOFF_SECONDS = 1.0


class PisteAuthError(Exception):
    pass


class PisteTokenResponse(BaseModel):
    access_token: str
    expires_in: int
    token_type: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class TokenCache:
    access_token: Optional[str] = None
    expires_at: float = 0.0   # epoch seconds

    def valid(self, now: float) -> bool:
        return bool(self.access_token) and self.expires_at > now + EXPIRY_BUFFER_SECONDS

    def store(self, token: PisteTokenResponse, now: float) -> None:
        self.access_token = token.access_token
        self.expires_at = now + token.expires_in

    def clear(self) -> None:
        self.access_token = None
        self.expires_at = 0.0


class PisteAuthClient:
    """Fetches and caches PISTE access tokens."""

    def __init__(
        self,
        cache: Optional[TokenCache] = None,
        settings=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else TokenCache()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.settings.piste_client_id and self.settings.piste_client_secret)

    async def get_token(self) -> str:
        """Return a token valid for at least another minute, fetching one if needed."""
        async with self._lock:
            now = self._clock()
            if self.cache.valid(now):
                return self.cache.access_token

            if not self.configured:
                raise PisteAuthError("PISTE_CLIENT_ID / PISTE_CLIENT_SECRET not configured")

            logger.info("PISTE: token expired or missing, fetching a new one")
            token = await self._fetch_with_retry()
            self.cache.store(token, now)
            logger.info(f"PISTE: new token acquired, expires in {token.expires_in}s")
            return token.access_token

    async def _fetch_with_retry(self) -> PisteTokenResponse:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.settings.piste_client_id,
            "client_secret": self.settings.piste_client_secret,
            "scope": self.settings.piste_scope,
        }
        delay = INITIAL_BACKOFF_SECONDS
        last_error: Optional[Exception] = None

        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                try:
                    response = await client.post(self.settings.piste_token_url, data=form)
                except httpx.RequestError as e:
                    last_error = e
                    logger.warning(f"PISTE: network error (attempt {attempt}/{MAX_ATTEMPTS}): {e}")
                else:
                    if response.status_code >= 500:
                        last_error = PisteAuthError(f"PISTE token endpoint returned {response.status_code}")
                        logger.warning(
                            f"PISTE: {response.status_code} from token endpoint "
                            f"(attempt {attempt}/{MAX_ATTEMPTS})"
                        )
                    elif response.status_code >= 400:
                        raise PisteAuthError(
                            f"PISTE token request rejected [{response.status_code}]: {response.text[:200]}"
                        )
                    else:
                        try:
                            return PisteTokenResponse.model_validate(response.json())
                        except (ValueError, ValidationError) as e:
                            raise PisteAuthError(f"Unexpected PISTE token response: {e}") from e

                if attempt < MAX_ATTEMPTS:
                    await self._sleep(delay)
                    delay *= 2

        raise PisteAuthError(f"PISTE token request failed after {MAX_ATTEMPTS} attempts: {last_error}")

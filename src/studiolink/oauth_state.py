"""Signed, expiring, single-use OAuth ``state`` values.

The ``state`` round-trips through the browser between the consent redirect and
the callback, so it must bind the flow to one artist without trusting the
client.  Each value is an HS256 JWT carrying the artist id, an expiry and a
random nonce.  The nonce is registered in-process when issued and consumed on
first use, which rejects replays.

Note: the nonce registry lives in process memory.  With several worker
processes the callback must reach the worker that issued the state.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable

from jose import JWTError, jwt

from studiolink.errors import InvalidOAuthState

logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"
STATE_TOKEN_TYPE = "oauth_state"


class OAuthStateSigner:
    """Issues and consumes OAuth ``state`` tokens.

    Parameters
    ----------
    secret:
        HMAC key for signing.  Never sent to the browser.
    ttl_seconds:
        Lifetime of an issued state.
    clock:
        Monotonic clock used for nonce bookkeeping; overridable in tests.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not secret:
            raise ValueError("state secret must be a non-empty string")
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        # nonce -> monotonic expiry
        self._nonces: dict[str, float] = {}

    def issue(self, artist_id: str) -> str:
        """Return a new state bound to *artist_id*."""
        self._evict_expired()
        nonce = secrets.token_urlsafe(24)
        now = int(time.time())
        payload = {
            "sub": artist_id,
            "nonce": nonce,
            "iat": now,
            "exp": now + self._ttl_seconds,
            "type": STATE_TOKEN_TYPE,
        }
        self._nonces[nonce] = self._clock() + self._ttl_seconds
        return jwt.encode(payload, self._secret, algorithm=STATE_ALGORITHM)

    def consume(self, state: str) -> str:
        """Validate *state* and return the artist it was issued for.

        The state is single-use: a second call with the same value fails.

        Raises
        ------
        InvalidOAuthState
            If the value is malformed, forged, expired, of the wrong type,
            or already consumed.
        """
        if not state:
            raise InvalidOAuthState("Missing OAuth state parameter")
        try:
            payload = jwt.decode(state, self._secret, algorithms=[STATE_ALGORITHM])
        except JWTError as exc:
            logger.warning("Rejected OAuth state: %s", type(exc).__name__)
            raise InvalidOAuthState("Invalid or expired OAuth state") from exc

        artist_id = payload.get("sub")
        nonce = payload.get("nonce")
        if payload.get("type") != STATE_TOKEN_TYPE or not artist_id or not nonce:
            logger.warning("Rejected OAuth state: unexpected payload shape")
            raise InvalidOAuthState("Invalid OAuth state")

        self._evict_expired()
        if self._nonces.pop(nonce, None) is None:
            logger.warning("Rejected OAuth state: nonce unknown or already used")
            raise InvalidOAuthState("OAuth state has already been used or was not issued here")
        return str(artist_id)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [nonce for nonce, expiry in self._nonces.items() if now >= expiry]
        for nonce in expired:
            del self._nonces[nonce]

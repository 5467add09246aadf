"""
Last.fm session state machine.

    Disconnected --authenticate--> Authenticating --ok--> Connected(username)
                                                  --fail--> Error(message)
    Connected --invalidate--> Error(message)
    any --disconnect--> Disconnected

The session key and username are always stored and removed together; a
half-restored session (one without the other) is treated as no session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import pylast

from .credentials import SecretStore
from .errors import InvalidResponse, NetworkError, ScrobbleError, SessionExpired, error_for_code
from .models import Authenticating, Connected, Disconnected, Error, ScrobbleAuthState

log = logging.getLogger("scrobbler.session")


def map_pylast_error(e: Exception) -> ScrobbleError:
    """Translate pylast exceptions into the scrobble error taxonomy."""
    if isinstance(e, pylast.WSError):
        try:
            code = int(e.get_id())
        except (TypeError, ValueError):
            code = None
        return error_for_code(code, str(e))
    if isinstance(e, pylast.MalformedResponseError):
        return InvalidResponse(str(e))
    return NetworkError(str(e))


class LastFMSession:
    def __init__(self, secret_store: SecretStore, api_key: str, api_secret: str,
                 network_factory=pylast.LastFMNetwork,
                 generator_factory=pylast.SessionKeyGenerator,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.secret_store = secret_store
        self.api_key = api_key
        self.api_secret = api_secret
        self._network_factory = network_factory
        self._generator_factory = generator_factory
        self._sleep = sleep
        self._session_key: str | None = None
        self._auth_state: ScrobbleAuthState = Disconnected()
        # Bumped on disconnect so an in-flight web auth poll stops
        self._generation = 0

    @property
    def auth_state(self) -> ScrobbleAuthState:
        return self._auth_state

    @property
    def session_key(self) -> str | None:
        return self._session_key

    @property
    def is_connected(self) -> bool:
        return self._auth_state.is_connected

    def require_session_key(self) -> str:
        if self._session_key is None or not self.is_connected:
            raise SessionExpired()
        return self._session_key

    # -------- restore / disconnect --------
    def restore_session(self) -> ScrobbleAuthState:
        session_key = self.secret_store.get_session_key()
        username = self.secret_store.get_username()
        if session_key and username:
            self._session_key = session_key
            self._auth_state = Connected(username)
            log.info("Restored Last.fm session for user: %s", username)
        else:
            if session_key or username:
                log.warning("Stored Last.fm credentials incomplete; staying disconnected")
            self._session_key = None
            self._auth_state = Disconnected()
        return self._auth_state

    def disconnect(self) -> None:
        self._generation += 1
        self._session_key = None
        self.secret_store.remove_credentials()
        self._auth_state = Disconnected()
        log.info("Disconnected from Last.fm")

    def invalidate(self, message: str) -> None:
        """Stop using the current key after the service rejected it. Stored credentials stay."""
        self._session_key = None
        self._auth_state = Error(message)
        log.error("Last.fm session invalidated: %s", message)

    def _connect(self, session_key: str, username: str) -> None:
        self.secret_store.save_session_key(session_key)
        self.secret_store.save_username(username)
        self._session_key = session_key
        self._auth_state = Connected(username)
        log.info("Successfully authenticated as: %s", username)

    def _fail(self, message: str) -> None:
        self._session_key = None
        self._auth_state = Error(message)
        log.error("Last.fm authentication failed: %s", message)

    def _generator(self):
        network = self._network_factory(api_key=self.api_key, api_secret=self.api_secret)
        return self._generator_factory(network)

    # -------- credential exchange --------
    async def authenticate_with_password(self, username: str, password_md5: str) -> ScrobbleAuthState:
        """Mobile session: exchange username + MD5 password for a session key."""
        self._auth_state = Authenticating()
        log.info("Using Last.fm username + MD5 password auth")
        try:
            generator = self._generator()
            session_key = await asyncio.to_thread(generator.get_session_key, username, password_md5)
        except (pylast.PyLastError, OSError) as e:
            error = map_pylast_error(e)
            self._fail(str(error))
            raise error from e
        self._connect(session_key, username)
        return self._auth_state

    async def authenticate_with_session_key(self, session_key: str) -> ScrobbleAuthState:
        """Adopt an existing session key, asking Last.fm whose it is."""
        self._auth_state = Authenticating()
        log.info("Using LASTFM_SESSION_KEY (no username given; looking it up)")
        try:
            network = self._network_factory(api_key=self.api_key, api_secret=self.api_secret,
                                            session_key=session_key)
            user = await asyncio.to_thread(network.get_authenticated_user)
            username = await asyncio.to_thread(user.get_name, True)
        except (pylast.PyLastError, OSError) as e:
            error = map_pylast_error(e)
            self._fail(str(error))
            raise error from e
        self._connect(session_key, username)
        return self._auth_state

    async def authenticate_web(self, open_url: Callable[[str], object],
                               poll_interval: float = 2.0, max_polls: int = 60) -> ScrobbleAuthState:
        """Desktop flow: open the authorisation page, then poll until the user approves it."""
        self._auth_state = Authenticating()
        generation = self._generation
        log.info("Starting Last.fm authentication")
        try:
            generator = self._generator()
            url = await asyncio.to_thread(generator.get_web_auth_url)
        except (pylast.PyLastError, OSError) as e:
            error = map_pylast_error(e)
            self._fail(str(error))
            raise error from e

        open_url(url)
        log.info("Opened Last.fm authorization page: %s", url)

        for attempt in range(1, max_polls + 1):
            await self._sleep(poll_interval)
            if generation != self._generation:
                return self._auth_state
            try:
                session_key, username = await asyncio.to_thread(
                    generator.get_web_auth_session_key_username, url)
            except pylast.WSError as e:
                if e.get_id() in (pylast.STATUS_TOKEN_UNAUTHORIZED, str(pylast.STATUS_TOKEN_UNAUTHORIZED)):
                    continue
                error = map_pylast_error(e)
                self._fail(str(error))
                raise error from e
            except (pylast.PyLastError, OSError) as e:
                log.debug("Auth polling attempt %s failed: %s", attempt, e)
                continue
            if generation != self._generation:
                return self._auth_state
            self._connect(session_key, username)
            return self._auth_state

        self._fail("Authorization timed out. Please try again.")
        return self._auth_state

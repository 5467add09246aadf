import asyncio
import logging

from .bluos import BluOSClient
from .config import Settings
from .credentials import FileSecretStore
from .coordinator import ScrobblingCoordinator
from .errors import ScrobbleError
from .lastfm_client import LastFMClient
from .notifier import from_env as notifier_from_env
from .retry import RetryPolicy
from .scrobble_queue import ScrobbleQueue
from .session import LastFMSession
from .tracker import PlaybackTracker

log = logging.getLogger("bluos-lastfm")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,  # ensure our config is used even if libs pre-configure logging
    )


async def connect(settings: Settings, session: LastFMSession) -> None:
    """Restore the stored session, seeding it from the environment when asked to."""
    store = session.secret_store
    if settings.lastfm_session_key and settings.lastfm_username:
        store.save_session_key(settings.lastfm_session_key)
        store.save_username(settings.lastfm_username)

    session.restore_session()
    if settings.lastfm_session_key and session.session_key != settings.lastfm_session_key:
        # Key given without a username: Last.fm tells us whose it is
        await session.authenticate_with_session_key(settings.lastfm_session_key)
        return
    if session.is_connected:
        return

    if settings.lastfm_username and settings.lastfm_password_md5:
        await session.authenticate_with_password(settings.lastfm_username, settings.lastfm_password_md5)
    elif settings.lastfm_username or settings.lastfm_password_md5:
        log.warning("LASTFM_USERNAME and LASTFM_PASSWORD_MD5 must both be set for password auth")


async def run(settings: Settings) -> None:
    alert = notifier_from_env()
    session = LastFMSession(
        FileSecretStore(settings.credentials_path),
        api_key=settings.lastfm_api_key,
        api_secret=settings.lastfm_api_secret,
    )
    client = LastFMClient(session, api_url=settings.lastfm_api_url, retry=RetryPolicy.from_settings(settings))
    queue = ScrobbleQueue(settings.queue_dir)
    coordinator = ScrobblingCoordinator(
        client,
        session,
        queue,
        tracker=PlaybackTracker(settings.scrobble_percent, settings.scrobble_max_seconds),
        batch_size=settings.batch_size,
        flush_interval=settings.flush_interval,
        alert=alert,
    )

    try:
        await connect(settings, session)
    except ScrobbleError as e:
        # Keep tracking plays offline; they'll be flushed once the user fixes auth
        alert("ERROR", "Last.fm authentication failed", str(e))

    if not session.is_connected:
        log.warning("No Last.fm session; plays will be queued until one is configured")
    elif not await client.validate_session():
        # Could be an outage as well as a dead key; flushes will tell the two apart
        alert("WARNING", "Last.fm session check failed", "Scrobbles stay queued until Last.fm accepts them.",
              {"pending_queue_size": queue.size()})

    blu = BluOSClient(settings.bluos_host, settings.bluos_port)
    log.info("Starting BluOS → Last.fm bridge. Poll interval: %ss", settings.poll_interval)
    log.info("BluOS device: %s:%s | Queue: %s (size=%s) | Session: %s",
             settings.bluos_host, settings.bluos_port, queue.path, queue.size(), session.auth_state)
    alert("INFO", "Scrobbler started",
          f"Polling {settings.bluos_host}:{settings.bluos_port}; queue {queue.path}.")

    await coordinator.run(lambda: asyncio.to_thread(blu.get_sample), settings.poll_interval)


def main() -> None:
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    # Validate Last.fm configuration up-front for clear errors
    if not settings.lastfm_api_key or not settings.lastfm_api_secret:
        raise SystemExit("LASTFM_API_KEY and LASTFM_API_SECRET are required")

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        log.info("Shutting down…")


if __name__ == "__main__":
    main()

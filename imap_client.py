"""
IMAP mailbox session for fetching the latest emails

IMAPClient is synchronous, so every blocking call runs in a worker thread
and is bounded with asyncio.wait_for. A connection carries one command at a
time: the I/O lock is held by the worker thread itself, so a coroutine that
timed out never lets a second command onto the wire while the first is
still being answered.
"""
import asyncio
import threading
from enum import Enum
from typing import List, Optional

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError
from imapclient.imapclient import SocketTimeout
from loguru import logger

from errors import (
    ConfigurationError,
    FetchError,
    FetchTimeoutError,
    ImapConnectionError,
    ImapTimeoutError,
    MailboxError,
    SearchError,
)
from models import ImapConfig, MailboxMetadata

FETCH_CHUNK_SIZE = 1024 * 1024


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    SEARCHING = "searching"
    FETCHING = "fetching"
    CLOSED = "closed"


class MailboxSession:
    """One connected, authenticated handle to a single mailbox.

    Use ``MailboxSession.open()`` to construct; the instance is an async
    context manager that closes the connection on exit.
    """

    def __init__(self, config: ImapConfig):
        self.config = config
        self.state = SessionState.DISCONNECTED
        self.mailbox: Optional[MailboxMetadata] = None
        self._client: Optional[IMAPClient] = None
        self._closed = False
        self._io_lock = threading.Lock()
        self._handoff_lock = threading.Lock()
        self._fetch_queue = asyncio.Lock()

    @classmethod
    async def open(cls, config: ImapConfig) -> "MailboxSession":
        """Connect and log in, bounded by the overall connection timeout"""
        if not config.user or not config.password:
            raise ConfigurationError(
                "IMAP credentials not configured. Please set IMAP_USER and "
                "IMAP_PASSWORD environment variables."
            )

        session = cls(config)
        try:
            await asyncio.wait_for(session._connect(), timeout=config.connection_timeout)
        except TimeoutError:
            await session.close()
            raise ImapTimeoutError("IMAP connection timeout") from None
        except BaseException:
            await session.close()
            raise

        logger.info(f"Connected to IMAP server: {config.host}")
        return session

    async def __aenter__(self) -> "MailboxSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _connect(self):
        cfg = self.config
        self.state = SessionState.CONNECTING
        logger.info(f"Connecting to {cfg.host}:{cfg.port} (tls={cfg.use_tls}) as {cfg.user}")

        try:
            await asyncio.wait_for(self._call(self._open_socket), timeout=cfg.connect_timeout)
        except TimeoutError:
            raise ImapConnectionError(f"Timed out connecting to {cfg.host}:{cfg.port}") from None
        except (IMAPClientError, OSError) as e:
            raise ImapConnectionError(f"Failed to connect to IMAP server: {e}") from e

        try:
            await asyncio.wait_for(
                self._call(self._require_client().login, cfg.user, cfg.password),
                timeout=cfg.auth_timeout,
            )
        except TimeoutError:
            raise ImapConnectionError("Timed out waiting for IMAP authentication") from None
        except (IMAPClientError, OSError) as e:
            raise ImapConnectionError(f"IMAP authentication failed: {e}") from e

        self.state = SessionState.READY

    def _open_socket(self):
        cfg = self.config
        client = IMAPClient(
            cfg.host,
            port=cfg.port,
            use_uid=True,
            ssl=cfg.use_tls,
            timeout=SocketTimeout(connect=cfg.connect_timeout, read=cfg.read_timeout),
        )
        with self._handoff_lock:
            if not self._closed:
                self._client = client
                return
        # close() ran while the socket was being opened
        self._shutdown(client)
        raise ImapConnectionError("Session closed while connecting")

    def _locked(self, func, *args, **kwargs):
        with self._io_lock:
            return func(*args, **kwargs)

    async def _call(self, func, *args, **kwargs):
        return await asyncio.to_thread(self._locked, func, *args, **kwargs)

    def _wait_until_idle(self):
        # The socket read timeout bounds how long an abandoned read can hold this
        with self._io_lock:
            pass

    def _require_client(self, error_cls=ImapConnectionError) -> IMAPClient:
        client = self._client
        if client is None or self._closed:
            raise error_cls("IMAP session is not open")
        return client

    async def select_mailbox(self) -> MailboxMetadata:
        """Open the inbox read-only so flags are never touched"""
        client = self._require_client(MailboxError)
        name = self.config.mailbox
        try:
            info = await asyncio.wait_for(
                self._call(client.select_folder, name, readonly=True),
                timeout=self.config.command_timeout,
            )
        except TimeoutError:
            raise MailboxError(f"Timed out opening mailbox {name}") from None
        except (IMAPClientError, OSError) as e:
            raise MailboxError(f"Could not open mailbox {name}: {e}") from e

        self.mailbox = MailboxMetadata(
            name=name,
            exists=int(info.get(b"EXISTS", 0)),
            uid_validity=info.get(b"UIDVALIDITY"),
        )
        logger.info(f"Opened {name} ({self.mailbox.exists} messages)")
        return self.mailbox

    async def list_all_message_identifiers(self) -> List[int]:
        """UIDs of every message in the mailbox, oldest first"""
        client = self._require_client(SearchError)
        self.state = SessionState.SEARCHING
        try:
            ids = await asyncio.wait_for(
                self._call(client.search, ["ALL"]),
                timeout=self.config.command_timeout,
            )
        except TimeoutError:
            raise SearchError("Timed out searching mailbox") from None
        except (IMAPClientError, OSError) as e:
            raise SearchError(f"Mailbox search failed: {e}") from e
        finally:
            if self.state is SessionState.SEARCHING:
                self.state = SessionState.READY

        return sorted(int(uid) for uid in ids)

    async def fetch_body(self, identifier: int, timeout: Optional[float] = None) -> bytes:
        """Full RFC822 content of one message.

        Fetches wait their turn before the timeout starts, so queued
        requests are not charged for the time spent behind earlier ones,
        including a timed-out fetch whose worker is still reading.
        """
        timeout = self.config.read_timeout if timeout is None else timeout
        async with self._fetch_queue:
            await asyncio.to_thread(self._wait_until_idle)
            try:
                return await asyncio.wait_for(self._fetch_chunks(identifier), timeout=timeout)
            except TimeoutError:
                raise FetchTimeoutError(identifier, f"no data within {timeout:g}s") from None

    async def _fetch_chunks(self, identifier: int) -> bytes:
        self._require_client(lambda reason: FetchError(identifier, reason))
        cap = self.config.max_message_bytes
        buffer = bytearray()
        self.state = SessionState.FETCHING
        try:
            while True:
                chunk = await self._call(self._fetch_chunk, identifier, len(buffer))
                buffer.extend(chunk)
                logger.debug(f"Message {identifier}: {len(buffer)} bytes received")
                if len(buffer) > cap:
                    raise FetchError(identifier, f"message exceeds {cap} bytes")
                if len(chunk) < FETCH_CHUNK_SIZE:
                    break
        except (IMAPClientError, OSError) as e:
            raise FetchError(identifier, str(e)) from e
        finally:
            if self.state is SessionState.FETCHING:
                self.state = SessionState.READY

        if not buffer:
            raise FetchError(identifier, "No email data received")
        return bytes(buffer)

    def _fetch_chunk(self, identifier: int, offset: int) -> bytes:
        client = self._require_client(lambda reason: FetchError(identifier, reason))
        # BODY.PEEK leaves the \Seen flag alone
        section = f"BODY.PEEK[]<{offset}.{FETCH_CHUNK_SIZE}>"
        response = client.fetch([identifier], [section])
        data = response.get(identifier)
        if data is None:
            raise FetchError(identifier, "No email data received")
        for key, value in data.items():
            if key.startswith(b"BODY["):
                return value or b""
        raise FetchError(identifier, "Server returned no body section")

    async def close(self):
        """Log out and release the socket. Safe to call more than once."""
        with self._handoff_lock:
            if self._closed:
                return
            self._closed = True
            client, self._client = self._client, None
        self.state = SessionState.CLOSED
        if client is None:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._logout, client),
                timeout=self.config.close_timeout,
            )
        except TimeoutError:
            logger.warning(f"IMAP logout did not finish within {self.config.close_timeout:g}s")

    def _logout(self, client: IMAPClient):
        # A fetch abandoned by its timeout may still hold the connection
        if not self._io_lock.acquire(timeout=self.config.close_timeout):
            logger.warning("IMAP connection still busy, dropping socket")
            self._shutdown(client)
            return
        try:
            client.logout()
            logger.info("Disconnected from IMAP server")
        except Exception as e:
            logger.warning(f"Error during disconnect: {e}")
            self._shutdown(client)
        finally:
            self._io_lock.release()

    @staticmethod
    def _shutdown(client: IMAPClient):
        try:
            client.shutdown()
        except Exception as e:
            logger.debug(f"Error shutting down IMAP socket: {e}")

    def get_status(self) -> dict:
        """Get session status"""
        return {
            "state": self.state.value,
            "connected": self._client is not None,
            "server": self.config.host,
            "username": self.config.user,
            "mailbox": self.mailbox.model_dump() if self.mailbox else None,
        }

"""
Credential Broker

Resolves access tokens for connections and runs the credential pre-flight
that guards every reload.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable

import structlog

from tablesync.base.models import Connection
from tablesync.kernel.errors import ReauthenticationFailedError
from tablesync.state.store import SyncStateStore

logger = structlog.get_logger()


class CredentialBroker(ABC):
    """
    Abstract base class for credential resolution.

    Implementations should handle:
    - Silent refresh of interactive (user OAuth) tokens
    - Minting fresh tokens for service accounts
    - Returning None, not raising, when no valid token can be produced
    """

    @abstractmethod
    async def resolve(self, connection: Connection) -> str | None:
        """
        Get a valid access token without user interaction.

        Args:
            connection: Connection to resolve a token for

        Returns:
            Access token, or None if the connection needs re-authentication
        """
        pass

    @abstractmethod
    async def reauthenticate(self, connection: Connection) -> str:
        """
        Run the interactive sign-in flow for a connection.

        Args:
            connection: Interactive connection to re-authenticate

        Returns:
            Fresh access token

        Raises:
            ReauthenticationFailedError: If the user declined or the flow failed
        """
        pass


class CredentialGate:
    """
    Couples the broker with the re-authentication banner.

    Interactive connections that fail to resolve raise the banner flag in the
    store; a successful resolve clears it again.
    """

    def __init__(self, broker: CredentialBroker, store: SyncStateStore):
        self.broker = broker
        self.store = store

    async def token_for(self, connection: Connection) -> str | None:
        token = await self.broker.resolve(connection)
        if connection.is_interactive:
            if token:
                self.store.clear_auth_required(connection.id)
            else:
                self.store.raise_auth_required(connection.id)
        return token or None

    async def preflight(self, connections: Iterable[Connection], *, is_automatic: bool) -> bool:
        """
        Make sure every interactive connection can produce a token.

        Automatic runs never prompt: the first failing connection aborts the
        run. Manual runs get one interactive re-authentication attempt per
        failing connection before giving up.

        Returns:
            True if the run may proceed
        """
        seen: set[str] = set()
        for connection in connections:
            if connection.id in seen or not connection.is_interactive:
                continue
            seen.add(connection.id)

            if await self.token_for(connection):
                continue

            if is_automatic:
                logger.warning(
                    "Automatic reload aborted, credentials expired",
                    connection_id=connection.id,
                )
                self.store.log_activity(
                    "error",
                    "Auto-reload failed: credentials expired, sign in again",
                    target=connection.name or connection.id,
                )
                return False

            try:
                await self.broker.reauthenticate(connection)
            except ReauthenticationFailedError as e:
                logger.warning(
                    "Re-authentication failed",
                    connection_id=connection.id,
                    error=e.message,
                )
                self.store.log_activity(
                    "error",
                    "Reload failed: re-authentication was not completed",
                    target=connection.name or connection.id,
                )
                return False

            self.store.clear_auth_required(connection.id)
            logger.info("Re-authenticated connection", connection_id=connection.id)

        return True

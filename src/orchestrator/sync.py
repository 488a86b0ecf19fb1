"""Synchronization of externally connected MCP clients.

External clients (other desktop apps proxying through the host) mirror the
installed server catalog; they are re-synchronized after every install or
uninstall.
"""

from abc import ABC, abstractmethod

from shared.logging import get_logger
from shared.models import ServerRecord, ServerStatus

logger = get_logger(__name__)


class ExternalClientSync(ABC):
    """Pushes the server catalog to external clients."""

    @abstractmethod
    async def sync(self, servers: list[ServerRecord]) -> None:
        """
        Re-synchronize external clients.

        Args:
            servers: Every installed server record
        """
        pass


class LoggingClientSync(ExternalClientSync):
    """Default sync for hosts with no external clients connected."""

    async def sync(self, servers: list[ServerRecord]) -> None:
        installed = [s.id for s in servers if s.status == ServerStatus.INSTALLED]
        logger.info("External clients synchronized", servers=installed)

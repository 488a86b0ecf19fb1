"""JSON-file registry.

Keeps the in-memory registry as the working set and rewrites a single
JSON document after each mutation, so records survive restarts.
"""

import json
from pathlib import Path

import aiofiles

from shared.logging import get_logger
from shared.models import ServerRecord, ToolRecord

from mcp_registry.memory import InMemoryRegistry

logger = get_logger(__name__)


class FileRegistry(InMemoryRegistry):
    """Registry persisted to a JSON file."""

    def __init__(self, path: str = "data/registry.json") -> None:
        super().__init__()
        self.path = Path(path)

        # Ensure data directory exists
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def load(self) -> None:
        """Load records from disk. A missing file means an empty registry."""
        if not self.path.exists():
            return

        async with aiofiles.open(self.path, "r") as f:
            raw = await f.read()

        if not raw.strip():
            return

        data = json.loads(raw)

        async with self._lock:
            self._servers = {
                s["id"]: ServerRecord.model_validate(s) for s in data.get("servers", [])
            }
            self._tools = {
                t["id"]: ToolRecord.model_validate(t) for t in data.get("tools", [])
            }

        logger.info(
            "Registry loaded",
            path=str(self.path),
            servers=len(self._servers),
            tools=len(self._tools)
        )

    async def _persist(self) -> None:
        document = {
            "servers": [s.model_dump(mode="json") for s in self._servers.values()],
            "tools": [t.model_dump(mode="json") for t in self._tools.values()],
        }

        # Write to a sibling file first so a crash never leaves half a document
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(document, indent=2))
        tmp_path.replace(self.path)

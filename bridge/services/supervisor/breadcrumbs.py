"""Diagnostic breadcrumb writer for supervisor escalations."""
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class BreadcrumbWriter:
    """
    Append-only JSONL artifacts, one file per conversation.

    Files live under ``<runtime_data_dir>/thoughtflow/``. Every I/O failure is
    logged and swallowed; the writer can never fail a conversation.
    """

    def __init__(self, runtime_data_dir: Union[str, Path], enabled: bool = True):
        self.base_dir = Path(runtime_data_dir) / "thoughtflow"
        self.enabled = enabled

    def path_for(self, conversation_id: str) -> Path:
        return self.base_dir / f"{conversation_id}.jsonl"

    def _append(self, conversation_id: str, record: Dict[str, Any]) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(conversation_id)
        lines = []
        if not path.exists():
            lines.append(
                json.dumps(
                    {
                        "type": "session.created",
                        "conversation_id": conversation_id,
                        "started_at": datetime.utcnow().isoformat(),
                    }
                )
            )
        lines.append(json.dumps(record, default=str))
        with path.open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

    async def append(self, conversation_id: Optional[str], record: Dict[str, Any]) -> None:
        """Append one breadcrumb record."""
        if not self.enabled or not conversation_id:
            return
        try:
            await asyncio.to_thread(self._append, conversation_id, record)
        except Exception as e:
            logger.warning(f"[SUPERVISOR] Breadcrumb write failed for {conversation_id}: {type(e).__name__}: {str(e)}")

    async def end_conversation(self, conversation_id: str, ended_at: Optional[datetime] = None) -> None:
        """Close out a conversation's artifact with a ``session.ended`` record."""
        if not self.enabled or not self.path_for(conversation_id).exists():
            return
        await self.append(
            conversation_id,
            {
                "type": "session.ended",
                "conversation_id": conversation_id,
                "ended_at": (ended_at or datetime.utcnow()).isoformat(),
            },
        )

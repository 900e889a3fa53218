"""Ingestion pipeline: cache read → parse → store upsert, with operation tracking."""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Optional

from ccpulse.date_utils import format_iso, mtime_to_datetime, parse_timestamp, utc_now
from ccpulse.errors import ReadError
from ccpulse.ingest.cache import FileContentCache
from ccpulse.observability import record_ingestion, record_parse_warnings, start_span
from ccpulse.parsers.conversations import conversation_id_for_path, parse_conversation, project_path_for
from ccpulse.store import ConversationStore

logger = logging.getLogger("ccpulse.pipeline")

CONVERSATION_SUFFIX = ".jsonl"


def discover_conversation_files(root: Path) -> list[Path]:
    """Conversation logs under `root`, most recently modified first."""
    entries: list[tuple[int, Path]] = []
    for path in root.rglob(f"*{CONVERSATION_SUFFIX}"):
        try:
            if not path.is_file():
                continue
            entries.append((path.stat().st_mtime_ns, path))
        except OSError as exc:
            logger.warning("Skipping %s during scan: %s", path, exc)
    entries.sort(key=lambda item: item[0], reverse=True)
    return [path for _, path in entries]


class IngestionPipeline:
    """Turns a changed conversation file into an updated store entry.

    Failures are isolated per file: `ingest` logs and reports them but never
    raises, so one unreadable file cannot stall the others.
    """

    def __init__(
        self,
        cache: FileContentCache,
        store: ConversationStore,
        root: Path,
        executor: Optional[Executor] = None,
    ):
        self.cache = cache
        self.store = store
        self.root = Path(root)
        self._executor = executor
        self._operations: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._max_operation_history = 40
        self.metrics = {"ingested": 0, "readErrors": 0, "failures": 0, "parseWarnings": 0}

    async def ingest(self, path: Path, trigger: str = "watcher") -> dict[str, Any]:
        """Read, parse and store one conversation file; returns a result summary."""
        path = Path(path)
        conversation_id = conversation_id_for_path(path)
        started = time.perf_counter()
        result: dict[str, Any] = {"conversationId": conversation_id, "path": str(path), "status": "ok"}

        with start_span("ccpulse.ingest", {"conversation.id": conversation_id, "trigger": trigger}):
            try:
                entry = await self.cache.fetch(path)
                loop = asyncio.get_running_loop()
                parsed = await loop.run_in_executor(self._executor, parse_conversation, entry.content)
                conversation = await self.store.upsert(
                    conversation_id,
                    parsed.messages,
                    parsed.summary,
                    project_path=project_path_for(path, self.root),
                    source_path=str(path),
                    last_modified=mtime_to_datetime(entry.signature.mtime_ns),
                    file_size=entry.signature.size,
                )
                self.metrics["ingested"] += 1
                if parsed.warnings:
                    self.metrics["parseWarnings"] += len(parsed.warnings)
                    record_parse_warnings(len(parsed.warnings))
                    logger.warning(
                        "Skipped %d malformed line(s) in %s (first at line %d)",
                        len(parsed.warnings),
                        path,
                        parsed.warnings[0].line_number,
                    )
                result.update({
                    "state": conversation.currentState.value,
                    "messageCount": len(conversation.messages),
                    "warnings": [warning.as_dict() for warning in parsed.warnings],
                })
            except ReadError as exc:
                self.metrics["readErrors"] += 1
                result["status"] = "read_error"
                result["error"] = str(exc)
                if isinstance(exc.cause, FileNotFoundError) or not path.exists():
                    await self.store.mark_unreachable(conversation_id, "file no longer exists")
                elif isinstance(exc.cause, PermissionError):
                    await self.store.mark_unreachable(conversation_id, "permission denied")
                logger.warning("%s", exc)
            except Exception as exc:  # noqa: BLE001
                self.metrics["failures"] += 1
                result["status"] = "failed"
                result["error"] = str(exc)
                logger.error("Failed to ingest %s: %s", path, exc)

        duration_ms = (time.perf_counter() - started) * 1000
        result["durationMs"] = round(duration_ms, 2)
        record_ingestion(trigger, result["status"], duration_ms)
        return result

    async def ingest_all(self, root: Optional[Path] = None, trigger: str = "startup") -> dict[str, Any]:
        """Ingest every conversation file under `root`, most recent first."""
        scan_root = Path(root) if root is not None else self.root
        operation = self.start_operation("initial_scan", trigger, {"root": str(scan_root)})
        stats = {"files": 0, "ingested": 0, "failed": 0, "operation_id": operation["id"]}
        try:
            loop = asyncio.get_running_loop()
            paths = await loop.run_in_executor(self._executor, discover_conversation_files, scan_root)
            stats["files"] = len(paths)
            logger.info("Ingesting %d conversation file(s) under %s", len(paths), scan_root)
            for index, path in enumerate(paths, start=1):
                outcome = await self.ingest(path, trigger=trigger)
                if outcome["status"] == "ok":
                    stats["ingested"] += 1
                else:
                    stats["failed"] += 1
                operation["progress"] = {"processed": index, "total": len(paths)}
        except Exception as exc:  # noqa: BLE001
            self._finish_operation(operation, "failed", stats, error=str(exc))
            raise
        self._finish_operation(operation, "completed", stats)
        logger.info("Initial scan ingested %d/%d conversation file(s)", stats["ingested"], stats["files"])
        return stats

    # ── Operation tracking ─────────────────────────────────────────

    def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create an observable operation; the returned record is updated in place."""
        operation = {
            "id": f"OP-{uuid.uuid4()}",
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "startedAt": format_iso(utc_now()),
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "stats": {},
            "metadata": metadata or {},
            "error": "",
        }
        self._operations[operation["id"]] = operation
        while len(self._operations) > self._max_operation_history:
            self._operations.popitem(last=False)
        logger.info("Operation started [%s] %s (trigger=%s)", operation["id"], kind, trigger)
        return operation

    def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Latest operations, newest first."""
        newest = list(reversed(self._operations.values()))[: max(1, limit)]
        return [copy.deepcopy(operation) for operation in newest]

    def get_operation(self, operation_id: str) -> Optional[dict[str, Any]]:
        operation = self._operations.get(operation_id)
        return copy.deepcopy(operation) if operation else None

    def operations_snapshot(self) -> dict[str, Any]:
        active = [op for op in self._operations.values() if op["status"] == "running"]
        return {
            "activeOperationCount": len(active),
            "activeOperations": copy.deepcopy(active),
            "trackedOperationCount": len(self._operations),
            "ingestion": dict(self.metrics),
        }

    def _finish_operation(
        self,
        operation: dict[str, Any],
        status: str,
        stats: dict[str, Any],
        error: str = "",
    ) -> None:
        finished = utc_now()
        operation["status"] = status
        operation["finishedAt"] = format_iso(finished)
        operation["stats"] = dict(stats)
        operation["error"] = error
        started_at = parse_timestamp(operation["startedAt"])
        operation["durationMs"] = max(0, int((finished - started_at).total_seconds() * 1000)) if started_at else 0
        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation["id"], error)
        else:
            logger.info("Operation finished [%s] status=%s", operation["id"], status)

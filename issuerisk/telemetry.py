"""Telemetry for the risk engine.

Named events (``risk.hydrationComplete``, ``risk.commentFailed``, ...) are
logged and appended to a JSONL file so humans can see what the engine did and
why. Each line is a JSON object with timestamp, event name, string properties
and numeric measurements.

The event log lives alongside issuerisk.db by default. Telemetry is
fire-and-forget: a sink never raises into the code that reports to it.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    def track_event(
        self,
        name: str,
        properties: dict[str, str] | None = None,
        measurements: dict[str, float] | None = None,
    ) -> None: ...


def resolve_event_log_path() -> Path:
    """Find the log file path, checking env var then defaulting next to the DB."""
    env_path = os.getenv("ISSUERISK_EVENT_LOG")
    if env_path:
        return Path(env_path)

    db_path = os.getenv("ISSUERISK_DB_PATH", "issuerisk.db")
    return Path(db_path).parent / "issuerisk-events.jsonl"


class EventLog:
    """Telemetry sink that logs each event and appends it to a JSONL file."""

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path

    @property
    def log_path(self) -> Path:
        return self._log_path or resolve_event_log_path()

    def track_event(
        self,
        name: str,
        properties: dict[str, str] | None = None,
        measurements: dict[str, float] | None = None,
    ) -> None:
        logger.debug(f"{name} {properties or {}} {measurements or {}}")
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "properties": properties or {},
            "measurements": measurements or {},
        }
        try:
            with open(self.log_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.debug(f"Could not write telemetry event {name}: {e}")


class NullTelemetry:
    """Sink for callers that opt out of telemetry."""

    def track_event(
        self,
        name: str,
        properties: dict[str, str] | None = None,
        measurements: dict[str, float] | None = None,
    ) -> None:
        return None


def read_event_log(
    limit: int = 20,
    name: str | None = None,
    log_path: Path | None = None,
) -> list[dict]:
    """Read recent telemetry events.

    Returns entries in reverse chronological order (most recent first).
    """
    path = log_path or resolve_event_log_path()
    if not path.exists():
        return []

    entries: list[dict] = []
    for line in path.read_text().splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue

        if name and entry.get("name") != name:
            continue

        entries.append(entry)

    entries.reverse()
    return entries[:limit]

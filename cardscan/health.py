"""
Per-engine health records.

Each recognition attempt and each probe replaces the engine's record with a
fresh frozen value, so readers never see a half-written one.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Optional

from .models import EngineHealth

logger = logging.getLogger(__name__)


class EngineHealthRegistry:
    """Thread-safe map of engine id to its latest EngineHealth."""

    def __init__(self):
        self._records: Dict[str, EngineHealth] = {}
        self._lock = threading.Lock()

    def mark_healthy(self, engine_id: str, response_time_ms: int) -> EngineHealth:
        record = EngineHealth(
            engine_id=engine_id,
            is_healthy=True,
            response_time_ms=max(0, int(response_time_ms)),
            checked_at=datetime.utcnow(),
        )
        self._replace(record)
        return record

    def mark_unhealthy(self, engine_id: str, error: str, response_time_ms: int = 0) -> EngineHealth:
        record = EngineHealth(
            engine_id=engine_id,
            is_healthy=False,
            last_error=error,
            response_time_ms=max(0, int(response_time_ms)),
            checked_at=datetime.utcnow(),
        )
        self._replace(record)
        logger.warning(f"Engine {engine_id} marked unhealthy: {error}")
        return record

    def get(self, engine_id: str) -> Optional[EngineHealth]:
        with self._lock:
            return self._records.get(engine_id)

    def is_healthy(self, engine_id: str) -> bool:
        """Engines never checked are assumed healthy."""
        record = self.get(engine_id)
        return record is None or record.is_healthy

    def snapshot(self) -> Dict[str, EngineHealth]:
        with self._lock:
            return dict(self._records)

    def _replace(self, record: EngineHealth) -> None:
        with self._lock:
            self._records[record.engine_id] = record

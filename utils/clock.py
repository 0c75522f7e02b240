"""Wall-clock helpers shared by the scheduler, queue and consumer."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]


def epoch_ms() -> int:
    """Current Unix time in whole milliseconds."""
    return int(time.time() * 1000)


def iso_now() -> str:
    """UTC timestamp like 2024-11-05T16:00:00.123Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

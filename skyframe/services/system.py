"""Host readings shown next to the photo: CPU temperature and the clock."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models import ClockReading

THERMAL_ZONE = Path("/sys/class/thermal/thermal_zone0/temp")


def get_cpu_temperature(path: Path = THERMAL_ZONE) -> Optional[float]:
    """CPU temperature in °C, or ``None`` where the host does not expose one."""

    if not sys.platform.startswith("linux"):
        return None
    try:
        raw = path.read_text(encoding="utf-8").strip()
        return int(raw) / 1000.0
    except (OSError, ValueError):
        return None


def get_current_time(now: Optional[datetime] = None) -> ClockReading:
    now = now or datetime.now().astimezone()
    return ClockReading(
        time=now.strftime("%H:%M"),
        day_of_week=now.strftime("%A"),
        date=f"{now.strftime('%b')} {now.day}, {now.year}",
    )

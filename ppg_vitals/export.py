"""
Export record handed to the persistence collaborator at session end.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExportRecord:
    raw_signal:               List[float]
    filtered_signal:          List[float]
    peak_locations:           List[int]
    sampling_rate:            float
    signal_quality_metrics:   Dict[str, Any]
    environmental_conditions: Optional[Dict[str, Any]] = None
    created_at:               datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), **kwargs)

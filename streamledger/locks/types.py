from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class HeavyOpsLockHolder:
    job_type: str
    job_id: str
    description: str
    started_at: datetime
    expires_at: datetime


def holder_to_dict(holder: HeavyOpsLockHolder) -> dict[str, Any]:
    return {
        "job_type": holder.job_type,
        "job_id": holder.job_id,
        "description": holder.description,
        "started_at": holder.started_at,
        "expires_at": holder.expires_at,
    }

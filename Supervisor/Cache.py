"""
Connector cache statistics, as reported by the agents.

The enrichment connectors cache inside the agent processes. At the end of a
run an agent records the lookups of that run under details["cache"]:

    {"hits": 120, "misses": 30, "memory_size": 48}

The Cache probe reads those reports back from the run ledger.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from Database import utcnow
from Supervisor.RunLedger import RunLedger

logger = logging.getLogger(__name__)

CACHE_REPORT_KEY = "cache"
CACHE_WINDOW = timedelta(hours=24)


def _count(stats: dict, key: str) -> int:
    try:
        return max(int(stats.get(key) or 0), 0)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed cache counter {key}={stats.get(key)!r}")
        return 0


def reported_cache_stats(db: Session, now: Optional[datetime] = None) -> dict:
    """
    Hits and misses summed over the runs of the last 24 hours.

    memory_size is the sum of each agent's most recent report, since entries
    live on between runs of the same agent.
    """
    now = now or utcnow()
    hits = 0
    misses = 0
    memory_sizes: Dict[str, int] = {}

    for run, stats in RunLedger(db).reported_details(CACHE_REPORT_KEY, now - CACHE_WINDOW):
        hits += _count(stats, "hits")
        misses += _count(stats, "misses")
        memory_sizes.setdefault(run.agent, _count(stats, "memory_size"))

    total = hits + misses
    return {
        "hits": hits,
        "misses": misses,
        "memory_size": sum(memory_sizes.values()),
        "hit_rate": hits / total if total > 0 else 0.0,
    }

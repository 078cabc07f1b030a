"""bithedge_oracle.pipeline — Service wiring and polling schedule."""

from bithedge_oracle.pipeline.scheduler import AdaptivePollingPolicy, Scheduler, next_daily_run
from bithedge_oracle.pipeline.service import OracleService

__all__ = ["AdaptivePollingPolicy", "OracleService", "Scheduler", "next_daily_run"]

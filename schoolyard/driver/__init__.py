"""Crawl driver: scheduling, anti-blocking and job bookkeeping.

This package provides:
- RequestScheduler, the bounded and rate-limited work queue
- AntiBlockingLayer with proxy tiers, session rotation and header synthesis
- JobRegistry and the output channels that receive each job's result
"""

from schoolyard.driver.anti_blocking import (
    AntiBlockingLayer,
    SessionPool,
    TieredProxyConfiguration,
)
from schoolyard.driver.autoscale import AutoscaledConcurrency
from schoolyard.driver.channels import (
    BufferedChannel,
    OutputChannel,
    StreamingChannel,
)
from schoolyard.driver.jobs import CrawlJob, JobRegistry, JoinPolicy
from schoolyard.driver.scheduler import RequestScheduler, SchedulerStats

__all__ = [
    "AntiBlockingLayer",
    "AutoscaledConcurrency",
    "BufferedChannel",
    "CrawlJob",
    "JobRegistry",
    "JoinPolicy",
    "OutputChannel",
    "RequestScheduler",
    "SchedulerStats",
    "SessionPool",
    "StreamingChannel",
    "TieredProxyConfiguration",
]

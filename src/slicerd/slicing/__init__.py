"""Slicing job processing: request model, state machine, stats, runner and pipeline."""

from slicerd.slicing.models import ResourceRef, SlicingRequest, StageTiming
from slicerd.slicing.pipeline import JobPipeline, Outcome
from slicerd.slicing.runner import SlicerResult, SlicerRunner
from slicerd.slicing.state import JobState, JobStateMachine
from slicerd.slicing.stats import StatsAggregator, hourly_stats_key
from slicerd.slicing.workspace import Workspace

__all__ = [
    "JobPipeline",
    "JobState",
    "JobStateMachine",
    "Outcome",
    "ResourceRef",
    "SlicerResult",
    "SlicerRunner",
    "SlicingRequest",
    "StageTiming",
    "StatsAggregator",
    "Workspace",
    "hourly_stats_key",
]

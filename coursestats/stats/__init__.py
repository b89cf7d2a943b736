"""
时间片统计
Timeslice Statistics

窗口计算、时间片存储和增量聚合。
Window computation, the timeslice store and incremental aggregation.
"""

from coursestats.stats.models import (
    ArticleCourseTimeslice,
    ArticlesCourses,
    CounterDelta,
    CourseStats,
    CourseUserStats,
    CourseUserWikiTimeslice,
    CourseWikiTimeslice,
    RevisionDelta,
    RevisionRecord,
    UploadRecord,
    Window,
)
from coursestats.stats.store import TimesliceStore, merge_delta
from coursestats.stats.windows import build_windows, clip_windows, find_window, window_for
from coursestats.stats.aggregator import AggregationResult, StatsAggregator

__all__ = [
    # Models
    "ArticleCourseTimeslice",
    "ArticlesCourses",
    "CounterDelta",
    "CourseStats",
    "CourseUserStats",
    "CourseUserWikiTimeslice",
    "CourseWikiTimeslice",
    "RevisionDelta",
    "RevisionRecord",
    "UploadRecord",
    "Window",
    # Store
    "TimesliceStore",
    "merge_delta",
    # Windows
    "build_windows",
    "clip_windows",
    "find_window",
    "window_for",
    # Aggregation
    "AggregationResult",
    "StatsAggregator",
]

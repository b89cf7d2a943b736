# Services module - 更新服务
# 课程更新编排、错误追踪和功能开关

from .error_tracking import ErrorTracker, LoggingErrorTracker
from .features import ARTICLE_STATUS, ConfigFeatureLookup, FeatureLookup
from .update_course_stats import UpdateCourseStats, update_course_stats

__all__ = [
    "ErrorTracker",
    "LoggingErrorTracker",
    "ARTICLE_STATUS",
    "ConfigFeatureLookup",
    "FeatureLookup",
    "UpdateCourseStats",
    "update_course_stats",
]

"""
异常定义
Exception Hierarchy

课程统计更新过程中使用的异常类型。
Exception types used while updating course statistics.
"""


class CourseStatsError(Exception):
    """Base class for all course statistics errors."""


class FetchError(CourseStatsError):
    """
    外部数据源获取失败（网络错误、远端 5xx、响应格式错误）
    An external fetch failed (network error, remote 5xx, malformed payload).
    """


class ConfigurationError(CourseStatsError):
    """
    配置错误，例如课程未关联该 wiki
    Configuration problem, e.g. the wiki is not associated with the course.

    只会中止当前 wiki 的处理。
    Aborts processing of the current wiki only.
    """


class MalformedRecordError(CourseStatsError, ValueError):
    """A single fetched record could not be parsed."""

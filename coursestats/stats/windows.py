"""
时间片窗口计算
Timeslice Window Computation

将课程活动期按固定长度切分为连续、互不重叠的缓存窗口。
Splits a course's active period into contiguous, non-overlapping cache
windows of fixed length.
"""

from bisect import bisect_right
from datetime import datetime, timedelta

from coursestats.stats.models import Window
from coursestats.utils.timestamps import to_utc, utc_now


def build_windows(
    start: datetime,
    end: datetime,
    chunk: timedelta,
    now: datetime | None = None
) -> list[Window]:
    """
    生成窗口列表
    Build the window list

    从 start 开始按 chunk 切分 [start, min(end, now)]，最后一个窗口截断。
    Divides [start, min(end, now)] into chunk-sized windows starting at
    ``start``; the final window is truncated.

    Args:
        start: 课程开始 / Course start
        end: 课程结束 / Course end
        chunk: 窗口长度 / Window length
        now: 当前时间（默认 UTC 当前时间）/ Current time (defaults to UTC now)

    Returns:
        按时间递增排列的窗口；start 不早于上界时返回空列表
        Windows in increasing order; empty when start is not before the bound

    Examples:
        >>> from datetime import datetime, timedelta, timezone
        >>> s = datetime(2018, 11, 23, tzinfo=timezone.utc)
        >>> ws = build_windows(s, s + timedelta(hours=36), timedelta(days=1), now=s + timedelta(days=5))
        >>> [(w.end - w.start).total_seconds() / 3600 for w in ws]
        [24.0, 12.0]
    """
    if chunk <= timedelta(0):
        raise ValueError(f"Window chunk must be positive, got {chunk}")

    start = to_utc(start)
    bound = min(to_utc(end), to_utc(now) if now is not None else utc_now())

    windows: list[Window] = []
    cursor = start
    while cursor < bound:
        window_end = min(cursor + chunk, bound)
        windows.append(Window(cursor, window_end))
        cursor = window_end
    return windows


def find_window(timestamp: datetime, windows: list[Window]) -> Window | None:
    """
    在有序窗口列表中查找包含 timestamp 的窗口
    Find the window containing ``timestamp`` in a sorted window list
    """
    timestamp = to_utc(timestamp)
    index = bisect_right([w.start for w in windows], timestamp) - 1
    if index >= 0 and windows[index].contains(timestamp):
        return windows[index]
    return None


def clip_windows(windows: list[Window], start: datetime, end: datetime) -> list[Window]:
    """
    筛选与 [start, end) 相交的窗口
    Keep the windows that overlap [start, end)
    """
    start, end = to_utc(start), to_utc(end)
    return [w for w in windows if w.start < end and w.end > start]


def window_for(timestamp: datetime, start: datetime, chunk: timedelta) -> Window:
    """
    计算 timestamp 所属的完整窗口（不考虑截断）
    Compute the full-length window containing ``timestamp`` (ignoring truncation)

    Raises:
        ValueError: timestamp 早于 start 或 chunk 非正
                    timestamp before start, or a non-positive chunk
    """
    if chunk <= timedelta(0):
        raise ValueError(f"Window chunk must be positive, got {chunk}")
    timestamp, start = to_utc(timestamp), to_utc(start)
    if timestamp < start:
        raise ValueError(f"{timestamp.isoformat()} is before {start.isoformat()}")
    index = (timestamp - start) // chunk
    window_start = start + index * chunk
    return Window(window_start, window_start + chunk)

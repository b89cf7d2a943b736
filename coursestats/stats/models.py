"""
统计数据模型
Statistics Data Models

定义时间片缓存记录、获取到的修订/上传记录以及增量记录。
Defines the timeslice cache records, the fetched revision/upload records
and the delta records that flow between them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from coursestats.exceptions import MalformedRecordError
from coursestats.utils.timestamps import parse_timestamp

# MediaWiki 命名空间
# MediaWiki namespaces
MAINSPACE = 0
USER_NAMESPACE = 2
USER_TALK_NAMESPACE = 3
DRAFT_NAMESPACE = 118


@dataclass(frozen=True, order=True)
class Window:
    """
    缓存时间窗口 [start, end)
    Cache window [start, end)

    最后一个窗口的 end 可能被截断到课程结束或当前时间。
    The last window's end may be truncated to the course end or "now".
    """
    start: datetime
    end: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= timestamp < self.end


@dataclass
class CourseWikiTimeslice:
    """
    课程-wiki 时间片
    Course/Wiki Timeslice

    一个窗口内课程在某个 wiki 上的统计，以及该窗口的高水位标记。
    Course statistics on one wiki for one window, plus the window's
    high-water mark.

    Attributes:
        last_mw_rev_id: 已处理的最大修订 ID / Last processed revision id
        last_mw_rev_datetime: 已处理的最新修订时间 / Last processed revision time
        last_upload_datetime: 已处理的最新上传时间 / Last processed upload time
    """
    COUNTERS: ClassVar[tuple[str, ...]] = (
        'character_sum', 'references_count', 'revision_count',
        'upload_count', 'uploads_in_use_count', 'upload_usages_count',
    )

    course_id: int
    wiki_id: int
    start: datetime
    end: datetime
    id: int | None = None
    last_mw_rev_id: int | None = None
    last_mw_rev_datetime: datetime | None = None
    last_upload_datetime: datetime | None = None
    character_sum: int = 0
    references_count: int = 0
    revision_count: int = 0
    upload_count: int = 0
    uploads_in_use_count: int = 0
    upload_usages_count: int = 0

    @property
    def window(self) -> Window:
        return Window(self.start, self.end)


@dataclass
class CourseUserWikiTimeslice:
    """
    课程-用户-wiki 时间片
    Course/User/Wiki Timeslice

    字符贡献按命名空间拆分：主命名空间、用户/用户讨论、草稿。
    Character contribution is split into mainspace, user/user talk and
    draft space.
    """
    COUNTERS: ClassVar[tuple[str, ...]] = (
        'character_sum_ms', 'character_sum_us', 'character_sum_draft',
        'references_count', 'revision_count', 'total_uploads',
    )

    course_id: int
    user_id: int
    wiki_id: int
    start: datetime
    end: datetime
    id: int | None = None
    character_sum_ms: int = 0
    character_sum_us: int = 0
    character_sum_draft: int = 0
    references_count: int = 0
    revision_count: int = 0
    total_uploads: int = 0


@dataclass
class ArticlesCourses:
    """
    文章-课程缓存
    Article/Course cache

    tracked 为 False 的文章仍累计字符和引用增量，但不计修订数。
    Untracked articles still accrue character and reference deltas but not
    revision_count.
    """
    COUNTERS: ClassVar[tuple[str, ...]] = (
        'character_sum', 'references_count', 'revision_count',
    )

    article_id: int
    course_id: int
    wiki_id: int
    id: int | None = None
    character_sum: int = 0
    references_count: int = 0
    revision_count: int = 0
    user_ids: set[int] = field(default_factory=set)
    tracked: bool = True


@dataclass
class ArticleCourseTimeslice:
    """文章-课程时间片，统计字段同 ArticlesCourses / Same statistics as ArticlesCourses, per window"""
    COUNTERS: ClassVar[tuple[str, ...]] = (
        'character_sum', 'references_count', 'revision_count',
    )

    article_id: int
    course_id: int
    wiki_id: int
    start: datetime
    end: datetime
    id: int | None = None
    character_sum: int = 0
    references_count: int = 0
    revision_count: int = 0
    user_ids: set[int] = field(default_factory=set)


@dataclass
class CourseStats:
    """课程级汇总 / Course-level totals"""
    course_id: int
    character_sum: int = 0
    references_count: int = 0
    revision_count: int = 0
    upload_count: int = 0
    uploads_in_use_count: int = 0
    upload_usages_count: int = 0
    user_count: int = 0
    article_count: int = 0


@dataclass
class CourseUserStats:
    """参与者在课程中的汇总 / Per-participant totals for a course"""
    course_id: int
    user_id: int
    character_sum_ms: int = 0
    character_sum_us: int = 0
    character_sum_draft: int = 0
    references_count: int = 0
    revision_count: int = 0
    total_uploads: int = 0

    @property
    def character_sum(self) -> int:
        return self.character_sum_ms + self.character_sum_us + self.character_sum_draft


# =============================================================================
# Fetched records
# =============================================================================

def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise MalformedRecordError(f"missing '{key}'")
    return data[key]


def _as_int(data: dict[str, Any], key: str, default: int | None = None) -> int:
    value = data.get(key, default)
    if value is None:
        raise MalformedRecordError(f"missing '{key}'")
    if isinstance(value, bool):
        raise MalformedRecordError(f"'{key}' must be an integer, got bool")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"'{key}' must be an integer: {value!r}") from e


def _as_bool(data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise MalformedRecordError(f"'{key}' must be a boolean: {value!r}")
    return value


def _as_timestamp(data: dict[str, Any]) -> datetime:
    try:
        return parse_timestamp(_require(data, 'timestamp'))
    except ValueError as e:
        raise MalformedRecordError(f"bad timestamp: {data.get('timestamp')!r}") from e


@dataclass(frozen=True)
class RevisionRecord:
    """
    获取到的修订记录
    Fetched Revision Record

    char_delta 为字符数变化（近似值，不是精确 diff）。
    char_delta is a character-count proxy, not an exact diff.
    """
    revision_id: int
    article_id: int
    user_id: int
    timestamp: datetime
    char_delta: int = 0
    ref_delta: int = 0
    deleted: bool = False
    namespace: int = MAINSPACE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RevisionRecord":
        """
        从适配器返回的字典解析
        Parse a dict returned by a revision fetcher

        Raises:
            MalformedRecordError: 字段缺失或类型错误
                                  Missing or mistyped field
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(f"revision must be a dict, got {type(data).__name__}")
        return cls(
            revision_id=_as_int(data, 'revision_id'),
            article_id=_as_int(data, 'article_id'),
            user_id=_as_int(data, 'user_id'),
            timestamp=_as_timestamp(data),
            char_delta=_as_int(data, 'char_delta', 0),
            ref_delta=_as_int(data, 'ref_delta', 0),
            deleted=_as_bool(data, 'deleted'),
            namespace=_as_int(data, 'namespace', MAINSPACE),
        )


@dataclass(frozen=True)
class UploadRecord:
    """获取到的上传记录 / Fetched upload record"""
    user_id: int
    timestamp: datetime
    usage_count: int = 0
    upload_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadRecord":
        if not isinstance(data, dict):
            raise MalformedRecordError(f"upload must be a dict, got {type(data).__name__}")
        usage_count = _as_int(data, 'usage_count', 0)
        if usage_count < 0:
            raise MalformedRecordError(f"negative usage_count: {usage_count}")
        upload_id = data.get('upload_id')
        return cls(
            user_id=_as_int(data, 'user_id'),
            timestamp=_as_timestamp(data),
            usage_count=usage_count,
            upload_id=int(upload_id) if upload_id is not None else None,
        )


# =============================================================================
# Deltas
# =============================================================================

@dataclass(frozen=True)
class RevisionDelta:
    """
    单条修订的增量
    Delta of a single revision

    一次获取产生的每条修订都转换为一个 RevisionDelta，再由四个独立的
    合并函数分别写入四个缓存范围。
    Every accepted revision becomes one RevisionDelta which four independent
    merge functions apply to the four cache scopes.
    """
    revision: RevisionRecord
    window: Window
    is_student: bool
    tracked: bool | None  # None: article not associated with the course

    @property
    def counts_revision(self) -> bool:
        return not self.revision.deleted and self.tracked is not False

    @property
    def counts_tracked_revision(self) -> bool:
        return not self.revision.deleted and self.tracked is True


@dataclass
class CounterDelta:
    """
    带符号的计数器增量以及可选的高水位标记
    Signed counter deltas plus an optional high-water mark
    """
    counters: dict[str, int] = field(default_factory=dict)
    revision_id: int | None = None
    revision_datetime: datetime | None = None
    upload_datetime: datetime | None = None

    def add(self, name: str, amount: int) -> None:
        self.counters[name] = self.counters.get(name, 0) + amount


def counter_values(record: Any) -> dict[str, int]:
    """返回记录的计数器字段 / Return a record's counter fields"""
    return {name: getattr(record, name) for name in record.COUNTERS}

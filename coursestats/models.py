"""
数据模型模块
Core Data Models

定义课程、wiki、参与者以及课程标志位（含更新日志）等数据类。
Defines dataclasses for courses, wikis, participants and the typed course
flags (including the update log).
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import IntEnum
from typing import Any

from coursestats.utils.timestamps import from_db, to_db, to_utc

# 项目级 wiki（无语言代码）对应的域名
# Domains for project-wide wikis that have no language code
MULTILINGUAL_DOMAINS = {
    'wikidata': 'www.wikidata.org',
    'commons': 'commons.wikimedia.org',
    'meta': 'meta.wikimedia.org',
    'incubator': 'incubator.wikimedia.org',
}


class Role(IntEnum):
    """课程参与者角色 / Course participant role"""
    STUDENT = 0
    INSTRUCTOR = 1


@dataclass(frozen=True)
class Wiki:
    """
    Wiki 标识
    Wiki Identity

    (language, project) 不可变值对象。项目级 wiki（如 wikidata）的
    language 为 None。id 由存储层分配，不参与相等比较。
    Immutable (language, project) value object. Project-wide wikis such as
    wikidata have ``language=None``. ``id`` is assigned by the store and does
    not take part in equality.

    Examples:
        >>> Wiki('en', 'wikipedia').domain
        'en.wikipedia.org'
        >>> Wiki(None, 'wikidata').domain
        'www.wikidata.org'
    """
    language: str | None
    project: str
    id: int | None = field(default=None, compare=False)

    @property
    def domain(self) -> str:
        if self.language is None:
            if self.project in MULTILINGUAL_DOMAINS:
                return MULTILINGUAL_DOMAINS[self.project]
            return f"www.{self.project}.org"
        return f"{self.language}.{self.project}.org"

    @property
    def api_url(self) -> str:
        return f"https://{self.domain}/w/api.php"

    def __str__(self) -> str:
        return self.domain


@dataclass(frozen=True)
class Participant:
    """课程参与者 / Course participant"""
    user_id: int
    username: str
    role: Role = Role.STUDENT

    @property
    def is_student(self) -> bool:
        return self.role == Role.STUDENT


@dataclass(frozen=True)
class UpdateLogEntry:
    """
    更新日志条目
    Update Log Entry

    每次课程更新运行追加一条，之后不再修改。
    One entry is appended per course update run and never changed afterwards.

    Attributes:
        run_number: 该课程的第几次更新（从 1 开始）
                    Ordinal of the run for the course (1-based)
        start_time: 开始时间 / Run start
        end_time: 结束时间 / Run end
        error_count: 本次运行的错误数 / Errors counted during the run
        correlation_id: 关联 ID，同时用于外部错误上报的标签
                        Correlation id, also used to tag reported errors
        duration: 运行时长（秒）/ Run duration in seconds
    """
    run_number: int
    start_time: datetime
    end_time: datetime
    error_count: int
    correlation_id: str
    duration: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data['start_time'] = to_db(self.start_time)
        data['end_time'] = to_db(self.end_time)
        return data


@dataclass
class CourseFlags:
    """
    课程标志位
    Course Flags

    替代原先无类型的标志字典：调试开关、历史最长更新时长，以及只读的
    更新日志视图（日志本身只能通过存储层追加）。
    Typed replacement for a free-form flag dictionary: the debug toggle, the
    longest observed update duration, and a read-only view of the update log
    (the log itself is only appended through the store).
    """
    debug_updates: bool = False
    longest_update: float | None = None
    update_logs: tuple[UpdateLogEntry, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """序列化（不含更新日志，日志单独存表）"""
        return {
            'debug_updates': self.debug_updates,
            'longest_update': self.longest_update,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CourseFlags":
        data = data or {}
        longest = data.get('longest_update')
        return cls(
            debug_updates=bool(data.get('debug_updates', False)),
            longest_update=float(longest) if longest is not None else None,
        )

    @property
    def last_update(self) -> UpdateLogEntry | None:
        return self.update_logs[-1] if self.update_logs else None


@dataclass
class Course:
    """
    课程
    Course

    Attributes:
        id: 数据库 ID，新课程为 None
            Database id, None for unsaved courses
        slug: 课程标识（用于错误上报标签）
              Course slug (used to tag error reports)
        start: 活动期开始（UTC）/ Active period start (UTC)
        end: 活动期结束（UTC），不得早于 start
             Active period end (UTC), never before start
        wikis: 关联的 wiki / Associated wikis
        participants: 参与者 / Participants
        flags: 课程标志位 / Course flags
    """
    slug: str
    start: datetime
    end: datetime
    id: int | None = None
    wikis: list[Wiki] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)
    flags: CourseFlags = field(default_factory=CourseFlags)

    def __post_init__(self):
        self.start = to_utc(self.start)
        self.end = to_utc(self.end)
        if self.end < self.start:
            raise ValueError(
                f"Course {self.slug} ends ({self.end.isoformat()}) before it starts "
                f"({self.start.isoformat()})"
            )

    @property
    def students(self) -> list[Participant]:
        return [p for p in self.participants if p.is_student]

    @property
    def student_ids(self) -> set[int]:
        return {p.user_id for p in self.students}

    @property
    def participant_ids(self) -> set[int]:
        return {p.user_id for p in self.participants}

    @property
    def span_days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400

    def has_wiki(self, wiki: Wiki) -> bool:
        return wiki in self.wikis

    def estimated_update_duration(self, seconds_per_day: float) -> float:
        """
        估算更新时长（秒）
        Estimate the update duration in seconds

        取历史最长更新时长与按课程跨度推算值中的较大者。
        The larger of the longest observed update and an estimate derived
        from the course span.
        """
        span_estimate = self.span_days * seconds_per_day
        return max(self.flags.longest_update or 0.0, span_estimate)

    def to_row(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'slug': self.slug,
            'start': to_db(self.start),
            'end': to_db(self.end),
        }

    @classmethod
    def from_row(cls, row: Any, flags: CourseFlags) -> "Course":
        return cls(
            id=row['id'],
            slug=row['slug'],
            start=from_db(row['start']),
            end=from_db(row['end']),
            flags=flags,
        )

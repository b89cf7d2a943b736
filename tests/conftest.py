"""
共享测试夹具
Shared test fixtures
"""

from datetime import datetime, timezone

import pytest

from coursestats.models import Course, CourseFlags, Participant, Role, Wiki
from coursestats.stats.store import TimesliceStore

UTC = timezone.utc
COURSE_START = datetime(2018, 11, 23, tzinfo=UTC)
COURSE_END = datetime(2018, 11, 30, tzinfo=UTC)

STUDENT_A = Participant(1, 'Alice', Role.STUDENT)
STUDENT_B = Participant(2, 'Bob', Role.STUDENT)
INSTRUCTOR = Participant(3, 'Carol', Role.INSTRUCTOR)


def build_course(
    store: TimesliceStore,
    slug: str = 'test-course',
    wikis: list[Wiki] | None = None,
    participants: list[Participant] | None = None,
    flags: CourseFlags | None = None,
    start: datetime = COURSE_START,
    end: datetime = COURSE_END,
) -> Course:
    """创建并保存课程"""
    course = Course(
        slug=slug,
        start=start,
        end=end,
        wikis=wikis if wikis is not None else [Wiki('en', 'wikipedia')],
        participants=participants if participants is not None else [STUDENT_A, STUDENT_B, INSTRUCTOR],
        flags=flags or CourseFlags(),
    )
    return store.save_course(course)


@pytest.fixture
def store(tmp_path):
    """临时SQLite存储"""
    s = TimesliceStore(str(tmp_path / 'stats.db'))
    s.init_db()
    yield s
    s.close()


@pytest.fixture
def course(store):
    """两名学生和一名教师、关联英文维基百科的课程"""
    return build_course(store)


@pytest.fixture
def enwiki(course):
    return course.wikis[0]


@pytest.fixture
def make_course(store):
    """课程工厂 / Course factory bound to the temporary store"""
    def factory(**kwargs) -> Course:
        return build_course(store, **kwargs)
    return factory

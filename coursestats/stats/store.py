"""
时间片数据存储
Timeslice Data Store

使用 SQLite 持久化课程、wiki、时间片缓存、更新日志和更新锁。
Uses SQLite to persist courses, wikis, timeslice caches, the update log and
the per-course update lock.
"""

import functools
import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Generator, TypeVar

from coursestats.models import Course, CourseFlags, Participant, Role, UpdateLogEntry, Wiki
from coursestats.stats.models import (
    ArticleCourseTimeslice,
    ArticlesCourses,
    CounterDelta,
    CourseStats,
    CourseUserStats,
    CourseUserWikiTimeslice,
    CourseWikiTimeslice,
    Window,
)
from coursestats.utils.timestamps import from_db, to_db, to_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar('T')


# 数据库 Schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS wikis (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    language TEXT NOT NULL DEFAULT '',
    project TEXT NOT NULL,
    UNIQUE(language, project)
);

CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slug TEXT UNIQUE NOT NULL,
    start TEXT NOT NULL,
    "end" TEXT NOT NULL,
    flags TEXT NOT NULL DEFAULT '{}',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS courses_wikis (
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    wiki_id INTEGER NOT NULL REFERENCES wikis(id),
    PRIMARY KEY (course_id, wiki_id)
);

CREATE TABLE IF NOT EXISTS courses_users (
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL,
    username TEXT NOT NULL,
    role INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (course_id, user_id, role)
);

CREATE TABLE IF NOT EXISTS course_wiki_timeslices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    wiki_id INTEGER NOT NULL REFERENCES wikis(id),
    start TEXT NOT NULL,
    "end" TEXT NOT NULL,
    last_mw_rev_id INTEGER,
    last_mw_rev_datetime TEXT,
    last_upload_datetime TEXT,
    character_sum INTEGER DEFAULT 0,
    references_count INTEGER DEFAULT 0,
    revision_count INTEGER DEFAULT 0,
    upload_count INTEGER DEFAULT 0,
    uploads_in_use_count INTEGER DEFAULT 0,
    upload_usages_count INTEGER DEFAULT 0,
    UNIQUE(course_id, wiki_id, start)
);

CREATE TABLE IF NOT EXISTS course_user_wiki_timeslices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL,
    wiki_id INTEGER NOT NULL REFERENCES wikis(id),
    start TEXT NOT NULL,
    "end" TEXT NOT NULL,
    character_sum_ms INTEGER DEFAULT 0,
    character_sum_us INTEGER DEFAULT 0,
    character_sum_draft INTEGER DEFAULT 0,
    references_count INTEGER DEFAULT 0,
    revision_count INTEGER DEFAULT 0,
    total_uploads INTEGER DEFAULT 0,
    UNIQUE(course_id, user_id, wiki_id, start)
);

CREATE TABLE IF NOT EXISTS articles_courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    wiki_id INTEGER NOT NULL REFERENCES wikis(id),
    character_sum INTEGER DEFAULT 0,
    references_count INTEGER DEFAULT 0,
    revision_count INTEGER DEFAULT 0,
    user_ids TEXT NOT NULL DEFAULT '[]',
    tracked INTEGER NOT NULL DEFAULT 1,
    UNIQUE(article_id, course_id, wiki_id)
);

CREATE TABLE IF NOT EXISTS article_course_timeslices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    wiki_id INTEGER NOT NULL REFERENCES wikis(id),
    start TEXT NOT NULL,
    "end" TEXT NOT NULL,
    character_sum INTEGER DEFAULT 0,
    references_count INTEGER DEFAULT 0,
    revision_count INTEGER DEFAULT 0,
    user_ids TEXT NOT NULL DEFAULT '[]',
    UNIQUE(article_id, course_id, wiki_id, start)
);

CREATE TABLE IF NOT EXISTS update_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    run_number INTEGER NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    error_count INTEGER NOT NULL DEFAULT 0,
    correlation_id TEXT NOT NULL,
    duration REAL NOT NULL DEFAULT 0,
    UNIQUE(course_id, run_number)
);

CREATE TABLE IF NOT EXISTS update_locks (
    course_id INTEGER PRIMARY KEY REFERENCES courses(id) ON DELETE CASCADE,
    token TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS course_stats (
    course_id INTEGER PRIMARY KEY REFERENCES courses(id) ON DELETE CASCADE,
    character_sum INTEGER DEFAULT 0,
    references_count INTEGER DEFAULT 0,
    revision_count INTEGER DEFAULT 0,
    upload_count INTEGER DEFAULT 0,
    uploads_in_use_count INTEGER DEFAULT 0,
    upload_usages_count INTEGER DEFAULT 0,
    user_count INTEGER DEFAULT 0,
    article_count INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS course_user_stats (
    course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL,
    character_sum_ms INTEGER DEFAULT 0,
    character_sum_us INTEGER DEFAULT 0,
    character_sum_draft INTEGER DEFAULT 0,
    references_count INTEGER DEFAULT 0,
    revision_count INTEGER DEFAULT 0,
    total_uploads INTEGER DEFAULT 0,
    PRIMARY KEY (course_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_cwt_course_wiki ON course_wiki_timeslices(course_id, wiki_id);
CREATE INDEX IF NOT EXISTS idx_cuwt_course_user ON course_user_wiki_timeslices(course_id, user_id);
CREATE INDEX IF NOT EXISTS idx_ac_course ON articles_courses(course_id, wiki_id);
CREATE INDEX IF NOT EXISTS idx_act_course_article ON article_course_timeslices(course_id, wiki_id, article_id);
CREATE INDEX IF NOT EXISTS idx_update_logs_course ON update_logs(course_id);
"""

# 记录类型 -> (表名, 唯一键字段)
# Record type -> (table, unique key fields)
TABLES: dict[type, tuple[str, tuple[str, ...]]] = {
    CourseWikiTimeslice: ('course_wiki_timeslices', ('course_id', 'wiki_id', 'start')),
    CourseUserWikiTimeslice: (
        'course_user_wiki_timeslices', ('course_id', 'user_id', 'wiki_id', 'start')
    ),
    ArticlesCourses: ('articles_courses', ('article_id', 'course_id', 'wiki_id')),
    ArticleCourseTimeslice: (
        'article_course_timeslices', ('article_id', 'course_id', 'wiki_id', 'start')
    ),
}

DATETIME_FIELDS = {'start', 'end', 'last_mw_rev_datetime', 'last_upload_datetime'}


def retry_on_locked(max_retries: int = 5, base_delay: float = 0.1):
    """
    装饰器：在数据库锁定时自动重试

    使用指数退避策略重试数据库操作。

    Args:
        max_retries: 最大重试次数
        base_delay: 基础延迟时间（秒）
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if "database is locked" in str(e):
                        last_exception = e
                        if attempt < max_retries:
                            delay = base_delay * (2 ** attempt)
                            logger.warning(
                                f"Database locked, retrying in {delay:.2f}s "
                                f"(attempt {attempt + 1}/{max_retries})"
                            )
                            time.sleep(delay)
                        continue
                    raise
            raise last_exception
        return wrapper
    return decorator


def _to_column(name: str, value: Any) -> Any:
    if name in DATETIME_FIELDS:
        return to_db(value)
    if isinstance(value, set):
        return json.dumps(sorted(value))
    if isinstance(value, bool):
        return int(value)
    return value


def _from_row(record_type: type[T], row: sqlite3.Row) -> T:
    values: dict[str, Any] = {}
    for f in fields(record_type):
        value = row[f.name]
        if f.name in DATETIME_FIELDS:
            value = from_db(value)
        elif f.name == 'user_ids':
            value = set(json.loads(value or '[]'))
        elif f.name == 'tracked':
            value = bool(value)
        values[f.name] = value
    return record_type(**values)


def merge_delta(record: Any, delta: CounterDelta) -> bool:
    """
    将增量合并到记录（仅内存）
    Merge a delta into a record (in memory only)

    对每个计数器加上带符号的增量，并把高水位推进到 max(当前, 增量标记)。
    增量标记不领先于已存标记时不做任何修改，保证同一获取区间重放不会
    重复计数。
    Adds each signed counter delta and advances the high-water mark to
    ``max(current, delta mark)``. A delta whose mark is not ahead of the
    stored mark is a no-op, so replaying a fetched range never double counts.

    Returns:
        是否应用了增量 / Whether the delta was applied
    """
    if _is_stale(record, delta):
        logger.debug(
            f"Skipping stale delta for {type(record).__name__} id={record.id}: "
            f"rev={delta.revision_id} upload={delta.upload_datetime}"
        )
        return False

    for name, amount in delta.counters.items():
        if name not in record.COUNTERS:
            raise KeyError(f"{type(record).__name__} has no counter '{name}'")
        setattr(record, name, getattr(record, name) + amount)

    if delta.revision_id is not None:
        record.last_mw_rev_id = max(record.last_mw_rev_id or 0, delta.revision_id)
    if delta.revision_datetime is not None:
        current = record.last_mw_rev_datetime
        record.last_mw_rev_datetime = (
            delta.revision_datetime if current is None else max(current, delta.revision_datetime)
        )
    if delta.upload_datetime is not None:
        current = record.last_upload_datetime
        record.last_upload_datetime = (
            delta.upload_datetime if current is None else max(current, delta.upload_datetime)
        )
    return True


def _is_stale(record: Any, delta: CounterDelta) -> bool:
    stored_rev = getattr(record, 'last_mw_rev_id', None)
    if delta.revision_id is not None and stored_rev is not None:
        if delta.revision_id <= stored_rev:
            return True
    stored_upload = getattr(record, 'last_upload_datetime', None)
    if delta.upload_datetime is not None and stored_upload is not None:
        if delta.upload_datetime <= stored_upload:
            return True
    return False


class TimesliceStore:
    """
    时间片存储
    Timeslice Store

    单连接 SQLite 存储，所有写入由可重入锁串行化；transaction() 内的写入
    原子提交。
    Single-connection SQLite store; writes are serialized by a re-entrant
    lock and everything inside ``transaction()`` commits atomically.

    Attributes:
        db_path: SQLite 数据库文件路径，':memory:' 为内存数据库
                 SQLite database path, ':memory:' for an in-memory database

    Examples:
        >>> store = TimesliceStore(':memory:')
        >>> store.init_db()
        >>> wiki = store.get_or_create_wiki('en', 'wikipedia')
    """

    def __init__(self, db_path: str = 'data/course_stats.db', timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    def _ensure_directory(self) -> None:
        """确保数据库目录存在"""
        if self.db_path == ':memory:':
            return
        dir_path = os.path.dirname(self.db_path)
        if dir_path and not os.path.exists(dir_path):
            os.makedirs(dir_path, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """
        获取数据库连接

        启用外键（级联删除依赖它），非内存库使用WAL模式。
        """
        if self._connection is None:
            self._ensure_directory()
            self._connection = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            if self.db_path != ':memory:':
                self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
        return self._connection

    def close(self):
        """关闭数据库连接"""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def init_db(self):
        """初始化数据库 schema，可重复调用"""
        with self._lock:
            conn = self._get_connection()
            conn.executescript(SCHEMA)
            conn.commit()
        logger.info(f"Course stats database initialized: {self.db_path}")

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        事务上下文
        Transaction context

        可嵌套；只有最外层提交或回滚。
        Nestable; only the outermost level commits or rolls back.
        """
        with self._lock:
            conn = self._get_connection()
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    conn.commit()

    # =========================================================================
    # Wikis
    # =========================================================================

    @retry_on_locked()
    def get_or_create_wiki(self, language: str | None, project: str) -> Wiki:
        """
        按 (language, project) 查找或创建 wiki，幂等
        Look up or create a wiki by (language, project); idempotent
        """
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO wikis (language, project) VALUES (?, ?)",
                (language or '', project)
            )
            row = conn.execute(
                "SELECT * FROM wikis WHERE language = ? AND project = ?",
                (language or '', project)
            ).fetchone()
        return self._wiki_from_row(row)

    def get_wiki(self, wiki_id: int) -> Wiki | None:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM wikis WHERE id = ?", (wiki_id,)
            ).fetchone()
        return self._wiki_from_row(row) if row else None

    @staticmethod
    def _wiki_from_row(row: sqlite3.Row) -> Wiki:
        return Wiki(language=row['language'] or None, project=row['project'], id=row['id'])

    # =========================================================================
    # Courses
    # =========================================================================

    @retry_on_locked()
    def save_course(self, course: Course) -> Course:
        """
        保存课程（含关联 wiki 与参与者）
        Save a course together with its wikis and participants

        新课程会被分配 id；wiki 会被规范化为带 id 的实例。
        New courses get an id; wikis are replaced by their stored instances.
        """
        with self.transaction() as conn:
            row = course.to_row()
            flags = json.dumps(course.flags.to_dict())
            if course.id is None:
                cursor = conn.execute(
                    'INSERT INTO courses (slug, start, "end", flags) VALUES (?, ?, ?, ?)',
                    (row['slug'], row['start'], row['end'], flags)
                )
                course.id = cursor.lastrowid
            else:
                conn.execute(
                    'UPDATE courses SET slug = ?, start = ?, "end" = ?, flags = ? WHERE id = ?',
                    (row['slug'], row['start'], row['end'], flags, course.id)
                )
            course.wikis = [self.add_wiki_to_course(course.id, wiki) for wiki in course.wikis]
            for participant in course.participants:
                self.add_participant(course.id, participant)
        logger.info(f"Saved course {course.slug} (id={course.id})")
        return course

    def add_wiki_to_course(self, course_id: int, wiki: Wiki) -> Wiki:
        with self.transaction() as conn:
            stored = self.get_or_create_wiki(wiki.language, wiki.project)
            conn.execute(
                "INSERT OR IGNORE INTO courses_wikis (course_id, wiki_id) VALUES (?, ?)",
                (course_id, stored.id)
            )
        return stored

    def add_participant(self, course_id: int, participant: Participant) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO courses_users (course_id, user_id, username, role)
                VALUES (?, ?, ?, ?)
                """,
                (course_id, participant.user_id, participant.username, int(participant.role))
            )

    def get_course(self, course_id: int) -> Course | None:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM courses WHERE id = ?", (course_id,)
            ).fetchone()
            return self._load_course(row) if row else None

    def get_course_by_slug(self, slug: str) -> Course | None:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM courses WHERE slug = ?", (slug,)
            ).fetchone()
            return self._load_course(row) if row else None

    def list_courses(self) -> list[Course]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT * FROM courses ORDER BY id"
            ).fetchall()
            return [self._load_course(row) for row in rows]

    def _load_course(self, row: sqlite3.Row) -> Course:
        conn = self._get_connection()
        flags = CourseFlags.from_dict(json.loads(row['flags'] or '{}'))
        flags.update_logs = tuple(self.get_update_logs(row['id']))
        course = Course.from_row(row, flags)
        wiki_rows = conn.execute(
            """
            SELECT w.* FROM wikis w JOIN courses_wikis cw ON cw.wiki_id = w.id
            WHERE cw.course_id = ? ORDER BY w.id
            """,
            (course.id,)
        ).fetchall()
        course.wikis = [self._wiki_from_row(r) for r in wiki_rows]
        user_rows = conn.execute(
            "SELECT * FROM courses_users WHERE course_id = ? ORDER BY user_id, role",
            (course.id,)
        ).fetchall()
        course.participants = [
            Participant(user_id=r['user_id'], username=r['username'], role=Role(r['role']))
            for r in user_rows
        ]
        return course

    @retry_on_locked()
    def update_course_flags(self, course_id: int, flags: CourseFlags) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE courses SET flags = ? WHERE id = ?",
                (json.dumps(flags.to_dict()), course_id)
            )

    @retry_on_locked()
    def delete_course(self, course_id: int) -> bool:
        """删除课程及其全部时间片、日志（级联）/ Delete a course and everything it owns"""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM courses WHERE id = ?", (course_id,))
        return cursor.rowcount > 0

    # =========================================================================
    # Update log (append-only)
    # =========================================================================

    @retry_on_locked()
    def append_update_log(
        self,
        course_id: int,
        start_time: datetime,
        end_time: datetime,
        error_count: int,
        correlation_id: str
    ) -> UpdateLogEntry:
        """
        追加一条更新日志
        Append one update log entry

        条目只追加，不提供修改或删除接口。
        Entries are append-only; there is no update or delete operation.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(run_number), 0) AS last FROM update_logs WHERE course_id = ?",
                (course_id,)
            ).fetchone()
            entry = UpdateLogEntry(
                run_number=row['last'] + 1,
                start_time=start_time,
                end_time=end_time,
                error_count=error_count,
                correlation_id=correlation_id,
                duration=(end_time - start_time).total_seconds(),
            )
            conn.execute(
                """
                INSERT INTO update_logs
                    (course_id, run_number, start_time, end_time, error_count, correlation_id, duration)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    course_id, entry.run_number, to_db(entry.start_time), to_db(entry.end_time),
                    entry.error_count, entry.correlation_id, entry.duration
                )
            )
        return entry

    def get_update_logs(self, course_id: int, limit: int | None = None) -> list[UpdateLogEntry]:
        """按运行顺序返回更新日志；limit 指定时返回最近的若干条"""
        query = "SELECT * FROM update_logs WHERE course_id = ? ORDER BY run_number DESC"
        params: list = [course_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [
            UpdateLogEntry(
                run_number=r['run_number'],
                start_time=from_db(r['start_time']),
                end_time=from_db(r['end_time']),
                error_count=r['error_count'],
                correlation_id=r['correlation_id'],
                duration=r['duration'],
            )
            for r in reversed(rows)
        ]

    # =========================================================================
    # Update lock
    # =========================================================================

    @retry_on_locked()
    def acquire_update_lock(self, course_id: int, token: str, stale_after: float) -> bool:
        """
        获取课程更新锁
        Acquire the per-course update lock

        已有锁超过 stale_after 秒视为失效并被接管。
        A lock older than ``stale_after`` seconds is considered stale and
        taken over.
        """
        now = utc_now()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT token, acquired_at FROM update_locks WHERE course_id = ?",
                (course_id,)
            ).fetchone()
            if row is not None:
                age = (now - from_db(row['acquired_at'])).total_seconds()
                if age < stale_after:
                    return False
                logger.warning(
                    f"Taking over stale update lock for course {course_id} "
                    f"(held by {row['token']} for {age:.0f}s)"
                )
            conn.execute(
                "INSERT OR REPLACE INTO update_locks (course_id, token, acquired_at) VALUES (?, ?, ?)",
                (course_id, token, to_db(now))
            )
        return True

    @retry_on_locked()
    def release_update_lock(self, course_id: int, token: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM update_locks WHERE course_id = ? AND token = ?",
                (course_id, token)
            )

    # =========================================================================
    # Generic timeslice helpers
    # =========================================================================

    def _get_or_create(self, record_type: type[T], **key: Any) -> T:
        table, key_fields = TABLES[record_type]
        values = {name: _to_column(name, key[name]) for name in key}
        with self.transaction() as conn:
            columns = ', '.join(f'"{name}"' for name in values)
            placeholders = ', '.join('?' for _ in values)
            conn.execute(
                f"INSERT OR IGNORE INTO {table} ({columns}) VALUES ({placeholders})",
                list(values.values())
            )
            where = ' AND '.join(f'"{name}" = ?' for name in key_fields)
            row = conn.execute(
                f"SELECT * FROM {table} WHERE {where}",
                [values[name] for name in key_fields]
            ).fetchone()
            record = _from_row(record_type, row)
            # 被“当前时间”截断的最后一个窗口会随时间延长
            if 'end' in key and record.end != to_utc(key['end']):
                record.end = to_utc(key['end'])
                self.save(record)
        return record

    def save(self, record: Any) -> None:
        """
        保存已存在的缓存记录（按 id 更新）
        Persist an existing cache record (update by id)
        """
        table, _ = TABLES[type(record)]
        names = [f.name for f in fields(record) if f.name != 'id']
        assignments = ', '.join(f'"{name}" = ?' for name in names)
        params = [_to_column(name, getattr(record, name)) for name in names]
        with self.transaction() as conn:
            conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params + [record.id])

    def merge_delta(self, record: Any, delta: CounterDelta) -> bool:
        """
        合并增量并持久化
        Merge a delta into a record and persist it

        Returns:
            是否应用了增量（过期增量为 no-op）
            Whether the delta was applied (stale deltas are no-ops)
        """
        applied = merge_delta(record, delta)
        if applied:
            self.save(record)
        return applied

    def _select(self, record_type: type[T], where: str, params: list, order: str) -> list[T]:
        table, _ = TABLES[record_type]
        with self._lock:
            rows = self._get_connection().execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY {order}", params
            ).fetchall()
        return [_from_row(record_type, row) for row in rows]

    # =========================================================================
    # Course wiki timeslices
    # =========================================================================

    def get_or_create_course_wiki_timeslice(
        self, course_id: int, wiki_id: int, window: Window
    ) -> CourseWikiTimeslice:
        return self._get_or_create(
            CourseWikiTimeslice,
            course_id=course_id, wiki_id=wiki_id, start=window.start, end=window.end
        )

    def get_course_wiki_timeslices(
        self, course_id: int, wiki_id: int | None = None
    ) -> list[CourseWikiTimeslice]:
        where, params = "course_id = ?", [course_id]
        if wiki_id is not None:
            where += " AND wiki_id = ?"
            params.append(wiki_id)
        return self._select(CourseWikiTimeslice, where, params, "wiki_id, start")

    # =========================================================================
    # Course user wiki timeslices
    # =========================================================================

    def get_or_create_course_user_wiki_timeslice(
        self, course_id: int, user_id: int, wiki_id: int, window: Window
    ) -> CourseUserWikiTimeslice:
        return self._get_or_create(
            CourseUserWikiTimeslice,
            course_id=course_id, user_id=user_id, wiki_id=wiki_id,
            start=window.start, end=window.end
        )

    def get_course_user_wiki_timeslices(
        self,
        course_id: int,
        user_id: int | None = None,
        wiki_id: int | None = None
    ) -> list[CourseUserWikiTimeslice]:
        where, params = "course_id = ?", [course_id]
        if user_id is not None:
            where += " AND user_id = ?"
            params.append(user_id)
        if wiki_id is not None:
            where += " AND wiki_id = ?"
            params.append(wiki_id)
        return self._select(CourseUserWikiTimeslice, where, params, "user_id, wiki_id, start")

    # =========================================================================
    # Articles courses
    # =========================================================================

    def get_articles_course(
        self, course_id: int, wiki_id: int, article_id: int
    ) -> ArticlesCourses | None:
        found = self._select(
            ArticlesCourses,
            "course_id = ? AND wiki_id = ? AND article_id = ?",
            [course_id, wiki_id, article_id],
            "id"
        )
        return found[0] if found else None

    def get_or_create_articles_course(
        self, course_id: int, wiki_id: int, article_id: int
    ) -> ArticlesCourses:
        return self._get_or_create(
            ArticlesCourses, article_id=article_id, course_id=course_id, wiki_id=wiki_id
        )

    def get_articles_courses(
        self,
        course_id: int,
        wiki_id: int | None = None,
        tracked: bool | None = None
    ) -> list[ArticlesCourses]:
        """按字符贡献降序返回 / Ordered by character contribution, largest first"""
        where, params = "course_id = ?", [course_id]
        if wiki_id is not None:
            where += " AND wiki_id = ?"
            params.append(wiki_id)
        if tracked is not None:
            where += " AND tracked = ?"
            params.append(int(tracked))
        return self._select(ArticlesCourses, where, params, "character_sum DESC, article_id")

    @retry_on_locked()
    def set_article_tracked(
        self, course_id: int, wiki_id: int, article_id: int, tracked: bool
    ) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE articles_courses SET tracked = ?
                WHERE course_id = ? AND wiki_id = ? AND article_id = ?
                """,
                (int(tracked), course_id, wiki_id, article_id)
            )
        return cursor.rowcount > 0

    # =========================================================================
    # Article course timeslices
    # =========================================================================

    def get_or_create_article_course_timeslice(
        self, course_id: int, wiki_id: int, article_id: int, window: Window
    ) -> ArticleCourseTimeslice:
        return self._get_or_create(
            ArticleCourseTimeslice,
            article_id=article_id, course_id=course_id, wiki_id=wiki_id,
            start=window.start, end=window.end
        )

    def get_article_course_timeslices(
        self,
        course_id: int,
        wiki_id: int | None = None,
        article_id: int | None = None
    ) -> list[ArticleCourseTimeslice]:
        where, params = "course_id = ?", [course_id]
        if wiki_id is not None:
            where += " AND wiki_id = ?"
            params.append(wiki_id)
        if article_id is not None:
            where += " AND article_id = ?"
            params.append(article_id)
        return self._select(ArticleCourseTimeslice, where, params, "article_id, start")

    # =========================================================================
    # Rollups
    # =========================================================================

    @retry_on_locked()
    def refresh_course_stats(self, course_id: int) -> CourseStats:
        """
        由课程-wiki 时间片重新汇总课程级统计
        Recompute course-level totals from the course wiki timeslices
        """
        with self.transaction() as conn:
            totals = conn.execute(
                """
                SELECT
                    COALESCE(SUM(character_sum), 0) AS character_sum,
                    COALESCE(SUM(references_count), 0) AS references_count,
                    COALESCE(SUM(revision_count), 0) AS revision_count,
                    COALESCE(SUM(upload_count), 0) AS upload_count,
                    COALESCE(SUM(uploads_in_use_count), 0) AS uploads_in_use_count,
                    COALESCE(SUM(upload_usages_count), 0) AS upload_usages_count
                FROM course_wiki_timeslices WHERE course_id = ?
                """,
                (course_id,)
            ).fetchone()
            user_count = conn.execute(
                "SELECT COUNT(DISTINCT user_id) AS n FROM courses_users WHERE course_id = ? AND role = ?",
                (course_id, int(Role.STUDENT))
            ).fetchone()['n']
            article_count = conn.execute(
                "SELECT COUNT(*) AS n FROM articles_courses WHERE course_id = ? AND tracked = 1",
                (course_id,)
            ).fetchone()['n']
            stats = CourseStats(
                course_id=course_id,
                user_count=user_count,
                article_count=article_count,
                **{key: totals[key] for key in totals.keys()}
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO course_stats
                    (course_id, character_sum, references_count, revision_count, upload_count,
                     uploads_in_use_count, upload_usages_count, user_count, article_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    course_id, stats.character_sum, stats.references_count, stats.revision_count,
                    stats.upload_count, stats.uploads_in_use_count, stats.upload_usages_count,
                    stats.user_count, stats.article_count
                )
            )
        return stats

    def get_course_stats(self, course_id: int) -> CourseStats | None:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM course_stats WHERE course_id = ?", (course_id,)
            ).fetchone()
        return CourseStats(**dict(row)) if row else None

    @retry_on_locked()
    def refresh_course_user_stats(self, course_id: int) -> list[CourseUserStats]:
        """
        由用户时间片重新汇总每个参与者的统计
        Recompute per-participant totals from the user wiki timeslices
        """
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT
                    cu.user_id AS user_id,
                    COALESCE(SUM(t.character_sum_ms), 0) AS character_sum_ms,
                    COALESCE(SUM(t.character_sum_us), 0) AS character_sum_us,
                    COALESCE(SUM(t.character_sum_draft), 0) AS character_sum_draft,
                    COALESCE(SUM(t.references_count), 0) AS references_count,
                    COALESCE(SUM(t.revision_count), 0) AS revision_count,
                    COALESCE(SUM(t.total_uploads), 0) AS total_uploads
                FROM (SELECT DISTINCT user_id FROM courses_users WHERE course_id = ?) cu
                LEFT JOIN course_user_wiki_timeslices t
                    ON t.user_id = cu.user_id AND t.course_id = ?
                GROUP BY cu.user_id
                """,
                (course_id, course_id)
            ).fetchall()
            stats = [CourseUserStats(course_id=course_id, **dict(row)) for row in rows]
            conn.execute("DELETE FROM course_user_stats WHERE course_id = ?", (course_id,))
            conn.executemany(
                """
                INSERT INTO course_user_stats
                    (course_id, user_id, character_sum_ms, character_sum_us, character_sum_draft,
                     references_count, revision_count, total_uploads)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        s.course_id, s.user_id, s.character_sum_ms, s.character_sum_us,
                        s.character_sum_draft, s.references_count, s.revision_count,
                        s.total_uploads
                    )
                    for s in stats
                ]
            )
        return stats

    def get_course_user_stats(
        self, course_id: int, limit: int | None = None
    ) -> list[CourseUserStats]:
        """按主命名空间字符贡献降序 / Ordered by mainspace characters, largest first"""
        query = (
            "SELECT * FROM course_user_stats WHERE course_id = ? "
            "ORDER BY character_sum_ms DESC, user_id"
        )
        params: list = [course_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [CourseUserStats(**dict(row)) for row in rows]

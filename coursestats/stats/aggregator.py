"""
统计聚合器
Statistics Aggregator

把获取到的修订和上传增量合并进时间片缓存及其派生汇总。
Merges fetched revision and upload deltas into the timeslice caches and
their derived rollups.

一条修订被转换为一个 RevisionDelta，再由四个独立的合并函数分别写入
课程-wiki、用户-wiki、文章-课程、文章-课程时间片四个范围。
Each revision becomes one RevisionDelta that four independent merge
functions apply to the course/wiki, user/wiki, article/course and
article/course window scopes.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from coursestats.exceptions import MalformedRecordError
from coursestats.fetchers.base import FetchMarker
from coursestats.models import Course, Wiki
from coursestats.stats.models import (
    DRAFT_NAMESPACE,
    MAINSPACE,
    USER_NAMESPACE,
    USER_TALK_NAMESPACE,
    ArticleCourseTimeslice,
    ArticlesCourses,
    CounterDelta,
    CourseUserWikiTimeslice,
    CourseWikiTimeslice,
    RevisionDelta,
    RevisionRecord,
    UploadRecord,
    Window,
)
from coursestats.stats.store import TimesliceStore, merge_delta
from coursestats.stats.windows import find_window

logger = logging.getLogger(__name__)

# 命名空间 -> 用户时间片中的字符字段
# Namespace -> character field on the user timeslice
CHARACTER_FIELDS = {
    MAINSPACE: 'character_sum_ms',
    USER_NAMESPACE: 'character_sum_us',
    USER_TALK_NAMESPACE: 'character_sum_us',
    DRAFT_NAMESPACE: 'character_sum_draft',
}


@dataclass
class AggregationResult:
    """
    一次聚合的结果
    Result of one aggregation pass

    Attributes:
        revisions_applied: 新应用的修订数 / Revisions newly applied
        revisions_skipped: 已处理过或不属于本课程的修订数
                           Revisions already applied or not relevant to the course
        uploads_applied: 新应用的上传数 / Uploads newly applied
        uploads_skipped: 跳过的上传数 / Uploads skipped
        anomalies: 格式错误被跳过的记录数（不计入运行错误数）
                   Malformed records skipped (not part of the run error count)
        windows_touched: 写入过的窗口 / Windows written to
    """
    revisions_applied: int = 0
    revisions_skipped: int = 0
    uploads_applied: int = 0
    uploads_skipped: int = 0
    anomalies: int = 0
    windows_touched: list[Window] = field(default_factory=list)


# =============================================================================
# Merge functions, one per cache scope
# =============================================================================

def merge_into_user_timeslice(record: CourseUserWikiTimeslice, delta: RevisionDelta) -> None:
    """
    用户-wiki 时间片：任何参与者；字符按命名空间拆分
    User/wiki timeslice: any participant; characters split by namespace
    """
    revision = delta.revision
    counters = CounterDelta()
    character_field = CHARACTER_FIELDS.get(revision.namespace)
    if character_field:
        counters.add(character_field, revision.char_delta)
    counters.add('references_count', revision.ref_delta)
    if delta.counts_revision:
        counters.add('revision_count', 1)
    merge_delta(record, counters)


def merge_into_articles_course(record: ArticlesCourses, delta: RevisionDelta) -> None:
    """
    文章-课程：字符、引用总是累计；修订数只在 tracked 且未删除时累计
    Article/course: characters and references always; revisions only when
    tracked and not deleted
    """
    _merge_article_scope(record, delta, tracked=record.tracked)


def merge_into_article_course_timeslice(
    record: ArticleCourseTimeslice, delta: RevisionDelta
) -> None:
    _merge_article_scope(record, delta, tracked=delta.tracked is True)


def _merge_article_scope(record: Any, delta: RevisionDelta, tracked: bool) -> None:
    revision = delta.revision
    counters = CounterDelta()
    counters.add('character_sum', revision.char_delta)
    counters.add('references_count', revision.ref_delta)
    if tracked and not revision.deleted:
        counters.add('revision_count', 1)
    merge_delta(record, counters)
    # 集合并集：重复处理不会重复添加
    record.user_ids.add(revision.user_id)


def merge_into_course_wiki_delta(window_delta: CounterDelta, delta: RevisionDelta) -> None:
    """
    课程-wiki：只统计学生；字符和引用取主命名空间，修订数只算 tracked 文章
    Course/wiki: students only; mainspace characters and references, revision
    count for tracked articles only
    """
    revision = delta.revision
    if delta.is_student:
        if revision.namespace == MAINSPACE:
            window_delta.add('character_sum', revision.char_delta)
            window_delta.add('references_count', revision.ref_delta)
        if delta.counts_tracked_revision:
            window_delta.add('revision_count', 1)

    window_delta.revision_id = max(window_delta.revision_id or 0, revision.revision_id)
    if window_delta.revision_datetime is None or revision.timestamp > window_delta.revision_datetime:
        window_delta.revision_datetime = revision.timestamp


def merge_upload_into_course_wiki_delta(window_delta: CounterDelta, upload: UploadRecord) -> None:
    window_delta.add('upload_count', 1)
    if upload.usage_count > 0:
        window_delta.add('uploads_in_use_count', 1)
    window_delta.add('upload_usages_count', upload.usage_count)
    if window_delta.upload_datetime is None or upload.timestamp > window_delta.upload_datetime:
        window_delta.upload_datetime = upload.timestamp


def _pending_start(timeslices: list[CourseWikiTimeslice], mark_field: str) -> datetime:
    """
    最早的未处理时间点
    Earliest point not yet processed

    高水位到达窗口终点的窗口视为已完成。全部完成时返回最大的高水位。
    Windows whose mark has reached their end are complete. When every window
    is complete the largest mark is returned.
    """
    pending = []
    for timeslice in timeslices:
        mark = getattr(timeslice, mark_field)
        if mark is None or mark < timeslice.end:
            pending.append(mark or timeslice.start)
    if pending:
        return min(pending)
    return max(getattr(t, mark_field) for t in timeslices)


class StatsAggregator:
    """
    统计聚合器
    Statistics Aggregator

    同步的内存计算：输入是已经获取好的批次，每个窗口在一个事务内写入，
    计数器和高水位标记原子提交。窗口按时间递增顺序处理。
    Synchronous in-memory computation over already-fetched batches. Each
    window is written in one transaction so counters and the high-water mark
    commit atomically. Windows are processed in increasing time order.

    Attributes:
        store: 时间片存储 / Timeslice store

    Examples:
        >>> aggregator = StatsAggregator(store)
        >>> timeslices = aggregator.ensure_timeslices(course, wiki, windows)
        >>> result = aggregator.aggregate(course, wiki, windows, revisions=items)
    """

    def __init__(self, store: TimesliceStore):
        self.store = store

    # =========================================================================
    # Window bookkeeping
    # =========================================================================

    def ensure_timeslices(
        self, course: Course, wiki: Wiki, windows: list[Window]
    ) -> list[CourseWikiTimeslice]:
        """
        确保每个窗口都有课程-wiki 时间片
        Make sure every window has a course wiki timeslice
        """
        with self.store.transaction():
            return [
                self.store.get_or_create_course_wiki_timeslice(course.id, wiki.id, window)
                for window in windows
            ]

    @staticmethod
    def fetch_markers(
        timeslices: list[CourseWikiTimeslice]
    ) -> tuple[FetchMarker, FetchMarker] | None:
        """
        计算修订和上传的获取起点
        Compute the revision and upload fetch markers

        取未完成窗口高水位（无则为窗口起点）的最小值；已完成的窗口不再
        拉回获取起点，已处理的记录由窗口高水位过滤。
        The minimum over the marks of incomplete windows (window start when
        unset). Complete windows no longer hold the fetch start back, and
        already processed records are filtered by each window's mark.

        Returns:
            (revision_marker, upload_marker)，没有窗口时返回 None
            (revision_marker, upload_marker), or None without windows
        """
        if not timeslices:
            return None

        revision_ids = [t.last_mw_rev_id for t in timeslices if t.last_mw_rev_id is not None]
        return (
            FetchMarker(
                timestamp=_pending_start(timeslices, 'last_mw_rev_datetime'),
                revision_id=max(revision_ids) if revision_ids else None,
            ),
            FetchMarker(timestamp=_pending_start(timeslices, 'last_upload_datetime')),
        )

    # =========================================================================
    # Parsing
    # =========================================================================

    def _parse(
        self,
        items: Iterable[dict[str, Any]],
        parser: Any,
        course: Course,
        windows: list[Window],
        result: AggregationResult
    ) -> tuple[dict[Window, list], int]:
        grouped: dict[Window, list] = defaultdict(list)
        skipped = 0
        for item in items:
            try:
                record = parser(item)
            except MalformedRecordError as e:
                result.anomalies += 1
                logger.warning(f"Skipping malformed {parser.__self__.__name__} for {course.slug}: {e}")
                continue

            if record.user_id not in course.participant_ids:
                logger.debug(f"Skipping record by non-participant user {record.user_id}")
                skipped += 1
                continue

            window = find_window(record.timestamp, windows)
            if window is None:
                logger.debug(f"Skipping record outside update range: {record.timestamp.isoformat()}")
                skipped += 1
                continue
            grouped[window].append(record)
        return grouped, skipped

    # =========================================================================
    # Aggregation
    # =========================================================================

    def aggregate(
        self,
        course: Course,
        wiki: Wiki,
        windows: list[Window],
        revisions: list[dict[str, Any]] | None = None,
        uploads: list[dict[str, Any]] | None = None,
        fetched_until: datetime | None = None
    ) -> AggregationResult:
        """
        合并一批修订和上传
        Merge one batch of revisions and uploads

        revisions 或 uploads 为 None 表示对应获取失败：不做任何处理，
        高水位也不会前移。
        ``None`` for revisions or uploads means that fetch failed: nothing is
        applied and the high-water mark does not move.

        Args:
            course: 课程 / Course
            wiki: wiki（必须带 id）/ Wiki (must carry its id)
            windows: 本次更新范围内的有序窗口 / Sorted windows of the update range
            revisions: 修订适配器返回的字典 / Dicts returned by the revision fetcher
            uploads: 上传适配器返回的字典 / Dicts returned by the upload fetcher
            fetched_until: 成功的获取覆盖到的时间点；给出时，每个窗口（包括
                           没有记录的窗口）的高水位都推进到
                           min(窗口终点, fetched_until)
                           Point in time the successful fetches covered; when
                           given, every window, empty ones included, has its
                           mark advanced to min(window end, fetched_until)
        """
        result = AggregationResult()

        revisions_by_window, skipped = self._parse(
            revisions or [], RevisionRecord.from_dict, course, windows, result
        )
        result.revisions_skipped += skipped
        uploads_by_window, skipped = self._parse(
            uploads or [], UploadRecord.from_dict, course, windows, result
        )
        result.uploads_skipped += skipped

        targets = set(revisions_by_window) | set(uploads_by_window)
        if fetched_until is not None:
            targets |= {w for w in windows if w.start < fetched_until}

        for window in sorted(targets):
            with self.store.transaction():
                timeslice = self.store.get_or_create_course_wiki_timeslice(
                    course.id, wiki.id, window
                )
                touched = self._apply_revisions(
                    course, wiki, window, timeslice, revisions_by_window.get(window, []), result
                )
                touched |= self._apply_uploads(
                    course, wiki, window, timeslice, uploads_by_window.get(window, []), result
                )
                if fetched_until is not None:
                    self._advance_marks(
                        timeslice,
                        min(window.end, fetched_until),
                        revisions=revisions is not None,
                        uploads=uploads is not None,
                    )
            if touched:
                result.windows_touched.append(window)

        if result.anomalies:
            logger.warning(f"{course.slug} on {wiki}: skipped {result.anomalies} malformed records")
        logger.info(
            f"Aggregated {course.slug} on {wiki}: {result.revisions_applied} revisions, "
            f"{result.uploads_applied} uploads in {len(result.windows_touched)} windows"
        )
        return result

    def _advance_marks(
        self,
        timeslice: CourseWikiTimeslice,
        covered: datetime,
        revisions: bool,
        uploads: bool
    ) -> None:
        """
        把获取覆盖到的时间点写入窗口高水位（只前移，不后退）
        Record how far the fetch covered the window (marks only move forward)
        """
        changed = False
        if revisions and (timeslice.last_mw_rev_datetime is None or timeslice.last_mw_rev_datetime < covered):
            timeslice.last_mw_rev_datetime = covered
            changed = True
        if uploads and (timeslice.last_upload_datetime is None or timeslice.last_upload_datetime < covered):
            timeslice.last_upload_datetime = covered
            changed = True
        if changed:
            self.store.save(timeslice)

    def _apply_revisions(
        self,
        course: Course,
        wiki: Wiki,
        window: Window,
        timeslice: CourseWikiTimeslice,
        records: list[RevisionRecord],
        result: AggregationResult
    ) -> bool:
        last_id = timeslice.last_mw_rev_id
        pending = {
            r.revision_id: r for r in records
            if last_id is None or r.revision_id > last_id
        }
        result.revisions_skipped += len(records) - len(pending)
        if not pending:
            return False

        student_ids = course.student_ids
        user_slices: dict[int, CourseUserWikiTimeslice] = {}
        articles: dict[int, ArticlesCourses | None] = {}
        article_slices: dict[int, ArticleCourseTimeslice] = {}
        window_delta = CounterDelta()

        for revision in sorted(pending.values(), key=lambda r: r.revision_id):
            is_student = revision.user_id in student_ids
            article = self._articles_course(
                course, wiki, revision, is_student, articles
            )
            delta = RevisionDelta(
                revision=revision,
                window=window,
                is_student=is_student,
                tracked=article.tracked if article is not None else None,
            )

            if revision.user_id not in user_slices:
                user_slices[revision.user_id] = self.store.get_or_create_course_user_wiki_timeslice(
                    course.id, revision.user_id, wiki.id, window
                )
            merge_into_user_timeslice(user_slices[revision.user_id], delta)

            if is_student and revision.namespace == MAINSPACE:
                merge_into_articles_course(article, delta)
                if revision.article_id not in article_slices:
                    article_slices[revision.article_id] = (
                        self.store.get_or_create_article_course_timeslice(
                            course.id, wiki.id, revision.article_id, window
                        )
                    )
                merge_into_article_course_timeslice(article_slices[revision.article_id], delta)

            merge_into_course_wiki_delta(window_delta, delta)
            result.revisions_applied += 1

        for record in [*user_slices.values(), *article_slices.values()]:
            self.store.save(record)
        for article in articles.values():
            if article is not None:
                self.store.save(article)
        self.store.merge_delta(timeslice, window_delta)
        return True

    def _articles_course(
        self,
        course: Course,
        wiki: Wiki,
        revision: RevisionRecord,
        is_student: bool,
        cache: dict[int, ArticlesCourses | None]
    ) -> ArticlesCourses | None:
        """
        学生的主命名空间修订会创建文章-课程记录；其他修订只查询已有记录
        A student's mainspace revision creates the article/course record; other
        revisions only look up an existing one
        """
        if revision.article_id in cache and (cache[revision.article_id] is not None or not is_student):
            return cache[revision.article_id]

        if is_student and revision.namespace == MAINSPACE:
            article = self.store.get_or_create_articles_course(
                course.id, wiki.id, revision.article_id
            )
        else:
            article = self.store.get_articles_course(course.id, wiki.id, revision.article_id)
        cache[revision.article_id] = article
        return article

    def _apply_uploads(
        self,
        course: Course,
        wiki: Wiki,
        window: Window,
        timeslice: CourseWikiTimeslice,
        records: list[UploadRecord],
        result: AggregationResult
    ) -> bool:
        last_upload = timeslice.last_upload_datetime
        pending = [
            u for u in records
            if last_upload is None or u.timestamp > last_upload
        ]
        result.uploads_skipped += len(records) - len(pending)
        if not pending:
            return False

        student_ids = course.student_ids
        window_delta = CounterDelta()
        uploads_by_user: dict[int, int] = defaultdict(int)
        for upload in pending:
            # 高水位对所有上传前移，统计只计学生
            if upload.user_id in student_ids:
                merge_upload_into_course_wiki_delta(window_delta, upload)
                uploads_by_user[upload.user_id] += 1
                result.uploads_applied += 1
            else:
                result.uploads_skipped += 1
                if window_delta.upload_datetime is None or upload.timestamp > window_delta.upload_datetime:
                    window_delta.upload_datetime = upload.timestamp

        for user_id, count in uploads_by_user.items():
            user_slice = self.store.get_or_create_course_user_wiki_timeslice(
                course.id, user_id, wiki.id, window
            )
            merge_delta(user_slice, CounterDelta(counters={'total_uploads': count}))
            self.store.save(user_slice)
        self.store.merge_delta(timeslice, window_delta)
        return True

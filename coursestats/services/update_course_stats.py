"""
课程统计更新服务
Course Statistics Update Service

执行一次课程统计更新：
START → 每个 wiki { 获取 → 聚合 → 持久化 } → 文章状态标注（可选）→ 收尾

Runs one course statistics update:
START → for each wiki { fetch → aggregate → persist } → article status
annotation (optional) → finalize

单个依赖失败只会被记录和计数，不会中止整个运行；每次运行恰好追加
一条更新日志。
A single dependency failure is recorded and counted but never aborts the
run; every run appends exactly one update log entry.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from coursestats.config import DEFAULT_CONFIG
from coursestats.exceptions import ConfigurationError
from coursestats.fetchers.base import (
    FetchMarker,
    FetchResult,
    RevisionFetcher,
    StatusAnnotator,
    UploadFetcher,
)
from coursestats.models import Course, UpdateLogEntry, Wiki
from coursestats.services.error_tracking import ErrorTracker, LoggingErrorTracker
from coursestats.services.features import ARTICLE_STATUS, ConfigFeatureLookup, FeatureLookup
from coursestats.stats.aggregator import StatsAggregator
from coursestats.stats.models import Window
from coursestats.stats.store import TimesliceStore
from coursestats.stats.windows import build_windows, clip_windows
from coursestats.utils.timestamps import parse_timestamp, to_utc, utc_now

logger = logging.getLogger(__name__)

# 进程内课程锁
# In-process per-course locks
_course_locks: dict[int, threading.Lock] = {}
_course_locks_guard = threading.Lock()


def _course_lock(course_id: int) -> threading.Lock:
    with _course_locks_guard:
        return _course_locks.setdefault(course_id, threading.Lock())


class UpdateCourseStats:
    """
    课程统计更新
    Course Statistics Update

    Attributes:
        course: 要更新的课程 / Course to update
        store: 时间片存储 / Timeslice store
        correlation_id: 本次运行的关联 ID（uuid4），用于错误上报标签
                        Correlation id of the run (uuid4) tagging error reports
        error_count: 本次运行累计的错误数 / Errors counted during the run

    Examples:
        >>> service = UpdateCourseStats(course, store, revision_fetcher, upload_fetcher)
        >>> entry = service.run(start='20181124000000', end='20181129190000')
        >>> entry.error_count
        0
    """

    def __init__(
        self,
        course: Course,
        store: TimesliceStore,
        revision_fetcher: RevisionFetcher,
        upload_fetcher: UploadFetcher,
        error_tracker: ErrorTracker | None = None,
        feature_lookup: FeatureLookup | None = None,
        status_annotator: StatusAnnotator | None = None,
        config: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Args:
            course: 课程（需已保存，带 id）/ Saved course (carries its id)
            store: 时间片存储 / Timeslice store
            revision_fetcher: 修订获取器 / Revision fetcher
            upload_fetcher: 上传获取器 / Upload fetcher
            error_tracker: 错误追踪器，默认记录到日志 / Error tracker, logs by default
            feature_lookup: 功能查询，默认不支持任何功能 / Feature lookup, nothing supported by default
            status_annotator: 文章状态标注器，None 时跳过该步骤
                              Status annotator; the step is skipped when None
            config: update 配置节 / The ``update`` config section
            clock: 当前时间来源 / Source of the current time
        """
        if course.id is None:
            raise ConfigurationError(f"Course {course.slug} has not been saved")

        self.course = course
        self.store = store
        self.revision_fetcher = revision_fetcher
        self.upload_fetcher = upload_fetcher
        self.error_tracker = error_tracker or LoggingErrorTracker()
        self.feature_lookup = feature_lookup or ConfigFeatureLookup()
        self.status_annotator = status_annotator
        self.config = {**DEFAULT_CONFIG['update'], **(config or {})}
        self.clock = clock

        self.aggregator = StatsAggregator(store)
        self.correlation_id = str(uuid.uuid4())
        self.error_count = 0
        self._errors_lock = threading.Lock()

    @property
    def error_tags(self) -> dict[str, str]:
        return {'update_service_id': self.correlation_id, 'course': self.course.slug}

    @property
    def debug(self) -> bool:
        return self.course.flags.debug_updates

    # =========================================================================
    # Entry point
    # =========================================================================

    def run(
        self,
        start: datetime | str | None = None,
        end: datetime | str | None = None,
        wikis: Iterable[Wiki] | None = None
    ) -> UpdateLogEntry | None:
        """
        执行一次更新
        Run one update

        Args:
            start: 范围开始（datetime 或 MediaWiki 时间戳），默认课程开始
                   Range start (datetime or MediaWiki timestamp), course start by default
            end: 范围结束，默认课程结束
                 Range end, course end by default
            wikis: 只更新这些 wiki，默认课程的全部 wiki
                   Only update these wikis, every course wiki by default

        Returns:
            本次运行的更新日志条目；课程正在被另一次运行更新时返回 None
            The run's update log entry; None when another run holds the course

        Raises:
            ValueError: 时间戳无法解析或 end 早于 start
                        Unparseable timestamps or end before start
        """
        range_start = parse_timestamp(start) if start is not None else self.course.start
        range_end = parse_timestamp(end) if end is not None else self.course.end
        if range_end < range_start:
            raise ValueError(
                f"Update range ends ({range_end.isoformat()}) before it starts "
                f"({range_start.isoformat()})"
            )

        local_lock = _course_lock(self.course.id)
        if not local_lock.acquire(blocking=False):
            logger.warning(f"Course {self.course.slug} is already being updated in this process")
            return None
        try:
            if not self.store.acquire_update_lock(
                self.course.id, self.correlation_id, self.config['lock_timeout']
            ):
                logger.warning(f"Course {self.course.slug} is locked by another update, skipping")
                return None
            try:
                return self._run(range_start, range_end, wikis)
            finally:
                self.store.release_update_lock(self.course.id, self.correlation_id)
        finally:
            local_lock.release()

    def _run(
        self,
        range_start: datetime,
        range_end: datetime,
        wikis: Iterable[Wiki] | None
    ) -> UpdateLogEntry:
        started_at = to_utc(self.clock())
        logger.info(
            f"=== Updating {self.course.slug} [{range_start.isoformat()}, {range_end.isoformat()}] "
            f"(update_service_id={self.correlation_id}) ==="
        )
        self._debug('Update started', start=range_start.isoformat(), end=range_end.isoformat())

        chunk = timedelta(days=self.config['timeslice_days'])
        windows = clip_windows(
            build_windows(self.course.start, self.course.end, chunk, now=started_at),
            range_start,
            range_end
        )
        targets = list(wikis) if wikis is not None else list(self.course.wikis)

        logger.info(f"Step 1: Importing revisions and uploads for {len(targets)} wikis...")
        workers = min(int(self.config['max_workers']), len(targets))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                list(executor.map(lambda w: self._update_wiki(w, windows, started_at), targets))
        else:
            for wiki in targets:
                self._update_wiki(wiki, windows, started_at)

        logger.info("Step 2: Annotating article status...")
        self._annotate_article_status()

        logger.info("Step 3: Refreshing course rollups...")
        try:
            self.store.refresh_course_stats(self.course.id)
            self.store.refresh_course_user_stats(self.course.id)
        except Exception as e:
            logger.error(f"Error refreshing rollups for {self.course.slug}: {e}")
            self._record_error(e)

        return self._finalize(started_at)

    # =========================================================================
    # Per-wiki import
    # =========================================================================

    def _resolve_wiki(self, wiki: Wiki) -> Wiki:
        if not self.course.has_wiki(wiki):
            raise ConfigurationError(f"{wiki} is not associated with course {self.course.slug}")
        stored = next(w for w in self.course.wikis if w == wiki)
        if stored.id is None:
            raise ConfigurationError(f"{wiki} has no stored wiki row")
        return stored

    def _update_wiki(self, wiki: Wiki, windows: list[Window], started_at: datetime) -> None:
        """
        获取、聚合并持久化一个 wiki 的数据；异常不会传出
        Fetch, aggregate and persist one wiki; no exception escapes

        窗口最晚到 started_at，获取发生在其后，所以成功的获取覆盖到 started_at。
        Windows end no later than started_at and the fetch happens after it, so
        a successful fetch covers everything up to started_at.
        """
        try:
            wiki = self._resolve_wiki(wiki)
            timeslices = self.aggregator.ensure_timeslices(self.course, wiki, windows)
            markers = self.aggregator.fetch_markers(timeslices)
            if markers is None:
                logger.info(f"No windows to update for {self.course.slug} on {wiki}")
                return
            revision_marker, upload_marker = markers

            self._debug(f'Fetching data from {wiki}', since=revision_marker.timestamp.isoformat())
            revisions = self._safe_fetch(
                self.revision_fetcher.fetch_revisions, wiki, revision_marker,
                self.revision_fetcher.source_type
            )
            uploads = self._safe_fetch(
                self.upload_fetcher.fetch_uploads, wiki, upload_marker,
                self.upload_fetcher.source_type
            )

            # 获取失败时传入 None，高水位保持不变
            result = self.aggregator.aggregate(
                self.course,
                wiki,
                windows,
                revisions=revisions.items if revisions.is_success() else None,
                uploads=uploads.items if uploads.is_success() else None,
                fetched_until=started_at,
            )
            if revisions.is_success():
                self._debug(f'Revisions imported for {wiki}', count=result.revisions_applied)
            if uploads.is_success():
                self._debug(f'Uploads imported for {wiki}', count=result.uploads_applied)
        except Exception as e:
            logger.error(f"Error updating {self.course.slug} on {wiki}: {e}")
            self._record_error(e)

    def _safe_fetch(
        self,
        fetch: Callable[..., list[dict[str, Any]]],
        wiki: Wiki,
        since: FetchMarker,
        source_type: str
    ) -> FetchResult:
        """
        安全地调用获取器
        Safely call a fetcher

        捕获所有异常并返回包含错误信息的 FetchResult。
        Catches every exception and returns a FetchResult carrying the error.
        """
        source_name = f"{wiki} {source_type}"
        try:
            items = fetch(wiki, since, self.course.participants)
        except Exception as e:
            error_msg = f"Error fetching {source_name}: {type(e).__name__}: {e}"
            logger.error(error_msg)
            self._record_error(e)
            return FetchResult(
                items=[],
                source_name=source_name,
                source_type=source_type,
                error=error_msg,
                exception=e
            )
        logger.info(f"Fetched {len(items)} {source_type} from {wiki}")
        return FetchResult(items=list(items), source_name=source_name, source_type=source_type)

    # =========================================================================
    # Article status annotation
    # =========================================================================

    def should_annotate_article_status(self) -> bool:
        """
        是否执行文章状态标注
        Whether the article status annotation step runs

        产品不支持且预计更新时长超过上限时跳过。
        Skipped when the product lacks support and the estimated update
        duration exceeds the ceiling.
        """
        if self.status_annotator is None:
            return False
        if self.feature_lookup.product_supports(ARTICLE_STATUS, self.course):
            return True
        estimate = self.course.estimated_update_duration(self.config['seconds_per_course_day'])
        return estimate <= self.config['long_update_ceiling']

    def _annotate_article_status(self) -> None:
        if not self.should_annotate_article_status():
            logger.info(f"Skipping article status annotation for {self.course.slug}")
            self._debug('Article status annotation skipped')
            return

        self._debug('Annotating article status')
        for wiki in self.course.wikis:
            if wiki.id is None:
                continue
            try:
                article_ids = [
                    a.article_id
                    for a in self.store.get_articles_courses(self.course.id, wiki.id, tracked=True)
                ]
                if not article_ids:
                    continue
                missing = self.status_annotator.annotate(wiki, article_ids)
                for article_id in missing:
                    self.store.set_article_tracked(self.course.id, wiki.id, article_id, False)
                if missing:
                    logger.info(f"Untracked {len(missing)} missing articles on {wiki}")
            except Exception as e:
                logger.error(f"Error annotating article status on {wiki}: {e}")
                self._record_error(e)
        self._debug('Article status annotated')

    # =========================================================================
    # Finalize
    # =========================================================================

    def _finalize(self, started_at: datetime) -> UpdateLogEntry:
        finished_at = to_utc(self.clock())
        entry = self.store.append_update_log(
            self.course.id, started_at, finished_at, self.error_count, self.correlation_id
        )

        flags = self.course.flags
        longest = flags.longest_update
        if longest is None or entry.duration > longest:
            longest = entry.duration
        self.course.flags = replace(
            flags, longest_update=longest, update_logs=(*flags.update_logs, entry)
        )
        try:
            self.store.update_course_flags(self.course.id, self.course.flags)
        except Exception as e:
            # 日志条目已追加，这里只上报
            logger.error(f"Error saving flags for {self.course.slug}: {e}")
            self.error_tracker.capture_exception(e, tags=self.error_tags)

        self._debug('Update finished', errors=entry.error_count, duration=f"{entry.duration:.2f}s")
        logger.info(
            f"=== Update of {self.course.slug} finished: run #{entry.run_number}, "
            f"{entry.error_count} errors, duration {entry.duration:.2f}s ==="
        )
        return entry

    # =========================================================================
    # Error tracking helpers
    # =========================================================================

    def _record_error(self, error: BaseException) -> None:
        with self._errors_lock:
            self.error_count += 1
        self.error_tracker.capture_exception(error, tags=self.error_tags)

    def _debug(self, text: str, **extra: Any) -> None:
        if not self.debug:
            return
        self.error_tracker.capture_message(
            f"{self.course.slug}: {text}",
            extra={**extra, **self.error_tags}
        )


def update_course_stats(
    course: Course,
    store: TimesliceStore,
    revision_fetcher: RevisionFetcher,
    upload_fetcher: UploadFetcher,
    start: datetime | str | None = None,
    end: datetime | str | None = None,
    **kwargs: Any
) -> UpdateLogEntry | None:
    """
    更新课程在 [start, end] 内的统计
    Update a course's statistics for [start, end]

    Examples:
        >>> update_course_stats(course, store, revisions, uploads,
        ...                     '20181124000000', '20181129190000')
    """
    service = UpdateCourseStats(course, store, revision_fetcher, upload_fetcher, **kwargs)
    return service.run(start=start, end=end)

"""
调度器模块
Scheduler Module

定时执行课程统计更新：为存储中的每个课程运行一次 UpdateCourseStats。
Runs course statistics updates periodically: one UpdateCourseStats run per
course in the store.
"""

import logging
import time
from datetime import datetime
from typing import Any

import schedule

from coursestats.config import (
    get_database_config,
    get_features_config,
    get_mediawiki_config,
    get_update_config,
)
from coursestats.fetchers.mediawiki_fetcher import (
    MediaWikiClient,
    MediaWikiRevisionFetcher,
    MediaWikiStatusAnnotator,
    MediaWikiUploadFetcher,
)
from coursestats.models import UpdateLogEntry
from coursestats.services.error_tracking import LoggingErrorTracker
from coursestats.services.features import ConfigFeatureLookup
from coursestats.services.update_course_stats import UpdateCourseStats
from coursestats.stats.store import TimesliceStore

logger = logging.getLogger(__name__)


class Scheduler:
    """
    定时任务调度器
    Scheduled Task Scheduler

    负责根据配置组装各组件并执行课程更新。
    Assembles the components from config and runs course updates.

    Attributes:
        config: 完整配置字典 / Complete config dict
        interval_minutes: 两次运行之间的间隔（分钟）/ Minutes between runs
        _running: 调度器是否正在运行 / Whether the scheduler is running
    """

    def __init__(self, config: dict):
        """
        Examples:
            >>> config = load_config_with_defaults("config.yaml")
            >>> scheduler = Scheduler(config)
        """
        self.config = config

        schedule_config = config.get('schedule', {})
        self.interval_minutes = int(schedule_config.get('interval_minutes', 60))
        self.update_config = get_update_config(config)

        self._running = False

        logger.info(f"Scheduler initialized with interval_minutes={self.interval_minutes}")

    def _init_components(self) -> dict[str, Any]:
        """
        初始化所有组件
        Initialize all components
        """
        components: dict[str, Any] = {}

        db_path = get_database_config(self.config)['path']
        components['store'] = TimesliceStore(db_path)
        components['store'].init_db()
        logger.info(f"TimesliceStore initialized with db_path={db_path}")

        client = MediaWikiClient(get_mediawiki_config(self.config))
        components['revision_fetcher'] = MediaWikiRevisionFetcher(client=client)
        components['upload_fetcher'] = MediaWikiUploadFetcher(client=client)
        components['status_annotator'] = MediaWikiStatusAnnotator(client=client)
        logger.info("MediaWiki fetchers initialized")

        components['error_tracker'] = LoggingErrorTracker()
        components['feature_lookup'] = ConfigFeatureLookup(get_features_config(self.config))
        return components

    def _cleanup_components(self, components: dict[str, Any]):
        if 'store' in components:
            try:
                components['store'].close()
            except Exception as e:
                logger.warning(f"Error closing store: {e}")

    def run_task(
        self,
        course_slug: str | None = None,
        start: datetime | str | None = None,
        end: datetime | str | None = None
    ) -> list[UpdateLogEntry]:
        """
        执行课程更新任务
        Execute the course update task

        Args:
            course_slug: 只更新该课程，默认更新全部课程
                         Only update this course, every course by default
            start: 更新范围开始 / Update range start
            end: 更新范围结束 / Update range end

        Returns:
            已完成运行的更新日志条目（被锁跳过的课程不包含在内）
            Log entries of completed runs (courses skipped by the lock excluded)
        """
        start_time = datetime.now()
        logger.info(f"=== Task started at {start_time.isoformat()} ===")

        components = None
        entries: list[UpdateLogEntry] = []
        try:
            components = self._init_components()
            store: TimesliceStore = components['store']

            if course_slug:
                course = store.get_course_by_slug(course_slug)
                if course is None:
                    logger.error(f"Course not found: {course_slug}")
                    return entries
                courses = [course]
            else:
                courses = store.list_courses()
            logger.info(f"Updating {len(courses)} courses")

            for course in courses:
                try:
                    service = UpdateCourseStats(
                        course,
                        store,
                        components['revision_fetcher'],
                        components['upload_fetcher'],
                        error_tracker=components['error_tracker'],
                        feature_lookup=components['feature_lookup'],
                        status_annotator=components['status_annotator'],
                        config=self.update_config,
                    )
                    entry = service.run(start=start, end=end)
                except Exception as e:
                    logger.error(f"Update of {course.slug} failed: {e}", exc_info=True)
                    continue
                if entry is not None:
                    entries.append(entry)

            duration = (datetime.now() - start_time).total_seconds()
            logger.info(f"=== Task completed: {len(entries)} courses updated "
                        f"(duration: {duration:.2f}s) ===")
            return entries
        finally:
            if components:
                self._cleanup_components(components)

    def start(self):
        """
        启动定时调度
        Start scheduled execution
        """
        logger.info(f"Starting scheduler, task will run every {self.interval_minutes} minutes")

        schedule.clear()
        schedule.every(self.interval_minutes).minutes.do(self.run_task)

        self._running = True
        try:
            while self._running:
                schedule.run_pending()
                time.sleep(30)
        except KeyboardInterrupt:
            logger.info("Scheduler stopped by user")
            self._running = False
        except Exception as e:
            logger.error(f"Scheduler error: {e}", exc_info=True)
            self._running = False
            raise

    def stop(self):
        logger.info("Stopping scheduler...")
        self._running = False
        schedule.clear()

    def run_once(
        self,
        course_slug: str | None = None,
        start: datetime | str | None = None,
        end: datetime | str | None = None
    ) -> list[UpdateLogEntry]:
        """
        手动执行一次任务
        Manually execute task once
        """
        logger.info("Running task manually (once)...")
        entries = self.run_task(course_slug, start, end)
        logger.info("Manual task execution completed")
        return entries

"""
调度器模块测试
Scheduler Module Tests

测试Scheduler类的初始化、组件组装和课程更新任务。
Tests Scheduler initialization, component assembly and the course update task.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from coursestats.exceptions import ConfigurationError
from coursestats.fetchers.mediawiki_fetcher import MediaWikiRevisionFetcher
from coursestats.models import Course, UpdateLogEntry, Wiki
from coursestats.scheduler import Scheduler
from coursestats.stats.store import TimesliceStore

UTC = timezone.utc


def make_entry(run_number=1, error_count=0):
    start = datetime(2019, 1, 1, tzinfo=UTC)
    return UpdateLogEntry(
        run_number=run_number,
        start_time=start,
        end_time=start,
        error_count=error_count,
        correlation_id=f'run-{run_number}',
        duration=0.0,
    )


@pytest.fixture
def config(tmp_path):
    """指向临时数据库的配置，预置两个课程"""
    db_path = str(tmp_path / 'data' / 'stats.db')
    store = TimesliceStore(db_path)
    store.init_db()
    for slug in ('course-a', 'course-b'):
        store.save_course(Course(
            slug=slug,
            start=datetime(2018, 11, 23, tzinfo=UTC),
            end=datetime(2018, 11, 30, tzinfo=UTC),
            wikis=[Wiki('en', 'wikipedia')],
        ))
    store.close()
    return {'database': {'path': db_path}}


class TestSchedulerInit:
    """测试Scheduler初始化"""

    def test_init_with_default_config(self):
        scheduler = Scheduler({})

        assert scheduler.interval_minutes == 60
        assert scheduler.update_config['timeslice_days'] == 1.0
        assert scheduler._running is False

    def test_init_with_custom_interval(self):
        scheduler = Scheduler({'schedule': {'interval_minutes': '15'}})
        assert scheduler.interval_minutes == 15

    def test_init_stores_full_config(self):
        config = {'schedule': {'interval_minutes': 5}, 'database': {'path': 'test.db'}}
        assert Scheduler(config).config == config

    def test_invalid_update_config(self):
        with pytest.raises(ConfigurationError):
            Scheduler({'update': {'max_workers': 0}})


class TestSchedulerComponents:
    """测试Scheduler组件初始化"""

    def test_init_components(self, config, tmp_path):
        scheduler = Scheduler(config)
        components = scheduler._init_components()
        try:
            assert isinstance(components['store'], TimesliceStore)
            assert isinstance(components['revision_fetcher'], MediaWikiRevisionFetcher)
            # 所有 MediaWiki 组件共享同一个客户端
            assert components['revision_fetcher'].client is components['upload_fetcher'].client
            assert components['status_annotator'].client is components['upload_fetcher'].client
        finally:
            scheduler._cleanup_components(components)

    def test_cleanup_handles_close_error(self):
        store = MagicMock()
        store.close.side_effect = RuntimeError('already closed')
        Scheduler({})._cleanup_components({'store': store})
        store.close.assert_called_once()


class TestSchedulerRunTask:
    """测试课程更新任务"""

    @patch('coursestats.scheduler.UpdateCourseStats')
    def test_run_once_updates_every_course(self, mock_service, config):
        mock_service.return_value.run.side_effect = [make_entry(1), make_entry(2)]

        entries = Scheduler(config).run_once()

        assert len(entries) == 2
        slugs = sorted(call.args[0].slug for call in mock_service.call_args_list)
        assert slugs == ['course-a', 'course-b']
        kwargs = mock_service.call_args.kwargs
        assert kwargs['config']['timeslice_days'] == 1.0
        assert kwargs['status_annotator'] is not None

    @patch('coursestats.scheduler.UpdateCourseStats')
    def test_course_filter_and_range(self, mock_service, config):
        mock_service.return_value.run.return_value = make_entry()

        entries = Scheduler(config).run_once('course-b', '20181124000000', '20181129190000')

        assert len(entries) == 1
        assert mock_service.call_args.args[0].slug == 'course-b'
        mock_service.return_value.run.assert_called_once_with(
            start='20181124000000', end='20181129190000'
        )

    @patch('coursestats.scheduler.UpdateCourseStats')
    def test_unknown_course(self, mock_service, config):
        assert Scheduler(config).run_once('missing') == []
        mock_service.assert_not_called()

    @patch('coursestats.scheduler.UpdateCourseStats')
    def test_failing_course_does_not_stop_others(self, mock_service, config):
        mock_service.return_value.run.side_effect = [ValueError('bad range'), make_entry()]

        entries = Scheduler(config).run_task()

        assert len(entries) == 1
        assert mock_service.return_value.run.call_count == 2

    @patch('coursestats.scheduler.UpdateCourseStats')
    def test_locked_course_excluded(self, mock_service, config):
        mock_service.return_value.run.side_effect = [None, make_entry()]
        assert len(Scheduler(config).run_task()) == 1


class TestSchedulerLoop:
    """测试定时循环"""

    @patch('coursestats.scheduler.time')
    @patch('coursestats.scheduler.schedule')
    def test_start_registers_interval_job(self, mock_schedule, mock_time):
        mock_time.sleep.side_effect = KeyboardInterrupt
        scheduler = Scheduler({'schedule': {'interval_minutes': 10}})

        scheduler.start()

        mock_schedule.every.assert_called_once_with(10)
        mock_schedule.every.return_value.minutes.do.assert_called_once_with(scheduler.run_task)
        mock_schedule.run_pending.assert_called_once()
        assert scheduler._running is False

    @patch('coursestats.scheduler.schedule')
    def test_stop(self, mock_schedule):
        scheduler = Scheduler({})
        scheduler._running = True

        scheduler.stop()

        assert scheduler._running is False
        mock_schedule.clear.assert_called_once()

"""
统计聚合器测试
Statistics aggregator tests

覆盖四个缓存范围的合并规则、重放幂等性以及异常记录处理。
Covers the merge rules of the four cache scopes, replay idempotence and
malformed record handling.
"""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from coursestats.models import Course, Participant, Role, Wiki
from coursestats.stats.aggregator import StatsAggregator
from coursestats.stats.models import counter_values
from coursestats.stats.store import TimesliceStore
from coursestats.stats.windows import build_windows

UTC = timezone.utc
COURSE_START = datetime(2018, 11, 23, tzinfo=UTC)
COURSE_END = datetime(2018, 11, 30, tzinfo=UTC)
NOW = datetime(2019, 1, 1, tzinfo=UTC)


def rev(revision_id, user_id, article_id, when, chars=0, refs=0, deleted=False, namespace=0):
    return {
        'revision_id': revision_id,
        'article_id': article_id,
        'user_id': user_id,
        'timestamp': when,
        'char_delta': chars,
        'ref_delta': refs,
        'deleted': deleted,
        'namespace': namespace,
    }


def upload(user_id, when, usage_count=0):
    return {'user_id': user_id, 'timestamp': when, 'usage_count': usage_count}


# 具体场景：两名学生编辑同一篇 tracked 文章，教师的编辑不计入课程统计
# Concrete scenario: two students edit one tracked article; the instructor's
# edit does not count towards the course
SCENARIO_REVISIONS = [
    rev(101, 1, 10, '2018-11-24T10:00:00Z', chars=9000, refs=4),
    rev(102, 2, 10, '2018-11-24T12:00:00Z', chars=12, refs=5),
    rev(103, 1, 10, '2018-11-25T09:00:00Z'),
    rev(104, 1, 10, '2018-11-26T08:00:00Z', chars=-2, refs=-2, deleted=True),
    rev(105, 3, 20, '2018-11-26T09:00:00Z', chars=500, refs=1),
]
SCENARIO_UPLOADS = [
    upload(1, '2018-11-24T11:00:00Z', usage_count=3),
    upload(2, '2018-11-25T11:00:00Z', usage_count=4),
]


def course_totals(store, course_id):
    totals = {}
    for timeslice in store.get_course_wiki_timeslices(course_id):
        for name, value in counter_values(timeslice).items():
            totals[name] = totals.get(name, 0) + value
    return totals


@pytest.fixture
def windows():
    return build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=NOW)


@pytest.fixture
def aggregator(store):
    return StatsAggregator(store)


class TestConcreteScenario:
    """具体场景：9010 字符、7 个引用、3 次修订、2 个上传"""

    def test_course_totals(self, store, course, enwiki, aggregator, windows):
        result = aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)

        assert result.revisions_applied == 5
        assert result.uploads_applied == 2
        assert result.anomalies == 0

        totals = course_totals(store, course.id)
        assert totals['character_sum'] == 9010
        assert totals['references_count'] == 7
        assert totals['revision_count'] == 3
        assert totals['upload_count'] == 2
        assert totals['uploads_in_use_count'] == 2
        assert totals['upload_usages_count'] == 7

    def test_course_rollup_matches(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)
        stats = store.refresh_course_stats(course.id)
        assert (stats.character_sum, stats.references_count, stats.revision_count) == (9010, 7, 3)
        assert (stats.upload_count, stats.uploads_in_use_count, stats.upload_usages_count) == (2, 2, 7)
        assert stats.article_count == 1

    def test_article_scope(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)

        article = store.get_articles_course(course.id, enwiki.id, 10)
        assert article.character_sum == 9010
        assert article.references_count == 7
        assert article.revision_count == 3
        assert article.user_ids == {1, 2}
        # 教师的编辑不创建文章-课程记录
        assert store.get_articles_course(course.id, enwiki.id, 20) is None

        slices = store.get_article_course_timeslices(course.id, enwiki.id, article_id=10)
        assert [s.character_sum for s in slices] == [9012, 0, -2]
        assert [s.revision_count for s in slices] == [2, 1, 0]
        assert slices[0].user_ids == {1, 2}

    def test_user_scope(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)
        stats = {s.user_id: s for s in store.refresh_course_user_stats(course.id)}

        assert stats[1].character_sum_ms == 8998
        assert stats[1].revision_count == 2
        assert stats[1].total_uploads == 1
        assert stats[2].character_sum_ms == 12
        assert stats[2].total_uploads == 1
        # 教师的用户时间片照常统计
        assert stats[3].character_sum_ms == 500
        assert stats[3].revision_count == 1

    def test_marks_advance_per_window(self, store, course, enwiki, aggregator, windows):
        result = aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)
        by_start = {t.start: t for t in store.get_course_wiki_timeslices(course.id)}

        first_day = by_start[datetime(2018, 11, 24, tzinfo=UTC)]
        assert first_day.last_mw_rev_id == 102
        assert first_day.last_mw_rev_datetime == datetime(2018, 11, 24, 12, tzinfo=UTC)
        assert first_day.last_upload_datetime == datetime(2018, 11, 24, 11, tzinfo=UTC)
        assert by_start[datetime(2018, 11, 26, tzinfo=UTC)].last_mw_rev_id == 105
        assert len(result.windows_touched) == 3


class TestIdempotence:
    """重放同一批数据不会重复计数"""

    def test_replay_same_batch(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)
        before = course_totals(store, course.id)
        article_before = store.get_articles_course(course.id, enwiki.id, 10)

        replay = aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS)

        assert replay.revisions_applied == 0
        assert replay.uploads_applied == 0
        assert replay.revisions_skipped == len(SCENARIO_REVISIONS)
        assert replay.windows_touched == []
        assert course_totals(store, course.id) == before
        assert store.get_articles_course(course.id, enwiki.id, 10) == article_before

    def test_duplicate_revision_in_one_batch(self, store, course, enwiki, aggregator, windows):
        revision = rev(101, 1, 10, '2018-11-24T10:00:00Z', chars=100)
        aggregator.aggregate(course, enwiki, windows, [revision, dict(revision)], [])
        assert course_totals(store, course.id)['character_sum'] == 100

    def test_overlapping_fetch_applies_only_new_revisions(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS[:2], [])
        result = aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, [])

        assert result.revisions_applied == 3
        assert course_totals(store, course.id)['character_sum'] == 9010


# ============================================================================
# Strategies for generating test data
# ============================================================================

revision_strategy = st.tuples(
    st.integers(min_value=0, max_value=7 * 24 * 60 - 1),   # minutes after course start
    st.sampled_from([1, 2, 3]),                            # user
    st.integers(min_value=1, max_value=4),                 # article
    st.integers(min_value=-200, max_value=2000),           # char delta
    st.integers(min_value=-3, max_value=5),                # ref delta
    st.booleans(),                                         # deleted
    st.sampled_from([0, 0, 0, 2, 3, 118]),                 # namespace
)


def _revisions_from(raw):
    # 修订 ID 随时间递增
    ordered = sorted(raw, key=lambda r: r[0])
    return [
        rev(i + 1, user, article, COURSE_START + timedelta(minutes=minute),
            chars=chars, refs=refs, deleted=deleted, namespace=namespace)
        for i, (minute, user, article, chars, refs, deleted, namespace) in enumerate(ordered)
    ]


def _fresh():
    store = TimesliceStore(':memory:')
    store.init_db()
    course = store.save_course(Course(
        slug='pbt',
        start=COURSE_START,
        end=COURSE_END,
        wikis=[Wiki('en', 'wikipedia')],
        participants=[
            Participant(1, 'Alice'),
            Participant(2, 'Bob'),
            Participant(3, 'Carol', Role.INSTRUCTOR),
        ],
    ))
    return store, course


def _snapshot(store, course_id):
    return {
        'course': sorted(
            (t.start, tuple(counter_values(t).values()), t.last_mw_rev_id)
            for t in store.get_course_wiki_timeslices(course_id)
        ),
        'users': sorted(
            (t.user_id, t.start, tuple(counter_values(t).values()))
            for t in store.get_course_user_wiki_timeslices(course_id)
        ),
        'articles': sorted(
            (a.article_id, tuple(counter_values(a).values()), tuple(sorted(a.user_ids)))
            for a in store.get_articles_courses(course_id)
        ),
    }


class TestIdempotenceProperties:
    """重放属性测试"""

    @given(raw=st.lists(revision_strategy, max_size=40), split=st.integers(min_value=0, max_value=40))
    @settings(max_examples=50, deadline=None)
    def test_incremental_then_replay_equals_single_pass(self, raw, split):
        """先处理前缀再处理完整重叠批次，与一次性处理结果相同"""
        revisions = _revisions_from(raw)
        windows = build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=NOW)

        once_store, once_course = _fresh()
        StatsAggregator(once_store).aggregate(
            once_course, once_course.wikis[0], windows, revisions, []
        )

        inc_store, inc_course = _fresh()
        aggregator = StatsAggregator(inc_store)
        wiki = inc_course.wikis[0]
        aggregator.aggregate(inc_course, wiki, windows, revisions[:split], [])
        aggregator.aggregate(inc_course, wiki, windows, revisions, [])
        aggregator.aggregate(inc_course, wiki, windows, revisions, [])

        assert _snapshot(inc_store, inc_course.id) == _snapshot(once_store, once_course.id)
        once_store.close()
        inc_store.close()

    @given(raw=st.lists(revision_strategy, min_size=1, max_size=30))
    @settings(max_examples=50, deadline=None)
    def test_course_totals_count_students_only(self, raw):
        revisions = _revisions_from(raw)
        windows = build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=NOW)
        store, course = _fresh()
        StatsAggregator(store).aggregate(course, course.wikis[0], windows, revisions, [])

        students = [r for r in revisions if r['user_id'] in (1, 2)]
        mainspace = [r for r in students if r['namespace'] == 0]
        totals = course_totals(store, course.id)
        assert totals['character_sum'] == sum(r['char_delta'] for r in mainspace)
        assert totals['references_count'] == sum(r['ref_delta'] for r in mainspace)
        assert totals['revision_count'] == sum(1 for r in mainspace if not r['deleted'])
        store.close()


class TestTrackingAndDeletion:
    """tracked 过滤和删除修订"""

    def test_untracked_article_keeps_deltas_but_not_revisions(self, store, course, enwiki, aggregator, windows):
        store.get_or_create_articles_course(course.id, enwiki.id, 10)
        store.set_article_tracked(course.id, enwiki.id, 10, False)

        aggregator.aggregate(course, enwiki, windows, [
            rev(201, 1, 10, '2018-11-24T10:00:00Z', chars=300, refs=2),
        ], [])

        totals = course_totals(store, course.id)
        assert totals['character_sum'] == 300
        assert totals['references_count'] == 2
        assert totals['revision_count'] == 0

        article = store.get_articles_course(course.id, enwiki.id, 10)
        assert article.character_sum == 300
        assert article.revision_count == 0
        assert article.tracked is False

        user = store.get_course_user_wiki_timeslices(course.id, user_id=1)[0]
        assert user.character_sum_ms == 300
        assert user.revision_count == 0

    def test_deleted_revision_contributes_deltas_only(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, [
            rev(301, 1, 10, '2018-11-24T10:00:00Z', chars=-50, refs=-1, deleted=True),
        ], [])

        totals = course_totals(store, course.id)
        assert totals['character_sum'] == -50
        assert totals['references_count'] == -1
        assert totals['revision_count'] == 0
        assert store.get_course_user_wiki_timeslices(course.id, user_id=1)[0].revision_count == 0


class TestNamespaces:
    """命名空间拆分"""

    def test_character_split(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, [
            rev(1, 1, 10, '2018-11-24T10:00:00Z', chars=100),
            rev(2, 1, 11, '2018-11-24T11:00:00Z', chars=20, namespace=2),
            rev(3, 1, 12, '2018-11-24T12:00:00Z', chars=7, namespace=3),
            rev(4, 1, 13, '2018-11-24T13:00:00Z', chars=30, refs=1, namespace=118),
        ], [])

        user = store.get_course_user_wiki_timeslices(course.id, user_id=1)[0]
        assert user.character_sum_ms == 100
        assert user.character_sum_us == 27
        assert user.character_sum_draft == 30
        assert user.references_count == 1
        assert user.revision_count == 4

        # 只有主命名空间的编辑进入课程和文章统计
        totals = course_totals(store, course.id)
        assert totals['character_sum'] == 100
        assert totals['revision_count'] == 1
        assert [a.article_id for a in store.get_articles_courses(course.id)] == [10]


class TestFiltering:
    """跳过的记录"""

    def test_non_participants_and_out_of_range_skipped(self, store, course, enwiki, aggregator, windows):
        result = aggregator.aggregate(course, enwiki, windows, [
            rev(1, 99, 10, '2018-11-24T10:00:00Z', chars=100),
            rev(2, 1, 10, '2018-11-20T10:00:00Z', chars=100),
            rev(3, 1, 10, '2018-12-05T10:00:00Z', chars=100),
        ], [upload(99, '2018-11-24T10:00:00Z', 5)])

        assert result.revisions_applied == 0
        assert result.revisions_skipped == 3
        assert result.uploads_skipped == 1
        assert result.anomalies == 0
        assert course_totals(store, course.id) == {}

    def test_malformed_records_are_anomalies(self, store, course, enwiki, aggregator, windows):
        result = aggregator.aggregate(course, enwiki, windows, [
            {'revision_id': 'abc', 'article_id': 10, 'user_id': 1, 'timestamp': '2018-11-24T10:00:00Z'},
            {'revision_id': 5, 'article_id': 10, 'user_id': 1},
            'garbage',
            rev(6, 1, 10, '2018-11-24T10:00:00Z', chars=40),
        ], [{'user_id': 1, 'timestamp': '2018-11-24T10:00:00Z', 'usage_count': -3}])

        assert result.anomalies == 4
        assert result.revisions_applied == 1
        assert course_totals(store, course.id)['character_sum'] == 40

    def test_failed_fetch_leaves_marks(self, store, course, enwiki, aggregator, windows):
        result = aggregator.aggregate(course, enwiki, windows, revisions=None, uploads=None)
        assert result.windows_touched == []
        assert all(t.last_mw_rev_id is None for t in store.get_course_wiki_timeslices(course.id))


class TestUploads:
    """上传统计"""

    def test_instructor_upload_not_counted(self, store, course, enwiki, aggregator, windows):
        result = aggregator.aggregate(course, enwiki, windows, [], [
            upload(3, '2018-11-24T10:00:00Z', 9),
            upload(1, '2018-11-24T09:00:00Z', 0),
        ])

        assert result.uploads_applied == 1
        totals = course_totals(store, course.id)
        assert totals['upload_count'] == 1
        assert totals['uploads_in_use_count'] == 0
        assert totals['upload_usages_count'] == 0

        first_day = store.get_course_wiki_timeslices(course.id)[0]
        assert first_day.last_upload_datetime == datetime(2018, 11, 24, 10, tzinfo=UTC)

    def test_upload_replay(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, [], SCENARIO_UPLOADS)
        aggregator.aggregate(course, enwiki, windows, [], SCENARIO_UPLOADS)
        assert course_totals(store, course.id)['upload_count'] == 2


class TestFetchMarkers:
    """获取起点计算"""

    def test_markers_start_at_first_window(self, course, enwiki, aggregator, windows):
        timeslices = aggregator.ensure_timeslices(course, enwiki, windows)
        revision_marker, upload_marker = aggregator.fetch_markers(timeslices)
        assert revision_marker.timestamp == COURSE_START
        assert revision_marker.revision_id is None
        assert upload_marker.timestamp == COURSE_START

    def test_markers_wait_for_uncovered_windows(self, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, [])
        timeslices = aggregator.ensure_timeslices(course, enwiki, windows)

        revision_marker, _ = aggregator.fetch_markers(timeslices)
        # 未声明覆盖范围，空的第一个窗口（11-23）仍算未处理
        assert revision_marker.timestamp == COURSE_START

        later = aggregator.fetch_markers(timeslices[1:2])[0]
        assert later.timestamp == datetime(2018, 11, 24, 12, tzinfo=UTC)
        assert later.revision_id == 102

    def test_covered_empty_windows_do_not_pin_markers(self, course, enwiki, aggregator, windows):
        aggregator.aggregate(
            course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS, fetched_until=NOW
        )
        timeslices = aggregator.ensure_timeslices(course, enwiki, windows)

        # 11-23 没有任何记录，但已被获取覆盖
        assert timeslices[0].last_mw_rev_datetime == COURSE_START + timedelta(days=1)
        assert timeslices[0].last_mw_rev_id is None
        assert timeslices[0].last_upload_datetime == COURSE_START + timedelta(days=1)

        revision_marker, upload_marker = aggregator.fetch_markers(timeslices)
        assert revision_marker.timestamp == COURSE_END
        assert revision_marker.revision_id == 105
        assert upload_marker.timestamp == COURSE_END

        later = aggregator.fetch_markers(timeslices[1:2])[0]
        assert later.timestamp == datetime(2018, 11, 25, tzinfo=UTC)
        assert later.revision_id == 102

    def test_failed_fetch_does_not_advance_its_marks(self, course, enwiki, aggregator, windows):
        aggregator.aggregate(course, enwiki, windows, SCENARIO_REVISIONS, None, fetched_until=NOW)
        timeslices = aggregator.ensure_timeslices(course, enwiki, windows)

        revision_marker, upload_marker = aggregator.fetch_markers(timeslices)
        assert revision_marker.timestamp == COURSE_END
        assert upload_marker.timestamp == COURSE_START
        assert all(t.last_upload_datetime is None for t in timeslices)

    def test_covered_replay_applies_nothing(self, store, course, enwiki, aggregator, windows):
        aggregator.aggregate(
            course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS, fetched_until=NOW
        )
        result = aggregator.aggregate(
            course, enwiki, windows, SCENARIO_REVISIONS, SCENARIO_UPLOADS, fetched_until=NOW
        )
        assert result.revisions_applied == 0
        assert result.uploads_applied == 0
        assert course_totals(store, course.id)['character_sum'] == 9010

    def test_extended_window_reopens_marker(self, course, enwiki, aggregator):
        cutoff = COURSE_START + timedelta(hours=6)
        short = build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=cutoff)
        aggregator.aggregate(course, enwiki, short, [], [], fetched_until=cutoff)
        assert aggregator.fetch_markers(aggregator.ensure_timeslices(course, enwiki, short))[0].timestamp == cutoff

        full = build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=NOW)
        timeslices = aggregator.ensure_timeslices(course, enwiki, full)
        # 窗口延长后 06:00 之后的部分尚未获取
        revision_marker, upload_marker = aggregator.fetch_markers(timeslices)
        assert revision_marker.timestamp == cutoff
        assert upload_marker.timestamp == cutoff

    def test_no_windows(self, aggregator):
        assert aggregator.fetch_markers([]) is None

    def test_ensure_timeslices_extends_truncated_window(self, store, course, enwiki, aggregator):
        short = build_windows(COURSE_START, COURSE_END, timedelta(days=1),
                              now=COURSE_START + timedelta(hours=6))
        aggregator.ensure_timeslices(course, enwiki, short)
        full = build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=NOW)
        timeslices = aggregator.ensure_timeslices(course, enwiki, full)

        assert timeslices[0].end == COURSE_START + timedelta(days=1)
        assert len(store.get_course_wiki_timeslices(course.id)) == 7

    def test_extended_window_refreshes_user_and_article_timeslices(self, store, course, enwiki, aggregator):
        short = build_windows(COURSE_START, COURSE_END, timedelta(days=1),
                              now=COURSE_START + timedelta(hours=6))
        aggregator.aggregate(course, enwiki, short, [rev(101, 1, 10, '2018-11-23T01:00:00Z', chars=5)], [])
        full = build_windows(COURSE_START, COURSE_END, timedelta(days=1), now=NOW)
        aggregator.aggregate(course, enwiki, full, [rev(102, 1, 10, '2018-11-23T10:00:00Z', chars=15)], [])

        day = (COURSE_START, COURSE_START + timedelta(days=1))
        user_slices = store.get_course_user_wiki_timeslices(course.id, user_id=1)
        assert [(s.start, s.end) for s in user_slices] == [day]
        assert user_slices[0].character_sum_ms == 20

        article_slices = store.get_article_course_timeslices(course.id, enwiki.id, article_id=10)
        assert [(s.start, s.end) for s in article_slices] == [day]
        assert article_slices[0].character_sum == 20

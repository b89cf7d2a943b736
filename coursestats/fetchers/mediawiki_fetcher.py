"""
MediaWiki 获取器
MediaWiki Fetchers

通过 MediaWiki Action API 获取参与者的修订、上传，以及文章存在状态。
Fetches participant revisions, uploads and article existence through the
MediaWiki Action API.
"""

import logging
from typing import Any, Iterable, Iterator

import requests

from coursestats.exceptions import FetchError
from coursestats.fetchers.base import (
    FetchMarker,
    RevisionFetcher,
    StatusAnnotator,
    UploadFetcher,
)
from coursestats.models import Participant, Wiki
from coursestats.utils.timestamps import to_api_timestamp

logger = logging.getLogger(__name__)

# usercontribs / pageids 单次请求的最大数量
# Maximum users / page ids per request
MAX_TITLES_PER_REQUEST = 50


def _chunks(items: list, size: int) -> Iterator[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class MediaWikiClient:
    """
    MediaWiki Action API 客户端
    MediaWiki Action API Client

    处理 continue 分页和错误转换：网络错误、HTTP 错误和 API 错误一律
    转换为 FetchError。
    Handles ``continue`` paging and error translation: network errors, HTTP
    errors and API errors all become FetchError.
    """

    def __init__(self, config: dict[str, Any] | None = None, session: requests.Session | None = None):
        """
        Args:
            config: 配置字典，包含以下键：
                   - timeout: 请求超时时间秒数 (int, default=30)
                   - user_agent: User-Agent 头 (str)
                   - batch_size: 每页记录数 (int, default=500)
            session: 可选的 requests 会话（用于测试注入）
        """
        config = config or {}
        self.timeout: int = config.get('timeout', 30)
        self.user_agent: str = config.get('user_agent', 'coursestats/0.1')
        self.batch_size: int = config.get('batch_size', 500)
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': self.user_agent})

    def get(self, wiki: Wiki, params: dict[str, Any]) -> dict[str, Any]:
        """发送单个 API 请求 / Send one API request"""
        query = {'format': 'json', 'formatversion': 2, **params}
        try:
            response = self.session.get(wiki.api_url, params=query, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            raise FetchError(f"{wiki} request timeout after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise FetchError(f"{wiki} request failed: {e}") from e
        except ValueError as e:
            raise FetchError(f"{wiki} returned invalid JSON") from e

        if 'error' in data:
            error = data['error']
            raise FetchError(f"{wiki} API error {error.get('code')}: {error.get('info')}")
        return data

    def query(self, wiki: Wiki, params: dict[str, Any]) -> Iterator[dict[str, Any]]:
        """
        遍历 action=query 的所有分页
        Iterate over every page of an action=query request
        """
        request = {'action': 'query', **params}
        while True:
            data = self.get(wiki, request)
            yield data.get('query', {})
            if 'continue' not in data:
                break
            request = {**request, **data['continue']}


class MediaWikiRevisionFetcher(RevisionFetcher):
    """
    修订获取器（list=usercontribs）
    Revision Fetcher (list=usercontribs)

    sizediff 作为字符增量；被隐藏的修订报告为 deleted。该 API 不提供引用
    数变化，ref_delta 恒为 0。
    ``sizediff`` is the character delta; hidden revisions are reported as
    deleted. The API does not expose reference changes, so ref_delta is 0.
    """

    def __init__(self, config: dict[str, Any] | None = None, client: MediaWikiClient | None = None):
        self.client = client or MediaWikiClient(config)

    def fetch_revisions(
        self,
        wiki: Wiki,
        since: FetchMarker,
        users: Iterable[Participant]
    ) -> list[dict[str, Any]]:
        user_ids = {p.username: p.user_id for p in users}
        if not user_ids:
            return []

        revisions: list[dict[str, Any]] = []
        for names in _chunks(sorted(user_ids), MAX_TITLES_PER_REQUEST):
            params = {
                'list': 'usercontribs',
                'ucuser': '|'.join(names),
                'ucstart': to_api_timestamp(since.timestamp),
                'ucdir': 'newer',
                'ucprop': 'ids|title|timestamp|sizediff|flags',
                'uclimit': self.client.batch_size,
            }
            for page in self.client.query(wiki, params):
                for contrib in page.get('usercontribs', []):
                    revisions.append(self._to_record(contrib, user_ids))

        logger.info(f"Fetched {len(revisions)} revisions from {wiki} since {since.timestamp.isoformat()}")
        return revisions

    @staticmethod
    def _to_record(contrib: dict[str, Any], user_ids: dict[str, int]) -> dict[str, Any]:
        # 字段缺失的条目原样保留缺失，由聚合器作为异常数据跳过
        return {
            'revision_id': contrib.get('revid'),
            'article_id': contrib.get('pageid'),
            'user_id': user_ids.get(contrib.get('user', '')),
            'timestamp': contrib.get('timestamp'),
            'char_delta': contrib.get('sizediff', 0),
            'ref_delta': 0,
            'deleted': bool(contrib.get('texthidden') or contrib.get('suppressed')),
            'namespace': contrib.get('ns', 0),
        }


class MediaWikiUploadFetcher(UploadFetcher):
    """
    上传获取器（list=allimages + prop=globalusage）
    Upload Fetcher (list=allimages + prop=globalusage)
    """

    def __init__(self, config: dict[str, Any] | None = None, client: MediaWikiClient | None = None):
        self.client = client or MediaWikiClient(config)

    def fetch_uploads(
        self,
        wiki: Wiki,
        since: FetchMarker,
        users: Iterable[Participant]
    ) -> list[dict[str, Any]]:
        uploads: list[dict[str, Any]] = []
        for participant in {p.username: p for p in users}.values():
            params = {
                'list': 'allimages',
                'aiuser': participant.username,
                'aisort': 'timestamp',
                'aidir': 'newer',
                'aistart': to_api_timestamp(since.timestamp),
                'aiprop': 'timestamp',
                'ailimit': self.client.batch_size,
            }
            for page in self.client.query(wiki, params):
                for image in page.get('allimages', []):
                    uploads.append({
                        'title': image.get('title'),
                        'user_id': participant.user_id,
                        'timestamp': image.get('timestamp'),
                    })

        usage = self._usage_counts(wiki, [u['title'] for u in uploads if u.get('title')])
        for upload in uploads:
            upload_id, usage_count = usage.get(upload.pop('title'), (None, 0))
            upload['upload_id'] = upload_id
            upload['usage_count'] = usage_count

        logger.info(f"Fetched {len(uploads)} uploads from {wiki} since {since.timestamp.isoformat()}")
        return uploads

    def _usage_counts(self, wiki: Wiki, titles: list[str]) -> dict[str, tuple[int | None, int]]:
        """返回 title -> (pageid, 使用次数) / Map title to (page id, usage count)"""
        usage: dict[str, tuple[int | None, int]] = {}
        for batch in _chunks(titles, MAX_TITLES_PER_REQUEST):
            params = {
                'prop': 'globalusage',
                'titles': '|'.join(batch),
                'gulimit': 'max',
            }
            for page in self.client.query(wiki, params):
                for info in page.get('pages', []):
                    title = info.get('title')
                    page_id, count = usage.get(title, (info.get('pageid'), 0))
                    usage[title] = (page_id, count + len(info.get('globalusage', [])))
        return usage


class MediaWikiStatusAnnotator(StatusAnnotator):
    """
    文章状态标注器（prop=info&pageids=）
    Article Status Annotator (prop=info&pageids=)

    返回已不存在（被删除）的页面 ID。
    Returns the page ids that no longer exist (deleted pages).
    """

    def __init__(self, config: dict[str, Any] | None = None, client: MediaWikiClient | None = None):
        self.client = client or MediaWikiClient(config)

    def annotate(self, wiki: Wiki, article_ids: list[int]) -> set[int]:
        missing: set[int] = set()
        for batch in _chunks(sorted(set(article_ids)), MAX_TITLES_PER_REQUEST):
            params = {'prop': 'info', 'pageids': '|'.join(str(i) for i in batch)}
            for page in self.client.query(wiki, params):
                for info in page.get('pages', []):
                    if info.get('missing'):
                        missing.add(int(info['pageid']))
        if missing:
            logger.info(f"{len(missing)} of {len(article_ids)} articles on {wiki} no longer exist")
        return missing

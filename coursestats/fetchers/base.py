"""
Fetcher 基类和 FetchResult 数据类
Base Fetcher Classes and FetchResult Data Class

定义修订、上传和文章状态三类外部数据源的统一接口。
Defines the interfaces of the three external sources: revisions, uploads
and article status annotation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from coursestats.models import Participant, Wiki


@dataclass(frozen=True)
class FetchMarker:
    """
    增量获取起点
    Incremental Fetch Marker

    Attributes:
        timestamp: 只需获取该时间（含）之后的记录
                   Only records at or after this time are needed
        revision_id: 已处理的最大修订 ID（可选）
                     Highest processed revision id (optional)
    """
    timestamp: datetime
    revision_id: int | None = None


@dataclass
class FetchResult:
    """
    获取结果数据类
    Fetch Result Data Class

    封装一次适配器调用的结果，包括获取的记录列表、数据源信息和错误信息。
    Encapsulates the result of one adapter call: fetched records, source
    information and error details.

    Attributes:
        items: 获取的记录列表，每条为字典
               Fetched records, one dict each
        source_name: 数据源名称，如 'en.wikipedia.org revisions'
                     Name of the data source
        source_type: 数据源类型，如 'revisions', 'uploads', 'article_status'
                     Type of the data source
        error: 错误信息（如有），获取成功时为 None
               Error message if any, None on success
        exception: 原始异常（如有）
                   The original exception, if any

    Examples:
        >>> result = FetchResult(items=[{'revision_id': 1}], source_name='en.wikipedia.org',
        ...                      source_type='revisions')
        >>> result.is_success()
        True
        >>> len(result)
        1
    """
    items: list[dict[str, Any]] = field(default_factory=list)
    source_name: str = ""
    source_type: str = ""
    error: str | None = None
    exception: BaseException | None = None

    def is_success(self) -> bool:
        return self.error is None

    def __len__(self) -> int:
        return len(self.items)


class RevisionFetcher(ABC):
    """
    修订获取器抽象基类
    Abstract Revision Fetcher

    实现类返回字典列表，每条包含 revision_id, article_id, user_id,
    timestamp, char_delta, ref_delta, deleted, namespace。失败时抛出异常
    （通常为 FetchError），由调用方统一捕获和计数。
    Implementations return a list of dicts with revision_id, article_id,
    user_id, timestamp, char_delta, ref_delta, deleted and namespace. On
    failure they raise (usually FetchError); callers catch and count it.
    """

    source_type = 'revisions'

    @abstractmethod
    def fetch_revisions(
        self,
        wiki: Wiki,
        since: FetchMarker,
        users: Iterable[Participant]
    ) -> list[dict[str, Any]]:
        """获取 since 之后的修订 / Fetch revisions made since the marker"""


class UploadFetcher(ABC):
    """
    上传获取器抽象基类
    Abstract Upload Fetcher

    每条记录包含 user_id, timestamp, usage_count 以及可选的 upload_id。
    Each record has user_id, timestamp, usage_count and an optional upload_id.
    """

    source_type = 'uploads'

    @abstractmethod
    def fetch_uploads(
        self,
        wiki: Wiki,
        since: FetchMarker,
        users: Iterable[Participant]
    ) -> list[dict[str, Any]]:
        """获取 since 之后的上传 / Fetch uploads made since the marker"""


class StatusAnnotator(ABC):
    """
    文章状态标注器
    Article Status Annotator

    可选步骤：让内容 API 标记符合条件的文章。返回被标记为不再存在的
    文章 ID 集合。
    Optional step asking the content API to flag qualifying articles.
    Returns the ids of articles flagged as no longer existing.
    """

    source_type = 'article_status'

    @abstractmethod
    def annotate(self, wiki: Wiki, article_ids: list[int]) -> set[int]:
        """标注文章 / Annotate articles"""

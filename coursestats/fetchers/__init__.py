# Fetchers module - 数据获取模块
# 包含获取器抽象基类、FetchResult 数据类和 MediaWiki 实现

from .base import (
    FetchMarker,
    FetchResult,
    RevisionFetcher,
    StatusAnnotator,
    UploadFetcher,
)
from .mediawiki_fetcher import (
    MediaWikiClient,
    MediaWikiRevisionFetcher,
    MediaWikiStatusAnnotator,
    MediaWikiUploadFetcher,
)

__all__ = [
    # Base classes
    "FetchMarker",
    "FetchResult",
    "RevisionFetcher",
    "StatusAnnotator",
    "UploadFetcher",
    # MediaWiki
    "MediaWikiClient",
    "MediaWikiRevisionFetcher",
    "MediaWikiStatusAnnotator",
    "MediaWikiUploadFetcher",
]

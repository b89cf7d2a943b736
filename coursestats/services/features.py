"""
功能开关查询
Feature Lookup

判断当前产品是否支持某项功能（例如文章状态标注）。
Decides whether the current product supports a feature such as article
status annotation.
"""

from abc import ABC, abstractmethod
from typing import Any

from coursestats.models import Course

ARTICLE_STATUS = 'article_status'


class FeatureLookup(ABC):
    """功能查询接口 / Feature lookup interface"""

    @abstractmethod
    def product_supports(self, feature: str, course: Course) -> bool:
        """产品是否支持该功能 / Whether the product supports the feature"""


class ConfigFeatureLookup(FeatureLookup):
    """
    基于配置的功能查询
    Config-driven feature lookup

    读取 features.supported 列表。
    Reads the ``features.supported`` list.

    Examples:
        >>> lookup = ConfigFeatureLookup({'supported': ['article_status']})
        >>> lookup.supported
        frozenset({'article_status'})
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        self.supported = frozenset(config.get('supported') or [])

    def product_supports(self, feature: str, course: Course) -> bool:
        return feature in self.supported

"""
时间戳工具
Timestamp Utilities

统一处理 UTC 时间、MediaWiki 时间戳和 ISO 字符串之间的转换。
Normalizes conversions between UTC datetimes, MediaWiki timestamps and
ISO strings.
"""

from datetime import datetime, timezone

MW_TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'


def to_utc(value: datetime) -> datetime:
    """
    转换为带时区的 UTC 时间
    Convert to a timezone-aware UTC datetime

    无时区信息的时间视为 UTC。
    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: datetime | str) -> datetime:
    """
    解析时间戳
    Parse a timestamp

    支持 datetime、MediaWiki 时间戳（YYYYMMDDHHMMSS）、日期（YYYY-MM-DD）
    以及 ISO 8601 字符串（包括以 Z 结尾的格式）。
    Accepts datetimes, MediaWiki timestamps (YYYYMMDDHHMMSS), plain dates
    (YYYY-MM-DD) and ISO 8601 strings (including a trailing Z).

    Raises:
        ValueError: 无法解析
                    Unparseable value

    Examples:
        >>> parse_timestamp('20181124000000')
        datetime.datetime(2018, 11, 24, 0, 0, tzinfo=datetime.timezone.utc)
        >>> parse_timestamp('2018-11-23T10:00:00Z').hour
        10
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")

    text = value.strip()
    if len(text) == 14 and text.isdigit():
        return datetime.strptime(text, MW_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return to_utc(datetime.fromisoformat(text))


def to_api_timestamp(value: datetime) -> str:
    """Format a datetime the way the MediaWiki Action API expects it."""
    return to_utc(value).strftime('%Y-%m-%dT%H:%M:%SZ')


def to_db(value: datetime | None) -> str | None:
    """数据库存储格式（ISO，UTC）"""
    if value is None:
        return None
    return to_utc(value).isoformat()


def from_db(value: str | None) -> datetime | None:
    """从数据库读取时间"""
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))

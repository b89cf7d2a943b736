"""
配置加载模块
Config Loading Module

实现YAML配置文件加载、环境变量替换和默认值合并。
Implements YAML config file loading, environment variable substitution and
default merging.

部署相关的值（COURSESTATS_DB 数据库路径、COURSESTATS_USER_AGENT）通过
配置节中的 ${VAR:default} 占位符从环境变量或 .env 文件注入。
Deployment-specific values (COURSESTATS_DB, COURSESTATS_USER_AGENT) are
injected from the environment or a .env file through ${VAR:default}
placeholders in section values.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from coursestats.exceptions import ConfigurationError

# ${NAME} 或 ${NAME:default}
_PLACEHOLDER = re.compile(r'\$\{(?P<name>\w+)(?::(?P<default>[^}]*))?\}')


def _expand(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return _PLACEHOLDER.sub(lambda m: os.environ.get(m['name'], m['default'] or ''), value)


def expand_env(config: dict) -> dict:
    """
    展开各配置节字符串值中的环境变量占位符。
    Expand environment placeholders in the string values of each section.

    未设置且无默认值的变量展开为空字符串。
    An unset variable without a default expands to an empty string.

    Examples:
        >>> os.environ['COURSESTATS_DB'] = '/tmp/stats.db'
        >>> expand_env({'database': {'path': '${COURSESTATS_DB}'}})
        {'database': {'path': '/tmp/stats.db'}}
    """
    expanded = {}
    for name, section in config.items():
        if isinstance(section, dict):
            expanded[name] = {key: _expand(value) for key, value in section.items()}
        else:
            expanded[name] = _expand(section)
    return expanded


def load_config(config_path: str = "config.yaml", env_path: str | None = None) -> dict:
    """
    加载YAML配置文件并替换环境变量。
    Load YAML config file and substitute environment variables.

    Args:
        config_path: 配置文件路径
                     Config file path
        env_path: .env文件路径，None 时由 python-dotenv 自动查找；
                  文件不存在时忽略
                  Path to .env file; auto-discovered when None, ignored
                  when missing

    Raises:
        FileNotFoundError: 配置文件不存在 / Config file not found
        ConfigurationError: 顶层不是映射 / Top level is not a mapping
        yaml.YAMLError: YAML解析错误 / YAML parsing error
    """
    # 已存在的环境变量优先于 .env
    load_dotenv(env_path)

    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"配置文件不存在: {config_path}")

    config = yaml.safe_load(path.read_text(encoding='utf-8')) or {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"配置文件顶层必须是映射 / {config_path} must contain a mapping")
    return expand_env(config)


# 默认配置值
# Default Configuration Values
DEFAULT_CONFIG: dict[str, Any] = {
    'database': {
        'path': 'data/course_stats.db'
    },
    # 更新流程默认配置
    # Update run default configuration
    'update': {
        'timeslice_days': 1,
        'max_workers': 1,
        # 超过该估算时长（秒）且产品不支持时跳过文章状态标注
        'long_update_ceiling': 600,
        'seconds_per_course_day': 1.0,
        # 更新锁失效时间（秒）
        'lock_timeout': 21600
    },
    'mediawiki': {
        'timeout': 30,
        'user_agent': 'coursestats/0.1',
        'batch_size': 500
    },
    'features': {
        'supported': []
    },
    'schedule': {
        'interval_minutes': 60
    }
}


def _section(config: dict, name: str) -> dict:
    # 配置节都是扁平的，逐键覆盖默认值即可
    user_config = config.get(name) or {}
    if not isinstance(user_config, dict):
        raise ConfigurationError(f"配置节 {name} 必须是映射 / section '{name}' must be a mapping")
    return {**DEFAULT_CONFIG.get(name, {}), **user_config}


def apply_defaults(config: dict) -> dict:
    """
    将默认配置应用到用户配置中，缺失的配置项使用默认值。
    Apply default configuration to user config, missing items use defaults.

    未知的配置节原样保留。
    Unknown sections are kept as they are.

    Examples:
        >>> apply_defaults({'update': {'max_workers': 4}})['update']['timeslice_days']
        1
    """
    merged = dict(config)
    for name in DEFAULT_CONFIG:
        merged[name] = _section(config, name)
    return merged


def _coerce(section: dict, name: str, converter: type) -> None:
    # 环境变量替换后数值以字符串出现
    try:
        section[name] = converter(section[name])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {section[name]!r}") from e


def get_update_config(config: dict) -> dict:
    """
    获取更新流程配置，自动应用默认值并校验。
    Get the update run configuration with defaults applied and validated.

    Raises:
        ConfigurationError: 数值非法 / Invalid numeric values

    Examples:
        >>> get_update_config({'update': {'timeslice_days': '7'}})['timeslice_days']
        7.0
    """
    section = _section(config, 'update')
    _coerce(section, 'timeslice_days', float)
    _coerce(section, 'max_workers', int)
    _coerce(section, 'long_update_ceiling', float)
    _coerce(section, 'seconds_per_course_day', float)
    _coerce(section, 'lock_timeout', float)

    if section['timeslice_days'] <= 0:
        raise ConfigurationError("update.timeslice_days must be positive")
    if section['max_workers'] < 1:
        raise ConfigurationError("update.max_workers must be at least 1")
    return section


def get_mediawiki_config(config: dict) -> dict:
    """
    获取 MediaWiki 客户端配置，自动应用默认值。
    Get the MediaWiki client configuration with defaults applied.
    """
    section = _section(config, 'mediawiki')
    _coerce(section, 'timeout', float)
    _coerce(section, 'batch_size', int)
    return section


def get_database_config(config: dict) -> dict:
    """
    获取数据库配置，自动应用默认值。
    Get the database configuration with defaults applied.
    """
    return _section(config, 'database')


def get_features_config(config: dict) -> dict:
    return _section(config, 'features')


def load_config_with_defaults(config_path: str = "config.yaml", env_path: str | None = None) -> dict:
    """
    加载配置文件并应用默认值。
    Load configuration file and apply defaults.

    这是推荐的配置加载方式，会自动处理环境变量替换和默认值应用。
    This is the recommended way to load config, handles env var substitution and defaults.
    """
    config = load_config(config_path, env_path)
    return apply_defaults(config)

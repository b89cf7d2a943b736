#!/usr/bin/env python3
"""
课程统计更新 - 主程序入口
Course Statistics Updater - Main Entry Point

支持三种运行模式：
1. 定时调度模式（默认）：按配置的间隔更新全部课程
2. 单次执行模式（--once）：立即更新一次后退出
3. 查看模式（--show SLUG）：打印课程统计和更新日志

使用方法 Usage:
    # 启动定时调度
    python main.py

    # 单次更新指定课程的一段时间
    python main.py --once --course my-course --start 20181124000000 --end 20181129190000

    # 查看课程统计
    python main.py --show my-course
"""

import argparse
import logging
import sys
from pathlib import Path

from coursestats.config import get_database_config, load_config_with_defaults
from coursestats.scheduler import Scheduler
from coursestats.stats.store import TimesliceStore


# 配置日志格式
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(verbose: bool = False) -> None:
    """
    配置日志系统
    Setup logging system

    Args:
        verbose: 是否启用详细日志（DEBUG级别）
                 Whether to enable verbose logging (DEBUG level)
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # 降低第三方库的日志级别
    # Reduce log level for third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('schedule').setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    解析命令行参数
    Parse command line arguments
    """
    parser = argparse.ArgumentParser(
        description='课程统计更新 - 按时间片增量汇总课程的 wiki 编辑统计',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
运行模式 Modes:
  默认模式    启动定时调度，按配置的间隔更新全部课程
  --once      单次执行模式，立即更新一次后退出
  --show      查看模式，打印课程统计和更新日志

示例 Examples:
  python main.py --once
  python main.py --once --course my-course --start 20181124000000 --end 20181129190000
  python main.py --show my-course
        """
    )

    mode_group = parser.add_argument_group('运行模式 Mode Options')
    mode_group.add_argument(
        '--once', '-1',
        action='store_true',
        help='单次执行模式：立即更新一次后退出 / Run the update once and exit'
    )
    mode_group.add_argument(
        '--show',
        type=str,
        metavar='SLUG',
        default=None,
        help='打印课程统计和更新日志 / Print course statistics and the update log'
    )

    config_group = parser.add_argument_group('配置选项 Config Options')
    config_group.add_argument(
        '--config', '-c',
        type=str,
        default='config.yaml',
        help='配置文件路径 (默认: config.yaml) / Config file path (default: config.yaml)'
    )
    config_group.add_argument(
        '--env',
        type=str,
        default=None,
        help='.env文件路径 (默认: 自动查找) / .env file path (default: auto-discover)'
    )

    update_group = parser.add_argument_group('更新选项 Update Options (仅用于 --once)')
    update_group.add_argument(
        '--course',
        type=str,
        metavar='SLUG',
        default=None,
        help='只更新该课程 / Only update this course'
    )
    update_group.add_argument(
        '--start',
        type=str,
        default=None,
        help='范围开始，MediaWiki 时间戳或 ISO 8601 / Range start, MediaWiki timestamp or ISO 8601'
    )
    update_group.add_argument(
        '--end',
        type=str,
        default=None,
        help='范围结束 / Range end'
    )

    general_group = parser.add_argument_group('通用选项 General Options')
    general_group.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='启用详细日志输出 / Enable verbose logging'
    )

    return parser.parse_args(argv)


def run_scheduled_mode(config: dict, logger: logging.Logger) -> int:
    """
    运行定时调度模式
    Run scheduled mode
    """
    logger.info("启动定时调度模式...")
    try:
        scheduler = Scheduler(config)
        scheduler.start()
        return 0
    except KeyboardInterrupt:
        logger.info("用户中断，程序退出")
        return 0
    except Exception as e:
        logger.error(f"调度器运行失败: {e}", exc_info=True)
        return 1


def run_once_mode(config: dict, args: argparse.Namespace, logger: logging.Logger) -> int:
    """
    运行单次执行模式
    Run once mode

    Returns:
        退出码：有运行出错时为 2
        Exit code: 2 when a run counted errors
    """
    logger.info("启动单次执行模式...")
    try:
        scheduler = Scheduler(config)
        entries = scheduler.run_once(args.course, args.start, args.end)
    except Exception as e:
        logger.error(f"任务执行失败: {e}", exc_info=True)
        return 1

    failed = [e for e in entries if e.error_count]
    if failed:
        logger.warning(f"{len(failed)} 次更新存在错误 / {len(failed)} runs reported errors")
        return 2
    logger.info("任务执行完成")
    return 0


def show_course(config: dict, slug: str, logger: logging.Logger) -> int:
    """
    打印课程统计
    Print course statistics
    """
    store = TimesliceStore(get_database_config(config)['path'])
    try:
        store.init_db()
        course = store.get_course_by_slug(slug)
        if course is None:
            print(f"错误: 课程不存在: {slug}", file=sys.stderr)
            return 1

        stats = store.get_course_stats(course.id)
        print(f"\n{'='*60}")
        print(f"课程 {course.slug}: {course.start.date()} - {course.end.date()}")
        print(f"Wikis: {', '.join(str(w) for w in course.wikis) or '-'}")
        print(f"{'='*60}")
        if stats is None:
            print("尚无统计数据 / No statistics yet")
        else:
            print(f"字符 characters:      {stats.character_sum}")
            print(f"引用 references:      {stats.references_count}")
            print(f"修订 revisions:       {stats.revision_count}")
            print(f"上传 uploads:         {stats.upload_count} "
                  f"(in use {stats.uploads_in_use_count}, usages {stats.upload_usages_count})")
            print(f"学生 students:        {stats.user_count}")
            print(f"文章 articles:        {stats.article_count}")

        print("\n最近更新 Recent updates:")
        for entry in store.get_update_logs(course.id, limit=5):
            print(f"  #{entry.run_number} {entry.start_time.isoformat()} "
                  f"errors={entry.error_count} duration={entry.duration:.1f}s "
                  f"id={entry.correlation_id}")
        print(f"{'='*60}\n")
        return 0
    except Exception as e:
        logger.error(f"读取课程统计失败: {e}", exc_info=True)
        return 1
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    """
    主函数
    Main function

    Returns:
        退出码：0表示成功，非0表示失败
        Exit code: 0 for success, non-zero for failure
    """
    args = parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"配置文件不存在: {args.config}")
        print(f"错误: 配置文件不存在: {args.config}", file=sys.stderr)
        return 1

    try:
        config = load_config_with_defaults(str(config_path), args.env)
        logger.info(f"已加载配置文件: {config_path}")
    except Exception as e:
        logger.error(f"加载配置文件失败: {e}")
        print(f"错误: 加载配置文件失败: {e}", file=sys.stderr)
        return 1

    if args.show:
        return show_course(config, args.show, logger)
    elif args.once:
        return run_once_mode(config, args, logger)
    else:
        return run_scheduled_mode(config, logger)


if __name__ == '__main__':
    sys.exit(main())

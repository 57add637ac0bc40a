"""日志配置模块

统一配置loguru的输出目标
"""

import sys

from loguru import logger

from .config import Settings


def setup_logging(config: Settings) -> None:
    """配置日志输出

    替换loguru默认输出，stderr按配置级别输出；
    配置了日志文件时额外写入按天轮转的JSON日志

    Args:
        config: 应用配置
    """
    level = "DEBUG" if config.debug else config.log_level.upper()

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
    )

    if config.log_file:
        logger.add(
            config.log_file,
            rotation="1 day",
            retention="30 days",
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
            serialize=True,
        )

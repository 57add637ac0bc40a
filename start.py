#!/usr/bin/env python3
"""应用启动脚本

支持开发模式（热重载）和生产模式启动
"""

import argparse
import os

import uvicorn

from chunkbridge.core.config import settings


def main():
    """解析命令行参数并启动服务器

    PORT 环境变量优先于配置文件中的端口，便于在托管平台上部署
    """
    parser = argparse.ArgumentParser(description=f"{settings.app_name} 启动脚本")
    parser.add_argument(
        "--mode",
        choices=["dev", "prod"],
        default="prod",
        help="启动模式: dev(开发) 或 prod(生产)"
    )
    parser.add_argument("--host", default=settings.host, help=f"服务器主机地址 (默认: {settings.host})")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", settings.port)),
        help=f"服务器端口 (默认: {settings.port})"
    )
    args = parser.parse_args()

    # 对账任务是进程内的，生产环境默认单进程
    workers = 1 if args.mode == "dev" else int(os.getenv("WORKERS", "1"))

    uvicorn.run(
        "chunkbridge.main:app",
        host=args.host,
        port=args.port,
        reload=args.mode == "dev",
        workers=workers,
        log_level=settings.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()

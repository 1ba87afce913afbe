"""
Common — ログ設定

各サービスの lifespan で一度だけ呼ぶ。ログ行にはサービス名を入れる。
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s"


def configure_logging(service_name: str, level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT.format(service=service_name),
    )

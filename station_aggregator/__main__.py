"""
Station Aggregator 主程序入口

使用方式:
    python -m station_aggregator
    或
    station-aggregator
"""

from station_aggregator.main import cli


if __name__ == "__main__":
    cli()

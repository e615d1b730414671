"""
异常定义
"""


class AggregatorError(Exception):
    """本包所有异常的基类"""
    pass


class DataSourceError(AggregatorError):
    """数据源调用失败（HTTP 状态码、网络错误、响应格式错误）"""
    pass


class SourceUnavailableError(DataSourceError):
    """数据源连通性探测失败，本轮刷新直接放弃"""
    pass


class LivePollError(AggregatorError):
    """实时轮询单个站点失败"""

    def __init__(self, table: str, reason: str):
        self.table = table
        self.reason = reason
        super().__init__(f"Live poll of table '{table}' failed: {reason}")

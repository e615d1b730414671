"""
Station Aggregator - 站点数据快照服务

负责：
- 按整点锚点（每小时 9, 19, ..., 59 分）批量拉取所有站点数据
- 维护内存快照供前端读取，读取从不访问数据源
- 按需实时轮询单个站点的数据记录器
- 提供 REST API 给前端
"""

__version__ = "1.0.0"

"""
键值行整形与列结构计算
"""

from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import ColumnSchema, DeviceRecord, KeyValueRow


def sort_keys(keys: Iterable[str]) -> Tuple[str, ...]:
    """
    稳定排序键名

    先按忽略大小写的顺序，再按原字符串区分，
    保证 "Temp" 与 "temp" 同时存在时顺序也是确定的。
    """
    return tuple(sorted(set(keys), key=lambda k: (k.casefold(), k)))


def rows_to_map(
    rows: Iterable[KeyValueRow],
    field_names: Optional[Mapping[int, str]] = None
) -> Dict[str, str]:
    """
    把键值行折叠成扁平字典

    同一个键出现多次时，按数据源返回顺序后者覆盖前者。
    纯数字键如果能在字段名表中找到，替换成显示名。
    """
    result: Dict[str, str] = {}
    for row in rows:
        key = row.key
        if field_names and key.isdigit():
            key = field_names.get(int(key), key)
        result[key] = "" if row.value is None else row.value
    return result


def latest_timestamp(rows: List[KeyValueRow]) -> Optional[str]:
    """取第一行的站点时间戳（数据源按时间倒序返回）"""
    return rows[0].device_timestamp if rows else None


def build_column_schema(records: Iterable[DeviceRecord]) -> ColumnSchema:
    """统计本轮所有站点在三张表中出现过的键"""
    public_keys = set()
    status_keys = set()
    measurement_keys = set()

    for record in records:
        public_keys.update(record.public_data.keys())
        status_keys.update(record.status_data.keys())
        measurement_keys.update(record.measurements_data.keys())

    return ColumnSchema(
        public_keys=sort_keys(public_keys),
        status_keys=sort_keys(status_keys),
        measurement_keys=sort_keys(measurement_keys),
    )

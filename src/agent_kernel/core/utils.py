"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def stable_json(value: Any) -> str:
    """稳定 JSON 序列化（key 排序；不可序列化对象退化为 str）。"""
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)

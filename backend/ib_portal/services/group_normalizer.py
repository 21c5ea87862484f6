"""
交易组标识归一化

MT5 返回的组是路径形式，分隔符不固定，大小写也不固定，例如：
    real\\Bbook\\Standard\\dynamic-2000x-20Pips
    real/bbook/standard/dynamic-2000x-20pips

normalize_group() 把它展开成一组有序的候选键，供规则匹配按优先级依次尝试。
所有匹配组规则的地方都只能用这里的函数，不要自己拆字符串。
"""
import re
from typing import List, Optional

_SEPARATORS = re.compile(r"[\\/]")
BBOOK_SEGMENT = "bbook"


def _add(keys: List[str], key: str) -> None:
    if key and key not in keys:
        keys.append(key)


def normalize_group(raw_group: Optional[str]) -> List[str]:
    """
    生成候选键（有序、去重、全部小写）

    顺序：
    1. 原值小写
    2. 反斜杠统一成正斜杠
    3. 正斜杠统一成反斜杠
    4. 最后一段
    5. 'bbook' 段之后紧跟的那一段（如果有）

    Args:
        raw_group: 原始组路径，可以为 None/空

    Returns:
        候选键列表；输入为空时返回空列表
    """
    if raw_group is None:
        return []
    low = str(raw_group).strip().lower()
    if not low:
        return []

    keys: List[str] = []
    _add(keys, low)
    _add(keys, low.replace("\\", "/"))
    _add(keys, low.replace("/", "\\"))

    parts = [p for p in _SEPARATORS.split(low) if p]
    if parts:
        _add(keys, parts[-1])
        if BBOOK_SEGMENT in parts:
            idx = parts.index(BBOOK_SEGMENT)
            if idx + 1 < len(parts):
                _add(keys, parts[idx + 1])

    return keys


def last_segment(raw_group: Optional[str]) -> str:
    """组路径最后一段（小写），空输入返回空串"""
    if not raw_group:
        return ""
    low = str(raw_group).strip().lower()
    parts = [p for p in _SEPARATORS.split(low) if p]
    return parts[-1] if parts else low

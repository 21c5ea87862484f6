"""
佣金规则匹配

把 IB 的组分配整理成 规则表（归一化键 -> 规则），并按固定顺序为一笔交易找到适用规则：
1. 精确匹配：候选键按优先级依次查表，第一个命中即返回
2. 模糊匹配：候选键是规则键的子串，或规则键是候选键的子串
3. 单规则兜底：IB 只有一条规则时，所有交易都归到这条规则
4. 无法归属：返回 None（交易照常入库，佣金为 0）

佣金是财务数据，这个顺序不能改，否则历史佣金无法复现。
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from ib_portal.services.group_normalizer import last_segment, normalize_group

WILDCARD_KEY = "*"


def to_decimal(value) -> Decimal:
    """宽松转换为 Decimal，None/空串/非法值视为 0"""
    if value is None or value == "":
        return Decimal("0")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError:
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


@dataclass(frozen=True)
class CommissionRule:
    """一条佣金规则：每手固定佣金 + 点差分成百分比"""
    group_id: str
    usd_per_lot: Decimal
    spread_share_percent: Decimal

    def fixed_for(self, volume_lots: Decimal) -> Decimal:
        return volume_lots * self.usd_per_lot

    def spread_for(self, volume_lots: Decimal) -> Decimal:
        return volume_lots * (self.spread_share_percent / Decimal("100"))


class RuleMap:
    """归一化键 -> 规则（保持插入顺序，模糊匹配按此顺序扫描）"""

    def __init__(self):
        self._by_key: Dict[str, CommissionRule] = {}
        self._rules: List[CommissionRule] = []

    def add(self, rule: CommissionRule, keys: Iterable[str]) -> None:
        if rule not in self._rules:
            self._rules.append(rule)
        for key in keys:
            key = (key or "").strip().lower()
            # 先到先得，后面的分配不覆盖已有键
            if key and key not in self._by_key:
                self._by_key[key] = rule

    def get(self, key: str) -> Optional[CommissionRule]:
        return self._by_key.get(key)

    def items(self):
        return self._by_key.items()

    @property
    def rules(self) -> List[CommissionRule]:
        return list(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __bool__(self) -> bool:
        return bool(self._rules)


def build_rule_map(assignments: Iterable, default_usd_per_lot=0, default_spread_share_percent=0) -> RuleMap:
    """
    由组分配构建规则表

    每条分配登记三个键：group_id 小写、group_name 小写、group_id 最后一段。
    没有任何分配时登记通配规则 '*'，取 IB 自身的默认费率。

    Args:
        assignments: GroupAssignment 对象或含同名字段的 dict
    """
    rule_map = RuleMap()
    for a in assignments:
        get = a.get if isinstance(a, dict) else lambda name, _a=a: getattr(_a, name, None)
        group_id = str(get("group_id") or "").strip()
        if not group_id:
            continue
        rule = CommissionRule(
            group_id=group_id,
            usd_per_lot=to_decimal(get("usd_per_lot")),
            spread_share_percent=to_decimal(get("spread_share_percent")),
        )
        rule_map.add(rule, [group_id, str(get("group_name") or ""), last_segment(group_id)])

    if not rule_map:
        rule_map.add(
            CommissionRule(
                group_id=WILDCARD_KEY,
                usd_per_lot=to_decimal(default_usd_per_lot),
                spread_share_percent=to_decimal(default_spread_share_percent),
            ),
            [WILDCARD_KEY],
        )
    return rule_map


def resolve_rule(candidate_keys: List[str], rule_map: RuleMap) -> Optional[CommissionRule]:
    """
    按 精确 > 模糊 > 单规则兜底 > 无归属 的顺序匹配规则

    Args:
        candidate_keys: normalize_group() 的输出（按优先级排序）
        rule_map: build_rule_map() 的输出
    """
    if not rule_map:
        return None

    for key in candidate_keys:
        rule = rule_map.get(key)
        if rule is not None:
            return rule

    for key in candidate_keys:
        for rule_key, rule in rule_map.items():
            if rule_key == WILDCARD_KEY:
                continue
            if key in rule_key or rule_key in key:
                return rule

    if len(rule_map) == 1:
        return rule_map.rules[0]

    return None


def resolve_for_group(raw_group: Optional[str], rule_map: RuleMap) -> Optional[CommissionRule]:
    """normalize_group + resolve_rule 的组合"""
    return resolve_rule(normalize_group(raw_group), rule_map)

"""因子注册表：名称 -> 因子类，以及从配置列表批量构建。"""

from __future__ import annotations

import dataclasses
from typing import Any, Iterable

import pandas as pd

from algo.factors.atr import ATRFactor
from algo.factors.base import Factor
from algo.factors.trend_sniper import TrendSniperFactor

_REGISTRY: dict[str, type] = {
    "atr": ATRFactor,
    "trend_sniper": TrendSniperFactor,
}


def get_factor_cls(name: str) -> type:
    try:
        return _REGISTRY[name]
    except KeyError:
        raise ValueError(f"Unknown factor: {name} (known: {sorted(_REGISTRY)})") from None


def _factor_kwargs(cls: type, spec: dict[str, Any]) -> dict[str, Any]:
    # params 内的值优先于平铺写法；name/params 由因子自己维护
    merged = {k: v for k, v in spec.items() if k not in {"name", "params"}}
    merged.update(spec.get("params") or {})
    accepted = {f.name for f in dataclasses.fields(cls) if f.init} - {"name", "params"}
    return {k: v for k, v in merged.items() if k in accepted}


def build_factors(specs: Iterable[str | dict[str, Any]] | None) -> list[Factor]:
    """按配置构建因子。

    每项可以是因子名（全部默认参数），或 `{"name": "atr", "period": 14}` /
    `{"name": "atr", "params": {"period": 14}}`。

    Raises
    ------
    ValueError
        未知因子名或参数非法。
    """
    factors: list[Factor] = []
    for spec in specs or []:
        if isinstance(spec, str):
            spec = {"name": spec}
        if not isinstance(spec, dict) or not spec.get("name"):
            raise ValueError(f"Invalid factor spec: {spec!r}")
        cls = get_factor_cls(str(spec["name"]))
        kwargs = _factor_kwargs(cls, spec)
        try:
            factors.append(cls(**kwargs))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid params for factor '{spec['name']}': {kwargs}") from exc
    return factors


def apply_factors(df: pd.DataFrame, factors: Iterable[Factor]) -> pd.DataFrame:
    for factor in factors:
        df = factor.compute(df)
    return df

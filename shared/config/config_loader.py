"""配置加载。

YAML -> 环境变量占位符 `${VAR}` 展开 -> `MainConfig` 强类型校验。
配置文件所在目录及其上级目录下的 .env / .env.local 会先被读入（不覆盖已有环境变量）。
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from shared.config.schema import MainConfig

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_LINE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


def _parse_env_file(env_path: Path) -> dict[str, str]:
    """解析 KEY=VALUE 行；支持 `export` 前缀与成对引号，忽略注释与空行。"""
    pairs: dict[str, str] = {}
    for raw in env_path.read_text(encoding="utf-8").splitlines():
        match = _ENV_LINE.match(raw.strip())
        if match is None:
            continue
        key, value = match.group(1), match.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        pairs[key] = value
    return pairs


def _load_envs(cfg_path: Path) -> None:
    for directory in (cfg_path.parent, cfg_path.parent.parent):
        for name in (".env", ".env.local"):
            env_path = directory / name
            if not env_path.is_file():
                continue
            for key, value in _parse_env_file(env_path).items():
                os.environ.setdefault(key, value)


def _lookup_env(match: re.Match[str]) -> str:
    name = match.group(1)
    try:
        return os.environ[name]
    except KeyError:
        raise ValueError(f"Missing environment variable: {name}") from None


def _expand_env(node: Any) -> Any:
    """递归展开字符串里的 `${VAR}`；缺失的变量直接报错而不是留空。"""
    if isinstance(node, str):
        return _ENV_PATTERN.sub(_lookup_env, node)
    if isinstance(node, dict):
        return {key: _expand_env(val) for key, val in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    return node


def load_config(path: str, load_env: bool = True, expand_env: bool = True) -> MainConfig:
    """从 YAML 读取并解析配置。

    Parameters
    ----------
    path:
        配置文件路径。
    load_env:
        是否自动加载 .env/.env.local。
    expand_env:
        是否展开 `${VAR}` 占位符。

    Returns
    -------
    MainConfig
        校验后的配置对象。

    Raises
    ------
    FileNotFoundError
        配置文件不存在。
    ValueError
        缺失环境变量、未知字段或字段取值非法。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    if load_env:
        _load_envs(cfg_path)

    with cfg_path.open("r", encoding="utf-8") as f:
        raw_cfg: Any = yaml.safe_load(f) or {}
    if not isinstance(raw_cfg, dict):
        raise ValueError(f"Config root must be a mapping: {cfg_path}")

    if expand_env:
        raw_cfg = _expand_env(raw_cfg)

    backtest_raw = raw_cfg.get("backtest")
    if isinstance(backtest_raw, dict):
        backtest_raw.setdefault("symbol", raw_cfg.get("symbol"))
        backtest_raw.setdefault("interval", raw_cfg.get("timeframe"))

    try:
        return MainConfig.model_validate(raw_cfg)
    except ValidationError as exc:
        raise ValueError(f"Invalid config {cfg_path}: {exc}") from exc

"""
默认配置加载器。

设计目标：
- 作为库被引用时，不依赖 repo 相对路径即可运行
- 默认配置通过 `importlib.resources` 随 package 分发
"""

from __future__ import annotations

import os
from importlib.resources import files
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

CONFIG_PATHS_ENV = "SKILLS_REGISTRY_CONFIG_PATHS"


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    返回：
    - dict：用于与 overlays 做深度合并（overlay 语义由 `skills_registry.config.loader` 定义）

    异常：
    - RuntimeError：内容不是 mapping(dict)
    """

    text = files("skills_registry.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj


def overlay_paths_from_env(env: Optional[Mapping[str, str]] = None) -> List[Path]:
    """从 `SKILLS_REGISTRY_CONFIG_PATHS` 读取 overlay 路径列表（`os.pathsep` 分隔，忽略空段）。"""

    source = os.environ if env is None else env
    raw = str(source.get(CONFIG_PATHS_ENV) or "").strip()
    if not raw:
        return []
    return [Path(p.strip()).expanduser() for p in raw.split(os.pathsep) if p.strip()]

"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 默认配置随 package 分发（`skills_registry/assets/default.yaml`），见 `skills_registry.config.defaults`。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ParserConfig(BaseModel):
    """Parser 参数。"""

    model_config = ConfigDict(extra="forbid")

    # strict：front-matter 出现未知字段时直接判定解析失败（默认只记 warning）
    strict: StrictBool = False
    max_file_bytes: StrictInt = Field(default=1024 * 1024, ge=1)


class LoaderConfig(BaseModel):
    """批量加载（Loader）参数。"""

    model_config = ConfigDict(extra="forbid")

    directories: List[str] = Field(default_factory=list)
    recursive: StrictBool = True
    max_depth: StrictInt = Field(default=32, ge=0)
    auto_migrate: StrictBool = True
    skip_invalid: StrictBool = True


class HotReloadConfig(BaseModel):
    """
    热加载配置。

    说明：
    - `watch_paths` 之外，可额外监听 home 级与 project 级两个约定目录；
    - `ignored` 是叠加在内置忽略规则之上的 glob 列表（匹配相对 watch root 的路径或文件名）；
    - `builtin_dirs` 下的 skill 注册时 source 记为 `builtin`。
    """

    model_config = ConfigDict(extra="forbid")

    watch_paths: List[str] = Field(default_factory=list)
    watch_home_skills: StrictBool = True
    watch_local_skills: StrictBool = True
    home_skills_dir: str = Field(default="~/.claude/skills")
    local_skills_dir: str = Field(default=".claude/skills")
    recursive: StrictBool = True
    debounce_ms: StrictInt = Field(default=300, ge=0)
    lock_timeout_ms: StrictInt = Field(default=5000, ge=1)
    ignore_initial: StrictBool = False
    verbose: StrictBool = False
    auto_register: StrictBool = True
    auto_unregister: StrictBool = True
    ignored: List[str] = Field(default_factory=list)
    builtin_dirs: List[str] = Field(default_factory=list)


class SkillsRegistryConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    parser: ParserConfig = Field(default_factory=ParserConfig)
    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    hot_reload: HotReloadConfig = Field(default_factory=HotReloadConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> SkillsRegistryConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `SkillsRegistryConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return SkillsRegistryConfig.model_validate(merged)


def load_config(config_paths: list[Path], *, include_defaults: bool = True) -> SkillsRegistryConfig:
    """
    加载并合并多个配置文件，返回校验后的 `SkillsRegistryConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - include_defaults：是否以内置默认配置作为最底层
    """

    overlays: list[Dict[str, Any]] = []
    if include_defaults:
        from skills_registry.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)

"""
路径分类：哪些文件算 skill 候选、哪些路径被忽略、skill 来源（builtin/user）。

约束：
- 判定只看路径字符串，不访问文件系统（watcher 的 unlink 事件里文件已不存在）；
- 忽略规则中的目录段是相对 watch root 计算的（root 本身位于 `build/` 之下时不应整体失效）。
"""

from __future__ import annotations

from fnmatch import fnmatch
from pathlib import Path, PurePath
from typing import Iterable, List, Optional, Sequence, Union

from skills_registry.config.loader import HotReloadConfig

PathLike = Union[str, PurePath]

SKILL_FILE_NAME = "SKILL.md"
SKILLS_DIR_SEGMENT = "skills"
SKILL_FILE_SUFFIXES = (".md", ".markdown", ".json")

IGNORED_DIR_SEGMENTS = frozenset({".git", ".hg", ".svn", "node_modules", "dist", "build", "__pycache__"})
IGNORED_BASENAMES = frozenset({".DS_Store", "Thumbs.db"})
IGNORED_SUFFIXES = ("~", ".tmp", ".swp", ".swx", ".bak")


def is_skill_file(path: PathLike) -> bool:
    """
    判断路径是否为 skill 候选文件。

    规则：
    - 文件名为 `SKILL.md`（大小写不敏感）；或
    - 路径中存在名为 `skills` 的目录段，且后缀为 `.md/.markdown/.json`。
    """

    p = PurePath(path)
    if p.name.lower() == SKILL_FILE_NAME.lower():
        return True
    if p.suffix.lower() not in SKILL_FILE_SUFFIXES:
        return False
    return SKILLS_DIR_SEGMENT in p.parent.parts


def _relative_parts(path: PurePath, roots: Sequence[PathLike]) -> Sequence[str]:
    """返回 path 相对最长匹配 root 的路径段；不在任何 root 下时返回完整路径段。"""

    best: Optional[Sequence[str]] = None
    for root in roots:
        try:
            rel = path.relative_to(PurePath(root))
        except ValueError:
            continue
        if best is None or len(rel.parts) < len(best):
            best = rel.parts
    if best is None:
        return path.parts
    return best


def is_ignored(path: PathLike, roots: Sequence[PathLike] = (), extra_globs: Iterable[str] = ()) -> bool:
    """
    判断路径是否命中忽略规则。

    参数：
    - path：待判定路径
    - roots：watch root 列表（目录段规则只对 root 之下的部分生效）
    - extra_globs：额外 glob（匹配相对路径或文件名）
    """

    p = PurePath(path)
    rel_parts = list(_relative_parts(p, roots))
    name = p.name
    if not name:
        return False
    if name.startswith(".") or name in IGNORED_BASENAMES:
        return True
    if name.endswith(IGNORED_SUFFIXES):
        return True
    anchored = any(_is_within(Path(p), Path(root)) for root in roots)
    for seg in rel_parts[:-1]:
        if seg in IGNORED_DIR_SEGMENTS:
            return True
        # 不在任何 root 之下时，隐藏目录段（例如 `.claude`）不参与判定
        if anchored and seg.startswith("."):
            return True
    rel = "/".join(rel_parts)
    for pattern in extra_globs:
        if fnmatch(rel, pattern) or fnmatch(name, pattern):
            return True
    return False


def _is_within(path: Path, base: Path) -> bool:
    """判断 path 是否位于 base 之下（含相等）。"""

    try:
        path.relative_to(base)
    except ValueError:
        return False
    return True


def determine_source(path: PathLike, builtin_dirs: Iterable[PathLike] = ()) -> str:
    """
    推断 skill 来源。

    返回：
    - `builtin`：位于任一 builtin 目录下，或路径中包含 `node_modules` 段
    - `user`：其它
    """

    p = Path(path).expanduser()
    if "node_modules" in p.parts:
        return "builtin"
    for base in builtin_dirs:
        if _is_within(p, Path(base).expanduser()):
            return "builtin"
    return "user"


def resolve_watch_paths(config: HotReloadConfig, *, workspace_root: Optional[Path] = None) -> List[Path]:
    """
    计算去重后的 watch 路径列表（显式路径在前，约定目录在后）。

    说明：
    - 相对路径以 workspace_root（默认 cwd）为基准解析；
    - 不要求目录存在（是否存在由 watcher 启动时处理）。
    """

    ws = Path(workspace_root) if workspace_root is not None else Path.cwd()
    candidates: List[Path] = [Path(p).expanduser() for p in config.watch_paths]
    if config.watch_home_skills:
        candidates.append(Path(config.home_skills_dir).expanduser())
    if config.watch_local_skills:
        candidates.append(Path(config.local_skills_dir).expanduser())

    out: List[Path] = []
    seen: set[Path] = set()
    for cand in candidates:
        resolved = cand if cand.is_absolute() else (ws / cand)
        resolved = Path(resolved.resolve(strict=False))
        if resolved in seen:
            continue
        seen.add(resolved)
        out.append(resolved)
    return out

"""
Skills Registry 错误分类（异常类型）。

说明：
- 所有结构化错误统一为 `code/message/details`（英文 code + 英文 message），便于 CLI/事件输出。
- 单文件级错误（解析/迁移）只以事件或结果对象上报，不中断 watcher；
- 调用方契约错误（例如被依赖的 skill 被卸载）以同步异常抛给调用方。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List


class SkillsRegistryError(Exception):
    """Skills Registry 错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（用于 load 报告、CLI 输出中的 errors/warnings）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(SkillsRegistryError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误（例如导入数据的格式版本不受支持）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class SkillParseError(FrameworkError):
    """skill 源文件格式错误（只上报，不中断 watcher / 初始扫描）。"""

    def __init__(self, message: str, *, path: str | None = None, details: Dict[str, Any] | None = None) -> None:
        """创建解析错误。

        参数：
        - `message`：可读错误信息
        - `path`：出错文件路径（可选）
        """

        merged: Dict[str, Any] = dict(details or {})
        if path is not None:
            merged["path"] = path
        super().__init__(code="SKILL_PARSE_FAILED", message=message, details=merged)
        self.path = path


class DependencyError(FrameworkError):
    """依赖错误：卸载被依赖的 skill，或解析期发现缺失/循环依赖。"""

    def __init__(
        self,
        message: str,
        *,
        skill_id: str,
        dependents: List[str] | None = None,
        code: str = "SKILL_DEPENDENCY_BLOCKED",
    ) -> None:
        """创建依赖错误。

        参数：
        - `message`：可读错误信息
        - `skill_id`：出问题的 skill id
        - `dependents`：引用该 skill 的 ids（用于提示调用方先卸载哪些 skill）
        - `code`：错误码（默认 `SKILL_DEPENDENCY_BLOCKED`）
        """

        deps = sorted(dependents or [])
        super().__init__(code=code, message=message, details={"skill_id": skill_id, "dependents": deps})
        self.skill_id = skill_id
        self.dependents = deps


class WatchError(FrameworkError):
    """文件监听订阅失败（对 `start()` 致命；运行期只作为 error 事件上报）。"""

    def __init__(self, message: str, *, paths: List[str] | None = None, reason: str | None = None) -> None:
        """创建监听错误。

        参数：
        - `message`：可读错误信息
        - `paths`：本次尝试监听的路径
        - `reason`：底层异常摘要
        """

        details: Dict[str, Any] = {"paths": list(paths or [])}
        if reason:
            details["reason"] = reason
        super().__init__(code="SKILL_WATCH_FAILED", message=message, details=details)

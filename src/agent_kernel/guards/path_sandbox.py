"""
PathSandboxGuard：把工具输入中的路径参数限制在允许目录内。

说明：
- 识别的参数名见 `PATH_ARG_KEYS`（大小写不敏感），只检查字符串值；
- 相对路径按构造时的 cwd 解析；允许目录的子目录自动允许；
- exempt_tools 中的工具跳过检查。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from agent_kernel.core.contracts import ToolExecCtx
from agent_kernel.guards.pipeline import GuardResult, ToolGuard

PATH_ARG_KEYS = frozenset(
    {
        "path",
        "file",
        "filepath",
        "file_path",
        "filename",
        "directory",
        "dir",
        "folder",
        "dest",
        "destination",
        "src",
        "source",
        "target",
        "output",
        "input",
    }
)


class PathSandboxGuard(ToolGuard):
    name = "path-sandbox"

    def __init__(
        self,
        allowed_paths: Iterable[str],
        *,
        cwd: Optional[str] = None,
        exempt_tools: Iterable[str] = (),
    ) -> None:
        """
        参数：
        - allowed_paths：允许的目录（绝对或相对 cwd）
        - cwd：解析相对路径的工作目录（缺省为进程 cwd）
        - exempt_tools：跳过检查的工具名
        """

        self.cwd = Path(cwd or os.getcwd()).resolve()
        self.allowed: List[Path] = [(self.cwd / p).resolve() for p in allowed_paths]
        self.exempt_tools = frozenset(exempt_tools)

    def validate_input(self, tool_name: str, input: Dict[str, Any], ctx: ToolExecCtx) -> GuardResult:
        if tool_name in self.exempt_tools:
            return GuardResult.allow()
        for raw in _extract_path_values(input):
            resolved = (self.cwd / raw).resolve()
            if not self._is_allowed(resolved):
                return GuardResult.reject(f'Path "{raw}" is outside allowed directories for tool "{tool_name}"')
        return GuardResult.allow()

    def _is_allowed(self, resolved: Path) -> bool:
        return any(resolved == allowed or allowed in resolved.parents for allowed in self.allowed)


def _extract_path_values(input: Dict[str, Any]) -> List[str]:
    return [v for k, v in input.items() if k.lower() in PATH_ARG_KEYS and isinstance(v, str)]


__all__ = ["PATH_ARG_KEYS", "PathSandboxGuard"]

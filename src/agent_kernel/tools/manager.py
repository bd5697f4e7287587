"""
ToolManager：工具注册、冲突解决、权限执行与派发的唯一执行点。

职责：
1) 注册 ToolPack：namespace 分配与冲突解决（只在注册期发生）
2) 名称解析：短名或限定名 → ResolvedTool（调用期只做查表，从不重新裁决）
3) 权限执行：denied_commands / allowed_paths / network_allowed（拒绝是数据，不抛异常）
4) 审计：pack 要求 audit_trail 时回调 `on_audit`
5) 委托执行：调用 ResolvedTool.execute

说明：
- 注册表在启动期构建完成后视为不可变，因此不加锁；
- override 冲突中落败的一方不出现在模型可见列表中，但仍可以用限定名调用。
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from agent_kernel.core.contracts import ToolDefinition
from agent_kernel.core.errors import ToolRegistrationError
from agent_kernel.tools.protocol import (
    ConflictPolicy,
    PackedTool,
    ResolvedTool,
    ToolFilter,
    ToolInput,
    ToolPack,
    ToolResult,
    stricter_policy,
)

logger = logging.getLogger(__name__)

AuditHook = Callable[[str, str, ToolInput], None]

_NETWORK_NAME_HINTS = ("http", "fetch", "request")


def _create_resolved(pack: ToolPack, tool: PackedTool, qualified_name: str) -> ResolvedTool:
    """构造派发条目；限定名与短名不同时改写定义中的 name。"""

    definition = tool.definition
    if qualified_name != tool.name:
        definition = definition.model_copy(update={"name": qualified_name})
    return ResolvedTool(
        qualified_name=qualified_name,
        short_name=tool.name,
        pack_id=pack.id,
        namespace=pack.namespace,
        definition=definition,
        read_only=bool(tool.read_only),
        capability=tool.capability,
        execute=tool.execute,
    )


class ToolManager:
    """工具管理器。"""

    def __init__(self, *, on_audit: Optional[AuditHook] = None) -> None:
        """
        参数：
        - on_audit：可选审计回调 `(tool_name, pack_id, input)`；缺省时以 debug 日志记录
        """

        self._on_audit = on_audit
        self._packs: Dict[str, ToolPack] = {}
        # 模型可见的派发表
        self._resolved: Dict[str, ResolvedTool] = {}
        # override 落败者：仅限定名可调用，不对模型暴露
        self._shadowed: Dict[str, ResolvedTool] = {}
        # 经 namespace-prefix 解决后不再有任何 pack 占用的短名
        self._contested: Set[str] = set()

    # ---------------------------------------------------------------- registration

    def register(self, pack: ToolPack) -> bool:
        """
        注册 ToolPack（原子：失败时注册表保持不变）。

        返回：
        - True：已注册；False：pack.enabled() 为 False，已跳过

        异常：
        - ToolRegistrationError：pack id 重复（DUPLICATE_PACK）或有效策略为 error 的名称冲突（TOOL_CONFLICT）
        """

        if pack.enabled is not None and not pack.enabled():
            logger.debug("tool pack %s disabled; skipped", pack.id)
            return False
        if pack.id in self._packs:
            raise ToolRegistrationError(
                code="DUPLICATE_PACK",
                message=f'ToolPack "{pack.id}" is already registered',
                details={"pack_id": pack.id},
            )

        resolved = dict(self._resolved)
        shadowed = dict(self._shadowed)
        contested = set(self._contested)
        packs = dict(self._packs)
        packs[pack.id] = pack

        for tool in pack.tools:
            short = tool.name
            qualified = f"{pack.namespace}.{short}"
            existing = resolved.get(short)
            if existing is None and short not in contested:
                resolved[short] = _create_resolved(pack, tool, short)
                continue
            if existing is None:
                # 短名已被 namespace-prefix 让出：直接使用限定名
                self._claim(resolved, shadowed, qualified, _create_resolved(pack, tool, qualified))
                continue

            existing_pack = packs[existing.pack_id]
            policy = stricter_policy(pack.conflict_policy, existing_pack.conflict_policy)
            if policy is ConflictPolicy.ERROR:
                raise ToolRegistrationError(
                    code="TOOL_CONFLICT",
                    message=(
                        f'Tool name conflict: "{short}" exists in pack "{existing.pack_id}" '
                        f'and pack "{pack.id}" (effective conflict policy: error)'
                    ),
                    details={"tool": short, "packs": [existing.pack_id, pack.id]},
                )
            if policy is ConflictPolicy.NAMESPACE_PREFIX:
                del resolved[short]
                contested.add(short)
                existing_tool = existing_pack.find_tool(existing.short_name)
                existing_q = f"{existing.namespace}.{existing.short_name}"
                if existing_tool is not None:
                    self._claim(resolved, shadowed, existing_q, _create_resolved(existing_pack, existing_tool, existing_q))
                self._claim(resolved, shadowed, qualified, _create_resolved(pack, tool, qualified))
                continue

            # override：严格更高的 priority 才能夺取短名；平局保留先注册者
            if int(pack.priority) > int(existing_pack.priority):
                resolved[short] = _create_resolved(pack, tool, short)
                existing_tool = existing_pack.find_tool(existing.short_name)
                if existing_tool is not None:
                    existing_q = f"{existing.namespace}.{existing.short_name}"
                    shadowed[existing_q] = _create_resolved(existing_pack, existing_tool, existing_q)
            else:
                shadowed[qualified] = _create_resolved(pack, tool, qualified)

        self._packs = packs
        self._resolved = resolved
        self._shadowed = shadowed
        self._contested = contested
        return True

    @staticmethod
    def _claim(
        resolved: Dict[str, ResolvedTool],
        shadowed: Dict[str, ResolvedTool],
        name: str,
        entry: ResolvedTool,
    ) -> None:
        """占用一个限定名（同一派发名最多一个条目）。"""

        holder = resolved.get(name) or shadowed.get(name)
        if holder is not None and holder.pack_id != entry.pack_id:
            raise ToolRegistrationError(
                code="TOOL_CONFLICT",
                message=f'Qualified tool name "{name}" is already taken by pack "{holder.pack_id}"',
                details={"tool": name, "packs": [holder.pack_id, entry.pack_id]},
            )
        shadowed.pop(name, None)
        resolved[name] = entry

    # ---------------------------------------------------------------- queries

    def get_tools(self, tool_filter: Optional[ToolFilter] = None) -> List[ResolvedTool]:
        """返回模型可见的派发条目（按名称排序）。"""

        tools = [self._resolved[k] for k in sorted(self._resolved)]
        if tool_filter is None:
            return tools
        if tool_filter.read_only is not None:
            tools = [t for t in tools if t.read_only == tool_filter.read_only]
        if tool_filter.capability is not None:
            tools = [t for t in tools if t.capability == tool_filter.capability]
        if tool_filter.namespace is not None:
            tools = [t for t in tools if t.namespace == tool_filter.namespace]
        return tools

    def get_definitions(self, tool_filter: Optional[ToolFilter] = None) -> List[ToolDefinition]:
        """返回模型可见的工具定义（用于构建 LLM tools 列表）。"""

        return [t.definition for t in self.get_tools(tool_filter)]

    def get_tool(self, name: str) -> Optional[ResolvedTool]:
        """按短名或限定名查找（含 override 落败者的限定名）。"""

        return self._resolved.get(name) or self._shadowed.get(name)

    def get_tool_names(self) -> List[str]:
        return sorted(self._resolved)

    def has_tool(self, name: str) -> bool:
        return name in self._resolved or name in self._shadowed

    def get_pack_ids(self) -> List[str]:
        return list(self._packs)

    def get_pack(self, pack_id: str) -> Optional[ToolPack]:
        return self._packs.get(pack_id)

    # ---------------------------------------------------------------- execution

    async def execute(self, name: str, input: ToolInput) -> ToolResult:
        """
        派发执行。

        顺序：解析名称 → 找到所属 pack → 权限检查 → 审计 → 委托执行。

        说明：
        - 未知工具、权限拒绝、工具自身抛错都返回 `success=False` 的 ToolResult（不抛异常）。
        """

        tool = self.get_tool(name)
        if tool is None:
            return ToolResult.error_result(
                code="TOOL_NOT_FOUND",
                message=f'Tool "{name}" not found. Available: {", ".join(self.get_tool_names())}',
            )
        pack = self._packs.get(tool.pack_id)
        if pack is None:
            return ToolResult.error_result(
                code="PACK_NOT_FOUND", message=f'Pack "{tool.pack_id}" not found for tool "{name}"'
            )

        denied = self.check_permissions(pack, name, input)
        if denied is not None:
            logger.info("tool %s rejected: %s", name, denied.error_code)
            return denied

        if pack.permissions is not None and pack.permissions.audit_trail:
            self._audit(name, pack.id, input)

        try:
            raw = tool.execute(dict(input))
            if inspect.isawaitable(raw):
                raw = await raw
            return _coerce_result(raw)
        except Exception as exc:
            logger.warning("tool %s raised", name, exc_info=True)
            return ToolResult.error_result(code="TOOL_EXCEPTION", message=f"Tool execution error: {exc}")

    def _audit(self, name: str, pack_id: str, input: ToolInput) -> None:
        if self._on_audit is None:
            logger.debug("[audit] pack=%s tool=%s input=%s", pack_id, name, input)
            return
        try:
            self._on_audit(name, pack_id, dict(input))
        except Exception:
            logger.warning("audit hook failed for %s", name, exc_info=True)

    @staticmethod
    def check_permissions(pack: ToolPack, tool_name: str, input: ToolInput) -> Optional[ToolResult]:
        """
        权限检查（按顺序，任一拒绝即返回）。

        返回：
        - None：允许
        - ToolResult：拒绝结果（retryable=False）
        """

        perms = pack.permissions
        if perms is None:
            return None

        command = input.get("command")
        if isinstance(command, str):
            for denied in perms.denied_commands:
                if denied and command.startswith(denied):
                    return ToolResult.error_result(
                        code="PERMISSION_DENIED",
                        message=f'Permission denied: command "{denied}" is blocked for pack "{pack.id}"',
                    )

        path = input.get("path")
        if isinstance(path, str) and path and perms.allowed_paths:
            allowed = any(p == "*" or path.startswith(p) for p in perms.allowed_paths)
            if not allowed:
                return ToolResult.error_result(
                    code="PATH_DENIED",
                    message=f'Permission denied: path "{path}" is not in allowed paths for pack "{pack.id}"',
                )

        if not perms.network_allowed:
            lowered = tool_name.lower()
            if any(hint in lowered for hint in _NETWORK_NAME_HINTS):
                return ToolResult.error_result(
                    code="NETWORK_DENIED",
                    message=f'Permission denied: network access is disabled for pack "{pack.id}"',
                )
        return None

    # ---------------------------------------------------------------- lifecycle

    async def initialize_all(self) -> None:
        """按注册顺序初始化所有 pack（异常向上抛出：初始化失败属于启动失败）。"""

        for pack in self._packs.values():
            if pack.initialize is None:
                continue
            out = pack.initialize()
            if inspect.isawaitable(out):
                await out

    async def dispose_all(self) -> None:
        """按注册逆序释放所有 pack（单个失败只记录 warning，继续释放其它 pack）。"""

        for pack in reversed(list(self._packs.values())):
            if pack.dispose is None:
                continue
            try:
                out = pack.dispose()
                if inspect.isawaitable(out):
                    await out
            except Exception:
                logger.warning("dispose failed for tool pack %s", pack.id, exc_info=True)


def _coerce_result(raw: Any) -> ToolResult:
    """把工具返回值规整为 ToolResult（dict → 校验；str → 成功文本）。"""

    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, dict):
        return ToolResult.model_validate(raw)
    if isinstance(raw, str):
        return ToolResult.ok(raw)
    return ToolResult.error_result(
        code="INVALID_TOOL_RESULT", message=f"tool returned unsupported result type: {type(raw).__name__}"
    )


__all__ = ["AuditHook", "ToolManager"]

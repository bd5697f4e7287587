"""工具层：ToolPack 协议、ToolManager、ToolExecutor 与输出处理器。"""

from agent_kernel.tools.executor import InputNormalizer, ToolExecutor
from agent_kernel.tools.manager import AuditHook, ToolManager
from agent_kernel.tools.output_processors import (
    DEFAULT_MAX_OUTPUT_CHARS,
    OutputProcessor,
    OutputProcessorPipeline,
    TruncationProcessor,
)
from agent_kernel.tools.protocol import (
    ConflictPolicy,
    PackedTool,
    ResolvedTool,
    ToolExecuteFn,
    ToolFilter,
    ToolInput,
    ToolPack,
    ToolPermissions,
    ToolResult,
    stricter_policy,
)

__all__ = [
    "AuditHook",
    "ConflictPolicy",
    "DEFAULT_MAX_OUTPUT_CHARS",
    "InputNormalizer",
    "OutputProcessor",
    "OutputProcessorPipeline",
    "PackedTool",
    "ResolvedTool",
    "ToolExecuteFn",
    "ToolExecutor",
    "ToolFilter",
    "ToolInput",
    "ToolManager",
    "ToolPack",
    "ToolPermissions",
    "ToolResult",
    "TruncationProcessor",
    "stricter_policy",
]

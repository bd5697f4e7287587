"""内核契约层：RunContext / ContextMeta / 取消信号 / 错误分类 / LoopContext。"""

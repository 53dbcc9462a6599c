"""
核心基础设施：错误分类、事件分发、时间工具。
"""

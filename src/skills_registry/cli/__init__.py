"""
CLI 入口（`skills-registry`）。
"""

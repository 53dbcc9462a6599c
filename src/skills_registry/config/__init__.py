"""
配置：YAML overlay + pydantic 校验（见 `skills_registry.config.loader`）。
"""

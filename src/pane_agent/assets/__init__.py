"""随包分发的静态资源（默认配置 YAML）。"""

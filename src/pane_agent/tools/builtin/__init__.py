"""内置工具：cmux 平台工具、本地 shell、Exa 搜索。"""

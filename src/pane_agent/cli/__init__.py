"""命令行入口（`pane-agent`）。"""

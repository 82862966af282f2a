"""CLI 模块 - ccbridge 的命令行界面。"""

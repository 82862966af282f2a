"""工作区模块 - 工作目录到通知渠道的映射。"""

from ccbridge.workspace.resolver import WorkspaceChannelResolver

__all__ = ["WorkspaceChannelResolver"]

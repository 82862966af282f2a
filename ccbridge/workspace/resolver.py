"""
工作区 → 渠道解析器。

根据会话的工作目录找到应接收通知的渠道。映射表来自配置的 agent_channels：
    {"~/projects": "telegram|111", "~/projects/api": "telegram|222"}

匹配规则：
- 最长前缀优先：~/projects/api/src 匹配 "telegram|222"，而不是上层的 "telegram|111"
- 只在路径分隔处匹配：~/projects-old 不会匹配 ~/projects
- 两端都展开 ~ 并去掉末尾分隔符后再比较
"""

import os


def _normalize(path: str) -> str:
    expanded = os.path.expanduser(path.strip())
    normalized = expanded.rstrip("/\\")
    # 根目录去掉分隔符后为空，保留为 "/"
    return normalized or expanded[:1]


class WorkspaceChannelResolver:
    """按最长路径前缀把工作目录解析为渠道地址。"""

    def __init__(self, mappings: dict[str, str] | None = None):
        self._mappings: list[tuple[str, str]] = []
        for path, channel in (mappings or {}).items():
            self.add(path, channel)

    def add(self, path: str, channel: str) -> None:
        normalized = _normalize(path)
        self._mappings = [(p, c) for p, c in self._mappings if p != normalized]
        self._mappings.append((normalized, channel))
        # 更深的路径排在前面，第一个命中即最长前缀
        self._mappings.sort(key=lambda item: len(item[0]), reverse=True)

    def resolve(self, path: str | None) -> str | None:
        """返回工作目录对应的渠道，没有匹配时返回 None。"""
        if not path:
            return None
        target = _normalize(path)
        for prefix, channel in self._mappings:
            if target == prefix:
                return channel
            boundary = prefix if prefix.endswith(("/", "\\")) else prefix + os.sep
            if target.startswith(boundary):
                return channel
        return None

    @property
    def mappings(self) -> dict[str, str]:
        return dict(self._mappings)
